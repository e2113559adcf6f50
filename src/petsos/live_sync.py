"""Event propagation between the parties of an open case.

The state machine only calls ``publish``; whether an event is pushed to
subscribed sessions or kept as the latest snapshot for pollers is decided by
the channel a deployment wires in.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from petsos.errors import NotFound

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CASE_CREATED = "case_created"
    OFFER_SUBMITTED = "offer_submitted"
    RESPONDER_SELECTED = "responder_selected"
    STATUS_CHANGED = "status_changed"
    LOCATION_UPDATED = "location_updated"
    ADVISORY_ATTACHED = "advisory_attached"


def responder_topic(responder_id: str) -> str:
    return f"responder:{responder_id}"


@dataclass(frozen=True)
class SyncEvent:
    kind: EventKind
    case_id: str
    sequence: int
    payload: Dict[str, Any]
    snapshot: Dict[str, Any]
    occurred_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "case_id": self.case_id,
            "sequence": self.sequence,
            "payload": self.payload,
            "snapshot": self.snapshot,
            "occurred_at": self.occurred_at.isoformat(),
        }


class SessionTransport(ABC):
    @abstractmethod
    def deliver(self, event: SyncEvent, session_id: str) -> None:
        ...


class CallbackTransport(SessionTransport):
    """Session registry that hands each event to a per-session callable."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Callable[[SyncEvent], None]] = {}
        self._lock = threading.Lock()

    def register(self, session_id: str, callback: Callable[[SyncEvent], None]) -> None:
        with self._lock:
            self._sessions[session_id] = callback

    def unregister(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def deliver(self, event: SyncEvent, session_id: str) -> None:
        callback = self._sessions.get(session_id)
        if callback is None:
            raise NotFound(f"session {session_id} is not connected")
        callback(event)


class LiveSyncChannel(ABC):
    supports_push = False

    @abstractmethod
    def publish(self, topic: str, event: SyncEvent) -> None:
        ...


class PushChannel(LiveSyncChannel):
    """At-most-once fan-out to the sessions subscribed when the event is published.

    There is no replay: a session that subscribes later only sees later events.
    """

    supports_push = True

    def __init__(self, transport: SessionTransport) -> None:
        self.transport = transport
        self._subscribers: Dict[str, Dict[str, None]] = {}
        self._topics_by_session: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, session_id: str) -> None:
        with self._lock:
            self._subscribers.setdefault(topic, {})[session_id] = None
            self._topics_by_session.setdefault(session_id, set()).add(topic)
        logger.debug("session %s subscribed to %s", session_id, topic)

    def unsubscribe(self, topic: str, session_id: str) -> None:
        with self._lock:
            sessions = self._subscribers.get(topic)
            if sessions is not None:
                sessions.pop(session_id, None)
                if not sessions:
                    del self._subscribers[topic]
            topics = self._topics_by_session.get(session_id)
            if topics is not None:
                topics.discard(topic)
                if not topics:
                    del self._topics_by_session[session_id]

    def disconnect(self, session_id: str) -> None:
        with self._lock:
            topics = self._topics_by_session.pop(session_id, set())
            for topic in topics:
                sessions = self._subscribers.get(topic)
                if sessions is None:
                    continue
                sessions.pop(session_id, None)
                if not sessions:
                    del self._subscribers[topic]
        if topics:
            logger.debug("session %s disconnected from %d topic(s)", session_id, len(topics))

    def subscribers(self, topic: str) -> List[str]:
        with self._lock:
            return list(self._subscribers.get(topic, {}))

    def publish(self, topic: str, event: SyncEvent) -> None:
        for session_id in self.subscribers(topic):
            try:
                self.transport.deliver(event, session_id)
            except Exception as exc:
                logger.warning("dropping session %s after failed delivery on %s: %s", session_id, topic, exc)
                self.disconnect(session_id)


@dataclass(frozen=True)
class PollResult:
    token: int
    changed: bool
    snapshot: Optional[Dict[str, Any]]
    last_event: Optional[str]
    interval_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "changed": self.changed,
            "snapshot": self.snapshot,
            "last_event": self.last_event,
            "interval_seconds": self.interval_seconds,
        }


class PollChannel(LiveSyncChannel):
    """Keeps only the latest snapshot per topic; pollers compare tokens.

    Intermediate events are superseded, never queued, so a poller that keeps
    polling always converges on the current state. On a case topic the token
    is the case sequence, which is persisted with the case and survives a
    restart. Other topics mix events from several cases and count locally.
    """

    def __init__(self, interval_seconds: float = 3.0) -> None:
        self.interval_seconds = interval_seconds
        self._latest: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def publish(self, topic: str, event: SyncEvent) -> None:
        with self._lock:
            if topic == event.case_id:
                token = event.sequence
            else:
                token = self._latest.get(topic, (0, None))[0] + 1
            self._latest[topic] = (token, event)
        logger.debug("stored %s for %s at token %d", event.kind.value, topic, token)

    def poll(self, topic: str, since_token: Optional[int] = None) -> PollResult:
        with self._lock:
            token, event = self._latest.get(topic, (0, None))
        if event is None:
            return PollResult(
                token=0, changed=False, snapshot=None, last_event=None, interval_seconds=self.interval_seconds
            )
        return PollResult(
            token=token,
            changed=since_token is None or since_token != token,
            snapshot=event.snapshot,
            last_event=event.kind.value,
            interval_seconds=self.interval_seconds,
        )
