from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from petsos.advisory import KeywordSeverityScorer, Scorer
from petsos.cases import CaseStateMachine
from petsos.config import Settings, load_settings
from petsos.dispatcher import MatchingDispatcher, NearbyCase
from petsos.errors import InvalidArgument, InvalidState
from petsos.geo import GeoIndex
from petsos.live_sync import (
    CallbackTransport,
    LiveSyncChannel,
    PollChannel,
    PollResult,
    PushChannel,
    responder_topic,
)
from petsos.models import Coordinates, DistressCase, Match, ResponseMode, utcnow
from petsos.store import CaseStore, InMemoryStore, SQLiteStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    case: DistressCase
    matches: List[Match]


class PetEmergencySystem:
    def __init__(
        self,
        store: CaseStore,
        channel: LiveSyncChannel,
        settings: Optional[Settings] = None,
        scorer: Optional[Scorer] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.channel = channel
        self.scorer = scorer
        self.executor = executor
        self.responder_index = GeoIndex(staleness=timedelta(seconds=self.settings.staleness_seconds), clock=clock)
        self.case_index = GeoIndex(staleness=None, clock=clock)
        self.cases = CaseStateMachine(store, channel=channel, clock=clock, id_factory=id_factory)
        self.dispatcher = MatchingDispatcher(
            store,
            responders=self.responder_index,
            cases=self.case_index,
            channel=channel,
            radius_meters=self.settings.match_radius_meters,
            limit=self.settings.match_limit,
            clock=clock,
        )

    def restore(self) -> None:
        self.dispatcher.restore(self.cases.open_cases())

    def report_distress(self, reporter_id: str, location: Optional[Coordinates], description: str) -> DispatchResult:
        case = self.cases.create(reporter_id, location, description)
        matches = self.dispatcher.dispatch_case(case)
        self._request_advisory(case)
        return DispatchResult(case=self.cases.get_case(case.case_id), matches=matches)

    def _request_advisory(self, case: DistressCase) -> None:
        if self.scorer is None:
            return
        if self.executor is not None:
            self.executor.submit(self._score, case)
        else:
            self._score(case)

    def _score(self, case: DistressCase) -> None:
        try:
            advisory = self.scorer(case)
        except Exception:
            logger.exception("advisory scorer failed for case %s", case.case_id)
            return
        if advisory is None:
            logger.info("advisory scorer returned nothing for case %s", case.case_id)
            return
        self.cases.attach_advisory(case.case_id, advisory)

    def submit_offer(
        self,
        case_id: str,
        responder_id: str,
        mode: Union[ResponseMode, str],
        message: str = "",
        eta_minutes: Optional[float] = None,
        distance_meters: Optional[float] = None,
    ) -> DistressCase:
        if distance_meters is None:
            distance_meters = self.dispatcher.distance_to(responder_id, self.cases.get_case(case_id))
            if distance_meters is not None:
                distance_meters = round(distance_meters, 1)
        return self.cases.submit_offer(
            case_id,
            responder_id,
            mode,
            message=message,
            distance_meters=distance_meters,
            eta_minutes=eta_minutes,
        )

    def select_responder(
        self, case_id: str, actor_id: str, responder_id: str, mode: Union[ResponseMode, str, None] = None
    ) -> DistressCase:
        case = self.cases.select_responder(case_id, actor_id, responder_id, mode)
        self.dispatcher.track_case(case)
        return case

    def update_location(self, case_id: str, actor_id: str, point: Optional[Coordinates]) -> DistressCase:
        return self.cases.update_location(case_id, actor_id, point)

    def resolve(self, case_id: str, actor_id: str) -> DistressCase:
        case = self.cases.resolve(case_id, actor_id)
        self.dispatcher.track_case(case)
        return case

    def cancel(self, case_id: str, actor_id: str) -> DistressCase:
        case = self.cases.cancel(case_id, actor_id)
        self.dispatcher.track_case(case)
        return case

    def responder_heartbeat(self, responder_id: str, point: Coordinates) -> List[NearbyCase]:
        presence = self.dispatcher.heartbeat(responder_id, point)
        if not presence.available:
            return []
        return self.dispatcher.find_nearby_cases(point, responder_id=responder_id)

    def set_availability(self, responder_id: str, available: bool) -> List[NearbyCase]:
        return self.dispatcher.set_availability(responder_id, available)

    def nearby_cases(self, responder_id: str) -> List[NearbyCase]:
        presence = self.dispatcher.presence(responder_id)
        if presence is None or presence.location is None:
            raise InvalidArgument(f"responder {responder_id} has not shared a location yet")
        return self.dispatcher.find_nearby_cases(presence.location, responder_id=responder_id)

    def _poll_channel(self) -> PollChannel:
        if not isinstance(self.channel, PollChannel):
            raise InvalidState("live sync runs in push mode; subscribe to the case instead of polling")
        return self.channel

    def _push_channel(self) -> PushChannel:
        if not isinstance(self.channel, PushChannel):
            raise InvalidState("live sync runs in poll mode; poll the case instead of subscribing")
        return self.channel

    def poll_case(self, case_id: str, since_token: Optional[int] = None) -> PollResult:
        channel = self._poll_channel()
        result = channel.poll(case_id, since_token)
        if result.snapshot is not None:
            return result
        case = self.cases.get_case(case_id)
        return PollResult(
            token=case.sequence,
            changed=since_token is None or since_token != case.sequence,
            snapshot=case.to_dict(),
            last_event=None,
            interval_seconds=channel.interval_seconds,
        )

    def poll_inbox(self, responder_id: str, since_token: Optional[int] = None) -> PollResult:
        result = self._poll_channel().poll(responder_topic(responder_id), since_token)
        return PollResult(
            token=result.token,
            changed=result.changed,
            snapshot=result.snapshot,
            last_event=result.last_event,
            interval_seconds=self.settings.nearby_poll_seconds,
        )

    def subscribe(self, topic: str, session_id: str) -> None:
        self._push_channel().subscribe(topic, session_id)

    def unsubscribe(self, topic: str, session_id: str) -> None:
        self._push_channel().unsubscribe(topic, session_id)

    def disconnect(self, session_id: str) -> None:
        self._push_channel().disconnect(session_id)


def build_system(
    settings: Optional[Settings] = None,
    scorer: Optional[Scorer] = None,
    executor: Optional[Executor] = None,
) -> PetEmergencySystem:
    settings = settings or load_settings()
    store: CaseStore = SQLiteStore(settings.db_path) if settings.db_path else InMemoryStore()
    if settings.sync_mode == "push":
        channel: LiveSyncChannel = PushChannel(CallbackTransport())
    else:
        channel = PollChannel(interval_seconds=settings.case_poll_seconds)
    system = PetEmergencySystem(
        store,
        channel,
        settings=settings,
        scorer=scorer or KeywordSeverityScorer(),
        executor=executor,
    )
    system.restore()
    return system
