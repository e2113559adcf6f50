from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from petsos.geo import GeoIndex, check_coordinates, haversine_m
from petsos.live_sync import EventKind, LiveSyncChannel, SyncEvent, responder_topic
from petsos.models import Coordinates, DistressCase, Match, ResponderPresence, utcnow
from petsos.store import CaseStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NearbyCase:
    case: DistressCase
    distance_meters: float

    def to_dict(self) -> dict:
        return {**self.case.to_dict(), "distance_meters": round(self.distance_meters, 1)}


class MatchingDispatcher:
    """Pairs open cases with available responders.

    ``responders`` holds heartbeat positions of available responders and
    expires them lazily; ``cases`` holds the location of every case still
    accepting offers and never expires.
    """

    def __init__(
        self,
        store: CaseStore,
        responders: GeoIndex,
        cases: GeoIndex,
        channel: Optional[LiveSyncChannel] = None,
        radius_meters: float = 10_000.0,
        limit: int = 20,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.responders = responders
        self.cases = cases
        self.channel = channel
        self.radius_meters = radius_meters
        self.limit = limit
        self.clock = clock
        self._presence: Dict[str, ResponderPresence] = {}
        self._lock = threading.Lock()

    def restore(self, open_cases: List[DistressCase]) -> None:
        for presence in self.store.list_responders():
            with self._lock:
                self._presence[presence.responder_id] = presence
            if presence.available and presence.location and presence.last_heartbeat:
                self.responders.upsert(presence.responder_id, presence.location, at=presence.last_heartbeat)
        for case in open_cases:
            self.track_case(case)
        logger.info("restored %d responder(s) and %d open case(s)", len(self._presence), len(self.cases))

    def _presence_for(self, responder_id: str) -> ResponderPresence:
        presence = self._presence.get(responder_id)
        if presence is None:
            presence = self.store.load_responder(responder_id) or ResponderPresence(responder_id=responder_id)
            self._presence[responder_id] = presence
        return presence

    def presence(self, responder_id: str) -> Optional[ResponderPresence]:
        with self._lock:
            return self._presence.get(responder_id) or self.store.load_responder(responder_id)

    def heartbeat(self, responder_id: str, point: Coordinates) -> ResponderPresence:
        check_coordinates(point)
        now = self.clock()
        with self._lock:
            presence = self._presence_for(responder_id)
            presence.location = point
            presence.last_heartbeat = now
            if presence.available:
                self.responders.upsert(responder_id, point, at=now)
            self.store.save_responder_presence(responder_id, point, presence.available, now)
        logger.debug("heartbeat from %s", responder_id)
        return presence

    def set_availability(self, responder_id: str, available: bool) -> List[NearbyCase]:
        with self._lock:
            presence = self._presence_for(responder_id)
            presence.available = available
            if available and presence.location and presence.last_heartbeat:
                self.responders.upsert(responder_id, presence.location, at=presence.last_heartbeat)
            else:
                self.responders.remove(responder_id)
            self.store.save_responder_presence(
                responder_id, presence.location, available, presence.last_heartbeat
            )
            location = presence.location
        logger.info("responder %s is now %s", responder_id, "available" if available else "unavailable")
        if not available or location is None:
            return []
        return self.find_nearby_cases(location, responder_id=responder_id)

    def is_available(self, responder_id: str) -> bool:
        with self._lock:
            presence = self._presence.get(responder_id)
        return bool(presence and presence.available)

    def track_case(self, case: DistressCase) -> None:
        if case.status.accepts_offers and case.selected_responder_id is None:
            self.cases.upsert(case.case_id, case.location, at=case.created_at)
        else:
            self.cases.remove(case.case_id)

    def find_eligible_responders(self, case: DistressCase) -> List[Match]:
        def eligible(responder_id: str) -> bool:
            return responder_id != case.reporter_id and self.is_available(responder_id)

        neighbors = self.responders.nearest(case.location, self.radius_meters, self.limit, where=eligible)
        return [
            Match(case_id=case.case_id, responder_id=neighbor.item_id, distance_meters=neighbor.distance_meters)
            for neighbor in neighbors
        ]

    def find_nearby_cases(self, location: Coordinates, responder_id: Optional[str] = None) -> List[NearbyCase]:
        check_coordinates(location)
        loaded: Dict[str, DistressCase] = {}

        def open_to(case_id: str) -> bool:
            case = self.store.load_case(case_id)
            if case is None or not case.status.accepts_offers:
                self.cases.remove(case_id)
                return False
            if responder_id is not None and case.reporter_id == responder_id:
                return False
            loaded[case_id] = case
            return True

        return [
            NearbyCase(case=loaded[neighbor.item_id], distance_meters=neighbor.distance_meters)
            for neighbor in self.cases.nearest(location, self.radius_meters, self.limit, where=open_to)
        ]

    def distance_to(self, responder_id: str, case: DistressCase) -> Optional[float]:
        point = self.responders.position(responder_id)
        if point is None:
            presence = self.presence(responder_id)
            point = presence.location if presence else None
        if point is None:
            return None
        return haversine_m(point, case.location)

    def dispatch_case(self, case: DistressCase) -> List[Match]:
        self.track_case(case)
        matches = self.find_eligible_responders(case)
        if not matches:
            logger.info("no eligible responders within %.0f m of case %s", self.radius_meters, case.case_id)
            return []

        if self.channel is not None:
            snapshot = case.to_dict()
            for match in matches:
                event = SyncEvent(
                    kind=EventKind.CASE_CREATED,
                    case_id=case.case_id,
                    sequence=case.sequence,
                    payload={"distance_meters": round(match.distance_meters, 1)},
                    snapshot=snapshot,
                    occurred_at=self.clock(),
                )
                self.channel.publish(responder_topic(match.responder_id), event)
        logger.info("case %s matched %d responder(s)", case.case_id, len(matches))
        return matches
