from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Union
from uuid import uuid4

from petsos.errors import Forbidden, InvalidArgument, InvalidState, NotFound
from petsos.geo import check_coordinates
from petsos.live_sync import EventKind, LiveSyncChannel, SyncEvent
from petsos.models import (
    Advisory,
    CaseStatus,
    Coordinates,
    DistressCase,
    ResponderOffer,
    ResponseMode,
    utcnow,
)
from petsos.store import CaseStore

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_LENGTH = 10


def parse_mode(mode: Union[ResponseMode, str]) -> ResponseMode:
    try:
        return ResponseMode(mode)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ResponseMode)
        raise InvalidArgument(f"response mode must be one of {allowed}, got {mode!r}") from exc


class CaseStateMachine:
    """Lifecycle of distress cases.

    Every mutation runs under a per-case lock: load, check, mutate, save and
    publish happen as one step, so transitions on a case are committed and
    observed in a single order. Different cases never contend.

    Checks run in a fixed order: unknown case (NotFound), closed case
    (InvalidState), caller permission (Forbidden), then the remaining
    status and offer preconditions.
    """

    def __init__(
        self,
        store: CaseStore,
        channel: Optional[LiveSyncChannel] = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.clock = clock
        self.id_factory = id_factory or (lambda: uuid4().hex)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, case_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(case_id, threading.Lock())
        with lock:
            yield

    def _release(self, case_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(case_id, None)

    def _load(self, case_id: str) -> DistressCase:
        case = self.store.load_case(case_id)
        if case is None:
            raise NotFound(f"case {case_id} does not exist")
        return case

    @staticmethod
    def _require_open(case: DistressCase, action: str) -> None:
        if case.status.is_terminal:
            raise InvalidState(f"cannot {action}: case {case.case_id} is already {case.status.value}")

    def _commit(self, case: DistressCase, kind: EventKind, payload: Dict) -> SyncEvent:
        now = self.clock()
        case.sequence += 1
        case.updated_at = now
        self.store.save_case(case)
        event = SyncEvent(
            kind=kind,
            case_id=case.case_id,
            sequence=case.sequence,
            payload=payload,
            snapshot=case.to_dict(),
            occurred_at=now,
        )
        if self.channel is not None:
            self.channel.publish(case.case_id, event)
        logger.debug("case %s event #%d %s", case.case_id, case.sequence, kind.value)
        return event

    def get_case(self, case_id: str) -> DistressCase:
        return self._load(case_id)

    def create(self, reporter_id: str, location: Optional[Coordinates], description: str) -> DistressCase:
        if not reporter_id:
            raise InvalidArgument("reporter id is required")
        check_coordinates(location)
        text = (description or "").strip()
        if len(text) < MIN_DESCRIPTION_LENGTH:
            raise InvalidArgument(
                f"description must be at least {MIN_DESCRIPTION_LENGTH} characters, got {len(text)}"
            )

        now = self.clock()
        case = DistressCase(
            case_id=self.id_factory(),
            reporter_id=reporter_id,
            location=location,
            description=text,
            created_at=now,
            updated_at=now,
            live_locations={reporter_id: location},
        )
        with self._locked(case.case_id):
            self._commit(case, EventKind.CASE_CREATED, {"status": case.status.value})
        logger.info("case %s created by %s", case.case_id, reporter_id)
        return case

    def submit_offer(
        self,
        case_id: str,
        responder_id: str,
        mode: Union[ResponseMode, str],
        message: str = "",
        distance_meters: Optional[float] = None,
        eta_minutes: Optional[float] = None,
    ) -> DistressCase:
        response_mode = parse_mode(mode)
        if not responder_id:
            raise InvalidArgument("responder id is required")

        with self._locked(case_id):
            case = self._load(case_id)
            self._require_open(case, "submit an offer")
            if responder_id == case.reporter_id:
                raise Forbidden(f"reporter {responder_id} cannot offer help on their own case")
            if not case.status.accepts_offers:
                raise InvalidState(
                    f"case {case_id} is {case.status.value} and no longer accepts offers"
                )

            offer = case.responses.get(responder_id)
            if offer is None:
                offer = ResponderOffer(responder_id=responder_id, mode=response_mode, submitted_at=self.clock())
                case.responses[responder_id] = offer
            else:
                offer.mode = response_mode
                offer.submitted_at = self.clock()
            offer.message = message or ""
            offer.distance_meters = distance_meters
            offer.eta_minutes = eta_minutes

            previous = case.status
            if case.status is CaseStatus.PENDING:
                case.status = CaseStatus.RESPONDED
            self._commit(
                case,
                EventKind.OFFER_SUBMITTED,
                {"offer": offer.to_dict(), "status": case.status.value, "previous_status": previous.value},
            )
        logger.info("responder %s offered %s on case %s", responder_id, response_mode.value, case_id)
        return case

    def select_responder(
        self,
        case_id: str,
        actor_id: str,
        responder_id: str,
        mode: Union[ResponseMode, str, None] = None,
    ) -> DistressCase:
        with self._locked(case_id):
            case = self._load(case_id)
            self._require_open(case, "select a responder")
            if actor_id != case.reporter_id:
                raise Forbidden(f"only the reporter of case {case_id} can select a responder")
            if case.selected_responder_id is not None:
                raise InvalidState(
                    f"case {case_id} already has a selected responder ({case.selected_responder_id})"
                )
            if not case.status.accepts_offers:
                raise InvalidState(f"case {case_id} is {case.status.value}; responders can no longer be selected")
            offer = case.responses.get(responder_id)
            if offer is None:
                raise NotFound(f"responder {responder_id} has no offer on case {case_id}")

            case.selected_responder_id = responder_id
            case.response_mode = parse_mode(mode) if mode is not None else offer.mode
            previous = case.status
            case.status = CaseStatus.IN_PROGRESS
            self._commit(
                case,
                EventKind.RESPONDER_SELECTED,
                {
                    "responder_id": responder_id,
                    "mode": case.response_mode.value,
                    "status": case.status.value,
                    "previous_status": previous.value,
                },
            )
        logger.info("case %s: reporter selected responder %s", case_id, responder_id)
        return case

    def update_location(self, case_id: str, actor_id: str, point: Optional[Coordinates]) -> DistressCase:
        check_coordinates(point)
        with self._locked(case_id):
            case = self._load(case_id)
            self._require_open(case, "update location")
            if actor_id not in case.participants():
                raise Forbidden(f"{actor_id} is neither the reporter nor the selected responder of case {case_id}")
            if case.status is not CaseStatus.IN_PROGRESS:
                raise InvalidState(
                    f"location sharing on case {case_id} starts once a responder is selected "
                    f"(status is {case.status.value})"
                )

            if actor_id == case.reporter_id:
                case.location = point
            case.live_locations[actor_id] = point
            self._commit(case, EventKind.LOCATION_UPDATED, {"actor_id": actor_id, "location": point.to_dict()})
        return case

    def resolve(self, case_id: str, actor_id: str) -> DistressCase:
        with self._locked(case_id):
            case = self._load(case_id)
            self._require_open(case, "resolve")
            if actor_id not in case.participants():
                raise Forbidden(f"{actor_id} is neither the reporter nor the selected responder of case {case_id}")
            if case.status is not CaseStatus.IN_PROGRESS:
                raise InvalidState(f"case {case_id} is {case.status.value}; only in-progress cases can be resolved")
            self._close(case, CaseStatus.RESOLVED, actor_id)
        self._release(case_id)
        logger.info("case %s resolved by %s", case_id, actor_id)
        return case

    def cancel(self, case_id: str, actor_id: str) -> DistressCase:
        with self._locked(case_id):
            case = self._load(case_id)
            self._require_open(case, "cancel")
            if actor_id != case.reporter_id:
                raise Forbidden(f"only the reporter of case {case_id} can cancel it")
            self._close(case, CaseStatus.CANCELLED, actor_id)
        self._release(case_id)
        logger.info("case %s cancelled by reporter", case_id)
        return case

    def _close(self, case: DistressCase, status: CaseStatus, actor_id: str) -> None:
        previous = case.status
        case.status = status
        case.closed_at = self.clock()
        self._commit(
            case,
            EventKind.STATUS_CHANGED,
            {"status": status.value, "previous_status": previous.value, "actor_id": actor_id},
        )

    def attach_advisory(self, case_id: str, advisory: Advisory) -> bool:
        """Attach scorer output; late or orphaned advisories are logged and dropped."""
        with self._locked(case_id):
            case = self.store.load_case(case_id)
            if case is None:
                logger.warning("advisory for unknown case %s ignored", case_id)
                return False
            if case.status.is_terminal:
                logger.warning("advisory for %s case %s ignored", case.status.value, case_id)
                return False
            case.advisory = advisory
            self._commit(case, EventKind.ADVISORY_ATTACHED, {"advisory": advisory.to_dict()})
        return True

    def open_cases(self) -> List[DistressCase]:
        return self.store.list_cases(
            [CaseStatus.PENDING, CaseStatus.RESPONDED, CaseStatus.IN_PROGRESS]
        )

    def active_case_for(self, reporter_id: str) -> Optional[DistressCase]:
        mine = [case for case in self.open_cases() if case.reporter_id == reporter_id]
        if not mine:
            return None
        return max(mine, key=lambda case: case.created_at)

    def cases_for_responder(self, responder_id: str) -> List[DistressCase]:
        involved = [
            case
            for case in self.open_cases()
            if responder_id in case.responses or case.selected_responder_id == responder_id
        ]
        involved.sort(key=lambda case: case.created_at, reverse=True)
        return involved
