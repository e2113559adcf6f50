import threading
from itertools import count

import pytest

from petsos.cases import CaseStateMachine
from petsos.errors import Forbidden, InvalidArgument, InvalidState, NotFound
from petsos.live_sync import EventKind, LiveSyncChannel
from petsos.models import Advisory, CaseStatus, Coordinates, ResponseMode
from petsos.store import InMemoryStore

HOME = Coordinates(12.97, 77.59)
DESCRIPTION = "Dog hit by a scooter, bleeding from the back leg."


class RecordingChannel(LiveSyncChannel):
    def __init__(self) -> None:
        self.events = []

    def publish(self, topic, event) -> None:
        self.events.append(event)


def _machine(clock, channel=None) -> CaseStateMachine:
    ids = count(1)
    return CaseStateMachine(InMemoryStore(), channel=channel, clock=clock, id_factory=lambda: f"case-{next(ids)}")


def _in_progress(machine: CaseStateMachine):
    case = machine.create("owner", HOME, DESCRIPTION)
    machine.submit_offer(case.case_id, "vet-a", ResponseMode.RESPONDER_TRAVELS)
    return machine.select_responder(case.case_id, "owner", "vet-a")


def test_create_yields_pending_case_without_offers(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, "  Cat stuck and crying on the roof  ")

    assert case.status is CaseStatus.PENDING
    assert case.responses == {}
    assert case.selected_responder_id is None
    assert case.description == "Cat stuck and crying on the roof"
    assert machine.get_case(case.case_id).status is CaseStatus.PENDING


@pytest.mark.parametrize("location, description", [(None, DESCRIPTION), (HOME, "  short   "), (HOME, "")])
def test_create_rejects_invalid_input(clock, location, description) -> None:
    with pytest.raises(InvalidArgument):
        _machine(clock).create("owner", location, description)


def test_first_offer_moves_case_to_responded(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)

    updated = machine.submit_offer(case.case_id, "vet-a", "responder_travels", message="On my way")

    assert updated.status is CaseStatus.RESPONDED
    assert list(updated.responses) == ["vet-a"]
    assert updated.responses["vet-a"].message == "On my way"


def test_repeated_offers_overwrite_without_reordering(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    for responder in ["vet-a", "vet-b", "vet-a", "vet-c", "vet-b", "vet-a"]:
        machine.submit_offer(case.case_id, responder, ResponseMode.REPORTER_TRAVELS, message=f"from {responder}")

    machine.submit_offer(case.case_id, "vet-a", ResponseMode.RESPONDER_TRAVELS, message="changed my mind")
    stored = machine.get_case(case.case_id)

    assert list(stored.responses) == ["vet-a", "vet-b", "vet-c"]
    assert stored.responses["vet-a"].mode is ResponseMode.RESPONDER_TRAVELS
    assert stored.responses["vet-a"].message == "changed my mind"


def test_offer_on_unknown_case_is_not_found(clock) -> None:
    with pytest.raises(NotFound):
        _machine(clock).submit_offer("missing", "vet-a", ResponseMode.RESPONDER_TRAVELS)


def test_offer_with_unknown_mode_is_invalid(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    with pytest.raises(InvalidArgument, match="response mode"):
        machine.submit_offer(case.case_id, "vet-a", "teleport")


def test_reporter_cannot_offer_on_own_case(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    with pytest.raises(Forbidden):
        machine.submit_offer(case.case_id, "owner", ResponseMode.RESPONDER_TRAVELS)


def test_select_responder_scenario(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", Coordinates(12.97, 77.59), DESCRIPTION)
    machine.submit_offer(case.case_id, "vet-a", ResponseMode.RESPONDER_TRAVELS)
    machine.submit_offer(case.case_id, "vet-b", ResponseMode.REPORTER_TRAVELS)

    selected = machine.select_responder(case.case_id, "owner", "vet-a", ResponseMode.RESPONDER_TRAVELS)

    assert selected.status is CaseStatus.IN_PROGRESS
    assert selected.selected_responder_id == "vet-a"
    assert selected.response_mode is ResponseMode.RESPONDER_TRAVELS

    with pytest.raises((Forbidden, InvalidState)):
        machine.select_responder(case.case_id, "vet-b", "vet-b")
    with pytest.raises(InvalidState, match="already has a selected responder"):
        machine.select_responder(case.case_id, "owner", "vet-b")


def test_select_defaults_to_offer_mode(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    machine.submit_offer(case.case_id, "vet-b", ResponseMode.REPORTER_TRAVELS)

    selected = machine.select_responder(case.case_id, "owner", "vet-b")

    assert selected.response_mode is ResponseMode.REPORTER_TRAVELS


def test_select_requires_reporter_and_existing_offer(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    machine.submit_offer(case.case_id, "vet-a", ResponseMode.RESPONDER_TRAVELS)

    with pytest.raises(Forbidden):
        machine.select_responder(case.case_id, "vet-a", "vet-a")
    with pytest.raises(NotFound, match="no offer"):
        machine.select_responder(case.case_id, "owner", "vet-z")
    assert machine.get_case(case.case_id).status is CaseStatus.RESPONDED


def test_offers_after_selection_are_rejected(clock) -> None:
    machine = _machine(clock)
    case = _in_progress(machine)
    with pytest.raises(InvalidState, match="no longer accepts offers"):
        machine.submit_offer(case.case_id, "vet-late", ResponseMode.RESPONDER_TRAVELS)


def test_location_updates_only_by_participants_while_in_progress(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    with pytest.raises(InvalidState):
        machine.update_location(case.case_id, "owner", Coordinates(12.98, 77.60))

    machine.submit_offer(case.case_id, "vet-a", ResponseMode.RESPONDER_TRAVELS)
    machine.select_responder(case.case_id, "owner", "vet-a")

    moved = machine.update_location(case.case_id, "owner", Coordinates(12.98, 77.60))
    assert moved.location == Coordinates(12.98, 77.60)
    assert moved.status is CaseStatus.IN_PROGRESS

    tracked = machine.update_location(case.case_id, "vet-a", Coordinates(12.99, 77.61))
    assert tracked.live_locations["vet-a"] == Coordinates(12.99, 77.61)
    assert tracked.location == Coordinates(12.98, 77.60)

    with pytest.raises(Forbidden):
        machine.update_location(case.case_id, "stranger", Coordinates(12.99, 77.61))


def test_resolve_by_participant(clock) -> None:
    machine = _machine(clock)
    case = _in_progress(machine)

    resolved = machine.resolve(case.case_id, "vet-a")

    assert resolved.status is CaseStatus.RESOLVED
    assert resolved.closed_at == clock.now


def test_resolve_by_stranger_is_forbidden(clock) -> None:
    machine = _machine(clock)
    case = _in_progress(machine)
    with pytest.raises(Forbidden):
        machine.resolve(case.case_id, "stranger")
    assert machine.get_case(case.case_id).status is CaseStatus.IN_PROGRESS


def test_resolve_before_selection_is_invalid(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    with pytest.raises(InvalidState):
        machine.resolve(case.case_id, "owner")


def test_cancel_while_responded_blocks_late_offer(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    machine.submit_offer(case.case_id, "vet-a", ResponseMode.RESPONDER_TRAVELS)

    cancelled = machine.cancel(case.case_id, "owner")
    assert cancelled.status is CaseStatus.CANCELLED

    with pytest.raises(InvalidState):
        machine.submit_offer(case.case_id, "vet-b", ResponseMode.REPORTER_TRAVELS)


def test_cancel_requires_reporter(clock) -> None:
    machine = _machine(clock)
    case = _in_progress(machine)
    with pytest.raises(Forbidden):
        machine.cancel(case.case_id, "vet-a")


def test_every_mutation_after_cancel_is_invalid_state(clock) -> None:
    machine = _machine(clock)
    case = _in_progress(machine)
    machine.cancel(case.case_id, "owner")

    attempts = [
        lambda: machine.submit_offer(case.case_id, "vet-b", ResponseMode.RESPONDER_TRAVELS),
        lambda: machine.select_responder(case.case_id, "owner", "vet-a"),
        lambda: machine.update_location(case.case_id, "vet-a", HOME),
        lambda: machine.update_location(case.case_id, "stranger", HOME),
        lambda: machine.resolve(case.case_id, "owner"),
        lambda: machine.cancel(case.case_id, "owner"),
    ]
    for attempt in attempts:
        with pytest.raises(InvalidState):
            attempt()
    assert machine.get_case(case.case_id).status is CaseStatus.CANCELLED


def test_advisory_is_attached_to_open_case_and_ignored_when_late(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    advisory = Advisory(severity="high", guidance=["Apply pressure"])

    assert machine.attach_advisory(case.case_id, advisory) is True
    stored = machine.get_case(case.case_id)
    assert stored.advisory.severity == "high"
    assert stored.status is CaseStatus.PENDING

    machine.cancel(case.case_id, "owner")
    assert machine.attach_advisory(case.case_id, advisory) is False
    assert machine.attach_advisory("missing", advisory) is False


def test_transitions_publish_ordered_events(clock) -> None:
    channel = RecordingChannel()
    machine = _machine(clock, channel=channel)
    published = channel.events

    case = _in_progress(machine)
    machine.update_location(case.case_id, "vet-a", HOME)
    machine.resolve(case.case_id, "owner")

    assert [event.kind for event in published] == [
        EventKind.CASE_CREATED,
        EventKind.OFFER_SUBMITTED,
        EventKind.RESPONDER_SELECTED,
        EventKind.LOCATION_UPDATED,
        EventKind.STATUS_CHANGED,
    ]
    assert [event.sequence for event in published] == [1, 2, 3, 4, 5]
    assert published[-1].snapshot["status"] == "resolved"


def test_concurrent_selection_has_single_winner(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    responders = [f"vet-{i}" for i in range(8)]
    for responder in responders:
        machine.submit_offer(case.case_id, responder, ResponseMode.RESPONDER_TRAVELS)

    outcomes = []
    barrier = threading.Barrier(len(responders))

    def attempt(responder: str) -> None:
        barrier.wait()
        try:
            machine.select_responder(case.case_id, "owner", responder)
            outcomes.append(("ok", responder))
        except InvalidState:
            outcomes.append(("rejected", responder))

    threads = [threading.Thread(target=attempt, args=(r,)) for r in responders]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    winners = [responder for result, responder in outcomes if result == "ok"]
    assert len(winners) == 1
    assert machine.get_case(case.case_id).selected_responder_id == winners[0]


def test_concurrent_offers_are_never_lost(clock) -> None:
    machine = _machine(clock)
    case = machine.create("owner", HOME, DESCRIPTION)
    responders = [f"vet-{i}" for i in range(20)]

    threads = [
        threading.Thread(target=machine.submit_offer, args=(case.case_id, r, ResponseMode.REPORTER_TRAVELS))
        for r in responders
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert sorted(machine.get_case(case.case_id).responses) == sorted(responders)


def test_reporter_and_responder_case_lookups(clock) -> None:
    machine = _machine(clock)
    first = machine.create("owner", HOME, DESCRIPTION)
    clock.advance(10)
    second = machine.create("owner", HOME, "Second emergency: puppy swallowed a sock")
    machine.submit_offer(first.case_id, "vet-a", ResponseMode.RESPONDER_TRAVELS)

    assert machine.active_case_for("owner").case_id == second.case_id
    assert machine.active_case_for("nobody") is None
    assert [case.case_id for case in machine.cases_for_responder("vet-a")] == [first.case_id]
