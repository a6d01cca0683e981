"""Exchange requests, relocation of displaced members and chain negotiation."""

from __future__ import annotations

from dataclasses import replace
from datetime import date

import pytest

from backend.domain.models import (
    AssignedSlot,
    Member,
    PreferredBlock,
    RequestStatus,
    RequestType,
    RoomState,
    TimeSlotRef,
)
from backend.repository.data_repository import DataRepository
from backend.services.exchange_service import (
    CHAIN_REJECTED_MESSAGE,
    NO_ALTERNATIVE_MESSAGE,
    ExchangeService,
    ExchangeValidationError,
    RequestNotFoundError,
    RequestPermissionError,
    RequestStateError,
)
from backend.utils.config import get_settings


MONDAY = date(2026, 3, 2)
WEDNESDAY = date(2026, 3, 4)
THURSDAY = date(2026, 3, 5)
FRIDAY = date(2026, 3, 6)
SATURDAY = date(2026, 3, 7)


def _service(tmp_path, **overrides) -> ExchangeService:
    get_settings.cache_clear()
    settings = replace(get_settings(), database_path=tmp_path / "exchange.db", **overrides)
    return ExchangeService(repository=DataRepository(settings), settings=settings)


def _block(day: int, start: str, end: str) -> PreferredBlock:
    return PreferredBlock(start, end, day_of_week=day)


def _slot(user_id: str, on_date: date, start: str, end: str, slot_id: str) -> AssignedSlot:
    return AssignedSlot(user_id=user_id, date=on_date, start_time=start, end_time=end, slot_id=slot_id)


def _ref(on_date: date, start: str, end: str) -> TimeSlotRef:
    return TimeSlotRef(date=on_date, start_time=start, end_time=end)


def _held(state: RoomState, user_id: str) -> list[tuple[date, str, str]]:
    return [(slot.date, slot.start_time, slot.end_time) for slot in state.slots_for(user_id)]


def _relocation_room() -> RoomState:
    """m2 holds Wed 09-10 and could also sit Wed 11-12."""
    owner = Member(user_id="owner", preferred_blocks=[_block(1, "09:00", "12:00"), _block(3, "09:00", "13:00")])
    members = {
        "m1": Member(user_id="m1", preferred_blocks=[_block(1, "09:00", "10:00")]),
        "m2": Member(
            user_id="m2",
            preferred_blocks=[_block(3, "09:00", "10:00"), _block(3, "11:00", "12:00")],
        ),
        "m3": Member(user_id="m3", preferred_blocks=[_block(1, "10:00", "12:00")]),
    }
    return RoomState(
        room_id="room-1",
        owner=owner,
        members=members,
        assigned_slots=[
            _slot("m1", MONDAY, "09:00", "10:00", "m1-mon"),
            _slot("m2", WEDNESDAY, "09:00", "10:00", "m2-wed"),
        ],
    )


def _chain_room(with_fourth: bool = False) -> RoomState:
    """m2 can only fall back to m3's Thursday slot; m3 could move to 13-14."""
    owner_blocks = [_block(3, "09:00", "13:00"), _block(4, "09:00", "15:00")]
    m2_blocks = [_block(3, "09:00", "10:00"), _block(4, "10:00", "11:00")]
    members = {
        "m1": Member(user_id="m1"),
        "m3": Member(user_id="m3", preferred_blocks=[_block(4, "10:00", "11:00"), _block(4, "13:00", "14:00")]),
    }
    slots = [
        _slot("m2", WEDNESDAY, "09:00", "10:00", "m2-wed"),
        _slot("m3", THURSDAY, "10:00", "11:00", "m3-thu"),
    ]
    if with_fourth:
        owner_blocks.append(_block(5, "09:00", "15:00"))
        m2_blocks.append(_block(5, "10:00", "11:00"))
        members["m4"] = Member(
            user_id="m4",
            preferred_blocks=[_block(5, "10:00", "11:00"), _block(5, "14:00", "15:00")],
        )
        slots.append(_slot("m4", FRIDAY, "10:00", "11:00", "m4-fri"))
    members["m2"] = Member(user_id="m2", preferred_blocks=m2_blocks)
    return RoomState(
        room_id="room-1",
        owner=Member(user_id="owner", preferred_blocks=owner_blocks),
        members=members,
        assigned_slots=slots,
    )


def _request_wednesday(service: ExchangeService, state: RoomState):
    return service.create_request(
        state, "m1", RequestType.TIME_REQUEST, _ref(WEDNESDAY, "09:00", "10:00")
    )


def _chain_hops(state: RoomState, original_id: str):
    return [request for request in state.requests if request.parent_request_id == original_id]


# --- direct relocation ---

def test_displaced_member_is_moved_to_their_next_preferred_time(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()
    request = _request_wednesday(service, state)
    assert request.target_user == "m2"

    service.respond(state, request.request_id, "m2", "approved")

    assert request.status is RequestStatus.APPROVED
    assert (WEDNESDAY, "09:00", "10:00") in _held(state, "m1")
    assert _held(state, "m2") == [(WEDNESDAY, "11:00", "12:00")]


def test_gained_slot_outside_preferences_adds_a_dated_block(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()
    request = _request_wednesday(service, state)

    service.respond(state, request.request_id, "m2", "approved")

    added = state.members["m1"].preferred_blocks[-1]
    assert added.specific_date == WEDNESDAY
    assert (added.start_time, added.end_time) == ("09:00", "10:00")
    assert state.dirty_users == {"m1"}


def test_rejected_request_leaves_slots_untouched(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()
    before = list(state.assigned_slots)
    request = _request_wednesday(service, state)

    service.respond(state, request.request_id, "m2", "rejected", "busy")

    assert request.status is RequestStatus.REJECTED
    assert request.response_message == "busy"
    assert state.assigned_slots == before


def test_no_alternative_rejects_the_request(tmp_path) -> None:
    service = _service(tmp_path)
    state = _chain_room()
    del state.members["m3"]
    state.assigned_slots = [slot for slot in state.assigned_slots if slot.user_id != "m3"]
    state.assigned_slots.append(_slot("owner", THURSDAY, "10:00", "11:00", "owner-thu"))
    request = _request_wednesday(service, state)

    service.respond(state, request.request_id, "m2", "approved")

    assert request.status is RequestStatus.REJECTED
    assert request.response_message == NO_ALTERNATIVE_MESSAGE


# --- chain negotiation ---

def test_approved_chain_performs_exactly_three_moves(tmp_path) -> None:
    service = _service(tmp_path)
    state = _chain_room()
    original = _request_wednesday(service, state)

    service.respond(state, original.request_id, "m2", "approved")

    assert original.status is RequestStatus.WAITING_FOR_CHAIN
    [hop] = _chain_hops(state, original.request_id)
    assert hop.kind is RequestType.CHAIN_REQUEST
    assert hop.target_user == "m3"
    assert hop.requester == "m1"
    assert hop.time_slot == _ref(THURSDAY, "10:00", "11:00")
    assert hop.chain_data.fresh_slot == _ref(THURSDAY, "13:00", "14:00")

    service.respond(state, hop.request_id, "m3", "approved")

    assert hop.status is RequestStatus.APPROVED
    assert original.status is RequestStatus.APPROVED
    assert _held(state, "m1") == [(WEDNESDAY, "09:00", "10:00")]
    assert _held(state, "m2") == [(THURSDAY, "10:00", "11:00")]
    assert _held(state, "m3") == [(THURSDAY, "13:00", "14:00")]
    assert len(state.assigned_slots) == 3


def test_declined_chain_rejects_original(tmp_path) -> None:
    service = _service(tmp_path)
    state = _chain_room()
    before = list(state.assigned_slots)
    original = _request_wednesday(service, state)
    service.respond(state, original.request_id, "m2", "approved")
    [hop] = _chain_hops(state, original.request_id)

    service.respond(state, hop.request_id, "m3", "rejected")

    assert hop.status is RequestStatus.REJECTED
    assert original.status is RequestStatus.REJECTED
    assert original.response_message.startswith(CHAIN_REJECTED_MESSAGE)
    assert "m3 declined" in original.response_message
    assert original.chain_data.rejected_users == ("m3",)
    assert state.assigned_slots == before


def test_declined_chain_does_not_try_remaining_candidates(tmp_path) -> None:
    service = _service(tmp_path)
    state = _chain_room(with_fourth=True)
    before = list(state.assigned_slots)
    original = _request_wednesday(service, state)
    service.respond(state, original.request_id, "m2", "approved")
    [first] = _chain_hops(state, original.request_id)
    assert first.target_user == "m3"
    assert first.chain_data.candidate_users == ("m3", "m4")

    service.respond(state, first.request_id, "m3", "rejected", "not this week")

    assert original.status is RequestStatus.REJECTED
    assert first.response_message == "not this week"
    assert _chain_hops(state, original.request_id) == [first]
    assert state.assigned_slots == before
    with pytest.raises(RequestStateError):
        service.respond(state, original.request_id, "m2", "approved")


def test_recorded_candidates_are_capped_by_hop_limit(tmp_path) -> None:
    service = _service(tmp_path, max_chain_hops=1)
    state = _chain_room(with_fourth=True)
    original = _request_wednesday(service, state)

    service.respond(state, original.request_id, "m2", "approved")

    [hop] = _chain_hops(state, original.request_id)
    assert hop.chain_data.candidate_users == ("m3",)
    assert hop.chain_data.hop == 1


def test_confirmed_chain_skips_candidate_that_can_no_longer_move(tmp_path) -> None:
    service = _service(tmp_path, chain_requires_confirmation=True)
    state = _chain_room(with_fourth=True)
    original = _request_wednesday(service, state)
    service.respond(state, original.request_id, "m2", "approved")
    assert original.chain_data.candidate_users == ("m3", "m4")
    state.members["m3"].preferred_blocks = [_block(4, "10:00", "11:00")]

    service.confirm_chain(state, original.request_id, "m1")

    [hop] = _chain_hops(state, original.request_id)
    assert hop.target_user == "m4"
    assert hop.chain_data.hop == 2

    service.respond(state, hop.request_id, "m4", "approved")

    assert original.status is RequestStatus.APPROVED
    assert _held(state, "m2") == [(FRIDAY, "10:00", "11:00")]
    assert _held(state, "m4") == [(FRIDAY, "14:00", "15:00")]
    assert _held(state, "m3") == [(THURSDAY, "10:00", "11:00")]


def test_chain_waits_for_requester_confirmation_when_configured(tmp_path) -> None:
    service = _service(tmp_path, chain_requires_confirmation=True)
    state = _chain_room()
    original = _request_wednesday(service, state)

    service.respond(state, original.request_id, "m2", "approved")

    assert original.status is RequestStatus.NEEDS_CHAIN_CONFIRMATION
    assert original.chain_data.chain_user == "m3"
    assert _chain_hops(state, original.request_id) == []
    with pytest.raises(RequestPermissionError):
        service.confirm_chain(state, original.request_id, "m2")

    service.confirm_chain(state, original.request_id, "m1")

    assert original.status is RequestStatus.WAITING_FOR_CHAIN
    [hop] = _chain_hops(state, original.request_id)
    assert hop.target_user == "m3"
    with pytest.raises(RequestStateError):
        service.confirm_chain(state, original.request_id, "m1")


def test_chain_that_became_infeasible_rejects_both_requests(tmp_path) -> None:
    service = _service(tmp_path)
    state = _chain_room()
    original = _request_wednesday(service, state)
    service.respond(state, original.request_id, "m2", "approved")
    [hop] = _chain_hops(state, original.request_id)
    state.members["m3"].preferred_blocks = [_block(4, "10:00", "11:00")]

    service.respond(state, hop.request_id, "m3", "approved")

    assert hop.status is RequestStatus.REJECTED
    assert original.status is RequestStatus.REJECTED
    assert original.response_message == "Chain is no longer feasible"
    assert _held(state, "m3") == [(THURSDAY, "10:00", "11:00")]


def test_cancelling_original_rejects_open_chain_hops(tmp_path) -> None:
    service = _service(tmp_path)
    state = _chain_room()
    original = _request_wednesday(service, state)
    service.respond(state, original.request_id, "m2", "approved")
    [hop] = _chain_hops(state, original.request_id)

    with pytest.raises(ExchangeValidationError):
        service.cancel(state, hop.request_id, "m1")
    service.cancel(state, original.request_id, "m1")

    assert original.status is RequestStatus.CANCELLED
    assert hop.status is RequestStatus.REJECTED
    assert hop.response_message == "Original request was cancelled"
    with pytest.raises(RequestStateError):
        service.cancel(state, original.request_id, "m1")


# --- other request kinds ---

def test_slot_swap_exchanges_holders(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()
    request = service.create_request(
        state,
        "m1",
        "slot_swap",
        _ref(WEDNESDAY, "09:00", "10:00"),
        target_user="m2",
        requester_slot_ids=["m1-mon"],
    )

    service.respond(state, request.request_id, "m2", "approved")

    assert request.status is RequestStatus.APPROVED
    assert _held(state, "m1") == [(WEDNESDAY, "09:00", "10:00")]
    assert _held(state, "m2") == [(MONDAY, "09:00", "10:00")]
    assert state.dirty_users == {"m1", "m2"}


def test_slot_release_returns_time_to_the_owner(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()
    state.assigned_slots[0] = _slot("m1", MONDAY, "09:00", "11:00", "m1-mon")
    request = service.create_request(state, "m1", "slot_release", _ref(MONDAY, "09:00", "10:00"))
    assert request.target_user == "owner"

    service.respond(state, request.request_id, "owner", "approved")

    assert _held(state, "m1") == [(MONDAY, "10:00", "11:00")]


def test_time_change_vacates_the_offered_slot(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()
    request = service.create_request(
        state,
        "m1",
        "time_change",
        _ref(WEDNESDAY, "11:00", "12:00"),
        requester_slot_ids=["m1-mon"],
    )
    assert request.target_user is None

    with pytest.raises(RequestPermissionError):
        service.respond(state, request.request_id, "m2", "approved")
    service.respond(state, request.request_id, "owner", "approved")

    assert _held(state, "m1") == [(WEDNESDAY, "11:00", "12:00")]


# --- validation ---

def test_create_request_validation(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()

    with pytest.raises(ExchangeValidationError):
        service.create_request(state, "owner", "time_request", _ref(WEDNESDAY, "09:00", "10:00"))
    with pytest.raises(RequestPermissionError):
        service.create_request(state, "stranger", "time_request", _ref(WEDNESDAY, "09:00", "10:00"))
    with pytest.raises(ExchangeValidationError):
        service.create_request(state, "m1", "time_request", _ref(SATURDAY, "09:00", "10:00"))
    with pytest.raises(ExchangeValidationError):
        service.create_request(state, "m1", "time_request", _ref(WEDNESDAY, "14:00", "15:00"))
    with pytest.raises(ExchangeValidationError):
        service.create_request(state, "m1", "chain_request", _ref(WEDNESDAY, "09:00", "10:00"))
    with pytest.raises(ExchangeValidationError):
        service.create_request(state, "m1", "time_change", _ref(WEDNESDAY, "11:00", "12:00"))
    with pytest.raises(ExchangeValidationError):
        service.create_request(state, "m1", "teleport", _ref(WEDNESDAY, "09:00", "10:00"))


def test_duplicate_active_request_is_rejected(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()
    _request_wednesday(service, state)

    with pytest.raises(ExchangeValidationError, match="already active"):
        _request_wednesday(service, state)


def test_unpadded_duplicate_request_is_rejected(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()
    first = _request_wednesday(service, state)

    with pytest.raises(ExchangeValidationError, match="already active"):
        service.create_request(state, "m1", "time_request", _ref(WEDNESDAY, "9:00", "10:00"))
    assert [request.request_id for request in state.requests] == [first.request_id]


def test_respond_guards(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()
    request = _request_wednesday(service, state)

    with pytest.raises(RequestNotFoundError):
        service.respond(state, "missing", "m2", "approved")
    with pytest.raises(ExchangeValidationError):
        service.respond(state, request.request_id, "m2", "maybe")
    with pytest.raises(RequestPermissionError):
        service.respond(state, request.request_id, "m3", "approved")

    service.respond(state, request.request_id, "owner", "rejected")

    with pytest.raises(RequestStateError):
        service.respond(state, request.request_id, "m2", "approved")


def test_state_changes_are_staged_as_activities_and_events(tmp_path) -> None:
    service = _service(tmp_path)
    state = _relocation_room()
    request = _request_wednesday(service, state)
    service.respond(state, request.request_id, "m2", "approved")

    kinds = [event.kind for event in state.pending_events]
    actions = [record.action.value for record in state.pending_activities]
    assert kinds[0] == "request_created"
    assert "slots_updated" in kinds
    assert actions == ["slot_request", "change_approve"]
