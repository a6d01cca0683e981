from __future__ import annotations

from dataclasses import replace
from datetime import date

import pytest

from backend.domain.models import (
    ActivityAction,
    AssignedSlot,
    ChainLink,
    PreferredBlock,
    Request,
    RequestStatus,
    RequestType,
    TimeSlotRef,
)
from backend.repository.data_repository import ConcurrentModificationError, DataRepository
from backend.repository.optimistic import OptimisticRetryExhaustedError, with_optimistic_retry
from backend.services.notification_service import NotificationService, stage_activity, stage_event
from backend.utils.config import get_settings


MONDAY = date(2026, 3, 2)
TUESDAY = date(2026, 3, 3)


def _build_repository(tmp_path) -> DataRepository:
    get_settings.cache_clear()
    settings = replace(get_settings(), database_path=tmp_path / "repository.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    for user_id in ("owner", "m1", "m2"):
        repository.create_user(user_id, location=f"{user_id}-desk")
    repository.replace_preferred_blocks("owner", [PreferredBlock("09:00", "17:00", day_of_week=1)])
    repository.replace_preferred_blocks("m1", [PreferredBlock("09:00", "10:00", day_of_week=1)])
    repository.create_room("room-1", "Studio", "owner", 120)
    repository.add_member("room-1", "m1")
    repository.add_member("room-1", "m2", priority=3)
    return repository


def test_initialize_database_is_idempotent(tmp_path) -> None:
    repository = _build_repository(tmp_path)
    repository.initialize_database()
    assert repository.load_room_state("room-1") is not None
    assert repository.load_room_state("missing") is None


def test_room_state_round_trips_slots_requests_and_chain_data(tmp_path) -> None:
    repository = _build_repository(tmp_path)
    state = repository.load_room_state("room-1")
    assert state.owner_id == "owner"
    assert set(state.members) == {"m1", "m2"}
    assert state.members["m2"].priority == 3
    assert state.owner.location == "owner-desk"

    slot = AssignedSlot(user_id="m1", date=MONDAY, start_time="09:00", end_time="10:00", slot_id="s1")
    link = ChainLink(
        original_requester="m2",
        original_request_id="r1",
        intermediate_user="m1",
        intermediate_slot=TimeSlotRef(TUESDAY, "10:00", "11:00"),
        chain_user="owner",
        fresh_slot=TimeSlotRef(TUESDAY, "13:00", "14:00"),
        candidate_users=("owner",),
        hop=2,
    )
    request = Request(
        requester="m2",
        kind=RequestType.TIME_REQUEST,
        time_slot=TimeSlotRef(MONDAY, "09:00", "10:00"),
        room_id="room-1",
        target_user="m1",
        status=RequestStatus.WAITING_FOR_CHAIN,
        chain_data=link,
        request_id="r1",
    )
    state.assigned_slots = [slot]
    state.requests = [request]
    state.schedule_run_count = 4

    new_version = repository.save_room_state(state)
    reloaded = repository.load_room_state("room-1")

    assert reloaded.version == new_version == state.version
    assert reloaded.schedule_run_count == 4
    assert reloaded.assigned_slots == [slot]
    assert reloaded.requests[0].chain_data == link
    assert reloaded.requests[0].status is RequestStatus.WAITING_FOR_CHAIN
    assert repository.get_request_status("r1") == "waiting_for_chain"


def test_stale_room_version_is_refused(tmp_path) -> None:
    repository = _build_repository(tmp_path)
    first = repository.load_room_state("room-1")
    second = repository.load_room_state("room-1")

    repository.save_room_state(first)

    with pytest.raises(ConcurrentModificationError):
        repository.save_room_state(second)


def test_stale_preferences_are_refused(tmp_path) -> None:
    repository = _build_repository(tmp_path)
    state = repository.load_room_state("room-1")
    repository.replace_preferred_blocks("m1", [PreferredBlock("11:00", "12:00", day_of_week=2)])

    state.members["m1"].preferred_blocks.append(PreferredBlock("13:00", "14:00", specific_date=MONDAY))
    state.dirty_users.add("m1")

    with pytest.raises(ConcurrentModificationError):
        repository.save_room_state(state)
    assert repository.get_preferred_blocks("m1") == [PreferredBlock("11:00", "12:00", day_of_week=2)]


def test_dirty_preferences_are_written_with_the_room(tmp_path) -> None:
    repository = _build_repository(tmp_path)
    state = repository.load_room_state("room-1")
    added = PreferredBlock("13:00", "14:00", specific_date=MONDAY)
    state.members["m1"].preferred_blocks.append(added)
    state.dirty_users.add("m1")

    repository.save_room_state(state)

    assert repository.get_preferred_blocks("m1")[-1] == added
    assert state.dirty_users == set()


def test_slot_range_replace_keeps_other_dates(tmp_path) -> None:
    repository = _build_repository(tmp_path)
    monday = AssignedSlot(user_id="m1", date=MONDAY, start_time="09:00", end_time="10:00")
    tuesday = AssignedSlot(user_id="m2", date=TUESDAY, start_time="09:00", end_time="10:00")
    repository.save_assigned_slots("room-1", [monday, tuesday], MONDAY, date(2026, 3, 9))

    repository.save_assigned_slots("room-1", [], TUESDAY, date(2026, 3, 4))

    assert repository.get_assigned_slots("room-1") == [monday]
    assert repository.count_assigned_slots("room-1") == 1


def test_retry_rereads_after_a_conflict(tmp_path) -> None:
    calls = []

    def attempt() -> str:
        calls.append(1)
        if len(calls) == 1:
            raise ConcurrentModificationError("lost race")
        return "saved"

    assert with_optimistic_retry(3, attempt) == "saved"
    assert len(calls) == 2


def test_retry_gives_up_after_max_attempts() -> None:
    calls = []

    def attempt() -> None:
        calls.append(1)
        raise ConcurrentModificationError("lost race")

    with pytest.raises(OptimisticRetryExhaustedError):
        with_optimistic_retry(3, attempt, operation="test_update")
    assert len(calls) == 3
    with pytest.raises(ValueError):
        with_optimistic_retry(0, attempt)


def test_activity_sink_failure_does_not_block_events(tmp_path, monkeypatch) -> None:
    repository = _build_repository(tmp_path)
    notifications = NotificationService(repository)
    received = []
    notifications.subscribe(received.append)
    state = repository.load_room_state("room-1")
    stage_activity(state, "owner", ActivityAction.SCHEDULE_UPDATE, "touched")
    stage_event(state, "slots_updated", {"reason": "test"})

    def broken_sink(record) -> None:
        raise RuntimeError("sink down")

    monkeypatch.setattr(repository, "log_activity", broken_sink)
    notifications.flush(state)

    assert [event.kind for event in received] == ["slots_updated"]
    assert state.pending_activities == []
    assert repository.count_activities("room-1") == 0


def test_activities_are_listed_newest_first(tmp_path) -> None:
    repository = _build_repository(tmp_path)
    notifications = NotificationService(repository)
    state = repository.load_room_state("room-1")
    stage_activity(state, "owner", ActivityAction.AUTO_ASSIGN, "first", {"run_number": 1})
    stage_activity(state, "m1", ActivityAction.SLOT_REQUEST, "second")
    notifications.flush(state)

    records = repository.list_activities("room-1", limit=10)

    assert [record.details for record in records] == ["second", "first"]
    assert records[1].metadata == {"run_number": 1}


def test_failing_subscriber_does_not_stop_others_and_nothing_is_replayed(tmp_path) -> None:
    repository = _build_repository(tmp_path)
    notifications = NotificationService(repository)
    received = []

    def broken_subscriber(event) -> None:
        raise RuntimeError("subscriber down")

    notifications.subscribe(broken_subscriber)
    notifications.subscribe(received.append)
    state = repository.load_room_state("room-1")
    for index in range(50):
        stage_event(state, "slots_updated", {"index": index})
    notifications.flush(state)

    late = []
    notifications.subscribe(late.append)
    notifications.flush(state)

    assert len(received) == 50
    assert late == []
    assert state.pending_events == []


def test_single_request_append_and_update(tmp_path) -> None:
    repository = _build_repository(tmp_path)
    request = Request(
        requester="m1",
        kind=RequestType.SLOT_RELEASE,
        time_slot=TimeSlotRef(MONDAY, "9:00", "10:00"),
        room_id="room-1",
        target_user="owner",
        request_id="r-single",
    )

    repository.append_request(request)
    stored = repository.load_room_state("room-1").requests

    assert [item.request_id for item in stored] == ["r-single"]
    assert stored[0].time_slot.start_time == "09:00"

    request.status = RequestStatus.APPROVED
    assert repository.update_request(request) is True
    assert repository.get_request_status("r-single") == "approved"

    stray = Request(
        requester="m1",
        kind=RequestType.SLOT_RELEASE,
        time_slot=TimeSlotRef(MONDAY, "09:00", "10:00"),
        room_id="room-1",
        request_id="r-never-appended",
    )
    assert repository.update_request(stray) is False
    assert repository.get_request_status("r-never-appended") is None
