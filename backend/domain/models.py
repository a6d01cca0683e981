"""Domain models for room coordination: preferences, slots and requests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from backend.utils.time_utils import Interval, day_name, interval_from_labels, normalize_time


def new_id() -> str:
    return uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_labels(record: Any) -> None:
    object.__setattr__(record, "start_time", normalize_time(record.start_time))
    object.__setattr__(record, "end_time", normalize_time(record.end_time))


class SlotStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    CONFLICT = "conflict"


class RequestType(str, Enum):
    TIME_REQUEST = "time_request"
    TIME_CHANGE = "time_change"
    SLOT_SWAP = "slot_swap"
    SLOT_RELEASE = "slot_release"
    CHAIN_REQUEST = "chain_request"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    WAITING_FOR_CHAIN = "waiting_for_chain"
    NEEDS_CHAIN_CONFIRMATION = "needs_chain_confirmation"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {RequestStatus.APPROVED, RequestStatus.REJECTED, RequestStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset(
    {
        RequestStatus.PENDING,
        RequestStatus.WAITING_FOR_CHAIN,
        RequestStatus.NEEDS_CHAIN_CONFIRMATION,
    }
)


class ActivityAction(str, Enum):
    AUTO_ASSIGN = "auto_assign"
    SLOT_REQUEST = "slot_request"
    SLOT_YIELD = "slot_yield"
    SLOT_SWAP = "slot_swap"
    SCHEDULE_UPDATE = "schedule_update"
    CHANGE_REQUEST = "change_request"
    CHANGE_APPROVE = "change_approve"
    CHANGE_REJECT = "change_reject"


@dataclass(frozen=True)
class PreferredBlock:
    start_time: str
    end_time: str
    day_of_week: Optional[int] = None
    specific_date: Optional[date] = None
    priority: int = 2

    def __post_init__(self) -> None:
        _normalize_labels(self)


@dataclass(frozen=True)
class CarryOverRecord:
    run_number: int
    week_start: date
    needed_hours: float
    recorded_at: datetime = field(default_factory=utc_now)


@dataclass
class Member:
    user_id: str
    preferred_blocks: list[PreferredBlock] = field(default_factory=list)
    priority: int = 2
    carry_over_hours: float = 0.0
    carry_over_history: list[CarryOverRecord] = field(default_factory=list)
    location: Optional[str] = None
    display_name: str = ""
    joined_at: datetime = field(default_factory=utc_now)
    version: int = 0


@dataclass(frozen=True)
class AssignedSlot:
    user_id: str
    date: date
    start_time: str
    end_time: str
    subject: str = "Auto-assigned"
    status: SlotStatus = SlotStatus.CONFIRMED
    slot_id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        _normalize_labels(self)

    @property
    def day(self) -> str:
        return day_name(self.date)

    @property
    def interval(self) -> Interval:
        return interval_from_labels(self.start_time, self.end_time)

    def to_payload(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "user_id": self.user_id,
            "date": self.date.isoformat(),
            "day": self.day,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "subject": self.subject,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class TimeSlotRef:
    """A (date, start, end) range a request refers to."""

    date: date
    start_time: str
    end_time: str

    def __post_init__(self) -> None:
        _normalize_labels(self)

    @property
    def interval(self) -> Interval:
        return interval_from_labels(self.start_time, self.end_time)

    def to_payload(self) -> dict[str, str]:
        return {
            "date": self.date.isoformat(),
            "day": day_name(self.date),
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


@dataclass(frozen=True)
class ChainLink:
    """Provenance of a multi-hop negotiation.

    ``intermediate_user`` is the member displaced by the original request;
    ``chain_user`` holds ``intermediate_slot`` and would move to ``fresh_slot``.
    """

    original_requester: str
    original_request_id: str
    intermediate_user: str
    intermediate_slot: TimeSlotRef
    chain_user: str
    fresh_slot: TimeSlotRef
    candidate_users: tuple[str, ...] = ()
    rejected_users: tuple[str, ...] = ()
    hop: int = 1

    def to_payload(self) -> dict[str, Any]:
        return {
            "original_requester": self.original_requester,
            "original_request_id": self.original_request_id,
            "intermediate_user": self.intermediate_user,
            "intermediate_slot": self.intermediate_slot.to_payload(),
            "chain_user": self.chain_user,
            "fresh_slot": self.fresh_slot.to_payload(),
            "candidate_users": list(self.candidate_users),
            "rejected_users": list(self.rejected_users),
            "hop": self.hop,
        }


@dataclass
class Request:
    requester: str
    kind: RequestType
    time_slot: TimeSlotRef
    room_id: str
    target_user: Optional[str] = None
    requester_slot_ids: list[str] = field(default_factory=list)
    status: RequestStatus = RequestStatus.PENDING
    message: str = ""
    response_message: str = ""
    chain_data: Optional[ChainLink] = None
    parent_request_id: Optional[str] = None
    request_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    responded_at: Optional[datetime] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "room_id": self.room_id,
            "requester": self.requester,
            "target_user": self.target_user,
            "type": self.kind.value,
            "time_slot": self.time_slot.to_payload(),
            "requester_slot_ids": list(self.requester_slot_ids),
            "status": self.status.value,
            "message": self.message,
            "response_message": self.response_message,
            "chain_data": self.chain_data.to_payload() if self.chain_data else None,
            "parent_request_id": self.parent_request_id,
            "created_at": self.created_at.isoformat(),
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
        }


@dataclass(frozen=True)
class CandidateAvailability:
    member_id: str
    priority: int
    is_owner: bool = False


@dataclass
class CandidateCell:
    date: date
    start_minute: int
    day_of_week: int
    assigned_to: Optional[str] = None
    available_members: list[CandidateAvailability] = field(default_factory=list)
    owner_available: bool = False

    def member_entries(self) -> list[CandidateAvailability]:
        return [entry for entry in self.available_members if not entry.is_owner]

    def entry_for(self, member_id: str) -> Optional[CandidateAvailability]:
        for entry in self.available_members:
            if entry.member_id == member_id and not entry.is_owner:
                return entry
        return None


@dataclass(frozen=True)
class RoomEvent:
    room_id: str
    kind: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class ActivityRecord:
    room_id: str
    actor_id: str
    action: ActivityAction
    details: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class RoomState:
    """Read-modify-write aggregate for one room.

    ``version`` is the optimistic-concurrency token read with the state;
    ``pending_activities`` and ``pending_events`` are flushed after commit.
    """

    room_id: str
    owner: Member
    members: dict[str, Member]
    assigned_slots: list[AssignedSlot] = field(default_factory=list)
    requests: list[Request] = field(default_factory=list)
    name: str = ""
    min_minutes_per_week: int = 180
    schedule_run_count: int = 0
    version: int = 0
    pending_activities: list[ActivityRecord] = field(default_factory=list)
    pending_events: list[RoomEvent] = field(default_factory=list)
    dirty_users: set[str] = field(default_factory=set)

    @property
    def owner_id(self) -> str:
        return self.owner.user_id

    def member(self, user_id: str) -> Optional[Member]:
        if user_id == self.owner.user_id:
            return self.owner
        return self.members.get(user_id)

    def slots_for(self, user_id: str) -> list[AssignedSlot]:
        return [slot for slot in self.assigned_slots if slot.user_id == user_id]

    def find_slot(self, slot_id: str) -> Optional[AssignedSlot]:
        for slot in self.assigned_slots:
            if slot.slot_id == slot_id:
                return slot
        return None

    def find_request(self, request_id: str) -> Optional[Request]:
        for request in self.requests:
            if request.request_id == request_id:
                return request
        return None
