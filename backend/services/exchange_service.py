"""Slot exchange and negotiation between room members.

Requests move through a small state machine::

    pending -> approved | rejected | cancelled | waiting_for_chain
            | needs_chain_confirmation
    needs_chain_confirmation -> waiting_for_chain (requester confirms)
    waiting_for_chain -> approved | rejected | cancelled

A time request first tries to relocate the member it displaces. When that
member has nowhere else to go, a third member holding a slot the displaced
member could take is asked to move to a fresh interval of their own; that
ask is a ``chain_request`` hop linked to the original request. Declining
the hop rejects the original.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Callable, Iterable, Optional

from backend.domain.constraints import NegotiationConfig, validate_negotiation_config
from backend.domain.models import (
    ACTIVE_STATUSES,
    ActivityAction,
    AssignedSlot,
    ChainLink,
    Member,
    PreferredBlock,
    Request,
    RequestStatus,
    RequestType,
    RoomState,
    TimeSlotRef,
    new_id,
    utc_now,
)
from backend.repository.data_repository import DataRepository
from backend.repository.optimistic import with_optimistic_retry
from backend.services.notification_service import (
    NotificationService,
    stage_activity,
    stage_event,
)
from backend.services.scheduling_service import RoomNotFoundError
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger
from backend.utils.time_utils import (
    Interval,
    TimeFormatError,
    format_time,
    is_weekday,
    is_within_windows,
    iter_weekdays,
    merge_preferred_windows,
    week_start,
)


logger = get_logger(__name__)

NO_ALTERNATIVE_MESSAGE = "No alternative found"
CHAIN_REJECTED_MESSAGE = "Chain request was declined"


class ExchangeValidationError(Exception):
    """Raised when a request cannot be filed as described."""


class RequestNotFoundError(Exception):
    """Raised when a request id does not exist in the room."""


class RequestPermissionError(Exception):
    """Raised when the actor may not perform the transition."""


class RequestStateError(Exception):
    """Raised when a request is not in a state that allows the transition."""


# --- placement helpers ---------------------------------------------------------


def slot_ref(slot: AssignedSlot) -> TimeSlotRef:
    return TimeSlotRef(date=slot.date, start_time=slot.start_time, end_time=slot.end_time)


def ref_from_interval(on_date: date, interval: Interval) -> TimeSlotRef:
    start_time, end_time = interval.to_labels()
    return TimeSlotRef(date=on_date, start_time=start_time, end_time=end_time)


def carve(slot: AssignedSlot, interval: Interval) -> list[AssignedSlot]:
    """Pieces of ``slot`` left over once ``interval`` is cut out of it."""
    pieces = []
    own = slot.interval
    if own.start < interval.start:
        pieces.append(
            replace(slot, end_time=format_time(min(own.end, interval.start)), slot_id=new_id())
        )
    if interval.end < own.end:
        pieces.append(
            replace(slot, start_time=format_time(max(own.start, interval.end)), slot_id=new_id())
        )
    return pieces


def occupied_intervals(
    slots: Iterable[AssignedSlot],
    on_date: date,
    ignore_ids: Iterable[str] = (),
) -> list[Interval]:
    ignored = set(ignore_ids)
    return [
        slot.interval
        for slot in slots
        if slot.date == on_date and slot.slot_id not in ignored
    ]


def is_free(
    slots: Iterable[AssignedSlot],
    on_date: date,
    interval: Interval,
    ignore_ids: Iterable[str] = (),
    padding: int = 0,
) -> bool:
    padded = interval.padded(padding) if padding else interval
    return not any(padded.overlaps(busy) for busy in occupied_intervals(slots, on_date, ignore_ids))


def fits_windows(
    owner: Member,
    member: Member,
    on_date: date,
    interval: Interval,
    vicinity_days: Optional[int] = None,
) -> bool:
    """Inside both the owner's and the member's merged windows for a date."""
    if not is_weekday(on_date):
        return False
    if not is_within_windows(interval, merge_preferred_windows(owner.preferred_blocks, on_date)):
        return False
    if member.user_id == owner.user_id:
        return True
    return is_within_windows(
        interval,
        merge_preferred_windows(member.preferred_blocks, on_date, vicinity_days=vicinity_days),
    )


def candidate_dates(anchor: date) -> list[date]:
    """Weekdays of the anchor's week, nearest day first, earlier day on ties."""
    monday = week_start(anchor)
    days = list(iter_weekdays(monday, monday + timedelta(days=7)))
    return sorted(days, key=lambda day: (abs((day - anchor).days), day))


def find_free_interval(
    owner: Member,
    member: Member,
    duration: int,
    anchor_date: date,
    anchor_start: int,
    slots: list[AssignedSlot],
    *,
    slot_minutes: int,
    dates: Optional[list[date]] = None,
    ignore_ids: Iterable[str] = (),
    padding: int = 0,
    vicinity_days: Optional[int] = None,
) -> Optional[TimeSlotRef]:
    """Nearest interval of ``duration`` minutes the member could hold.

    Dates are tried nearest first; within a date, starts nearest to
    ``anchor_start`` first, an earlier start winning a tie.
    """
    ignored = set(ignore_ids)
    for on_date in dates if dates is not None else candidate_dates(anchor_date):
        if not is_weekday(on_date):
            continue
        owner_windows = merge_preferred_windows(owner.preferred_blocks, on_date)
        member_windows = (
            owner_windows
            if member.user_id == owner.user_id
            else merge_preferred_windows(
                member.preferred_blocks, on_date, vicinity_days=vicinity_days
            )
        )
        starts: set[int] = set()
        for window in member_windows:
            first = window.start + (-window.start % slot_minutes)
            starts.update(range(first, window.end - duration + 1, slot_minutes))
            if window.end - window.start >= duration:
                starts.add(window.start)
        for start in sorted(starts, key=lambda value: (abs(value - anchor_start), value)):
            candidate = Interval(start, start + duration)
            if not is_within_windows(candidate, member_windows):
                continue
            if not is_within_windows(candidate, owner_windows):
                continue
            if not is_free(slots, on_date, candidate, ignored, padding):
                continue
            return ref_from_interval(on_date, candidate)
    return None


@dataclass(frozen=True)
class GainPlan:
    """Slot list after the requester takes the requested range."""

    working: list[AssignedSlot]
    gained: AssignedSlot
    displaced_minutes: int


class ExchangeService:
    """Request lifecycle for slot exchange, relocation and chain negotiation."""

    def __init__(
        self,
        repository: DataRepository,
        notifications: Optional[NotificationService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or get_settings()
        self._notifications = notifications or NotificationService(repository)
        self._config = NegotiationConfig(
            max_chain_hops=self._settings.max_chain_hops,
            chain_requires_confirmation=self._settings.chain_requires_confirmation,
            optimistic_retry_attempts=self._settings.optimistic_retry_attempts,
        )
        validate_negotiation_config(self._config)
        self._approval_handlers: dict[RequestType, Callable[[RoomState, Request], None]] = {
            RequestType.TIME_REQUEST: self._approve_time_request,
            RequestType.TIME_CHANGE: self._approve_time_request,
            RequestType.SLOT_SWAP: self._approve_slot_swap,
            RequestType.SLOT_RELEASE: self._approve_slot_release,
            RequestType.CHAIN_REQUEST: self._approve_chain_request,
        }

    @property
    def config(self) -> NegotiationConfig:
        return self._config

    # --- create -------------------------------------------------------------------

    def create_request(
        self,
        state: RoomState,
        requester: str,
        kind: RequestType | str,
        time_slot: TimeSlotRef,
        target_user: Optional[str] = None,
        requester_slot_ids: Optional[list[str]] = None,
        message: str = "",
    ) -> Request:
        try:
            kind = RequestType(kind)
            interval = time_slot.interval
        except (ValueError, TimeFormatError) as exc:
            raise ExchangeValidationError(str(exc)) from exc

        if kind is RequestType.CHAIN_REQUEST:
            raise ExchangeValidationError("chain requests are created by the negotiation itself")
        if requester == state.owner_id:
            raise ExchangeValidationError("The room owner cannot file exchange requests")
        if requester not in state.members:
            raise RequestPermissionError(f"User {requester} is not a member of room {state.room_id}")
        if not is_weekday(time_slot.date):
            raise ExchangeValidationError("Requested date must be a weekday")
        if target_user is not None:
            if target_user == requester:
                raise ExchangeValidationError("A request cannot target its own requester")
            if state.member(target_user) is None:
                raise ExchangeValidationError(f"Unknown target user {target_user}")

        slot_ids = list(requester_slot_ids or [])
        for slot_id in slot_ids:
            slot = state.find_slot(slot_id)
            if slot is None or slot.user_id != requester:
                raise ExchangeValidationError(f"Slot {slot_id} is not held by {requester}")

        overlapping = [
            slot
            for slot in state.assigned_slots
            if slot.date == time_slot.date and slot.interval.overlaps(interval)
        ]

        if kind in (RequestType.TIME_REQUEST, RequestType.TIME_CHANGE):
            if kind is RequestType.TIME_CHANGE and not slot_ids:
                raise ExchangeValidationError("time_change requires the requester's slots to vacate")
            if not is_within_windows(
                interval, merge_preferred_windows(state.owner.preferred_blocks, time_slot.date)
            ):
                raise ExchangeValidationError("Requested time is outside the owner's availability")
            holders = {slot.user_id for slot in overlapping if slot.slot_id not in slot_ids}
            if requester in holders:
                raise ExchangeValidationError("Requester already holds part of the requested time")
            if target_user is None and len(holders) == 1:
                target_user = next(iter(holders))
            elif len(holders) > 1 or (holders and target_user not in holders):
                raise ExchangeValidationError("Requested time is held by a different member")
        elif kind is RequestType.SLOT_SWAP:
            if target_user is None or not slot_ids:
                raise ExchangeValidationError("slot_swap needs a target user and the requester's slots")
            if not any(slot.user_id == target_user for slot in overlapping):
                raise ExchangeValidationError(f"{target_user} holds no slot in the requested range")
        elif kind is RequestType.SLOT_RELEASE:
            if not any(slot.user_id == requester for slot in overlapping):
                raise ExchangeValidationError("Requester holds no slot in the range to release")
            target_user = state.owner_id

        for existing in state.requests:
            if (
                existing.status in ACTIVE_STATUSES
                and existing.requester == requester
                and existing.kind is kind
                and existing.time_slot == time_slot
                and existing.target_user == target_user
            ):
                raise ExchangeValidationError(
                    f"A matching request is already active ({existing.request_id})"
                )

        request = Request(
            requester=requester,
            kind=kind,
            time_slot=time_slot,
            room_id=state.room_id,
            target_user=target_user,
            requester_slot_ids=slot_ids,
            message=message,
        )
        state.requests.append(request)
        stage_activity(
            state,
            requester,
            _activity_for_kind(kind),
            f"{kind.value} filed for {time_slot.date.isoformat()} "
            f"{time_slot.start_time}-{time_slot.end_time}",
            {"request_id": request.request_id, "target_user": target_user},
        )
        stage_event(state, "request_created", request.to_payload())
        logger.info(
            "Request created | room_id=%s | request_id=%s | type=%s | requester=%s | target=%s",
            state.room_id,
            request.request_id,
            kind.value,
            requester,
            target_user,
        )
        return request

    # --- respond ------------------------------------------------------------------

    def respond(
        self,
        state: RoomState,
        request_id: str,
        actor: str,
        action: RequestStatus | str,
        message: str = "",
    ) -> Request:
        request = self._get_request(state, request_id)
        try:
            decision = RequestStatus(action)
        except ValueError as exc:
            raise ExchangeValidationError(f"Unsupported action '{action}'") from exc
        if decision not in (RequestStatus.APPROVED, RequestStatus.REJECTED):
            raise ExchangeValidationError("action must be 'approved' or 'rejected'")
        if request.status is not RequestStatus.PENDING:
            raise RequestStateError(
                f"Request {request_id} is {request.status.value}, only pending requests can be answered"
            )
        approvers = {state.owner_id}
        if request.target_user is not None:
            approvers.add(request.target_user)
        if actor not in approvers:
            raise RequestPermissionError(f"{actor} may not answer request {request_id}")

        request.response_message = message
        if decision is RequestStatus.REJECTED:
            if request.kind is RequestType.CHAIN_REQUEST:
                self._on_chain_rejected(state, request, actor)
            else:
                self._finish(state, request, RequestStatus.REJECTED, actor, message)
            return request

        self._approval_handlers[request.kind](state, request)
        return request

    def confirm_chain(self, state: RoomState, request_id: str, actor: str) -> Request:
        request = self._get_request(state, request_id)
        if actor != request.requester:
            raise RequestPermissionError("Only the original requester can confirm a chain")
        if request.status is not RequestStatus.NEEDS_CHAIN_CONFIRMATION:
            raise RequestStateError(f"Request {request_id} is not awaiting chain confirmation")
        link = request.chain_data
        plan = self._plan_gain(state, request) if link is not None else None
        if link is None or plan is None:
            self._finish(state, request, RequestStatus.REJECTED, actor, NO_ALTERNATIVE_MESSAGE)
            return request
        self._open_chain_hop(state, request, plan, list(link.candidate_users))
        return request

    def cancel(self, state: RoomState, request_id: str, actor: str) -> Request:
        request = self._get_request(state, request_id)
        if request.kind is RequestType.CHAIN_REQUEST:
            raise ExchangeValidationError("Cancel the original request instead of a chain hop")
        if actor != request.requester:
            raise RequestPermissionError("Only the requester can cancel a request")
        if request.status not in ACTIVE_STATUSES:
            raise RequestStateError(f"Request {request_id} is already {request.status.value}")
        for sub_request in self._sub_requests(state, request):
            self._finish(
                state,
                sub_request,
                RequestStatus.REJECTED,
                actor,
                "Original request was cancelled",
            )
        self._finish(state, request, RequestStatus.CANCELLED, actor, "Cancelled by requester")
        return request

    # --- approval handlers -----------------------------------------------------------

    def _approve_slot_release(self, state: RoomState, request: Request) -> None:
        interval = request.time_slot.interval
        remaining: list[AssignedSlot] = []
        released = 0
        for slot in state.assigned_slots:
            if (
                slot.user_id == request.requester
                and slot.date == request.time_slot.date
                and slot.interval.overlaps(interval)
            ):
                released += 1
                remaining.extend(carve(slot, interval))
            else:
                remaining.append(slot)
        if not released:
            self._finish(
                state, request, RequestStatus.REJECTED, state.owner_id, "No slots left to release"
            )
            return
        state.assigned_slots = _sorted_slots(remaining)
        self._slots_changed(state, request.requester, "slot_release", [])
        self._finish(state, request, RequestStatus.APPROVED, request.target_user or state.owner_id)

    def _approve_slot_swap(self, state: RoomState, request: Request) -> None:
        given = [state.find_slot(slot_id) for slot_id in request.requester_slot_ids]
        if any(slot is None or slot.user_id != request.requester for slot in given):
            self._finish(
                state,
                request,
                RequestStatus.REJECTED,
                request.target_user or state.owner_id,
                "Requester no longer holds the offered slots",
            )
            return
        interval = request.time_slot.interval
        taken = [
            slot
            for slot in state.assigned_slots
            if slot.user_id == request.target_user
            and slot.date == request.time_slot.date
            and slot.interval.overlaps(interval)
        ]
        if not taken:
            self._finish(
                state,
                request,
                RequestStatus.REJECTED,
                request.target_user or state.owner_id,
                "Target no longer holds the requested slot",
            )
            return
        swapped_ids = {slot.slot_id for slot in given + taken if slot is not None}
        swapped = [
            replace(slot, user_id=request.target_user, slot_id=new_id())
            for slot in given
            if slot is not None
        ] + [replace(slot, user_id=request.requester, slot_id=new_id()) for slot in taken]
        state.assigned_slots = _sorted_slots(
            [slot for slot in state.assigned_slots if slot.slot_id not in swapped_ids] + swapped
        )
        for slot in swapped:
            self.ensure_preference(state, slot)
        self._slots_changed(state, request.requester, "slot_swap", swapped)
        self._finish(state, request, RequestStatus.APPROVED, request.target_user or state.owner_id)

    def _approve_time_request(self, state: RoomState, request: Request) -> None:
        approver = request.target_user or state.owner_id
        plan = self._plan_gain(state, request)
        if plan is None:
            self._finish(
                state,
                request,
                RequestStatus.REJECTED,
                approver,
                "Requested time is no longer available",
            )
            return

        if plan.displaced_minutes == 0 or request.target_user is None:
            self._commit_slots(state, plan.working, [plan.gained], request.requester)
            self._finish(state, request, RequestStatus.APPROVED, approver)
            return

        target = state.member(request.target_user)
        relocation = find_free_interval(
            state.owner,
            target,
            plan.displaced_minutes,
            request.time_slot.date,
            request.time_slot.interval.start,
            plan.working,
            slot_minutes=self._settings.slot_minutes,
        )
        if relocation is not None:
            moved = AssignedSlot(
                user_id=target.user_id,
                date=relocation.date,
                start_time=relocation.start_time,
                end_time=relocation.end_time,
                subject=plan.gained.subject,
            )
            self._commit_slots(state, plan.working + [moved], [plan.gained, moved], request.requester)
            logger.info(
                "Request resolved by relocation | request_id=%s | target=%s | moved_to=%s %s-%s",
                request.request_id,
                target.user_id,
                relocation.date.isoformat(),
                relocation.start_time,
                relocation.end_time,
            )
            self._finish(state, request, RequestStatus.APPROVED, approver)
            return

        candidates = self.find_chain_candidates(state, request, plan)[: self._config.max_chain_hops]
        if not candidates:
            self._finish(state, request, RequestStatus.REJECTED, approver, NO_ALTERNATIVE_MESSAGE)
            return

        candidate_users = [link.chain_user for link in candidates]
        if self._config.chain_requires_confirmation:
            request.chain_data = replace(candidates[0], candidate_users=tuple(candidate_users))
            self._transition(state, request, RequestStatus.NEEDS_CHAIN_CONFIRMATION, approver)
            return
        self._open_chain_hop(state, request, plan, candidate_users, actor=approver)

    def _approve_chain_request(self, state: RoomState, chain_request: Request) -> None:
        link = chain_request.chain_data
        original = state.find_request(chain_request.parent_request_id or "")
        approver = chain_request.target_user or state.owner_id
        if link is None or original is None or original.status is not RequestStatus.WAITING_FOR_CHAIN:
            self._finish(
                state, chain_request, RequestStatus.REJECTED, approver, "Chain is no longer active"
            )
            return

        resolution = self._resolve_chain(state, original, link)
        if resolution is None:
            reason = "Chain is no longer feasible"
            self._finish(state, chain_request, RequestStatus.REJECTED, approver, reason)
            self._finish(state, original, RequestStatus.REJECTED, approver, reason)
            return

        working, moved = resolution
        self._commit_slots(state, working, moved, original.requester)
        self._finish(state, chain_request, RequestStatus.APPROVED, approver)
        self._finish(state, original, RequestStatus.APPROVED, approver)
        logger.info(
            "Chain resolved | original_request_id=%s | hop=%s | chain_user=%s",
            original.request_id,
            link.hop,
            link.chain_user,
        )

    # --- chain machinery ---------------------------------------------------------------

    def find_chain_candidates(
        self,
        state: RoomState,
        request: Request,
        plan: GainPlan,
        only: Optional[Iterable[str]] = None,
    ) -> list[ChainLink]:
        """Members able to hand the displaced member a slot and move themselves.

        Each candidate yields one link: their nearest slot of the displaced
        duration that the displaced member could hold, paired with a fresh
        interval for the candidate.
        """
        target = state.member(request.target_user or "")
        if target is None:
            return []
        excluded = {request.requester, target.user_id, state.owner_id}
        allowed = set(only) if only is not None else None
        anchor = request.time_slot
        links: list[tuple[tuple[int, int, str], ChainLink]] = []

        for member_id in sorted(state.members):
            if member_id in excluded or (allowed is not None and member_id not in allowed):
                continue
            candidate = state.members[member_id]
            held = sorted(
                (
                    slot
                    for slot in plan.working
                    if slot.user_id == member_id
                    and slot.interval.duration == plan.displaced_minutes
                ),
                key=lambda slot: (
                    abs((slot.date - anchor.date).days),
                    abs(slot.interval.start - anchor.interval.start),
                    slot.date,
                    slot.start_time,
                ),
            )
            for slot in held:
                if not fits_windows(state.owner, target, slot.date, slot.interval):
                    continue
                if not is_free(plan.working, slot.date, slot.interval, ignore_ids={slot.slot_id}):
                    continue
                after_handover = [item for item in plan.working if item.slot_id != slot.slot_id]
                after_handover.append(replace(slot, user_id=target.user_id))
                fresh = find_free_interval(
                    state.owner,
                    candidate,
                    slot.interval.duration,
                    slot.date,
                    slot.interval.start,
                    after_handover,
                    slot_minutes=self._settings.slot_minutes,
                )
                if fresh is None:
                    continue
                links.append(
                    (
                        (
                            abs((slot.date - anchor.date).days),
                            abs(slot.interval.start - anchor.interval.start),
                            member_id,
                        ),
                        ChainLink(
                            original_requester=request.requester,
                            original_request_id=request.request_id,
                            intermediate_user=target.user_id,
                            intermediate_slot=slot_ref(slot),
                            chain_user=member_id,
                            fresh_slot=fresh,
                        ),
                    )
                )
                break

        return [link for _, link in sorted(links, key=lambda item: item[0])]

    def _open_chain_hop(
        self,
        state: RoomState,
        original: Request,
        plan: GainPlan,
        candidate_users: list[str],
        actor: Optional[str] = None,
    ) -> Optional[Request]:
        """File a chain request to the first recorded candidate still able to move.

        The original is rejected when none of them is.
        """
        actor = actor or original.requester
        links = self.find_chain_candidates(state, original, plan, only=candidate_users)
        by_user = {link.chain_user: link for link in links}
        hop, link = next(
            (
                (position, by_user[user])
                for position, user in enumerate(candidate_users, start=1)
                if user in by_user
            ),
            (0, None),
        )
        if link is None:
            self._finish(state, original, RequestStatus.REJECTED, actor, NO_ALTERNATIVE_MESSAGE)
            return None

        link = replace(link, candidate_users=tuple(candidate_users), hop=hop)
        chain_request = Request(
            requester=original.requester,
            kind=RequestType.CHAIN_REQUEST,
            time_slot=link.intermediate_slot,
            room_id=state.room_id,
            target_user=link.chain_user,
            message=(
                f"{link.intermediate_user} needs your slot so {original.requester} can take "
                f"{original.time_slot.start_time}-{original.time_slot.end_time}; you would move to "
                f"{link.fresh_slot.date.isoformat()} {link.fresh_slot.start_time}-{link.fresh_slot.end_time}"
            ),
            chain_data=link,
            parent_request_id=original.request_id,
        )
        state.requests.append(chain_request)
        original.chain_data = link
        self._transition(state, original, RequestStatus.WAITING_FOR_CHAIN, actor)
        stage_event(state, "request_created", chain_request.to_payload())
        logger.info(
            "Chain hop opened | original_request_id=%s | hop=%s | chain_user=%s",
            original.request_id,
            hop,
            link.chain_user,
        )
        return chain_request

    def _on_chain_rejected(self, state: RoomState, chain_request: Request, actor: str) -> None:
        """A declined hop ends the whole negotiation; no slot moves."""
        link = chain_request.chain_data
        self._finish(
            state,
            chain_request,
            RequestStatus.REJECTED,
            actor,
            chain_request.response_message or "Declined",
        )
        original = state.find_request(chain_request.parent_request_id or "")
        if original is None or original.status.is_terminal:
            return
        declined_by = link.chain_user if link is not None else actor
        if link is not None:
            original.chain_data = replace(
                link, rejected_users=link.rejected_users + (link.chain_user,)
            )
        for sibling in self._sub_requests(state, original):
            self._finish(state, sibling, RequestStatus.REJECTED, actor, "Chain was declined")
        self._finish(
            state,
            original,
            RequestStatus.REJECTED,
            actor,
            f"{CHAIN_REJECTED_MESSAGE}: {declined_by} declined",
        )

    def _resolve_chain(
        self,
        state: RoomState,
        original: Request,
        link: ChainLink,
    ) -> Optional[tuple[list[AssignedSlot], list[AssignedSlot]]]:
        """Apply the three moves of a chain to a copy of the slot list.

        Returns the new slot list and the slots created, or ``None`` when any
        move is no longer possible.
        """
        plan = self._plan_gain(state, original)
        target = state.member(link.intermediate_user)
        chain_user = state.member(link.chain_user)
        if plan is None or target is None or chain_user is None:
            return None

        handed = next(
            (
                slot
                for slot in plan.working
                if slot.user_id == chain_user.user_id and slot_ref(slot) == link.intermediate_slot
            ),
            None,
        )
        if handed is None or handed.interval.duration != plan.displaced_minutes:
            return None
        if not fits_windows(state.owner, target, handed.date, handed.interval):
            return None

        working = [slot for slot in plan.working if slot.slot_id != handed.slot_id]
        target_slot = replace(handed, user_id=target.user_id, slot_id=new_id())
        working.append(target_slot)

        fresh = link.fresh_slot
        if not (
            fits_windows(state.owner, chain_user, fresh.date, fresh.interval)
            and is_free(working, fresh.date, fresh.interval)
        ):
            return None
        chain_slot = AssignedSlot(
            user_id=chain_user.user_id,
            date=fresh.date,
            start_time=fresh.start_time,
            end_time=fresh.end_time,
            subject=handed.subject,
        )
        working.append(chain_slot)
        return working, [plan.gained, target_slot, chain_slot]

    # --- shared -----------------------------------------------------------------------

    def _plan_gain(self, state: RoomState, request: Request) -> Optional[GainPlan]:
        """Slot list with the requested range handed to the requester.

        ``None`` when the range is held by anyone besides the target, or lies
        outside the owner's availability.
        """
        time_slot = request.time_slot
        interval = time_slot.interval
        if not is_within_windows(
            interval, merge_preferred_windows(state.owner.preferred_blocks, time_slot.date)
        ):
            return None

        vacated = (
            set(request.requester_slot_ids)
            if request.kind is RequestType.TIME_CHANGE
            else set()
        )
        held_ids = {slot.slot_id for slot in state.slots_for(request.requester)}
        if not vacated.issubset(held_ids):
            return None

        working: list[AssignedSlot] = []
        displaced = 0
        subject = self._settings.auto_assignment_subject
        for slot in state.assigned_slots:
            if slot.slot_id in vacated:
                subject = slot.subject
                continue
            if slot.date != time_slot.date or not slot.interval.overlaps(interval):
                working.append(slot)
                continue
            if slot.user_id != request.target_user:
                return None
            overlap = min(slot.interval.end, interval.end) - max(slot.interval.start, interval.start)
            displaced += overlap
            subject = slot.subject
            working.extend(carve(slot, interval))

        gained = AssignedSlot(
            user_id=request.requester,
            date=time_slot.date,
            start_time=time_slot.start_time,
            end_time=time_slot.end_time,
            subject=subject,
        )
        working.append(gained)
        return GainPlan(working=working, gained=gained, displaced_minutes=displaced)

    def _commit_slots(
        self,
        state: RoomState,
        working: list[AssignedSlot],
        created: list[AssignedSlot],
        actor: str,
    ) -> None:
        state.assigned_slots = _sorted_slots(working)
        for slot in created:
            self.ensure_preference(state, slot)
        self._slots_changed(state, actor, "exchange", created)

    def ensure_preference(self, state: RoomState, slot: AssignedSlot) -> None:
        """Keep a member's blocks covering a slot they were just given."""
        member = state.members.get(slot.user_id)
        if member is None:
            return
        if is_within_windows(
            slot.interval, merge_preferred_windows(member.preferred_blocks, slot.date)
        ):
            return
        member.preferred_blocks = member.preferred_blocks + [
            PreferredBlock(
                start_time=slot.start_time,
                end_time=slot.end_time,
                specific_date=slot.date,
                priority=self._settings.default_block_priority,
            )
        ]
        state.dirty_users.add(member.user_id)

    def _slots_changed(
        self,
        state: RoomState,
        actor: str,
        reason: str,
        created: list[AssignedSlot],
    ) -> None:
        stage_event(
            state,
            "slots_updated",
            {
                "reason": reason,
                "actor_id": actor,
                "created": [slot.to_payload() for slot in created],
            },
        )

    def _transition(
        self,
        state: RoomState,
        request: Request,
        status: RequestStatus,
        actor: str,
    ) -> None:
        previous = request.status
        request.status = status
        stage_event(state, "request_updated", request.to_payload())
        logger.info(
            "Request transition | request_id=%s | %s -> %s | actor=%s",
            request.request_id,
            previous.value,
            status.value,
            actor,
        )

    def _finish(
        self,
        state: RoomState,
        request: Request,
        status: RequestStatus,
        actor: str,
        message: str = "",
    ) -> None:
        if request.status.is_terminal:
            return
        if message:
            request.response_message = message
        request.responded_at = utc_now()
        self._transition(state, request, status, actor)
        if status is RequestStatus.APPROVED:
            action = ActivityAction.CHANGE_APPROVE
        elif status is RequestStatus.REJECTED:
            action = ActivityAction.CHANGE_REJECT
        else:
            action = ActivityAction.SCHEDULE_UPDATE
        stage_activity(
            state,
            actor,
            action,
            f"{request.kind.value} {status.value}",
            {"request_id": request.request_id, "message": request.response_message},
        )

    def _sub_requests(self, state: RoomState, request: Request) -> list[Request]:
        return [
            item
            for item in state.requests
            if item.parent_request_id == request.request_id and item.status in ACTIVE_STATUSES
        ]

    def _get_request(self, state: RoomState, request_id: str) -> Request:
        request = state.find_request(request_id)
        if request is None:
            raise RequestNotFoundError(f"Request {request_id} not found in room {state.room_id}")
        return request

    # --- persisted entry points -----------------------------------------------------

    def _mutate(self, room_id: str, operation: str, fn: Callable[[RoomState], Request]) -> Request:
        def attempt() -> tuple[RoomState, Request]:
            state = self._repository.load_room_state(room_id)
            if state is None:
                raise RoomNotFoundError(f"Room {room_id} not found")
            result = fn(state)
            self._repository.save_room_state(state)
            return state, result

        state, result = with_optimistic_retry(
            self._config.optimistic_retry_attempts,
            attempt,
            operation=operation,
        )
        self._notifications.flush(state)
        return result

    def submit_request(
        self,
        room_id: str,
        requester: str,
        kind: RequestType | str,
        time_slot: TimeSlotRef,
        target_user: Optional[str] = None,
        requester_slot_ids: Optional[list[str]] = None,
        message: str = "",
    ) -> Request:
        return self._mutate(
            room_id,
            "create_request",
            lambda state: self.create_request(
                state, requester, kind, time_slot, target_user, requester_slot_ids, message
            ),
        )

    def respond_to_request(
        self,
        room_id: str,
        request_id: str,
        actor: str,
        action: RequestStatus | str,
        message: str = "",
    ) -> Request:
        return self._mutate(
            room_id,
            "respond_request",
            lambda state: self.respond(state, request_id, actor, action, message),
        )

    def confirm_chain_request(self, room_id: str, request_id: str, actor: str) -> Request:
        return self._mutate(
            room_id,
            "confirm_chain",
            lambda state: self.confirm_chain(state, request_id, actor),
        )

    def cancel_request(self, room_id: str, request_id: str, actor: str) -> Request:
        return self._mutate(
            room_id,
            "cancel_request",
            lambda state: self.cancel(state, request_id, actor),
        )


def _sorted_slots(slots: Iterable[AssignedSlot]) -> list[AssignedSlot]:
    return sorted(slots, key=lambda slot: (slot.date, slot.start_time, slot.user_id))


def _activity_for_kind(kind: RequestType) -> ActivityAction:
    return {
        RequestType.TIME_REQUEST: ActivityAction.SLOT_REQUEST,
        RequestType.TIME_CHANGE: ActivityAction.CHANGE_REQUEST,
        RequestType.SLOT_SWAP: ActivityAction.SLOT_SWAP,
        RequestType.SLOT_RELEASE: ActivityAction.SLOT_YIELD,
        RequestType.CHAIN_REQUEST: ActivityAction.CHANGE_REQUEST,
    }[kind]
