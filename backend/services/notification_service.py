"""Room event publication and activity recording.

Both are side effects of a committed room mutation: services stage them on
the ``RoomState`` and this module flushes them once the save succeeded. A
failing subscriber or activity write is logged and never undoes the commit.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from backend.domain.models import ActivityAction, ActivityRecord, RoomEvent, RoomState
from backend.repository.data_repository import DataRepository
from backend.utils.logger import get_logger


logger = get_logger(__name__)

EventSubscriber = Callable[[RoomEvent], None]


def stage_event(state: RoomState, kind: str, payload: dict[str, Any]) -> None:
    state.pending_events.append(RoomEvent(room_id=state.room_id, kind=kind, payload=payload))


def stage_activity(
    state: RoomState,
    actor_id: str,
    action: ActivityAction,
    details: str,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    state.pending_activities.append(
        ActivityRecord(
            room_id=state.room_id,
            actor_id=actor_id,
            action=action,
            details=details,
            metadata=metadata or {},
        )
    )


class NotificationService:
    """In-process fan-out of room events plus the activity sink."""

    def __init__(self, repository: DataRepository) -> None:
        self._repository = repository
        self._subscribers: list[EventSubscriber] = []

    def subscribe(self, subscriber: EventSubscriber) -> None:
        self._subscribers.append(subscriber)

    def publish(self, event: RoomEvent) -> None:
        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed | room_id=%s | kind=%s",
                    event.room_id,
                    event.kind,
                )

    def log_activity(self, record: ActivityRecord) -> bool:
        try:
            self._repository.log_activity(record)
        except Exception:
            logger.exception(
                "Activity write failed | room_id=%s | action=%s",
                record.room_id,
                record.action.value,
            )
            return False
        return True

    def flush(self, state: RoomState) -> None:
        """Emit everything staged on a state that has just been committed."""
        activities, state.pending_activities = state.pending_activities, []
        events, state.pending_events = state.pending_events, []
        for record in activities:
            self.log_activity(record)
        for event in events:
            self.publish(event)
        if activities or events:
            logger.debug(
                "Room side effects flushed | room_id=%s | activities=%s | events=%s",
                state.room_id,
                len(activities),
                len(events),
            )
