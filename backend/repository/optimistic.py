"""Optimistic read-modify-write retry around the room aggregate."""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from backend.repository.data_repository import ConcurrentModificationError, RepositoryError
from backend.utils.logger import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


class OptimisticRetryExhaustedError(RepositoryError):
    """Raised when every attempt lost the race against a concurrent writer."""


def with_optimistic_retry(
    max_attempts: int,
    fn: Callable[[], T],
    retry_delay: float = 0.0,
    operation: str = "room_update",
) -> T:
    """Run ``fn`` until it commits without a version conflict.

    ``fn`` must re-read the state it mutates on every call; a stale
    aggregate would just fail again.
    """
    if max_attempts <= 0:
        raise ValueError("max_attempts must be > 0")

    last_error: ConcurrentModificationError | None = None
    for attempt in range(max_attempts):
        try:
            return fn()
        except ConcurrentModificationError as exc:
            last_error = exc
            if attempt < max_attempts - 1:
                logger.warning(
                    "Concurrent modification, retrying | operation=%s | attempt=%s/%s | reason=%s",
                    operation,
                    attempt + 1,
                    max_attempts,
                    exc,
                )
                if retry_delay:
                    time.sleep(retry_delay * (2**attempt))
            else:
                logger.error(
                    "Concurrent modification retries exhausted | operation=%s | attempts=%s",
                    operation,
                    max_attempts,
                )

    raise OptimisticRetryExhaustedError(
        f"{operation} failed after {max_attempts} attempts"
    ) from last_error
