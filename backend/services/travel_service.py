"""Travel-time collaborator contract.

Real geocoding and routing live outside this service; the engine only needs
a number of minutes to pad a candidate interval with before conflict checks.
"""

from __future__ import annotations

from typing import Optional, Protocol


DEFAULT_MODE = "walking"


class TravelTimeProvider(Protocol):
    def get_travel_minutes(
        self,
        origin: Optional[str],
        destination: Optional[str],
        mode: str = DEFAULT_MODE,
    ) -> int:
        ...


class StaticTravelTimeProvider:
    """Lookup-table provider, symmetric in origin and destination."""

    def __init__(
        self,
        minutes: Optional[dict[tuple[str, str, str], int]] = None,
        default_minutes: int = 0,
    ) -> None:
        self._minutes = dict(minutes or {})
        self._default_minutes = default_minutes

    def get_travel_minutes(
        self,
        origin: Optional[str],
        destination: Optional[str],
        mode: str = DEFAULT_MODE,
    ) -> int:
        if not origin or not destination or origin == destination:
            return 0
        for key in ((origin, destination, mode), (destination, origin, mode)):
            if key in self._minutes:
                return max(0, int(self._minutes[key]))
        return self._default_minutes


class NoTravelTimeProvider:
    def get_travel_minutes(
        self,
        origin: Optional[str],
        destination: Optional[str],
        mode: str = DEFAULT_MODE,
    ) -> int:
        return 0
