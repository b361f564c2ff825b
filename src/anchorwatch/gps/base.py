"""Base interface for GPS position providers."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class PositionSample:
    """A single GPS fix."""

    timestamp: datetime
    latitude: float
    longitude: float
    speed: float | None = None  # m/s
    accuracy: float | None = None  # meters, horizontal
    altitude: float | None = None
    heading: float | None = None  # degrees from true north


class BaseGpsProvider(ABC):
    """Abstract base for all position sources."""

    @abstractmethod
    async def is_location_service_enabled(self) -> bool:
        """Whether the device location service is switched on."""

    @abstractmethod
    async def has_permission(self) -> bool:
        """Whether the app may read the location."""

    @abstractmethod
    async def request_permission(self) -> bool:
        """Ask for location permission. Returns the resulting grant."""

    @abstractmethod
    async def get_current_position(self) -> PositionSample:
        """One-shot fix."""

    @abstractmethod
    async def start(self, interval: float, accuracy_hint: str = "high") -> None:
        """Start the continuous position stream."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the position stream. Safe to call when not started."""

    @abstractmethod
    def on_position(self, callback: Callable[[PositionSample], None]) -> None:
        """Register a callback for new position samples."""
