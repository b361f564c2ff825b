"""Background location tracking with an anchor geofence.

The OS-level background service keeps delivering fixes and reports when the
boat leaves a circular geofence around the anchor. ``SimulatedBackgroundTracker``
plays that role in-process by polling a GPS provider.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from anchorwatch.anchor.models import Anchor
from anchorwatch.geo import haversine_distance
from anchorwatch.gps.base import BaseGpsProvider, PositionSample

logger = logging.getLogger(__name__)


class BaseBackgroundTracker(ABC):
    """Abstract base for background tracking backends."""

    @property
    @abstractmethod
    def is_running(self) -> bool: ...

    @abstractmethod
    async def start_monitoring(self, anchor: Anchor) -> None:
        """Start tracking with a geofence around ``anchor``."""

    @abstractmethod
    async def update_anchor(self, anchor: Anchor) -> None:
        """Move or resize the geofence."""

    @abstractmethod
    async def stop_monitoring(self) -> None:
        """Stop tracking. Safe to call when not running."""

    @abstractmethod
    def on_location(self, callback: Callable[[PositionSample], None]) -> None: ...

    @abstractmethod
    def on_geofence_exit(self, callback: Callable[[], None]) -> None: ...


class SimulatedBackgroundTracker(BaseBackgroundTracker):
    def __init__(self, provider: BaseGpsProvider, interval: float = 30.0) -> None:
        self.provider = provider
        self.interval = interval
        self.anchor: Anchor | None = None
        self._location_callbacks: list[Callable[[PositionSample], None]] = []
        self._exit_callbacks: list[Callable[[], None]] = []
        self._running = False
        self._inside = True
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start_monitoring(self, anchor: Anchor) -> None:
        self.anchor = anchor
        self._inside = True
        if self._running:
            return
        logger.info("Background tracking started (geofence %.0fm)", anchor.radius)
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())

    async def update_anchor(self, anchor: Anchor) -> None:
        self.anchor = anchor
        self._inside = True
        logger.debug("Background geofence updated (%.0fm)", anchor.radius)

    async def stop_monitoring(self) -> None:
        if not self._running:
            return
        logger.info("Background tracking stopped")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def on_location(self, callback: Callable[[PositionSample], None]) -> None:
        self._location_callbacks.append(callback)

    def on_geofence_exit(self, callback: Callable[[], None]) -> None:
        self._exit_callbacks.append(callback)

    def handle_location(self, sample: PositionSample) -> None:
        """Deliver a fix and fire the geofence exit on an inside-to-outside crossing."""
        for cb in self._location_callbacks:
            cb(sample)

        if self.anchor is None:
            return
        distance = haversine_distance(
            self.anchor.latitude, self.anchor.longitude, sample.latitude, sample.longitude
        )
        inside = distance <= self.anchor.radius
        if self._inside and not inside:
            logger.warning("Geofence exit: %.1fm from anchor", distance)
            for exit_cb in self._exit_callbacks:
                exit_cb()
        self._inside = inside

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                sample = await self.provider.get_current_position()
                self.handle_location(sample)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Background location error")

            await asyncio.sleep(self.interval)
