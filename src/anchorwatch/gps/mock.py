"""Mock GPS provider for development and testing.

Produces fake fixes on a timer that trace a boat swinging on its anchor:
a slow arc around the anchor point with a little position noise and the
occasional poor-accuracy fix.
"""

import asyncio
import logging
import math
import random
from collections.abc import Callable
from datetime import UTC, datetime

from anchorwatch.errors import LocationPermissionDeniedError, LocationServiceDisabledError
from anchorwatch.geo import offset_position
from anchorwatch.gps.base import BaseGpsProvider, PositionSample

logger = logging.getLogger(__name__)

# Swing geometry
_SWING_RADIUS_M = 18.0
_SWING_STEP_DEG = 7.5
_NOISE_M = 2.0
_BAD_FIX_RATE = 0.05


class MockGpsProvider(BaseGpsProvider):
    """Generates fake positions around a fixed point."""

    def __init__(
        self,
        latitude: float,
        longitude: float,
        service_enabled: bool = True,
        permission_granted: bool = True,
    ) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self.service_enabled = service_enabled
        self.permission_granted = permission_granted
        self.interval = 5.0
        self._callbacks: list[Callable[[PositionSample], None]] = []
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._tick = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def is_location_service_enabled(self) -> bool:
        return self.service_enabled

    async def has_permission(self) -> bool:
        return self.permission_granted

    async def request_permission(self) -> bool:
        return self.permission_granted

    async def get_current_position(self) -> PositionSample:
        if not self.service_enabled:
            raise LocationServiceDisabledError()
        if not self.permission_granted:
            raise LocationPermissionDeniedError()
        return self._generate_sample(datetime.now(UTC))

    async def start(self, interval: float, accuracy_hint: str = "high") -> None:
        if self._running:
            return
        logger.info("Starting mock GPS (interval=%ss, accuracy=%s)", interval, accuracy_hint)
        self.interval = interval
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping mock GPS")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def on_position(self, callback: Callable[[PositionSample], None]) -> None:
        self._callbacks.append(callback)

    def emit(self, sample: PositionSample) -> None:
        """Deliver a sample to every callback."""
        for cb in self._callbacks:
            cb(sample)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                self.emit(self._generate_sample(datetime.now(UTC)))
                self._tick += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Mock GPS error")

            await asyncio.sleep(self.interval)

    def _generate_sample(self, now: datetime) -> PositionSample:
        bearing = math.radians(self._tick * _SWING_STEP_DEG)
        north = _SWING_RADIUS_M * math.cos(bearing) + random.uniform(-_NOISE_M, _NOISE_M)
        east = _SWING_RADIUS_M * math.sin(bearing) + random.uniform(-_NOISE_M, _NOISE_M)
        lat, lon = offset_position(self.latitude, self.longitude, north, east)

        accuracy = random.uniform(3.0, 8.0)
        if random.random() < _BAD_FIX_RATE:
            accuracy = random.uniform(15.0, 40.0)

        return PositionSample(
            timestamp=now,
            latitude=lat,
            longitude=lon,
            speed=random.uniform(0.0, 0.4),
            accuracy=accuracy,
            heading=math.degrees(bearing) % 360,
        )
