"""Foreground GPS tracking.

Wraps a provider with the service and permission checks that must pass
before positions are streamed, publishes the latest fix, and reports its
own start/stop so background tracking can hand over.
"""

import logging
from collections.abc import Callable

from anchorwatch.errors import LocationPermissionDeniedError, LocationServiceDisabledError
from anchorwatch.gps.base import BaseGpsProvider, PositionSample
from anchorwatch.streams import ValueStream

logger = logging.getLogger(__name__)


class ForegroundTracker:
    def __init__(
        self,
        provider: BaseGpsProvider,
        interval: float = 5.0,
        accuracy_hint: str = "high",
    ) -> None:
        self.provider = provider
        self.interval = interval
        self.accuracy_hint = accuracy_hint
        self.positions: ValueStream[PositionSample | None] = ValueStream(None, name="position")
        self._sample_callbacks: list[Callable[[PositionSample], None]] = []
        self._state_callbacks: list[Callable[[bool], None]] = []
        self._tracking = False
        provider.on_position(self.publish)

    @property
    def is_tracking(self) -> bool:
        return self._tracking

    @property
    def last_position(self) -> PositionSample | None:
        return self.positions.current

    def on_position(self, callback: Callable[[PositionSample], None]) -> None:
        self._sample_callbacks.append(callback)

    def on_tracking_changed(self, callback: Callable[[bool], None]) -> None:
        """Register a callback invoked with True on start and False on stop."""
        self._state_callbacks.append(callback)

    async def ensure_access(self) -> None:
        """Raise a typed error unless the location service is usable."""
        if not await self.provider.is_location_service_enabled():
            raise LocationServiceDisabledError()
        if not await self.provider.has_permission():
            if not await self.provider.request_permission():
                raise LocationPermissionDeniedError()

    async def start(self) -> None:
        if self._tracking:
            return
        await self.ensure_access()
        await self.provider.start(self.interval, self.accuracy_hint)
        self._tracking = True
        logger.info("Foreground GPS tracking started")
        self._notify_state(True)

    async def stop(self) -> None:
        if not self._tracking:
            return
        await self.provider.stop()
        self._tracking = False
        logger.info("Foreground GPS tracking stopped")
        self._notify_state(False)

    async def current_position(self) -> PositionSample:
        """One-shot fix, also published as the latest position."""
        await self.ensure_access()
        sample = await self.provider.get_current_position()
        self.publish(sample)
        return sample

    def publish(self, sample: PositionSample) -> None:
        """Make ``sample`` the latest position and hand it to every callback."""
        self.positions.set(sample)
        for cb in self._sample_callbacks:
            try:
                cb(sample)
            except Exception:
                logger.exception("Position callback failed")

    def _notify_state(self, tracking: bool) -> None:
        for cb in self._state_callbacks:
            try:
                cb(tracking)
            except Exception:
                logger.exception("Tracking state callback failed")
