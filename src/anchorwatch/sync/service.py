"""Primary-side session synchronization.

While this device is monitoring as a session primary, its anchor, boat
position and active alarm are published to the session document. Anchor
changes go out immediately; positions are coalesced so at most one write
per interval reaches the store whatever the GPS rate. The throttle timer is
not restarted by later samples, so a steady GPS stream still gets one write
per interval instead of being starved.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from anchorwatch.alarms.models import AlarmEvent, Severity
from anchorwatch.anchor.models import Anchor
from anchorwatch.errors import AlarmSyncError
from anchorwatch.gps.base import PositionSample
from anchorwatch.remote.documents import encode_alarm, encode_anchor, encode_position
from anchorwatch.remote.sessions import SessionRepository
from anchorwatch.streams import Subscription, ValueStream

logger = logging.getLogger(__name__)

MIN_POSITION_INTERVAL = 5.0


def select_active_alarm(alarms: tuple[AlarmEvent, ...] | list[AlarmEvent]) -> AlarmEvent | None:
    """The one alarm mirrored remotely: loud alarms before warnings, newest first."""
    pending = [a for a in alarms if not a.acknowledged]
    if not pending:
        return None
    return max(pending, key=lambda a: (a.severity == Severity.alarm, a.timestamp))


class SessionSyncService:
    def __init__(
        self,
        repository: SessionRepository,
        position_interval: float = MIN_POSITION_INTERVAL,
        min_position_interval: float = MIN_POSITION_INTERVAL,
    ) -> None:
        self.repository = repository
        self.min_position_interval = min_position_interval
        self.position_interval = max(position_interval, min_position_interval)
        self.token: str | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._subscriptions: list[Subscription[Any]] = []
        self._flush_task: asyncio.Task[None] | None = None
        self._pending_position: PositionSample | None = None
        self._published_alarm: dict[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        return self.token is not None

    def set_position_interval(self, seconds: float) -> None:
        self.position_interval = max(seconds, self.min_position_interval)

    async def start_monitoring(
        self,
        token: str,
        anchors: ValueStream[Anchor | None],
        positions: ValueStream[PositionSample | None],
        alarms: ValueStream[tuple[AlarmEvent, ...]],
    ) -> None:
        """Publish the current state, flag the session as monitored, then follow changes."""
        if self.token == token:
            return
        if self.token is not None:
            await self.stop_monitoring()

        self.token = token
        self._published_alarm = None
        await self._push_snapshot(token, anchors.current, positions.current, alarms.current)

        follows = [
            (anchors.subscribe(replay=False), self._push_anchor),
            (positions.subscribe(replay=False), self._queue_position),
            (alarms.subscribe(replay=False), self._push_alarms),
        ]
        self._subscriptions = [sub for sub, _ in follows]
        self._tasks = [asyncio.create_task(self._follow(sub, push)) for sub, push in follows]
        logger.info("Session sync started for %s", token)

    async def stop_monitoring(self, token: str | None = None) -> None:
        """Cancel every subscription and timer, then clear the monitoring flag."""
        if self.token is None or (token is not None and token != self.token):
            return
        current = self.token
        self.token = None

        tasks = list(self._tasks)
        if self._flush_task is not None:
            tasks.append(self._flush_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        # A task cancelled before its first step never enters its with-block
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []
        self._flush_task = None
        self._pending_position = None

        try:
            await self.repository.update_session_data(current, {"monitoringActive": False})
        except Exception as e:
            logger.warning("Could not clear monitoringActive on %s: %s", current, e)
        logger.info("Session sync stopped for %s", current)

    async def dismiss_alarm(self, event: AlarmEvent) -> None:
        """Clear the remote alarm slot before ``event`` is dismissed locally.

        Raises AlarmSyncError if the write fails.
        """
        token = self.token
        if token is None:
            return
        try:
            await self.repository.clear_alarm(token)
        except Exception as e:
            raise AlarmSyncError(f"Could not clear remote alarm {event.id}: {e}") from e
        self._published_alarm = None

    # Pushes

    async def _push_snapshot(
        self,
        token: str,
        anchor: Anchor | None,
        position: PositionSample | None,
        alarms: tuple[AlarmEvent, ...],
    ) -> None:
        active = select_active_alarm(alarms)
        fields: dict[str, Any] = {
            "anchor": encode_anchor(anchor) if anchor else None,
            "alarm": encode_alarm(active) if active else None,
            "monitoringActive": True,
        }
        if position is not None:
            fields["boatPosition"] = encode_position(position)
        try:
            await self.repository.update_session_data(token, fields)
            self._published_alarm = fields["alarm"]
        except Exception as e:
            logger.warning("Initial session sync for %s failed: %s", token, e)

    async def _push_anchor(self, anchor: Anchor | None) -> None:
        token = self.token
        if token is None:
            return
        await self.repository.update_session_data(
            token, {"anchor": encode_anchor(anchor) if anchor else None}
        )

    async def _queue_position(self, sample: PositionSample | None) -> None:
        if sample is None:
            return
        self._pending_position = sample
        # Later samples replace the pending one without restarting the timer
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_position())

    async def _flush_position(self) -> None:
        await asyncio.sleep(self.position_interval)
        sample, self._pending_position = self._pending_position, None
        token = self.token
        if sample is None or token is None:
            return
        try:
            await self.repository.update_session_data(
                token, {"boatPosition": encode_position(sample)}
            )
        except Exception as e:
            logger.warning("Position sync failed: %s", e)

    async def _push_alarms(self, alarms: tuple[AlarmEvent, ...]) -> None:
        token = self.token
        if token is None:
            return
        active = select_active_alarm(alarms)
        document = encode_alarm(active) if active else None
        if document == self._published_alarm:
            return
        if active is None:
            await self.repository.clear_alarm(token)
        else:
            await self.repository.set_alarm(token, active)
        self._published_alarm = document

    async def _follow(
        self, values: Subscription[Any], push: Callable[[Any], Awaitable[None]]
    ) -> None:
        with values:
            async for value in values:
                try:
                    await push(value)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("Session sync push failed: %s", e)
