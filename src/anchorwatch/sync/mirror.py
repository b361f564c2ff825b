"""Secondary-side read-only mirrors of a joined session.

One subscription to the session document drives the anchor, position and
monitoring-status views, plus a track of the positions seen while the
remote anchor is active. The alarm slot has its own subscription so alarms
arrive without waiting on full-document changes. Alarms dismissed on this
device are hidden locally and never written back.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from anchorwatch.alarms.models import AlarmEvent
from anchorwatch.anchor.models import Anchor
from anchorwatch.errors import AlarmNotFoundError
from anchorwatch.gps.base import PositionSample
from anchorwatch.gps.history import PositionHistory
from anchorwatch.pairing.models import PairingSession
from anchorwatch.remote.documents import SessionView
from anchorwatch.remote.sessions import SessionRepository
from anchorwatch.streams import ValueStream

logger = logging.getLogger(__name__)


class SessionMirror:
    def __init__(self, repository: SessionRepository, retry_delay: float = 2.0) -> None:
        self.repository = repository
        self.retry_delay = retry_delay
        self.token: str | None = None

        self.session: ValueStream[PairingSession | None] = ValueStream(
            None, name="remote-session"
        )
        self.anchor: ValueStream[Anchor | None] = ValueStream(None, name="remote-anchor")
        self.position: ValueStream[PositionSample | None] = ValueStream(
            None, name="remote-position"
        )
        self.monitoring_active: ValueStream[bool] = ValueStream(False, name="remote-monitoring")
        self.alarm: ValueStream[AlarmEvent | None] = ValueStream(None, name="remote-alarm")
        self.history = PositionHistory(name="remote-history")

        self.dismissed: set[str] = set()
        self._remote_alarm: AlarmEvent | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def is_running(self) -> bool:
        return self.token is not None

    async def start(self, token: str) -> None:
        if self.token == token:
            return
        if self.token is not None:
            await self.stop()
        self.token = token
        self._tasks = [
            asyncio.create_task(
                self._follow(token, self.repository.stream_session_view, self._apply_view)
            ),
            asyncio.create_task(
                self._follow(token, self.repository.stream_alarm, self._apply_alarm)
            ),
        ]
        logger.info("Mirroring session %s", token)

    async def stop(self) -> None:
        if self.token is None:
            return
        token, self.token = self.token, None
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        self.session.set(None)
        self.anchor.set(None)
        self.position.set(None)
        self.history.clear()
        self.monitoring_active.set(False)
        self._remote_alarm = None
        self.dismissed.clear()
        self.alarm.set(None)
        logger.info("Stopped mirroring session %s", token)

    def dismiss_alarm(self, alarm_id: str) -> None:
        """Hide an alarm on this device only."""
        if self._remote_alarm is None or self._remote_alarm.id != alarm_id:
            raise AlarmNotFoundError(alarm_id)
        self.dismissed.add(alarm_id)
        self._publish_alarm()

    def snapshot(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "session": self.session.current,
            "anchor": self.anchor.current,
            "position": self.position.current,
            "monitoring_active": self.monitoring_active.current,
            "alarm": self.alarm.current,
            "history": list(self.history.current),
        }

    def _apply_view(self, view: SessionView | None) -> None:
        if view is None:
            self.session.set(None)
            self.anchor.set(None)
            self.position.set(None)
            self.history.clear()
            self.monitoring_active.set(False)
            return
        self.session.set(view.session)
        self.anchor.set(view.anchor)
        moved = self.position.set(view.position)
        self.monitoring_active.set(view.session.monitoring_active)

        anchor = view.anchor
        if anchor is None or not anchor.is_active:
            self.history.clear()
        elif moved and view.position is not None:
            self.history.record(view.position)

    def _apply_alarm(self, alarm: AlarmEvent | None) -> None:
        self._remote_alarm = alarm
        self._publish_alarm()

    def _publish_alarm(self) -> None:
        alarm = self._remote_alarm
        if alarm is not None and (alarm.acknowledged or alarm.id in self.dismissed):
            alarm = None
        self.alarm.set(alarm)

    async def _follow(
        self,
        token: str,
        stream: Callable[[str], AsyncIterator[Any]],
        apply: Callable[[Any], None],
    ) -> None:
        """Feed a remote stream into ``apply``, resubscribing after failures."""
        while True:
            try:
                async for value in stream(token):
                    apply(value)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Mirror stream for %s failed: %s", token, e)
            await asyncio.sleep(self.retry_delay)
