"""Monitoring coordinator: the alarm lifecycle of one device.

Owns the active alarm list and the idle/monitoring/paused state. Position
fixes from the foreground tracker (or the background tracker, when it has
taken over) are evaluated by the detection engine at sample rate, and a
periodic task catches GPS going silent.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from anchorwatch.alarms.engine import AlarmTransition, DetectionEngine
from anchorwatch.alarms.handoff import HandoffAction, TrackerHandoff
from anchorwatch.alarms.models import AlarmEvent, MonitoringState, Severity
from anchorwatch.alerts.notifier import AlarmNotifier
from anchorwatch.anchor.models import Anchor
from anchorwatch.errors import AlarmNotFoundError, AlarmSyncError, NoActiveAnchorError
from anchorwatch.gps.background import BaseBackgroundTracker
from anchorwatch.gps.base import PositionSample
from anchorwatch.gps.tracker import ForegroundTracker
from anchorwatch.streams import ValueStream

logger = logging.getLogger(__name__)

# Called before an alarm is dismissed locally; raising keeps the alarm active.
RemoteDismissHook = Callable[[AlarmEvent], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MonitoringCoordinator:
    def __init__(
        self,
        engine: DetectionEngine,
        tracker: ForegroundTracker,
        anchors: ValueStream[Anchor | None],
        background: BaseBackgroundTracker | None = None,
        notifier: AlarmNotifier | None = None,
        health_check_interval: float = 15.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.engine = engine
        self.tracker = tracker
        self.anchors = anchors
        self.background = background
        self.notifier = notifier
        self.health_check_interval = health_check_interval
        self.clock = clock

        self.alarms: ValueStream[tuple[AlarmEvent, ...]] = ValueStream((), name="alarms")
        self.states: ValueStream[MonitoringState] = ValueStream(
            MonitoringState.idle, name="monitoring"
        )
        self.handoff = TrackerHandoff(foreground_running=tracker.is_tracking)
        self.remote_dismiss: RemoteDismissHook | None = None

        self._lock = asyncio.Lock()
        self._health_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._dismissing: set[str] = set()

        tracker.on_position(self.handle_position)
        tracker.on_tracking_changed(self._on_foreground_changed)
        if background is not None:
            background.on_location(tracker.publish)
            background.on_geofence_exit(self.handle_geofence_exit)

    @property
    def state(self) -> MonitoringState:
        return self.states.current

    @property
    def active_alarms(self) -> list[AlarmEvent]:
        return [a for a in self.alarms.current if not a.acknowledged]

    def get_alarm(self, alarm_id: str) -> AlarmEvent | None:
        for alarm in self.alarms.current:
            if alarm.id == alarm_id:
                return alarm
        return None

    # Lifecycle

    async def start_monitoring(self) -> None:
        async with self._lock:
            if self.state != MonitoringState.idle:
                return
            anchor = self.anchors.current
            if anchor is None or not anchor.is_active:
                raise NoActiveAnchorError()

            last = self.tracker.last_position
            self.engine.health.reset(self.clock(), last.timestamp if last else None)
            self.states.set(MonitoringState.monitoring)
            self._health_task = asyncio.create_task(self._health_loop())
            logger.info("Monitoring started (radius %.0fm)", anchor.radius)

            await self._apply_handoff(self.handoff.monitoring_started())

    async def stop_monitoring(self) -> None:
        async with self._lock:
            if self.state == MonitoringState.idle:
                return
            self.states.set(MonitoringState.idle)
            if self._health_task:
                self._health_task.cancel()
                try:
                    await self._health_task
                except asyncio.CancelledError:
                    pass
                self._health_task = None

            await self._apply_handoff(self.handoff.monitoring_stopped())
            self.alarms.set(())
            logger.info("Monitoring stopped")

    async def pause_monitoring(self) -> None:
        async with self._lock:
            if self.state == MonitoringState.monitoring:
                self.states.set(MonitoringState.paused)
                logger.info("Monitoring paused")

    async def resume_monitoring(self) -> None:
        async with self._lock:
            if self.state == MonitoringState.paused:
                self.states.set(MonitoringState.monitoring)
                logger.info("Monitoring resumed")

    async def close(self) -> None:
        await self.stop_monitoring()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def anchor_changed(self, anchor: Anchor | None) -> None:
        """React to an explicit anchor edit."""
        if anchor is None or not anchor.is_active:
            await self.stop_monitoring()
            return
        if self.background is not None and self.background.is_running:
            await self.background.update_anchor(anchor)

    # Events

    def handle_position(self, sample: PositionSample) -> None:
        """Evaluate one fix. Runs to completion before the next fix is looked at."""
        if self.state == MonitoringState.paused:
            # Keep GPS health current so resuming does not report a false loss
            self.engine.health.record_sample(self.clock())
            return
        if self.state != MonitoringState.monitoring:
            return
        transition = self.engine.evaluate_position(
            self.anchors.current, sample, self.active_alarms, self.clock()
        )
        self._apply(transition)

    def run_health_check(self) -> None:
        if self.state != MonitoringState.monitoring:
            return
        transition = self.engine.evaluate_health(
            self.active_alarms, self.clock(), self.tracker.last_position
        )
        self._apply(transition)

    def handle_geofence_exit(self) -> None:
        if self.state != MonitoringState.monitoring:
            return
        transition = self.engine.evaluate_geofence_exit(
            self.anchors.current, self.tracker.last_position, self.active_alarms, self.clock()
        )
        self._apply(transition)

    async def acknowledge_alarm(self, alarm_id: str) -> AlarmEvent:
        """Dismiss an alarm by hand.

        Acknowledging a loud alarm also stops monitoring. When a remote
        dismissal hook is set it must succeed first, otherwise the alarm
        stays active and AlarmSyncError is raised.
        """
        event = self.get_alarm(alarm_id)
        if event is None:
            raise AlarmNotFoundError(alarm_id)

        if event.severity == Severity.alarm and self.remote_dismiss is not None:
            try:
                await self.remote_dismiss(event)
            except Exception as e:
                logger.warning("Alarm %s kept: remote dismissal failed: %s", alarm_id, e)
                raise AlarmSyncError(f"Could not dismiss alarm {alarm_id} remotely: {e}") from e

        self._remove(event.id)
        logger.info("Alarm acknowledged: %s", event.message)
        if event.severity == Severity.alarm:
            await self.stop_monitoring()
        return event

    # Internals

    def _apply(self, transition: AlarmTransition) -> None:
        if transition.is_empty:
            return
        alarms = list(self.alarms.current)

        for event in transition.updated:
            alarms = [event if a.id == event.id else a for a in alarms]
        for event in transition.raised:
            alarms.append(event)
            if self.notifier is not None:
                self._spawn(self._notify(self.notifier, event))
        for event in transition.cleared:
            if event.severity == Severity.alarm and self.remote_dismiss is not None:
                if event.id not in self._dismissing:
                    self._dismissing.add(event.id)
                    self._spawn(self._gated_dismiss(event, self.remote_dismiss))
                continue
            alarms = [a for a in alarms if a.id != event.id]

        self.alarms.set(tuple(alarms))

    def _remove(self, alarm_id: str) -> None:
        self.alarms.set(tuple(a for a in self.alarms.current if a.id != alarm_id))

    async def _gated_dismiss(self, event: AlarmEvent, hook: RemoteDismissHook) -> None:
        try:
            await hook(event)
        except Exception as e:
            logger.warning("Auto-dismiss of %s withheld: remote dismissal failed: %s", event.id, e)
        else:
            self._remove(event.id)
            logger.info("Alarm auto-dismissed: %s", event.message)
        finally:
            self._dismissing.discard(event.id)

    @staticmethod
    async def _notify(notifier: AlarmNotifier, event: AlarmEvent) -> None:
        try:
            await notifier.notify(event)
        except Exception:
            logger.exception("Alarm notification failed")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            try:
                self.run_health_check()
            except Exception:
                logger.exception("GPS health check failed")

    def _on_foreground_changed(self, tracking: bool) -> None:
        if tracking:
            action = self.handoff.foreground_started()
        else:
            action = self.handoff.foreground_stopped()
        if action != HandoffAction.none:
            self._spawn(self._apply_handoff(action))

    async def _apply_handoff(self, action: HandoffAction) -> None:
        if self.background is None or action == HandoffAction.none:
            return
        try:
            if action == HandoffAction.start_background:
                anchor = self.anchors.current
                if anchor is not None:
                    await self.background.start_monitoring(anchor)
            else:
                await self.background.stop_monitoring()
        except Exception:
            logger.exception("Background tracker handoff (%s) failed", action)
