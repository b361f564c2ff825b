"""Per-device runtime.

``DeviceRuntime`` is the one owner of this device's coordination state:
the anchor, the monitoring coordinator, the pairing role and the sync
services bound to it. The API and the entrypoint only talk to it.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session

from anchorwatch.alarms.coordinator import MonitoringCoordinator
from anchorwatch.alarms.engine import DetectionConfig, DetectionEngine
from anchorwatch.alarms.models import AlarmEvent, MonitoringState
from anchorwatch.alerts.notifier import AlarmNotifier
from anchorwatch.anchor import store as anchor_store
from anchorwatch.anchor.models import Anchor
from anchorwatch.config import EDITABLE_FIELDS, Settings, save_config
from anchorwatch.errors import LocationUnavailableError, RemoteStoreError, SessionError
from anchorwatch.gps.background import BaseBackgroundTracker
from anchorwatch.gps.base import BaseGpsProvider, PositionSample
from anchorwatch.gps.history import PositionHistory
from anchorwatch.gps.tracker import ForegroundTracker
from anchorwatch.pairing.manager import LeaveReason, PairingManager
from anchorwatch.pairing.models import PairingSession, PairingSessionState
from anchorwatch.pairing.store import load_pairing_state, save_pairing_state
from anchorwatch.remote.base import RemoteStore
from anchorwatch.remote.sessions import SessionRepository
from anchorwatch.streams import ValueStream
from anchorwatch.sync.mirror import SessionMirror
from anchorwatch.sync.service import SessionSyncService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def detection_config(cfg: Settings) -> DetectionConfig:
    return DetectionConfig(
        sensitivity=cfg.alarm_sensitivity,
        accuracy_threshold=cfg.gps_accuracy_threshold,
        lost_threshold=cfg.gps_lost_threshold,
        restore_delay=cfg.gps_restore_delay,
        auto_dismiss_window=cfg.auto_dismiss_window,
    )


class DeviceRuntime:
    def __init__(
        self,
        cfg: Settings,
        db_engine: Engine,
        provider: BaseGpsProvider,
        store: RemoteStore,
        background: BaseBackgroundTracker | None = None,
        notifier: AlarmNotifier | None = None,
        min_position_interval: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = cfg
        self.db_engine = db_engine
        self.store = store
        self.clock = clock

        self.anchors: ValueStream[Anchor | None] = ValueStream(None, name="anchor")
        self.tracker = ForegroundTracker(provider, cfg.gps_interval, cfg.gps_accuracy_hint)
        self.history = PositionHistory()
        self.tracker.on_position(self._record_history)
        self.detection = DetectionEngine(detection_config(cfg))
        self.notifier = notifier or AlarmNotifier(cfg.webhook_url)
        self.coordinator = MonitoringCoordinator(
            self.detection,
            self.tracker,
            self.anchors,
            background=background,
            notifier=self.notifier,
            health_check_interval=cfg.health_check_interval,
            clock=clock,
        )

        self.repository = SessionRepository(
            store,
            ttl=timedelta(hours=cfg.session_ttl_hours),
            max_auth_retries=cfg.auth_max_retries,
            auth_retry_delay=cfg.auth_retry_delay,
            clock=clock,
        )
        self.sync = SessionSyncService(
            self.repository,
            position_interval=cfg.position_update_interval,
            min_position_interval=min_position_interval,
        )
        self.mirror = SessionMirror(self.repository)
        self.pairing = PairingManager(
            self.repository,
            persist=self._save_pairing_state,
            min_create_interval=cfg.session_create_min_interval,
            check_interval=cfg.health_check_interval,
            link_scheme=cfg.join_link_scheme,
            clock=clock,
        )
        self.pairing.leave_hooks.append(self._on_leave)
        self._follow_task: asyncio.Task[None] | None = None

    # Lifecycle

    async def start(self, track_gps: bool = True) -> None:
        with Session(self.db_engine) as session:
            self.anchors.set(anchor_store.get_anchor(session))
            self.pairing.states.set(load_pairing_state(session))

        try:
            await self.repository.authenticate()
        except RemoteStoreError as e:
            logger.warning("Remote store sign-in failed, pairing unavailable for now: %s", e)
        await self.pairing.restore()

        state = self.pairing.state
        if state.remote_token:
            await self.mirror.start(state.remote_token)

        self._follow_task = asyncio.create_task(self._follow_monitoring())
        if track_gps:
            try:
                await self.tracker.start()
            except LocationUnavailableError as e:
                logger.warning("Foreground GPS not started: %s", e)
        logger.info("Device runtime started (role=%s)", state.role)

    async def stop(self) -> None:
        await self.coordinator.close()
        await self._stop_sync()
        await self.mirror.stop()
        await self.pairing.close()
        if self._follow_task is not None:
            self._follow_task.cancel()
            await asyncio.gather(self._follow_task, return_exceptions=True)
            self._follow_task = None
        await self.tracker.stop()
        await self.store.close()
        logger.info("Device runtime stopped")

    def _save_pairing_state(self, state: PairingSessionState) -> None:
        with Session(self.db_engine) as session:
            save_pairing_state(session, state)

    # Anchor

    async def _anchor_changed(self, anchor: Anchor | None) -> Anchor | None:
        self.anchors.set(anchor)
        if anchor is None or not anchor.is_active:
            self.history.clear()
        await self.coordinator.anchor_changed(anchor)
        return anchor

    def _record_history(self, sample: PositionSample) -> None:
        anchor = self.anchors.current
        if anchor is not None and anchor.is_active:
            self.history.record(sample)

    async def set_anchor(
        self, latitude: float, longitude: float, radius: float | None = None
    ) -> Anchor:
        with Session(self.db_engine) as session:
            anchor = anchor_store.set_anchor(
                session, latitude, longitude, radius or self.settings.default_radius
            )
        await self._anchor_changed(anchor)
        return anchor

    async def drop_anchor_here(self, radius: float | None = None) -> Anchor:
        """Set the anchor at the current GPS position."""
        position = self.tracker.last_position or await self.tracker.current_position()
        return await self.set_anchor(position.latitude, position.longitude, radius)

    async def move_anchor(self, latitude: float, longitude: float) -> Anchor:
        with Session(self.db_engine) as session:
            anchor = anchor_store.move_anchor(session, latitude, longitude)
        await self._anchor_changed(anchor)
        return anchor

    async def resize_anchor(self, radius: float) -> Anchor:
        with Session(self.db_engine) as session:
            anchor = anchor_store.resize_anchor(session, radius)
        await self._anchor_changed(anchor)
        return anchor

    async def toggle_anchor_active(self) -> Anchor:
        with Session(self.db_engine) as session:
            anchor = anchor_store.toggle_anchor_active(session)
        await self._anchor_changed(anchor)
        return anchor

    async def clear_anchor(self) -> bool:
        with Session(self.db_engine) as session:
            deleted = anchor_store.clear_anchor(session)
        await self._anchor_changed(None)
        return deleted

    async def begin_radius_edit(self) -> None:
        await self.coordinator.pause_monitoring()

    async def confirm_radius(self, radius: float) -> Anchor:
        try:
            return await self.resize_anchor(radius)
        finally:
            await self.coordinator.resume_monitoring()

    # Monitoring

    async def start_monitoring(self) -> None:
        await self.coordinator.start_monitoring()
        await self._start_sync()

    async def stop_monitoring(self) -> None:
        await self.coordinator.stop_monitoring()
        await self._stop_sync()

    async def acknowledge_alarm(self, alarm_id: str) -> AlarmEvent:
        event = await self.coordinator.acknowledge_alarm(alarm_id)
        if self.coordinator.state == MonitoringState.idle:
            await self._stop_sync()
        return event

    async def _start_sync(self) -> None:
        if self.pairing.state.is_secondary or self.coordinator.state == MonitoringState.idle:
            return
        try:
            token = await self.pairing.ensure_local_session()
        except (SessionError, RemoteStoreError) as e:
            logger.warning("Monitoring without session sync: %s", e)
            return
        if self.pairing.local_only:
            return
        await self.sync.start_monitoring(
            token, self.anchors, self.tracker.positions, self.coordinator.alarms
        )
        self.coordinator.remote_dismiss = self.sync.dismiss_alarm

    async def _stop_sync(self) -> None:
        self.coordinator.remote_dismiss = None
        await self.sync.stop_monitoring()

    async def _follow_monitoring(self) -> None:
        """Stop publishing once monitoring goes idle on its own."""
        with self.coordinator.states.subscribe(replay=False) as states:
            async for state in states:
                if state != MonitoringState.idle:
                    continue
                try:
                    await self._stop_sync()
                except Exception:
                    logger.exception("Stopping session sync failed")

    # Pairing

    async def start_primary_session(self) -> str:
        token = await self.pairing.ensure_local_session()
        if self.coordinator.state != MonitoringState.idle and not self.sync.is_running:
            await self._start_sync()
        return token

    async def create_session(self) -> str:
        token = await self.pairing.create_session()
        if self.coordinator.state != MonitoringState.idle:
            await self._start_sync()
        return token

    async def join_session(self, token: str) -> PairingSession:
        await self._stop_sync()
        session = await self.pairing.join_session(token)
        await self.mirror.start(session.token)
        return session

    async def end_session(self) -> None:
        await self.pairing.end_session()

    async def disconnect(self) -> None:
        await self.pairing.disconnect()

    def join_link(self) -> str | None:
        return self.pairing.join_link()

    async def _on_leave(self, token: str, reason: LeaveReason) -> None:
        if reason in (LeaveReason.disconnected, LeaveReason.auto_disconnected):
            if self.mirror.token == token:
                await self.mirror.stop()
            await self.coordinator.stop_monitoring()
            return
        if self.sync.token == token:
            await self._stop_sync()
        if reason == LeaveReason.ended:
            await self.coordinator.stop_monitoring()

    def dismiss_remote_alarm(self, alarm_id: str) -> None:
        self.mirror.dismiss_alarm(alarm_id)

    # Settings

    def update_settings(self, values: dict[str, Any]) -> Settings:
        """Validate, persist and apply user-editable settings without a restart."""
        unknown = set(values) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Not editable: {', '.join(sorted(unknown))}")

        updated = Settings(**{**self.settings.model_dump(), **values})
        save_config({k: getattr(updated, k) for k in values})
        self.settings = updated

        self.detection.configure(
            sensitivity=updated.alarm_sensitivity,
            accuracy_threshold=updated.gps_accuracy_threshold,
            auto_dismiss_window=updated.auto_dismiss_window,
        )
        self.sync.set_position_interval(updated.position_update_interval)
        self.notifier.webhook_url = updated.webhook_url
        logger.info("Settings updated: %s", ", ".join(sorted(values)))
        return updated

    # Read models

    def status(self) -> dict[str, Any]:
        state = self.pairing.state
        return {
            "monitoring": self.coordinator.state,
            "anchor": self.anchors.current,
            "position": self.tracker.last_position,
            "alarms": list(self.coordinator.alarms.current),
            "pairing": {
                "role": state.role,
                "session_token": state.session_token,
                "local_token": state.local_token,
                "remote_token": state.remote_token,
                "primary_user_id": state.primary_user_id,
                "local_only": self.pairing.local_only,
                "syncing": self.sync.is_running,
            },
        }
