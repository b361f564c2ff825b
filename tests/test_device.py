"""Tests for the per-device runtime wiring monitoring, pairing and sync."""

import asyncio
from datetime import UTC, datetime

import pytest

from anchorwatch.alarms.models import MonitoringState
from anchorwatch.anchor.models import Anchor
from anchorwatch.config import Settings
from anchorwatch.device import DeviceRuntime
from anchorwatch.gps.base import PositionSample
from anchorwatch.gps.mock import MockGpsProvider
from anchorwatch.pairing.models import DeviceRole
from anchorwatch.remote.memory import InMemoryDatabase, InMemoryStore

T0 = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


def _runtime(engine, db: InMemoryDatabase, uid: str | None = None, **overrides) -> DeviceRuntime:
    cfg = Settings(auth_retry_delay=0, session_create_min_interval=0, **overrides)
    return DeviceRuntime(
        cfg,
        engine,
        MockGpsProvider(latitude=43.0, longitude=5.0),
        InMemoryStore(db, uid=uid),
    )


def _sample(latitude: float) -> PositionSample:
    return PositionSample(timestamp=T0, latitude=latitude, longitude=5.0, accuracy=4.0)


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestPersistence:
    @pytest.mark.asyncio
    async def test_anchor_restored_on_start(self, engine, env_file):
        db = InMemoryDatabase()
        first = _runtime(engine, db)
        await first.start(track_gps=False)
        anchor = await first.set_anchor(43.0, 5.0, 30)
        await first.stop()

        second = _runtime(engine, db)
        await second.start(track_gps=False)
        assert second.anchors.current == anchor
        await second.stop()

    @pytest.mark.asyncio
    async def test_pairing_state_restored_on_start(self, engine, env_file):
        db = InMemoryDatabase()
        first = _runtime(engine, db)
        await first.start(track_gps=False)
        token = await first.start_primary_session()
        await first.stop()

        second = _runtime(engine, db, uid=first.repository.uid)
        await second.start(track_gps=False)
        assert second.pairing.state.local_token == token
        await second.stop()


class TestMonitoringSync:
    @pytest.mark.asyncio
    async def test_monitoring_publishes_to_own_session(self, engine, env_file):
        db = InMemoryDatabase()
        runtime = _runtime(engine, db)
        await runtime.start(track_gps=False)
        await runtime.set_anchor(43.0, 5.0, 30)

        await runtime.start_monitoring()

        token = runtime.pairing.state.local_token
        assert runtime.sync.token == token
        assert db.get(f"sessions/{token}/monitoringActive") is True
        assert db.get(f"sessions/{token}/anchor/radius") == 30.0

        await runtime.stop_monitoring()
        assert runtime.sync.is_running is False
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_clearing_anchor_stops_sync(self, engine, env_file):
        db = InMemoryDatabase()
        runtime = _runtime(engine, db)
        await runtime.start(track_gps=False)
        await runtime.set_anchor(43.0, 5.0, 30)
        await runtime.start_monitoring()

        await runtime.clear_anchor()

        assert runtime.coordinator.state == MonitoringState.idle
        await _wait_until(lambda: not runtime.sync.is_running)
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_ending_session_stops_monitoring(self, engine, env_file):
        db = InMemoryDatabase()
        runtime = _runtime(engine, db)
        await runtime.start(track_gps=False)
        await runtime.set_anchor(43.0, 5.0, 30)
        await runtime.start_monitoring()

        await runtime.end_session()

        assert runtime.coordinator.state == MonitoringState.idle
        assert runtime.sync.is_running is False
        assert runtime.pairing.state.local_token is None
        await runtime.stop()


class TestPairing:
    @pytest.mark.asyncio
    async def test_secondary_mirrors_primary(self, engine, env_file):
        db = InMemoryDatabase()
        primary = _runtime(engine, db)
        secondary = _runtime(engine, db)
        await primary.start(track_gps=False)
        await secondary.start(track_gps=False)
        await primary.set_anchor(43.0, 5.0, 45)
        await primary.start_monitoring()
        token = primary.pairing.state.local_token

        await secondary.join_session(token)

        assert secondary.pairing.state.role == DeviceRole.secondary
        await _wait_until(lambda: secondary.mirror.anchor.current is not None)
        assert secondary.mirror.anchor.current.radius == 45.0
        assert secondary.mirror.monitoring_active.current is True

        await secondary.disconnect()
        assert secondary.mirror.is_running is False
        assert secondary.pairing.state.role == DeviceRole.primary

        await primary.stop()
        await secondary.stop()

    @pytest.mark.asyncio
    async def test_joining_stops_own_sync(self, engine, env_file):
        db = InMemoryDatabase()
        a = _runtime(engine, db)
        b = _runtime(engine, db)
        await a.start(track_gps=False)
        await b.start(track_gps=False)
        await a.set_anchor(43.0, 5.0, 30)
        await a.start_monitoring()
        other = await b.start_primary_session()

        await a.join_session(other)

        assert a.sync.is_running is False
        assert a.mirror.token == other
        await a.stop()
        await b.stop()

    @pytest.mark.asyncio
    async def test_disconnect_stops_local_monitoring(self, engine, env_file):
        db = InMemoryDatabase()
        primary = _runtime(engine, db)
        secondary = _runtime(engine, db)
        await primary.start(track_gps=False)
        await secondary.start(track_gps=False)
        token = await primary.start_primary_session()
        await secondary.set_anchor(43.0, 5.0, 30)
        await secondary.start_monitoring()
        await secondary.join_session(token)

        await secondary.disconnect()

        assert secondary.coordinator.state == MonitoringState.idle
        assert secondary.mirror.is_running is False
        assert secondary.sync.is_running is False
        assert secondary.pairing.state.role == DeviceRole.primary
        await primary.stop()
        await secondary.stop()

    @pytest.mark.asyncio
    async def test_session_ended_by_primary_stops_local_monitoring(self, engine, env_file):
        db = InMemoryDatabase()
        primary = _runtime(engine, db)
        secondary = _runtime(engine, db)
        await primary.start(track_gps=False)
        await secondary.start(track_gps=False)
        token = await primary.start_primary_session()
        await secondary.set_anchor(43.0, 5.0, 30)
        await secondary.start_monitoring()
        await secondary.join_session(token)

        await primary.end_session()
        await _wait_until(lambda: not secondary.pairing.state.is_secondary)

        assert secondary.coordinator.state == MonitoringState.idle
        assert secondary.mirror.is_running is False
        await primary.stop()
        await secondary.stop()


class TestSettings:
    @pytest.mark.asyncio
    async def test_update_applies_without_restart(self, engine, env_file):
        runtime = _runtime(engine, InMemoryDatabase())
        updated = runtime.update_settings(
            {"alarm_sensitivity": 1.0, "position_update_interval": 30, "webhook_url": "http://x"}
        )

        assert updated.alarm_sensitivity == 1.0
        assert runtime.detection.config.sensitivity == 1.0
        assert runtime.sync.position_interval == 30
        assert runtime.notifier.webhook_url == "http://x"
        assert "ANCHORWATCH_POSITION_UPDATE_INTERVAL=30" in env_file.read_text()

    def test_rejects_non_editable(self, engine, env_file):
        runtime = _runtime(engine, InMemoryDatabase())
        with pytest.raises(ValueError):
            runtime.update_settings({"db_path": "/tmp/x.db"})


class TestPositionHistory:
    @pytest.mark.asyncio
    async def test_track_recorded_only_while_anchor_active(self, engine, env_file):
        runtime = _runtime(engine, InMemoryDatabase())
        await runtime.start(track_gps=False)

        runtime.tracker.publish(_sample(43.0001))
        assert runtime.history.current == ()

        await runtime.set_anchor(43.0, 5.0, 30)
        runtime.tracker.publish(_sample(43.0002))
        runtime.tracker.publish(_sample(43.0003))
        assert [p.latitude for p in runtime.history.current] == [43.0002, 43.0003]
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_deactivating_anchor_clears_track(self, engine, env_file):
        runtime = _runtime(engine, InMemoryDatabase())
        await runtime.start(track_gps=False)
        await runtime.set_anchor(43.0, 5.0, 30)
        runtime.tracker.publish(_sample(43.0002))

        await runtime.toggle_anchor_active()

        assert runtime.history.current == ()
        runtime.tracker.publish(_sample(43.0003))
        assert runtime.history.current == ()
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_clearing_anchor_clears_track(self, engine, env_file):
        runtime = _runtime(engine, InMemoryDatabase())
        await runtime.start(track_gps=False)
        await runtime.set_anchor(43.0, 5.0, 30)
        runtime.tracker.publish(_sample(43.0002))

        await runtime.clear_anchor()

        assert runtime.history.current == ()
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_track_is_bounded(self, engine, env_file):
        runtime = _runtime(engine, InMemoryDatabase())
        runtime.history.max_points = 3
        runtime.anchors.set(Anchor("a1", 43.0, 5.0, 30.0, True, T0, T0))

        for latitude in (43.0001, 43.0002, 43.0003, 43.0004, 43.0005):
            runtime.tracker.publish(_sample(latitude))

        assert [p.latitude for p in runtime.history.current] == [43.0003, 43.0004, 43.0005]
