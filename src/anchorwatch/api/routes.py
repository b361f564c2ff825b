"""REST API endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from anchorwatch.alarms.models import AlarmEvent, MonitoringState
from anchorwatch.anchor.models import MAX_RADIUS, MIN_RADIUS, Anchor
from anchorwatch.device import DeviceRuntime
from anchorwatch.pairing.tokens import parse_join_link

router = APIRouter(prefix="/api")


def get_runtime(request: Request) -> DeviceRuntime:
    return request.app.state.runtime


# Request models
class SetAnchorRequest(BaseModel):
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    radius: float | None = Field(default=None, ge=MIN_RADIUS, le=MAX_RADIUS)


class MoveAnchorRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class RadiusRequest(BaseModel):
    radius: float = Field(ge=MIN_RADIUS, le=MAX_RADIUS)


class JoinRequest(BaseModel):
    # A bare token or a full join link
    link: str


class UpdateSettingsRequest(BaseModel):
    alarm_sensitivity: float | None = None
    default_radius: float | None = None
    gps_accuracy_threshold: float | None = None
    auto_dismiss_window: int | None = None
    position_update_interval: int | None = None
    webhook_url: str | None = None


def _alarm_out(event: AlarmEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "type": event.type,
        "severity": event.severity,
        "timestamp": event.timestamp,
        "latitude": event.latitude,
        "longitude": event.longitude,
        "distance_from_anchor": event.distance_from_anchor,
        "acknowledged": event.acknowledged,
        "message": event.message,
    }


# --- Anchor ---


@router.get("/anchor")
def get_anchor(runtime: DeviceRuntime = Depends(get_runtime)) -> Anchor | None:
    return runtime.anchors.current


@router.post("/anchor")
async def set_anchor(
    request: SetAnchorRequest,
    runtime: DeviceRuntime = Depends(get_runtime),
) -> Anchor:
    """Drop the anchor at the given point, or at the boat's position when omitted."""
    if request.latitude is None or request.longitude is None:
        return await runtime.drop_anchor_here(request.radius)
    return await runtime.set_anchor(request.latitude, request.longitude, request.radius)


@router.patch("/anchor")
async def move_anchor(
    request: MoveAnchorRequest,
    runtime: DeviceRuntime = Depends(get_runtime),
) -> Anchor:
    return await runtime.move_anchor(request.latitude, request.longitude)


@router.delete("/anchor")
async def clear_anchor(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, bool]:
    return {"deleted": await runtime.clear_anchor()}


@router.post("/anchor/toggle")
async def toggle_anchor(runtime: DeviceRuntime = Depends(get_runtime)) -> Anchor:
    return await runtime.toggle_anchor_active()


@router.post("/anchor/radius-edit")
async def begin_radius_edit(
    runtime: DeviceRuntime = Depends(get_runtime),
) -> dict[str, MonitoringState]:
    await runtime.begin_radius_edit()
    return {"state": runtime.coordinator.state}


@router.post("/anchor/radius-edit/confirm")
async def confirm_radius(
    request: RadiusRequest,
    runtime: DeviceRuntime = Depends(get_runtime),
) -> Anchor:
    return await runtime.confirm_radius(request.radius)


# --- Monitoring ---


@router.get("/monitoring")
def monitoring_status(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return {
        "state": runtime.coordinator.state,
        "tracking": runtime.tracker.is_tracking,
        "tracker_mode": runtime.coordinator.handoff.mode,
        "syncing": runtime.sync.is_running,
    }


@router.post("/monitoring/start")
async def start_monitoring(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    await runtime.start_monitoring()
    return monitoring_status(runtime)


@router.post("/monitoring/stop")
async def stop_monitoring(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    await runtime.stop_monitoring()
    return monitoring_status(runtime)


@router.post("/monitoring/pause")
async def pause_monitoring(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    await runtime.coordinator.pause_monitoring()
    return monitoring_status(runtime)


@router.post("/monitoring/resume")
async def resume_monitoring(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    await runtime.coordinator.resume_monitoring()
    return monitoring_status(runtime)


# --- Alarms ---


@router.get("/alarms")
def list_alarms(runtime: DeviceRuntime = Depends(get_runtime)) -> list[dict[str, Any]]:
    return [_alarm_out(a) for a in runtime.coordinator.active_alarms]


@router.post("/alarms/{alarm_id}/acknowledge")
async def acknowledge_alarm(
    alarm_id: str,
    runtime: DeviceRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    event = await runtime.acknowledge_alarm(alarm_id)
    return _alarm_out(event)


@router.get("/position")
def current_position(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """Latest fix plus the track recorded while the anchor is active."""
    return {
        "position": runtime.tracker.last_position,
        "history": list(runtime.history.current),
    }


# --- Pairing ---


@router.get("/pairing")
def pairing_status(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return runtime.status()["pairing"]


@router.post("/pairing/session")
async def create_session(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    token = await runtime.start_primary_session()
    return {"token": token, "link": runtime.join_link(), "local_only": runtime.pairing.local_only}


@router.post("/pairing/join")
async def join_session(
    request: JoinRequest,
    runtime: DeviceRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    session = await runtime.join_session(parse_join_link(request.link))
    return {
        "token": session.token,
        "primary_user_id": session.primary_user_id,
        "expires_at": session.expires_at,
        "monitoring_active": session.monitoring_active,
    }


@router.post("/pairing/end")
async def end_session(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    await runtime.end_session()
    return pairing_status(runtime)


@router.post("/pairing/disconnect")
async def disconnect(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    await runtime.disconnect()
    return pairing_status(runtime)


@router.get("/pairing/link")
def join_link(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, str | None]:
    return {"link": runtime.join_link()}


# --- Remote (secondary) ---


@router.get("/remote")
def remote_view(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    snapshot = runtime.mirror.snapshot()
    alarm = snapshot["alarm"]
    snapshot["alarm"] = _alarm_out(alarm) if alarm is not None else None
    return snapshot


@router.post("/remote/alarms/{alarm_id}/dismiss")
def dismiss_remote_alarm(
    alarm_id: str,
    runtime: DeviceRuntime = Depends(get_runtime),
) -> dict[str, str]:
    runtime.dismiss_remote_alarm(alarm_id)
    return {"status": "dismissed"}


# --- Settings ---


@router.get("/settings")
def get_settings(runtime: DeviceRuntime = Depends(get_runtime)) -> dict[str, Any]:
    cfg = runtime.settings
    return {name: getattr(cfg, name) for name in sorted(UpdateSettingsRequest.model_fields)}


@router.patch("/settings")
def update_settings(
    request: UpdateSettingsRequest,
    runtime: DeviceRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    runtime.update_settings(request.model_dump(exclude_unset=True))
    return get_settings(runtime)
