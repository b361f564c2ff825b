"""Remote session document schema.

Every value read from the remote store is validated here and turned into
the domain entities; nothing else in the package looks at raw documents.
A session that does not validate raises SessionCorruptedError.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from anchorwatch.alarms.models import AlarmEvent, AlarmType, Severity
from anchorwatch.anchor.models import REMOTE_ANCHOR_ID, Anchor
from anchorwatch.errors import SessionCorruptedError
from anchorwatch.gps.base import PositionSample
from anchorwatch.pairing.models import DeviceInfo, DeviceRole, PairingSession


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_ms(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class DeviceDocument(_Document):
    device_id: str
    role: DeviceRole
    joined_at: int
    last_seen_at: int | None = None


class AnchorDocument(_Document):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    radius: float = Field(gt=0)
    is_active: bool = True
    created_at: int | None = None


class PositionDocument(_Document):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    speed: float | None = None
    accuracy: float | None = None
    altitude: float | None = None
    heading: float | None = None
    timestamp: int


class AlarmDocument(_Document):
    id: str
    type: AlarmType
    severity: Severity
    timestamp: int
    latitude: float | None = None
    longitude: float | None = None
    distance_from_anchor: float | None = None
    acknowledged: bool = False


class SessionDocument(_Document):
    primary_user_id: str
    devices: dict[str, DeviceDocument] = Field(default_factory=dict)
    created_at: int
    expires_at: int
    is_active: bool = True
    monitoring_active: bool = False
    anchor: AnchorDocument | None = None
    boat_position: PositionDocument | None = None
    alarm: AlarmDocument | None = None


@dataclass(frozen=True)
class SessionView:
    """A decoded session with the state its primary publishes."""

    session: PairingSession
    anchor: Anchor | None
    position: PositionSample | None
    alarm: AlarmEvent | None


# Encoding


def new_session_document(primary_uid: str, now: datetime, ttl: timedelta) -> dict[str, Any]:
    return {
        "primaryUserId": primary_uid,
        "devices": {primary_uid: encode_device(primary_uid, DeviceRole.primary, now)},
        "createdAt": to_ms(now),
        "expiresAt": to_ms(now + ttl),
        "isActive": True,
        "monitoringActive": False,
    }


def encode_device(device_id: str, role: DeviceRole, joined_at: datetime) -> dict[str, Any]:
    return DeviceDocument(
        device_id=device_id, role=role, joined_at=to_ms(joined_at)
    ).model_dump(by_alias=True, exclude_none=True, mode="json")


def encode_anchor(anchor: Anchor) -> dict[str, Any]:
    return AnchorDocument(
        lat=anchor.latitude,
        lon=anchor.longitude,
        radius=anchor.radius,
        is_active=anchor.is_active,
        created_at=to_ms(anchor.created_at),
    ).model_dump(by_alias=True, exclude_none=True, mode="json")


def encode_position(sample: PositionSample) -> dict[str, Any]:
    return PositionDocument(
        lat=sample.latitude,
        lon=sample.longitude,
        speed=sample.speed,
        accuracy=sample.accuracy,
        altitude=sample.altitude,
        heading=sample.heading,
        timestamp=to_ms(sample.timestamp),
    ).model_dump(by_alias=True, exclude_none=True, mode="json")


def encode_alarm(event: AlarmEvent) -> dict[str, Any]:
    return AlarmDocument(
        id=event.id,
        type=event.type,
        severity=event.severity,
        timestamp=to_ms(event.timestamp),
        latitude=event.latitude,
        longitude=event.longitude,
        distance_from_anchor=event.distance_from_anchor,
        acknowledged=event.acknowledged,
    ).model_dump(by_alias=True, exclude_none=True, mode="json")


# Decoding


def _to_anchor(doc: AnchorDocument) -> Anchor:
    created = from_ms(doc.created_at) if doc.created_at is not None else datetime.now(UTC)
    return Anchor(
        id=REMOTE_ANCHOR_ID,
        latitude=doc.lat,
        longitude=doc.lon,
        radius=doc.radius,
        is_active=doc.is_active,
        created_at=created,
        updated_at=created,
    )


def _to_position(doc: PositionDocument) -> PositionSample:
    return PositionSample(
        timestamp=from_ms(doc.timestamp),
        latitude=doc.lat,
        longitude=doc.lon,
        speed=doc.speed,
        accuracy=doc.accuracy,
        altitude=doc.altitude,
        heading=doc.heading,
    )


def _to_alarm(doc: AlarmDocument) -> AlarmEvent:
    return AlarmEvent(
        id=doc.id,
        type=doc.type,
        severity=doc.severity,
        timestamp=from_ms(doc.timestamp),
        latitude=doc.latitude,
        longitude=doc.longitude,
        distance_from_anchor=doc.distance_from_anchor,
        acknowledged=doc.acknowledged,
    )


def _to_session(token: str, doc: SessionDocument) -> PairingSession:
    return PairingSession(
        token=token,
        primary_user_id=doc.primary_user_id,
        created_at=from_ms(doc.created_at),
        expires_at=from_ms(doc.expires_at),
        is_active=doc.is_active,
        monitoring_active=doc.monitoring_active,
        devices={
            uid: DeviceInfo(
                device_id=d.device_id,
                role=d.role,
                joined_at=from_ms(d.joined_at),
                last_seen_at=from_ms(d.last_seen_at) if d.last_seen_at is not None else None,
            )
            for uid, d in doc.devices.items()
        },
    )


def _validate_session(token: str, raw: Any) -> SessionDocument:
    if not isinstance(raw, dict):
        raise SessionCorruptedError(token, f"expected an object, got {type(raw).__name__}")
    try:
        return SessionDocument.model_validate(raw)
    except ValidationError as e:
        raise SessionCorruptedError(token, f"{e.error_count()} invalid field(s)") from e


def session_from_document(token: str, raw: Any) -> PairingSession:
    return _to_session(token, _validate_session(token, raw))


def decode_session(token: str, raw: Any) -> PairingSession | None:
    """Decode ``sessions/<token>``. None means the session does not exist."""
    if raw is None:
        return None
    return session_from_document(token, raw)


def decode_session_view(token: str, raw: Any) -> SessionView | None:
    if raw is None:
        return None
    doc = _validate_session(token, raw)
    return SessionView(
        session=_to_session(token, doc),
        anchor=_to_anchor(doc.anchor) if doc.anchor else None,
        position=_to_position(doc.boat_position) if doc.boat_position else None,
        alarm=_to_alarm(doc.alarm) if doc.alarm else None,
    )


def decode_alarm(token: str, raw: Any) -> AlarmEvent | None:
    """Decode the single alarm slot of a session."""
    if raw is None:
        return None
    try:
        return _to_alarm(AlarmDocument.model_validate(raw))
    except ValidationError as e:
        raise SessionCorruptedError(token, "invalid alarm") from e
