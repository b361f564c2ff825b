"""Pairing session entities and the persisted per-device pairing state."""

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlmodel import Field, SQLModel


class DeviceRole(enum.StrEnum):
    primary = "primary"
    secondary = "secondary"


@dataclass(frozen=True)
class DeviceInfo:
    device_id: str
    role: DeviceRole
    joined_at: datetime
    last_seen_at: datetime | None = None


@dataclass(frozen=True)
class PairingSession:
    token: str
    primary_user_id: str
    created_at: datetime
    expires_at: datetime
    is_active: bool = True
    monitoring_active: bool = False
    devices: dict[str, DeviceInfo] = field(default_factory=dict)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def is_usable(self, now: datetime | None = None) -> bool:
        return self.is_active and not self.is_expired(now)

    @property
    def secondary_count(self) -> int:
        return sum(1 for d in self.devices.values() if d.role == DeviceRole.secondary)


@dataclass(frozen=True)
class PairingSessionState:
    """Role and tokens of this device.

    A device is secondary exactly when it holds a remote token. Leaving a
    joined session always falls back to primary of its own local session.
    """

    local_token: str | None = None
    remote_token: str | None = None
    primary_user_id: str | None = None

    @property
    def role(self) -> DeviceRole:
        return DeviceRole.secondary if self.remote_token else DeviceRole.primary

    @property
    def is_secondary(self) -> bool:
        return self.role == DeviceRole.secondary

    @property
    def session_token(self) -> str | None:
        return self.remote_token or self.local_token

    def with_local_token(self, token: str | None) -> "PairingSessionState":
        return PairingSessionState(
            local_token=token,
            remote_token=self.remote_token,
            primary_user_id=self.primary_user_id,
        )

    def joined(self, token: str, primary_user_id: str) -> "PairingSessionState":
        return PairingSessionState(
            local_token=self.local_token,
            remote_token=token,
            primary_user_id=primary_user_id,
        )

    def left(self) -> "PairingSessionState":
        return PairingSessionState(local_token=self.local_token)


class PairingStateRecord(SQLModel, table=True):
    """Single-row table holding this device's pairing state."""

    id: int = Field(default=1, primary_key=True)
    role: DeviceRole = DeviceRole.primary
    local_token: str | None = None
    remote_token: str | None = None
    primary_user_id: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
