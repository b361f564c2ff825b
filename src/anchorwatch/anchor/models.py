"""Anchor entity and its persisted record."""

from dataclasses import dataclass
from datetime import UTC, datetime

from sqlmodel import Field, SQLModel

MIN_RADIUS = 20.0
MAX_RADIUS = 100.0

# Identifier given to the read-only copy of a primary's anchor on a secondary.
REMOTE_ANCHOR_ID = "remote_anchor"


@dataclass(frozen=True)
class Anchor:
    id: str
    latitude: float
    longitude: float
    radius: float  # meters
    is_active: bool
    created_at: datetime
    updated_at: datetime


class AnchorRecord(SQLModel, table=True):
    """The single current anchor of this device."""

    id: str = Field(primary_key=True)
    latitude: float
    longitude: float
    radius: float
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_anchor(self) -> Anchor:
        # SQLite stores naive datetimes
        return Anchor(
            id=self.id,
            latitude=self.latitude,
            longitude=self.longitude,
            radius=self.radius,
            is_active=self.is_active,
            created_at=_as_utc(self.created_at),
            updated_at=_as_utc(self.updated_at),
        )


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value
