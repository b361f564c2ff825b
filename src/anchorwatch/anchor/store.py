"""Anchor CRUD operations and validation."""

import logging
import uuid
from datetime import UTC, datetime

from sqlmodel import Session, select

from anchorwatch.anchor.models import MAX_RADIUS, MIN_RADIUS, Anchor, AnchorRecord
from anchorwatch.errors import AnchorNotSetError, InvalidAnchorError
from anchorwatch.geo import validate_coordinates

logger = logging.getLogger(__name__)


def validate_radius(radius: float) -> None:
    if not MIN_RADIUS <= radius <= MAX_RADIUS:
        raise InvalidAnchorError(
            f"Radius must be between {MIN_RADIUS:g} and {MAX_RADIUS:g} meters, got {radius}"
        )


def _validate_position(latitude: float, longitude: float) -> None:
    try:
        validate_coordinates(latitude, longitude)
    except ValueError as e:
        raise InvalidAnchorError(str(e)) from e


def get_anchor(session: Session) -> Anchor | None:
    """Return the current anchor, if one is set."""
    record = session.exec(select(AnchorRecord)).first()
    return record.to_anchor() if record else None


def _require_record(session: Session) -> AnchorRecord:
    record = session.exec(select(AnchorRecord)).first()
    if record is None:
        raise AnchorNotSetError("No anchor is set")
    return record


def set_anchor(session: Session, latitude: float, longitude: float, radius: float) -> Anchor:
    """Drop a new anchor, replacing any previous one."""
    _validate_position(latitude, longitude)
    validate_radius(radius)

    for old in session.exec(select(AnchorRecord)).all():
        session.delete(old)

    now = datetime.now(UTC)
    record = AnchorRecord(
        id=uuid.uuid4().hex,
        latitude=latitude,
        longitude=longitude,
        radius=radius,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info("Anchor set at %.6f,%.6f (radius %.0fm)", latitude, longitude, radius)
    return record.to_anchor()


def move_anchor(session: Session, latitude: float, longitude: float) -> Anchor:
    """Move the anchor point. Raises AnchorNotSetError when there is none."""
    _validate_position(latitude, longitude)
    record = _require_record(session)
    record.latitude = latitude
    record.longitude = longitude
    record.updated_at = datetime.now(UTC)
    session.commit()
    session.refresh(record)
    return record.to_anchor()


def resize_anchor(session: Session, radius: float) -> Anchor:
    validate_radius(radius)
    record = _require_record(session)
    record.radius = radius
    record.updated_at = datetime.now(UTC)
    session.commit()
    session.refresh(record)
    return record.to_anchor()


def set_anchor_active(session: Session, active: bool) -> Anchor:
    record = _require_record(session)
    record.is_active = active
    record.updated_at = datetime.now(UTC)
    session.commit()
    session.refresh(record)
    return record.to_anchor()


def toggle_anchor_active(session: Session) -> Anchor:
    record = _require_record(session)
    return set_anchor_active(session, not record.is_active)


def clear_anchor(session: Session) -> bool:
    """Delete the anchor. Return True if one was deleted."""
    records = session.exec(select(AnchorRecord)).all()
    for record in records:
        session.delete(record)
    session.commit()
    return bool(records)
