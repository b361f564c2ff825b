"""Drift and GPS-health decision logic.

Nothing here touches I/O or the clock: every call takes the current time
and the active alarms, and returns an ``AlarmTransition`` describing which
events to raise, update in place, or clear. The coordinator applies it.
"""

import dataclasses
import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from anchorwatch.alarms.models import AlarmEvent, AlarmType, Severity, new_alarm_id
from anchorwatch.anchor.models import Anchor
from anchorwatch.geo import haversine_distance
from anchorwatch.gps.base import PositionSample

logger = logging.getLogger(__name__)

# Effective radius shrinks by up to this fraction at full sensitivity.
SENSITIVITY_FACTOR = 0.2
# Auto-dismiss once back within this fraction of the effective radius.
AUTO_DISMISS_RATIO = 0.9


def clamp_sensitivity(sensitivity: float) -> float:
    return min(max(sensitivity, 0.0), 1.0)


def effective_radius(radius: float, sensitivity: float) -> float:
    return radius * (1.0 - clamp_sensitivity(sensitivity) * SENSITIVITY_FACTOR)


@dataclass
class DetectionConfig:
    sensitivity: float = 0.5
    accuracy_threshold: float = 10.0  # meters
    lost_threshold: float = 30.0  # seconds
    restore_delay: float = 5.0  # seconds
    auto_dismiss_window: float = 120.0  # seconds


@dataclass
class AlarmTransition:
    raised: list[AlarmEvent] = field(default_factory=list)
    updated: list[AlarmEvent] = field(default_factory=list)
    cleared: list[AlarmEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.raised or self.updated or self.cleared)

    def merge(self, other: "AlarmTransition") -> "AlarmTransition":
        self.raised.extend(other.raised)
        self.updated.extend(other.updated)
        self.cleared.extend(other.cleared)
        return self


class GpsHealth(enum.StrEnum):
    healthy = "healthy"
    lost = "lost"
    still_lost = "still_lost"
    recovering = "recovering"
    restored = "restored"


class GpsHealthTracker:
    """Two-threshold GPS staleness tracker.

    GPS is declared lost after ``lost_threshold`` seconds without a fix and
    only declared restored after fixes have been fresh for ``restore_delay``
    seconds in a row.
    """

    def __init__(self, lost_threshold: float, restore_delay: float) -> None:
        self.lost_threshold = lost_threshold
        self.restore_delay = restore_delay
        self.last_sample_at: datetime | None = None
        self.recovered_at: datetime | None = None
        self.lost = False
        self._reference_at: datetime | None = None

    def reset(self, now: datetime, last_sample_at: datetime | None) -> None:
        """Start a monitoring run. Without a previous fix, staleness counts from ``now``."""
        self.last_sample_at = last_sample_at
        self.recovered_at = None
        self.lost = False
        self._reference_at = now

    def record_sample(self, at: datetime) -> None:
        self.last_sample_at = at
        if self.lost and self.recovered_at is None:
            self.recovered_at = at

    def evaluate(self, now: datetime) -> GpsHealth:
        reference = self.last_sample_at or self._reference_at
        if reference is None:
            return GpsHealth.healthy

        stale = (now - reference).total_seconds() > self.lost_threshold
        if stale:
            self.recovered_at = None
            if self.lost:
                return GpsHealth.still_lost
            self.lost = True
            return GpsHealth.lost

        if not self.lost:
            return GpsHealth.healthy
        if self.recovered_at is None:
            self.recovered_at = reference
        if (now - self.recovered_at).total_seconds() >= self.restore_delay:
            self.lost = False
            self.recovered_at = None
            return GpsHealth.restored
        return GpsHealth.recovering


def _find(active: list[AlarmEvent], alarm_type: AlarmType) -> AlarmEvent | None:
    for event in active:
        if event.type == alarm_type and not event.acknowledged:
            return event
    return None


class DetectionEngine:
    def __init__(self, config: DetectionConfig | None = None) -> None:
        self.config = config or DetectionConfig()
        self.health = GpsHealthTracker(self.config.lost_threshold, self.config.restore_delay)

    def configure(self, **changes: float) -> None:
        """Apply new thresholds to a running engine."""
        self.config = dataclasses.replace(self.config, **changes)
        self.health.lost_threshold = self.config.lost_threshold
        self.health.restore_delay = self.config.restore_delay

    # Pure checks

    def check_drift(self, anchor: Anchor | None, position: PositionSample) -> float | None:
        """Distance from the anchor in meters, or None when it must not be trusted."""
        if anchor is None or not anchor.is_active:
            return None
        if position.accuracy is not None and position.accuracy > self.config.accuracy_threshold:
            return None
        distance = haversine_distance(
            anchor.latitude, anchor.longitude, position.latitude, position.longitude
        )
        if not math.isfinite(distance):
            return None
        return distance

    def effective_radius(self, anchor: Anchor) -> float:
        return effective_radius(anchor.radius, self.config.sensitivity)

    def should_trigger_alarm(self, anchor: Anchor, distance: float) -> bool:
        return distance > self.effective_radius(anchor)

    def should_auto_dismiss(self, anchor: Anchor, distance: float) -> bool:
        return distance <= AUTO_DISMISS_RATIO * self.effective_radius(anchor)

    def is_recent(self, event: AlarmEvent, now: datetime) -> bool:
        return now - event.timestamp <= timedelta(seconds=self.config.auto_dismiss_window)

    # Transitions

    def evaluate_position(
        self,
        anchor: Anchor | None,
        position: PositionSample,
        active: list[AlarmEvent],
        now: datetime,
    ) -> AlarmTransition:
        """Handle one incoming fix: accuracy, GPS health and drift."""
        self.health.record_sample(now)
        transition = self._accuracy_transition(anchor, position, active, now)
        transition.merge(self.evaluate_health(active, now, position))

        distance = self.check_drift(anchor, position)
        if anchor is None or distance is None:
            return transition
        return transition.merge(self._drift_transition(anchor, position, distance, active, now))

    def evaluate_health(
        self,
        active: list[AlarmEvent],
        now: datetime,
        last_position: PositionSample | None,
    ) -> AlarmTransition:
        """Raise or clear the GPS-lost warning."""
        transition = AlarmTransition()
        status = self.health.evaluate(now)
        existing = _find(active, AlarmType.gps_lost)

        if status == GpsHealth.lost and existing is None:
            logger.warning("GPS lost: no fix for more than %ss", self.config.lost_threshold)
            transition.raised.append(
                AlarmEvent(
                    id=new_alarm_id(),
                    type=AlarmType.gps_lost,
                    severity=Severity.warning,
                    timestamp=now,
                    latitude=last_position.latitude if last_position else None,
                    longitude=last_position.longitude if last_position else None,
                )
            )
        elif status in (GpsHealth.restored, GpsHealth.healthy) and existing is not None:
            logger.info("GPS restored")
            transition.cleared.append(existing)
        return transition

    def evaluate_geofence_exit(
        self,
        anchor: Anchor | None,
        last_position: PositionSample | None,
        active: list[AlarmEvent],
        now: datetime,
    ) -> AlarmTransition:
        """Raise or update the drift alarm after the background geofence fired."""
        if anchor is None or not anchor.is_active or last_position is None:
            return AlarmTransition()
        distance = haversine_distance(
            anchor.latitude, anchor.longitude, last_position.latitude, last_position.longitude
        )
        if not math.isfinite(distance):
            return AlarmTransition()

        existing = _find(active, AlarmType.drift_exceeded)
        if existing is not None:
            return AlarmTransition(updated=[self._moved(existing, last_position, distance)])
        return AlarmTransition(raised=[self._drift_alarm(last_position, distance, now)])

    def _drift_transition(
        self,
        anchor: Anchor,
        position: PositionSample,
        distance: float,
        active: list[AlarmEvent],
        now: datetime,
    ) -> AlarmTransition:
        existing = _find(active, AlarmType.drift_exceeded)

        if self.should_trigger_alarm(anchor, distance):
            if existing is not None:
                return AlarmTransition(updated=[self._moved(existing, position, distance)])
            logger.warning(
                "Drift alarm: %.1fm from anchor (effective radius %.1fm)",
                distance,
                self.effective_radius(anchor),
            )
            return AlarmTransition(raised=[self._drift_alarm(position, distance, now)])

        if (
            existing is not None
            and self.should_auto_dismiss(anchor, distance)
            and self.is_recent(existing, now)
        ):
            logger.info("Drift recovered: back to %.1fm, auto-dismissing", distance)
            return AlarmTransition(cleared=[existing])
        return AlarmTransition()

    def _accuracy_transition(
        self,
        anchor: Anchor | None,
        position: PositionSample,
        active: list[AlarmEvent],
        now: datetime,
    ) -> AlarmTransition:
        existing = _find(active, AlarmType.gps_inaccurate)
        inaccurate = (
            position.accuracy is not None and position.accuracy > self.config.accuracy_threshold
        )
        if not inaccurate:
            return AlarmTransition(cleared=[existing] if existing else [])

        distance = None
        if anchor is not None:
            distance = haversine_distance(
                anchor.latitude, anchor.longitude, position.latitude, position.longitude
            )
        if existing is not None:
            return AlarmTransition(
                updated=[
                    dataclasses.replace(
                        existing,
                        timestamp=now,
                        latitude=position.latitude,
                        longitude=position.longitude,
                        distance_from_anchor=distance,
                    )
                ]
            )
        logger.info(
            "GPS accuracy %.1fm exceeds %.1fm", position.accuracy, self.config.accuracy_threshold
        )
        return AlarmTransition(
            raised=[
                AlarmEvent(
                    id=new_alarm_id(),
                    type=AlarmType.gps_inaccurate,
                    severity=Severity.warning,
                    timestamp=now,
                    latitude=position.latitude,
                    longitude=position.longitude,
                    distance_from_anchor=distance,
                )
            ]
        )

    @staticmethod
    def _drift_alarm(position: PositionSample, distance: float, now: datetime) -> AlarmEvent:
        return AlarmEvent(
            id=new_alarm_id(),
            type=AlarmType.drift_exceeded,
            severity=Severity.alarm,
            timestamp=now,
            latitude=position.latitude,
            longitude=position.longitude,
            distance_from_anchor=distance,
        )

    @staticmethod
    def _moved(event: AlarmEvent, position: PositionSample, distance: float) -> AlarmEvent:
        # Keeps the episode start time so auto-dismiss still measures from it
        return dataclasses.replace(
            event,
            latitude=position.latitude,
            longitude=position.longitude,
            distance_from_anchor=distance,
        )
