"""Alarm event model and enums."""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime


class AlarmType(enum.StrEnum):
    drift_exceeded = "driftExceeded"
    gps_lost = "gpsLost"
    gps_inaccurate = "gpsInaccurate"


class Severity(enum.StrEnum):
    warning = "warning"
    alarm = "alarm"


class MonitoringState(enum.StrEnum):
    idle = "idle"
    monitoring = "monitoring"
    paused = "paused"


def new_alarm_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class AlarmEvent:
    id: str
    type: AlarmType
    severity: Severity
    timestamp: datetime  # when the episode started
    latitude: float | None
    longitude: float | None
    distance_from_anchor: float | None = None
    acknowledged: bool = False

    @property
    def message(self) -> str:
        if self.type == AlarmType.drift_exceeded:
            distance = self.distance_from_anchor or 0.0
            return f"Anchor drift: {distance:.0f}m from anchor"
        if self.type == AlarmType.gps_lost:
            return "GPS signal lost"
        return "GPS accuracy is poor"
