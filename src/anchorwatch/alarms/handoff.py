"""Foreground/background tracker handoff.

Only one tracker may feed the coordinator at a time, otherwise both would
raise alarms for the same drift. The machine records which one owns
tracking and tells the caller what to do with the background tracker.
"""

import enum
from dataclasses import dataclass


class TrackerMode(enum.StrEnum):
    inactive = "inactive"
    foreground_active = "foreground_active"
    background_active = "background_active"


class HandoffAction(enum.StrEnum):
    none = "none"
    start_background = "start_background"
    stop_background = "stop_background"


@dataclass
class TrackerHandoff:
    mode: TrackerMode = TrackerMode.inactive
    monitoring_desired: bool = False
    foreground_running: bool = False

    def monitoring_started(self) -> HandoffAction:
        self.monitoring_desired = True
        if self.foreground_running:
            self.mode = TrackerMode.foreground_active
            return HandoffAction.none
        if self.mode == TrackerMode.background_active:
            return HandoffAction.none
        self.mode = TrackerMode.background_active
        return HandoffAction.start_background

    def monitoring_stopped(self) -> HandoffAction:
        self.monitoring_desired = False
        previous = self.mode
        self.mode = TrackerMode.inactive
        if previous == TrackerMode.background_active:
            return HandoffAction.stop_background
        return HandoffAction.none

    def foreground_started(self) -> HandoffAction:
        self.foreground_running = True
        if not self.monitoring_desired:
            return HandoffAction.none
        previous = self.mode
        self.mode = TrackerMode.foreground_active
        if previous == TrackerMode.background_active:
            return HandoffAction.stop_background
        return HandoffAction.none

    def foreground_stopped(self) -> HandoffAction:
        self.foreground_running = False
        if not self.monitoring_desired:
            self.mode = TrackerMode.inactive
            return HandoffAction.none
        if self.mode == TrackerMode.background_active:
            return HandoffAction.none
        self.mode = TrackerMode.background_active
        return HandoffAction.start_background
