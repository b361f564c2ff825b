"""Bounded track of recent positions, drawn while an anchor is active."""

from anchorwatch.gps.base import PositionSample
from anchorwatch.streams import ValueStream

MAX_HISTORY_POINTS = 500


class PositionHistory:
    def __init__(self, max_points: int = MAX_HISTORY_POINTS, name: str = "history") -> None:
        self.max_points = max_points
        self.points: ValueStream[tuple[PositionSample, ...]] = ValueStream((), name=name)

    @property
    def current(self) -> tuple[PositionSample, ...]:
        return self.points.current

    def record(self, sample: PositionSample) -> None:
        """Append a fix, dropping the oldest ones past ``max_points``."""
        points = self.points.current + (sample,)
        self.points.set(points[-self.max_points :])

    def clear(self) -> None:
        self.points.set(())
