"""Growth pattern tags derived from metric history."""

from __future__ import annotations

from typing import List, Sequence

from ..datalake.schemas import TimePoint

VOLUME_SPIKE = "volume_spike"
HOLDER_GROWTH = "holder_growth"

VOLUME_SPIKE_FACTOR = 5.0
HOLDER_GROWTH_FACTOR = 1.5


def _accelerating(points: Sequence[TimePoint], factor: float) -> bool:
    if len(points) < 3:
        return False
    first, second, third = (point.value for point in points[-3:])
    return third > second * factor and second > first * factor


def detect_patterns(volume_history: Sequence[TimePoint], holder_history: Sequence[TimePoint]) -> List[str]:
    """Tags supported by the last three points of each series."""

    tags: List[str] = []
    if _accelerating(volume_history, VOLUME_SPIKE_FACTOR):
        tags.append(VOLUME_SPIKE)
    if _accelerating(holder_history, HOLDER_GROWTH_FACTOR):
        tags.append(HOLDER_GROWTH)
    return tags


def growth_rate(history: Sequence[TimePoint]) -> float:
    """Relative change between the last two points, ``0`` without a usable base."""

    if len(history) < 2:
        return 0.0
    previous, current = history[-2].value, history[-1].value
    if previous == 0:
        return 0.0
    return (current - previous) / previous


__all__ = ["HOLDER_GROWTH", "VOLUME_SPIKE", "detect_patterns", "growth_rate"]
