"""Composite potential score for launched tokens."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, Optional, Sequence, Tuple

from ..datalake.schemas import ConcentrationRisk, HolderBalance, ScoreResult, Token
from ..utils.constants import utc_now

# (exclusive upper bound, points); values at or above the last bound get the final points.
_LIQUIDITY_STEPS = ((1_000, 5), (5_000, 10), (20_000, 15), (50_000, 20))
_LIQUIDITY_MAX = 25
_HOLDER_STEPS = ((10, 2), (50, 5), (100, 10), (500, 15))
_HOLDER_MAX = 20
_VOLUME_STEPS = ((1_000, 2), (10_000, 5), (50_000, 10), (200_000, 15))
_VOLUME_MAX = 20
_AGE_STEPS = ((1, 15), (3, 13), (6, 10), (12, 8), (24, 5), (48, 3))
_AGE_MIN = 1
_VELOCITY_STEPS = ((1, 2), (5, 5), (10, 8), (20, 10))
_VELOCITY_BASE_MAX = 12
_VELOCITY_CAP = 20
_ACCELERATION_BONUS_CAP = 8.0
_CONCENTRATION_LEVELS = (
    (80.0, ConcentrationRisk.MANIPULATED, 2),
    (60.0, ConcentrationRisk.HIGH, 4),
    (40.0, ConcentrationRisk.ELEVATED, 6),
    (20.0, ConcentrationRisk.MODERATE, 9),
)
_CONCENTRATION_HEALTHY = 12


def _step(value: float, steps: Sequence[Tuple[float, int]], top: int) -> int:
    for bound, points in steps:
        if value < bound:
            return points
    return top


def liquidity_score(liquidity: float) -> int:
    if liquidity <= 0:
        return 0
    return _step(liquidity, _LIQUIDITY_STEPS, _LIQUIDITY_MAX)


def holder_score(holder_count: int) -> int:
    if holder_count <= 0:
        return 0
    return _step(holder_count, _HOLDER_STEPS, _HOLDER_MAX)


def volume_score(volume: float) -> int:
    if volume <= 0:
        return 0
    return _step(volume, _VOLUME_STEPS, _VOLUME_MAX)


def age_score(created_at: Optional[datetime], now: datetime) -> int:
    if created_at is None:
        return 0
    age_hours = (now - created_at).total_seconds() / 3600.0
    return _step(age_hours, _AGE_STEPS, _AGE_MIN)


def transaction_acceleration(timestamps: Iterable[datetime]) -> float:
    """Average hour-over-hour change in transaction count across active hours."""

    buckets = Counter(ts.replace(minute=0, second=0, microsecond=0) for ts in timestamps)
    counts = [buckets[hour] for hour in sorted(buckets)]
    if len(counts) < 2:
        return 0.0
    changes = sum(counts[i] - counts[i - 1] for i in range(1, len(counts)))
    return changes / (len(counts) - 1)


def velocity_score(
    timestamps: Sequence[datetime], created_at: Optional[datetime], now: datetime
) -> Tuple[float, float, float]:
    """Return ``(points, tx_per_hour, acceleration)`` for the recent transactions."""

    if not timestamps:
        return 0.0, 0.0, 0.0
    age_hours = (now - created_at).total_seconds() / 3600.0 if created_at else 0.0
    tx_per_hour = len(timestamps) / max(1.0, age_hours)
    acceleration = transaction_acceleration(timestamps)
    points = float(_step(tx_per_hour, _VELOCITY_STEPS, _VELOCITY_BASE_MAX))
    if acceleration > 0:
        points += min(_ACCELERATION_BONUS_CAP, acceleration * 2)
    return min(points, float(_VELOCITY_CAP)), tx_per_hour, acceleration


def concentration(distribution: Sequence[HolderBalance]) -> Tuple[int, ConcentrationRisk, float]:
    """Score holder concentration from the top-10 share of all listed balances."""

    if not distribution:
        return 0, ConcentrationRisk.UNKNOWN, 0.0
    balances = sorted((holder.balance for holder in distribution), reverse=True)
    total = sum(balances)
    if total <= 0:
        return 0, ConcentrationRisk.UNKNOWN, 0.0
    top10_pct = sum(balances[:10]) / total * 100.0
    for threshold, risk, points in _CONCENTRATION_LEVELS:
        if top10_pct > threshold:
            return points, risk, top10_pct
    return _CONCENTRATION_HEALTHY, ConcentrationRisk.LOW, top10_pct


class ScoreEngine:
    """Deterministic scorer; identical inputs always give identical results."""

    def score(
        self,
        token: Token,
        recent_transactions: Sequence[datetime] = (),
        *,
        now: Optional[datetime] = None,
    ) -> ScoreResult:
        now = now or utc_now()
        velocity, tx_per_hour, acceleration = velocity_score(recent_transactions, token.created_at, now)
        concentration_points, risk, top10_pct = concentration(token.holder_distribution)
        components: Dict[str, float] = {
            "liquidity": liquidity_score(token.liquidity),
            "holders": holder_score(token.holder_count),
            "volume": volume_score(token.volume),
            "age": age_score(token.created_at, now),
            "velocity": velocity,
            "concentration": concentration_points,
        }
        total = sum(components.values())
        return ScoreResult(
            score=int(min(max(round(total), 0), 100)),
            components=components,
            concentration_risk=risk,
            concentration_pct=top10_pct,
            velocity=tx_per_hour,
            acceleration=acceleration,
        )


__all__ = [
    "ScoreEngine",
    "age_score",
    "concentration",
    "holder_score",
    "liquidity_score",
    "transaction_acceleration",
    "velocity_score",
    "volume_score",
]
