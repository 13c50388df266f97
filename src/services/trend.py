"""Trend classification over paired time windows."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

from .clock import isoformat, utc_now

TrendClass = Literal[
    "increasing_strong",
    "increasing",
    "stable",
    "decreasing",
    "decreasing_strong",
    "insufficient_data",
]
DirectionTrend = Literal["stable", "variable", "changing", "insufficient_data"]

DIRECTION_SAMPLES = 6
DIRECTION_MIN_SAMPLES = 3
DIRECTION_STABLE_SPREAD = 15
DIRECTION_VARIABLE_SPREAD = 30


@dataclass(frozen=True, slots=True)
class TrendThresholds:
    stable_pct: float = 10.0
    strong_pct: float = 25.0
    long_window: timedelta = timedelta(minutes=30)
    short_window: timedelta = timedelta(minutes=15)
    max_gap: timedelta = timedelta(minutes=20)
    min_window_samples: int = 3


@dataclass(slots=True)
class TrendWindow:
    classification: TrendClass
    current_avg: Optional[float] = None
    previous_avg: Optional[float] = None
    absolute_change: float = 0.0
    percent_change: float = 0.0
    window_minutes: Optional[int] = None
    direction_trend: DirectionTrend = "insufficient_data"
    direction_spread: int = 0
    computed_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "trend": self.classification,
            "classification": self.classification,
            "currentAvg": _round(self.current_avg, 1),
            "previousAvg": _round(self.previous_avg, 1),
            "absoluteChange": round(self.absolute_change, 2),
            "percentChange": round(self.percent_change, 1),
            "windowMinutes": self.window_minutes,
            "directionTrend": self.direction_trend,
            "directionSpread": self.direction_spread,
            "computedAt": isoformat(self.computed_at),
        }


def _round(value: Optional[float], digits: int) -> Optional[float]:
    return round(value, digits) if value is not None else None


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def classify_change(percent_change: float, thresholds: TrendThresholds) -> TrendClass:
    magnitude = abs(percent_change)
    if magnitude < thresholds.stable_pct:
        return "stable"
    if percent_change > 0:
        return "increasing_strong" if magnitude >= thresholds.strong_pct else "increasing"
    return "decreasing_strong" if magnitude >= thresholds.strong_pct else "decreasing"


def contiguous_tail(
    samples: Sequence[Tuple[datetime, float]], max_gap: timedelta
) -> List[Tuple[datetime, float]]:
    """The newest run of samples with no hole wider than ``max_gap``."""
    start = len(samples) - 1
    while start > 0 and samples[start][0] - samples[start - 1][0] <= max_gap:
        start -= 1
    return list(samples[start:])


def compute_trend(
    samples: Sequence[Tuple[datetime, float]],
    *,
    thresholds: TrendThresholds = TrendThresholds(),
    now: Optional[datetime] = None,
) -> TrendWindow:
    """Compare the mean speed of the most recent window with the one before it.

    ``samples`` are ``(timestamp, speed)`` pairs in chronological order. Only the
    newest contiguous run counts, so readings from before the overnight pause
    never fill a window; each window needs ``min_window_samples`` readings.
    """
    computed_at = now or utc_now()
    samples = contiguous_tail(samples, thresholds.max_gap) if samples else []
    if len(samples) < 2:
        return TrendWindow(classification="insufficient_data", computed_at=computed_at)

    anchor = samples[-1][0]
    span = anchor - samples[0][0]
    window = thresholds.long_window if span >= 2 * thresholds.long_window else thresholds.short_window
    window_minutes = int(window.total_seconds() // 60)

    if span < 2 * window:
        return TrendWindow(
            classification="insufficient_data",
            window_minutes=window_minutes,
            computed_at=computed_at,
        )

    current = [speed for ts, speed in samples if anchor - window < ts <= anchor]
    previous = [speed for ts, speed in samples if anchor - 2 * window < ts <= anchor - window]
    if min(len(current), len(previous)) < thresholds.min_window_samples:
        return TrendWindow(
            classification="insufficient_data",
            window_minutes=window_minutes,
            computed_at=computed_at,
        )

    current_avg = _mean(current)
    previous_avg = _mean(previous)
    if current_avg == previous_avg:
        return TrendWindow(
            classification="stable",
            current_avg=current_avg,
            previous_avg=previous_avg,
            window_minutes=window_minutes,
            computed_at=computed_at,
        )
    if previous_avg <= 0:
        return TrendWindow(
            classification="insufficient_data",
            current_avg=current_avg,
            previous_avg=previous_avg,
            window_minutes=window_minutes,
            computed_at=computed_at,
        )

    change = current_avg - previous_avg
    percent = change / previous_avg * 100.0
    return TrendWindow(
        classification=classify_change(percent, thresholds),
        current_avg=current_avg,
        previous_avg=previous_avg,
        absolute_change=change,
        percent_change=percent,
        window_minutes=window_minutes,
        computed_at=computed_at,
    )


def circular_mean(directions: Sequence[float]) -> Optional[float]:
    if not directions:
        return None
    sum_x = sum(math.cos(math.radians(d)) for d in directions)
    sum_y = sum(math.sin(math.radians(d)) for d in directions)
    if abs(sum_x) < 1e-9 and abs(sum_y) < 1e-9:
        return None
    angle = math.degrees(math.atan2(sum_y, sum_x))
    return angle % 360.0


def direction_stability(directions: Sequence[float]) -> Tuple[DirectionTrend, int]:
    """Circular spread of the most recent directions, in whole degrees."""
    recent = list(directions)[-DIRECTION_SAMPLES:]
    if len(recent) < DIRECTION_MIN_SAMPLES:
        return "insufficient_data", 0
    mean_sin = sum(math.sin(math.radians(d)) for d in recent) / len(recent)
    mean_cos = sum(math.cos(math.radians(d)) for d in recent) / len(recent)
    resultant = math.sqrt(mean_sin * mean_sin + mean_cos * mean_cos)
    spread = round(math.degrees(math.acos(min(resultant, 1.0))))
    if spread < DIRECTION_STABLE_SPREAD:
        return "stable", spread
    if spread < DIRECTION_VARIABLE_SPREAD:
        return "variable", spread
    return "changing", spread


__all__ = [
    "TrendThresholds",
    "TrendWindow",
    "circular_mean",
    "classify_change",
    "compute_trend",
    "contiguous_tail",
    "direction_stability",
]
