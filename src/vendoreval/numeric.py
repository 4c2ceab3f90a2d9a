"""Numeric helpers shared by aggregation, anomaly and progress reporting."""

from __future__ import annotations

import math
import statistics
from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal


def round_half_up(value: float, places: int = 2) -> float:
    """Round half away from zero at the display boundary (2.675 -> 2.68)."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def mean(values: Sequence[float]) -> float:
    return math.fsum(values) / len(values)


def median(values: Sequence[float]) -> float:
    return float(statistics.median(values))


def population_variance(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    return float(statistics.pvariance(values))


def median_absolute_deviation(values: Sequence[float], center: float | None = None) -> float:
    """Median of |x - median| (unscaled)."""
    mid = median(values) if center is None else center
    return median([abs(v - mid) for v in values])


def mean_absolute_deviation(values: Sequence[float], center: float) -> float:
    return mean([abs(v - center) for v in values])


def is_finite_number(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
