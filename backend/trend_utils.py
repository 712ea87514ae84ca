"""
Trend Utilities
Ordinary least squares line fitting and trend classification, shared by drift
detection and drift reporting.
"""

from dataclasses import dataclass
from typing import Iterable, Tuple
import math

import numpy as np


class TrendDirection:
    """Trend labels"""
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


DEFAULT_TREND_THRESHOLD = 0.1


@dataclass(frozen=True)
class TrendFit:
    slope: float
    intercept: float

    def value_at(self, x: float) -> float:
        return self.slope * x + self.intercept


def _finite_or_zero(value: float) -> float:
    return float(value) if math.isfinite(value) else 0.0


def fit_linear_trend(points: Iterable[Tuple[float, float]]) -> TrendFit:
    """
    Fit y = slope * x + intercept by ordinary least squares.

    slope = (nΣxy - ΣxΣy) / (nΣx² - (Σx)²)
    intercept = (Σy - slope·Σx) / n

    Fewer than 2 points gives (0, 0). A degenerate x distribution (all x equal)
    makes the slope undefined; non-finite results are coerced to 0 rather than
    propagated.
    """
    data = np.asarray(list(points), dtype=float)
    if data.ndim != 2 or data.shape[0] < 2:
        return TrendFit(slope=0.0, intercept=0.0)

    x = data[:, 0]
    y = data[:, 1]
    n = float(len(data))

    sum_x = x.sum()
    sum_y = y.sum()
    sum_xy = (x * y).sum()
    sum_x2 = (x * x).sum()

    with np.errstate(divide="ignore", invalid="ignore"):
        slope = np.float64(n * sum_xy - sum_x * sum_y) / np.float64(n * sum_x2 - sum_x * sum_x)
        intercept = (sum_y - slope * sum_x) / n

    return TrendFit(slope=_finite_or_zero(slope), intercept=_finite_or_zero(intercept))


def classify_trend(slope: float, threshold: float = DEFAULT_TREND_THRESHOLD) -> str:
    """increasing above +threshold, decreasing below -threshold, else stable."""
    if slope > threshold:
        return TrendDirection.INCREASING
    if slope < -threshold:
        return TrendDirection.DECREASING
    return TrendDirection.STABLE
