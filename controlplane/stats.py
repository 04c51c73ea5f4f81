"""
Adaptive Control Plane — Stat Aggregator

Bounded rolling windows with mean / standard deviation, and a rolling
least-squares regression over (x, y) pairs. Both evict their oldest
entry once full. Window moments are maintained incrementally; the
regression fits from one consistent copy taken under the lock.

Usage:
    window = RollingWindow(capacity=1000)
    window.add(512)
    stats = window.stats()        # WindowStats(count, mean, stddev)

    reg = RollingRegression(capacity=100)
    reg.add(8000, 1_450_000)
    fit = reg.fit(min_samples=5)  # raises InsufficientData / InvalidModel
    fit.predict_x(2_000_000)
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass

from controlplane.errors import InsufficientData, InvalidModel

# Below this a standard deviation is treated as zero.
STDDEV_EPSILON = 1e-9


@dataclass(frozen=True)
class WindowStats:
    count: int
    mean: float
    stddev: float


class RollingWindow:
    """
    Fixed-capacity FIFO of floats with running moments.

    Sums are kept relative to a shift (the first value after the window
    was empty) and adjusted on append and eviction, so stats() is O(1).
    They are recomputed from the stored values once every ``capacity``
    evictions to bound floating-point drift.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._values: deque[float] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._shift = 0.0
        self._sum = 0.0
        self._sum_sq = 0.0
        self._evictions = 0

    def add(self, value: float) -> None:
        value = float(value)
        with self._lock:
            if not self._values:
                self._shift = value
            if len(self._values) == self.capacity:
                old = self._values[0] - self._shift
                self._sum -= old
                self._sum_sq -= old * old
                self._evictions += 1
            self._values.append(value)
            d = value - self._shift
            self._sum += d
            self._sum_sq += d * d
            if self._evictions >= self.capacity:
                self._resum()

    def _resum(self) -> None:
        self._shift = self._values[0]
        self._sum = 0.0
        self._sum_sq = 0.0
        for v in self._values:
            d = v - self._shift
            self._sum += d
            self._sum_sq += d * d
        self._evictions = 0

    def values(self) -> list[float]:
        with self._lock:
            return list(self._values)

    def last(self, n: int) -> list[float]:
        with self._lock:
            if n >= len(self._values):
                return list(self._values)
            return list(self._values)[-n:]

    def __len__(self) -> int:
        return len(self._values)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
            self._shift = self._sum = self._sum_sq = 0.0
            self._evictions = 0

    def stats(self) -> WindowStats:
        with self._lock:
            n = len(self._values)
            total, total_sq, shift = self._sum, self._sum_sq, self._shift
        if n == 0:
            return WindowStats(0, 0.0, 0.0)
        mean = shift + total / n
        if n == 1:
            return WindowStats(1, mean, 0.0)
        variance = max(0.0, (total_sq - total * total / n) / (n - 1))
        return WindowStats(n, mean, math.sqrt(variance))

    def mean(self) -> float:
        return self.stats().mean

    def require(self, min_samples: int) -> WindowStats:
        """stats(), or InsufficientData when the window is too small."""
        stats = self.stats()
        if stats.count < min_samples:
            raise InsufficientData(
                f"need {min_samples} samples, have {stats.count}"
            )
        return stats


@dataclass(frozen=True)
class RegressionFit:
    slope: float
    intercept: float
    r_squared: float
    n: int

    def predict_y(self, x: float) -> float:
        return self.intercept + self.slope * x

    def predict_x(self, y: float) -> float:
        """Solve y = intercept + slope * x for x."""
        if self.slope == 0:
            raise InvalidModel("zero slope cannot be inverted")
        return (y - self.intercept) / self.slope


class RollingRegression:
    """Ordinary least squares over the most recent ``capacity`` points."""

    def __init__(self, capacity: int):
        if capacity < 2:
            raise ValueError(f"capacity must be >= 2, got {capacity}")
        self.capacity = capacity
        self._points: deque[tuple[float, float]] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def add(self, x: float, y: float) -> None:
        with self._lock:
            self._points.append((float(x), float(y)))

    def __len__(self) -> int:
        return len(self._points)

    def clear(self) -> None:
        with self._lock:
            self._points.clear()

    def fit(self, min_samples: int = 2) -> RegressionFit:
        with self._lock:
            points = list(self._points)
        n = len(points)
        if n < max(2, min_samples):
            raise InsufficientData(f"need {max(2, min_samples)} points, have {n}")

        mean_x = sum(p[0] for p in points) / n
        mean_y = sum(p[1] for p in points) / n
        sxx = sum((x - mean_x) ** 2 for x, _ in points)
        syy = sum((y - mean_y) ** 2 for _, y in points)
        sxy = sum((x - mean_x) * (y - mean_y) for x, y in points)

        if sxx <= 0:
            raise InvalidModel("all x values identical; slope undefined")

        slope = sxy / sxx
        intercept = mean_y - slope * mean_x
        r_squared = (sxy * sxy) / (sxx * syy) if syy > 0 else 0.0
        return RegressionFit(slope, intercept, min(1.0, r_squared), n)


def deviation_score(deviation: float, stddev: float, threshold: float) -> float:
    """
    Map a one-sided deviation from the mean to a score in [0, 1].

    score = min(1, (deviation / stddev) / threshold). Non-positive
    deviations score 0. With a zero stddev any positive deviation is
    maximally surprising and scores 1.
    """
    if not math.isfinite(deviation) or deviation <= STDDEV_EPSILON:
        return 0.0
    if stddev <= STDDEV_EPSILON:
        return 1.0
    if threshold <= 0:
        return 1.0
    return max(0.0, min(1.0, (deviation / stddev) / threshold))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
