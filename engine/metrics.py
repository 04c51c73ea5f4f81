"""
Adaptive Control Plane — In-process Metrics

Counters and running statistics that hot-path callers update from many
threads at once. Nothing here exports metrics anywhere; components read
them back through their own statistics() snapshots.

ShardedCounter spreads increments over a fixed set of shards chosen by
thread id, so concurrent writers rarely contend on the same lock. Reads
sum every shard and are therefore slightly more expensive than writes.

Usage:
    scored = ShardedCounter()
    scored.increment(len(batch))
    scored.value        # -> total across shards
"""

from __future__ import annotations

import math
import threading
from collections import deque
from typing import Any


class _Shard:
    __slots__ = ("lock", "value")

    def __init__(self):
        self.lock = threading.Lock()
        self.value = 0


class ShardedCounter:
    """Monotonic counter with per-thread shards."""

    def __init__(self, shards: int = 8):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards = [_Shard() for _ in range(shards)]

    def increment(self, amount: int = 1) -> None:
        shard = self._shards[threading.get_ident() % len(self._shards)]
        with shard.lock:
            shard.value += amount

    @property
    def value(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += shard.value
        return total

    def reset(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.value = 0


class RunningStats:
    """
    Thread-safe count/mean/max over all observations, plus a bounded
    window of recent values for percentiles.
    """

    def __init__(self, window: int = 1000):
        self._lock = threading.Lock()
        self._recent: deque[float] = deque(maxlen=window)
        self._count = 0
        self._total = 0.0
        self._max = 0.0

    def observe(self, value: float) -> None:
        with self._lock:
            self._recent.append(value)
            self._count += 1
            self._total += value
            if self._count == 1 or value > self._max:
                self._max = value

    def percentile(self, pct: float) -> float:
        """Nearest-rank percentile over the recent window."""
        with self._lock:
            values = sorted(self._recent)
        if not values:
            return 0.0
        rank = max(1, math.ceil(pct / 100.0 * len(values)))
        return values[min(rank, len(values)) - 1]

    def reset(self) -> None:
        with self._lock:
            self._recent.clear()
            self._count = 0
            self._total = 0.0
            self._max = 0.0

    def snapshot(self) -> dict[str, Any]:
        p99 = self.percentile(99)
        with self._lock:
            return {
                "count": self._count,
                "mean": round(self._total / self._count, 4) if self._count else 0.0,
                "max": round(self._max, 4),
                "p99": round(p99, 4),
            }
