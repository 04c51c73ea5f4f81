"""
Adaptive Control Plane — Experience Replay Buffer

Bounded FIFO of Experience records. Feedback callers append from any
thread without blocking on the trainer; once the buffer is full each
append evicts the oldest experience. The trainer reads copies of the
buffer and never removes entries.
"""

from __future__ import annotations

import random
import threading
from collections import deque
from typing import Any

from controlplane.types import Experience


class ExperienceReplayBuffer:

    def __init__(self, capacity: int = 10_000):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._items: deque[Experience] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._appended = 0

    def append(self, experience: Experience) -> None:
        with self._lock:
            self._items.append(experience)
            self._appended += 1

    def recent(self, n: int) -> list[Experience]:
        """The ``n`` newest experiences, oldest first."""
        with self._lock:
            if n >= len(self._items):
                return list(self._items)
            return list(self._items)[-n:]

    def sample(self, n: int, rng: random.Random | None = None) -> list[Experience]:
        """Uniform sample without replacement."""
        with self._lock:
            items = list(self._items)
        if n >= len(items):
            return items
        return (rng or random).sample(items, n)

    def __len__(self) -> int:
        return len(self._items)

    @property
    def evicted(self) -> int:
        with self._lock:
            return self._appended - len(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self._appended = 0

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._items),
                "capacity": self.capacity,
                "appended": self._appended,
                "evicted": self._appended - len(self._items),
            }
