"""
Adaptive Control Plane — Transaction Scoring & Ordering

Scores pending transactions and returns them in execution order. Each
transaction gets five feature scores in [0, 1]:

  size            smaller transactions first
  sender_hotness  blend of sender recency and sender frequency
  fee             log-scaled fee price
  age             fairness boost for transactions that have waited
  dependencies    fewer dependencies first

The weighted sum uses the Active "ordering" weights from the lifecycle
manager. After sorting, transactions from hot senders are pulled
together at the position of the sender's best-ranked transaction; every
other transaction keeps its relative position.

Every `learning_interval` batches the engine compares reported batch
throughput with the previous checkpoint. A gain above the improvement
threshold moves a little weight from size to sender_hotness, within
fixed bounds, and promotes the result.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from controlplane.config import DEFAULT_ORDERING_WEIGHTS, OrderingConfig
from controlplane.lifecycle import ModelLifecycleManager
from controlplane.stats import clamp
from controlplane.types import (
    FeatureWeights, ScoredTransaction, Transaction, TransactionFeatures,
)
from engine.metrics import RunningStats, ShardedCounter

log = logging.getLogger("control_plane.ordering")

MODEL_NAME = "ordering"


def estimate_complexity(tx: Transaction) -> int:
    """Rough execution cost on a 1-100 scale."""
    complexity = 1 + tx.size // 256 + tx.gas_limit // 100_000 + len(tx.dependencies)
    if tx.kind != "transfer":
        complexity += 10
    return int(clamp(complexity, 1, 100))


def derive_features(tx: Transaction) -> TransactionFeatures:
    return TransactionFeatures(
        tx_id=tx.tx_id,
        sender=tx.sender,
        size=tx.size,
        fee_price=tx.fee_price,
        complexity=estimate_complexity(tx),
        dependency_count=len(tx.dependencies),
        created_at=tx.timestamp,
    )


@dataclass
class _SenderActivity:
    count: int
    last_seen: float


class _LRU:
    """Bounded mapping that evicts the least recently used key."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._data: OrderedDict = OrderedDict()

    def get(self, key):
        value = self._data.get(key)
        if value is not None:
            self._data.move_to_end(key)
        return value

    def put(self, key, value) -> None:
        self._data[key] = value
        self._data.move_to_end(key)
        if len(self._data) > self.capacity:
            self._data.popitem(last=False)

    def __len__(self) -> int:
        return len(self._data)

    def clear(self) -> None:
        self._data.clear()


class TransactionOrderingEngine:

    def __init__(
        self,
        manager: ModelLifecycleManager,
        config: OrderingConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or OrderingConfig()
        self._manager = manager
        self._clock = clock
        self._lock = threading.Lock()
        self._features = _LRU(self.config.feature_cache_size)
        self._senders = _LRU(self.config.sender_cache_size)

        self._batches = 0
        self._latest_throughput: float | None = None
        self._checkpoint_throughput: float | None = None
        self._weight_updates = 0

        self._scored = ShardedCounter()
        self._cache_hits = ShardedCounter()
        self._cache_misses = ShardedCounter()
        self._errors = ShardedCounter()
        self._latency_ms = RunningStats()

        if MODEL_NAME not in manager.models():
            names = list(DEFAULT_ORDERING_WEIGHTS)
            manager.register_model(
                MODEL_NAME,
                FeatureWeights.create({n: self.config.weights[n] for n in names}),
            )

    def weights(self) -> FeatureWeights:
        return self._manager.active_weights(MODEL_NAME)

    # ── Features ────────────────────────────────────────────────────

    def _features_for(self, pending: Sequence[Transaction]) -> list[TransactionFeatures]:
        """Cached features; first sighting of a tx also counts toward its sender."""
        result = []
        with self._lock:
            for tx in pending:
                features = self._features.get(tx.tx_id)
                if features is not None:
                    self._cache_hits.increment()
                    result.append(features)
                    continue
                self._cache_misses.increment()
                features = derive_features(tx)
                self._features.put(tx.tx_id, features)
                activity = self._senders.get(tx.sender)
                if activity is None:
                    self._senders.put(tx.sender, _SenderActivity(1, tx.timestamp))
                else:
                    activity.count += 1
                    activity.last_seen = max(activity.last_seen, tx.timestamp)
                result.append(features)
        return result

    def _sender_snapshot(self, senders: set[str]) -> dict[str, tuple[int, float]]:
        with self._lock:
            snapshot = {}
            for sender in senders:
                activity = self._senders.get(sender)
                if activity is not None:
                    snapshot[sender] = (activity.count, activity.last_seen)
            return snapshot

    def _components(
        self, f: TransactionFeatures, activity: tuple[int, float] | None, now: float,
    ) -> dict[str, float]:
        cfg = self.config
        count, last_seen = activity if activity else (0, now)
        recency = max(0.0, 1.0 - min(1.0, max(0.0, now - last_seen) / cfg.recency_window))
        frequency = min(1.0, count / cfg.frequency_scale)
        return {
            "size": max(0.0, 1.0 - f.size / cfg.size_scale_bytes),
            "sender_hotness": cfg.recency_blend * recency + (1 - cfg.recency_blend) * frequency,
            "fee": clamp(math.log10(max(1.0, f.fee_price)) / cfg.fee_log_scale, 0.0, 1.0),
            "age": clamp((now - f.created_at) / cfg.fairness_window, 0.0, 1.0),
            "dependencies": max(0.0, 1.0 - f.dependency_count / cfg.dependency_scale),
        }

    # ── Ordering ────────────────────────────────────────────────────

    def rank(
        self, pending: Sequence[Transaction], now: float | None = None,
    ) -> list[ScoredTransaction]:
        """Score and order ``pending``; raises on internal errors."""
        now = self._clock() if now is None else now
        features = self._features_for(pending)
        activity = self._sender_snapshot({f.sender for f in features})
        weights = self.weights()

        scored = []
        for tx, f in zip(pending, features):
            components = self._components(f, activity.get(f.sender), now)
            score = sum(w * components[name] for name, w in zip(weights.names, weights.values))
            scored.append((ScoredTransaction(tx, score, components), f.complexity))
        scored.sort(key=lambda item: (-item[0].score, item[1]))
        ranked = [item[0] for item in scored]
        self._scored.increment(len(ranked))

        if self.config.grouping_enabled:
            hot = {
                sender for sender, (count, _) in activity.items()
                if count > self.config.hot_sender_threshold
            }
            if hot:
                ranked = self._group_hot_senders(ranked, hot)
        return ranked

    @staticmethod
    def _group_hot_senders(
        ranked: list[ScoredTransaction], hot: set[str],
    ) -> list[ScoredTransaction]:
        groups: dict[str, list[ScoredTransaction]] = {}
        for item in ranked:
            sender = item.transaction.sender
            if sender in hot:
                groups.setdefault(sender, []).append(item)
        result = []
        emitted = set()
        for item in ranked:
            sender = item.transaction.sender
            if sender not in hot:
                result.append(item)
            elif sender not in emitted:
                emitted.add(sender)
                result.extend(groups[sender])
        return result

    def score_and_order(
        self, pending: Sequence[Transaction], now: float | None = None,
    ) -> list[Transaction]:
        """Execution order for ``pending``. Never raises."""
        if not self.config.enabled or not pending:
            return list(pending)
        started = time.perf_counter()
        try:
            ordered = [item.transaction for item in self.rank(pending, now)]
        except Exception as e:
            self._errors.increment()
            log.warning("Ordering failed for batch of %d; keeping arrival order: %s",
                        len(pending), e)
            return list(pending)
        self._latency_ms.observe((time.perf_counter() - started) * 1000.0)
        self._end_batch()
        return ordered

    # ── Weight adaptation ───────────────────────────────────────────

    def record_batch_throughput(self, throughput: float) -> None:
        """Report measured throughput for the most recent batch."""
        with self._lock:
            self._latest_throughput = throughput

    def _end_batch(self) -> None:
        with self._lock:
            self._batches += 1
            if self._batches % self.config.learning_interval != 0:
                return
            current = self._latest_throughput
            baseline = self._checkpoint_throughput
            self._checkpoint_throughput = current
        if current is None or baseline is None or baseline <= 0:
            return
        gain = (current - baseline) / baseline
        if gain > self.config.improvement_threshold:
            try:
                self._shift_toward_hotness(gain)
            except Exception as e:
                self._errors.increment()
                log.warning("Ordering weight adaptation failed: %s", e)

    def _shift_toward_hotness(self, gain: float) -> None:
        cfg = self.config
        weights = self.weights()
        values = weights.as_dict()
        delta = min(
            cfg.adjustment_step * gain,
            cfg.max_hotness_weight - values["sender_hotness"],
            values["size"] - cfg.min_size_weight,
        )
        if delta <= 0:
            log.debug("Ordering weights at bounds; no shift applied")
            return
        values["sender_hotness"] += delta
        values["size"] -= delta
        self._manager.promote(
            MODEL_NAME,
            weights.with_values(values[n] for n in weights.names),
            reason=f"batch throughput gain {gain:.2%}",
        )
        with self._lock:
            self._weight_updates += 1
        log.info(
            "Ordering weights shifted by %.5f toward sender_hotness (gain %.2f%%)",
            delta, gain * 100,
        )

    # ── Statistics ──────────────────────────────────────────────────

    def statistics(self) -> dict[str, Any]:
        with self._lock:
            batches = self._batches
            senders = len(self._senders)
            cached = len(self._features)
            updates = self._weight_updates
        return {
            "enabled": self.config.enabled,
            "transactions_scored": self._scored.value,
            "batches_processed": batches,
            "senders_tracked": senders,
            "feature_cache_size": cached,
            "cache_hits": self._cache_hits.value,
            "cache_misses": self._cache_misses.value,
            "errors": self._errors.value,
            "weight_updates": updates,
            "ordering_latency_ms": self._latency_ms.snapshot(),
            "weights": {k: round(v, 6) for k, v in self.weights().as_dict().items()},
        }
