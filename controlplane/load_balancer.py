"""
Adaptive Control Plane — Shard/Validator Load Balancer

Assigns each transaction to a shard or validator by scoring every
eligible target with the Active "assignment" weights:

    score = w_load * (1 - load)
          + w_latency * (1 - latency / latency_scale)
          + w_capacity * capacity
          + w_history * (1 - failure_rate)

The highest score wins unless that target is overloaded, in which case
the least-loaded non-overloaded target is used, or a random one when
every target is overloaded.

Outcome feedback lands in the experience replay buffer. The lifecycle
manager retrains the weights from it through AssignmentTrainer, which
applies the reward-based momentum update:

    w_i <- momentum * w_i + (1 - momentum) * sum(reward * f_i * lr) / n

followed by renormalization.
"""

from __future__ import annotations

import logging
import random
import threading
import time
import zlib
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from controlplane.config import LoadBalancerConfig
from controlplane.errors import InsufficientData
from controlplane.lifecycle import ModelLifecycleManager
from controlplane.stats import clamp
from controlplane.types import (
    ASSIGNMENT_FEATURES, Assignment, AssignmentFeatures, CycleReport,
    Experience, FeatureWeights, Outcome, TargetKind, Transaction,
)
from engine.metrics import ShardedCounter

log = logging.getLogger("control_plane.load_balancer")

MODEL_NAME = "assignment"


# ═══════════════════════════════════════════════════════════════════
# Targets
# ═══════════════════════════════════════════════════════════════════

@dataclass
class TargetMetrics:
    """Live telemetry for one shard or validator."""
    target_id: str
    kind: TargetKind = TargetKind.SHARD
    capacity: float = 1.0
    capabilities: frozenset[str] = frozenset()
    load: float = 0.0
    avg_latency: float = 0.0      # ms, EWMA
    failure_rate: float = 0.0     # EWMA
    assignments: int = 0
    hot: bool = False
    updated_at: float = field(default_factory=time.time)

    def features(self, latency_scale: float) -> AssignmentFeatures:
        return AssignmentFeatures(
            load_headroom=clamp(1.0 - self.load, 0.0, 1.0),
            latency_headroom=clamp(1.0 - self.avg_latency / latency_scale, 0.0, 1.0),
            capacity=clamp(self.capacity, 0.0, 1.0),
            reliability=clamp(1.0 - self.failure_rate, 0.0, 1.0),
        )


@dataclass(frozen=True)
class _Candidate:
    target_id: str
    features: AssignmentFeatures
    load: float
    capacity: float
    failure_rate: float


# ═══════════════════════════════════════════════════════════════════
# Trainer
# ═══════════════════════════════════════════════════════════════════

class AssignmentTrainer:
    """
    Reward-based trainer for the assignment weights.

    A decision is labelled good when it succeeded without pushing the
    target over the load threshold; the model predicts good when the
    weighted feature score reaches ``decision_threshold``.
    """

    def __init__(
        self,
        config: LoadBalancerConfig,
        accuracy_fn: Callable[[], float] | None = None,
    ):
        self.config = config
        self._accuracy_fn = accuracy_fn

    def label(self, experience: Experience) -> bool:
        outcome = experience.outcome
        return outcome.success and outcome.load < self.config.load_threshold

    def predict(self, weights: FeatureWeights, experience: Experience) -> bool:
        return weights.dot(experience.features.as_vector()) >= self.config.decision_threshold

    def reward(self, outcome: Outcome) -> float:
        cfg = self.config
        reward = 1.0 if outcome.success else -1.0
        if outcome.latency < cfg.good_latency_ms:
            reward += 0.5
        elif outcome.latency > cfg.bad_latency_ms:
            reward -= 0.5
        if outcome.load < cfg.load_threshold:
            reward += 0.5
        else:
            reward -= 0.5 * (outcome.load - cfg.load_threshold)
        return reward

    def effective_learning_rate(self, base: float) -> float:
        """Speed up while running accuracy is poor, slow down once it is high."""
        if self._accuracy_fn is None:
            return base
        cfg = self.config
        accuracy = self._accuracy_fn()
        if accuracy < cfg.accuracy_low:
            return min(base * cfg.lr_boost, cfg.max_learning_rate)
        if accuracy > cfg.accuracy_high:
            return max(base * cfg.lr_damp, cfg.min_learning_rate)
        return base

    def train(
        self,
        weights: FeatureWeights,
        experiences: Sequence[Experience],
        learning_rate: float,
    ) -> FeatureWeights:
        batch = list(experiences)[-self.config.sample_size:]
        if not batch:
            raise InsufficientData("no experiences to train on")
        n = len(batch)
        gradient = [0.0] * len(weights.values)
        for experience in batch:
            r = self.reward(experience.outcome)
            for i, f in enumerate(experience.features.as_vector()):
                gradient[i] += r * f * learning_rate
        momentum = self.config.momentum
        return weights.with_values(
            momentum * w + (1.0 - momentum) * g / n
            for w, g in zip(weights.values, gradient)
        )


# ═══════════════════════════════════════════════════════════════════
# Load Balancer
# ═══════════════════════════════════════════════════════════════════

class LoadBalancer:
    """
    Weighted-feature target selection with online feedback.

    assign() never raises. When disabled, or if scoring fails, targets
    are chosen by a stable hash of the transaction id.
    """

    def __init__(
        self,
        manager: ModelLifecycleManager,
        config: LoadBalancerConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or LoadBalancerConfig()
        self._manager = manager
        self._rng = rng or random.Random(self.config.seed)
        self._clock = clock
        self._lock = threading.Lock()
        self._targets: dict[str, TargetMetrics] = {}

        self._assignments = ShardedCounter()
        self._fallbacks = ShardedCounter()
        self._errors = ShardedCounter()
        self._feedback_total = ShardedCounter()
        self._feedback_correct = ShardedCounter()
        self._rebalances = 0

        self.trainer = AssignmentTrainer(self.config, self.prediction_accuracy)
        if MODEL_NAME not in manager.models():
            manager.register_model(
                MODEL_NAME,
                FeatureWeights.uniform(ASSIGNMENT_FEATURES),
                trainer=self.trainer,
                accuracy=self.config.initial_accuracy,
                learning_rate=self.config.learning_rate,
            )

    # ── Target registry ─────────────────────────────────────────────

    def register_target(
        self,
        target_id: str,
        kind: TargetKind = TargetKind.SHARD,
        capacity: float = 1.0,
        capabilities: Sequence[str] = (),
    ) -> None:
        with self._lock:
            self._targets[target_id] = TargetMetrics(
                target_id=target_id,
                kind=kind,
                capacity=capacity,
                capabilities=frozenset(capabilities),
                updated_at=self._clock(),
            )
        log.info("Registered %s target %s (capacity=%.2f)", kind.value, target_id, capacity)

    def remove_target(self, target_id: str) -> bool:
        with self._lock:
            return self._targets.pop(target_id, None) is not None

    def update_target(
        self,
        target_id: str,
        load: float | None = None,
        latency: float | None = None,
        success: bool | None = None,
        capacity: float | None = None,
    ) -> None:
        """Fold a telemetry reading into the target's metrics."""
        alpha = self.config.ewma_alpha
        with self._lock:
            target = self._targets.get(target_id)
            if target is None:
                log.debug("Telemetry for unknown target %s ignored", target_id)
                return
            if load is not None:
                target.load = clamp(load, 0.0, 1.0)
            if latency is not None:
                if target.avg_latency:
                    target.avg_latency += alpha * (latency - target.avg_latency)
                else:
                    target.avg_latency = latency
            if success is not None:
                target.failure_rate += alpha * ((0.0 if success else 1.0) - target.failure_rate)
            if capacity is not None:
                target.capacity = clamp(capacity, 0.0, 1.0)
            target.updated_at = self._clock()

    def target(self, target_id: str) -> TargetMetrics | None:
        with self._lock:
            return self._targets.get(target_id)

    # ── Hot path ────────────────────────────────────────────────────

    def assign(self, tx: Transaction) -> Assignment:
        capability = tx.required_capability
        if not self.config.enabled:
            return self._hash_assign(tx.tx_id, capability, "load balancer disabled")
        try:
            return self._score_assign(tx, capability)
        except Exception as e:
            self._errors.increment()
            log.warning("Assignment scoring failed for %s: %s", tx.tx_id, e)
            return self._hash_assign(tx.tx_id, capability, "scoring error")

    def _eligible(self, capability: str | None) -> list[_Candidate]:
        scale = self.config.latency_scale_ms
        with self._lock:
            return [
                _Candidate(t.target_id, t.features(scale), t.load, t.capacity, t.failure_rate)
                for t in self._targets.values()
                if capability is None or capability in t.capabilities
            ]

    def _score_assign(self, tx: Transaction, capability: str | None) -> Assignment:
        candidates = self._eligible(capability)
        if not candidates:
            return Assignment(None, 0.0, reason="no eligible targets")

        weights = self._manager.active_weights(MODEL_NAME)
        best = max(candidates, key=lambda c: weights.dot(c.features.as_vector()))
        threshold = self.config.load_threshold
        reason = "highest score"
        if best.load > threshold:
            available = [c for c in candidates if c.load <= threshold]
            if available:
                best = min(available, key=lambda c: c.load)
                reason = "best target overloaded; least-loaded target chosen"
            else:
                best = self._rng.choice(candidates)
                reason = "all targets overloaded; random target chosen"
            self._fallbacks.increment()

        self._record_assignment(best.target_id)
        confidence = (
            0.4 * (1.0 - best.load)
            + 0.3 * best.capacity
            + 0.3 * (1.0 - best.failure_rate)
        )
        return Assignment(
            best.target_id, clamp(confidence, 0.0, 1.0), best.features, reason,
        )

    def _hash_assign(self, tx_id: str, capability: str | None, reason: str) -> Assignment:
        with self._lock:
            ids = sorted(
                t.target_id for t in self._targets.values()
                if capability is None or capability in t.capabilities
            )
        if not ids:
            return Assignment(None, 0.0, reason="no eligible targets")
        target_id = ids[zlib.crc32(tx_id.encode("utf-8")) % len(ids)]
        self._record_assignment(target_id)
        return Assignment(target_id, 1.0, None, reason)

    def _record_assignment(self, target_id: str) -> None:
        self._assignments.increment()
        with self._lock:
            target = self._targets.get(target_id)
            if target is not None:
                target.assignments += 1

    # ── Feedback & training ─────────────────────────────────────────

    def record_feedback(
        self,
        predicted_target: str,
        features: AssignmentFeatures,
        actual_latency: float,
        actual_load: float,
        success: bool,
    ) -> None:
        outcome = Outcome(latency=actual_latency, load=actual_load, success=success)
        self._manager.buffer.append(Experience(
            predicted_target=predicted_target,
            features=features,
            outcome=outcome,
            timestamp=self._clock(),
        ))
        self._feedback_total.increment()
        if success and actual_load < self.config.load_threshold:
            self._feedback_correct.increment()
        self.update_target(
            predicted_target, load=actual_load, latency=actual_latency, success=success,
        )

    def prediction_accuracy(self) -> float:
        total = self._feedback_total.value
        if total == 0:
            return self.config.initial_accuracy
        return self._feedback_correct.value / total

    def effective_learning_rate(self) -> float:
        return self.trainer.effective_learning_rate(
            self._manager.learning_rate(MODEL_NAME)
        )

    def train(self) -> CycleReport:
        """Run one training cycle for the assignment weights now."""
        return self._manager.run_cycle(MODEL_NAME)

    def weights(self) -> FeatureWeights:
        return self._manager.active_weights(MODEL_NAME)

    # ── Rebalancing ─────────────────────────────────────────────────

    def rebalance(self) -> dict[str, Any]:
        """Mark overloaded targets hot and report the load spread."""
        threshold = self.config.load_threshold
        newly_hot, cooled = [], []
        with self._lock:
            for target in self._targets.values():
                hot = target.load > threshold
                if hot and not target.hot:
                    newly_hot.append(target.target_id)
                elif target.hot and not hot:
                    cooled.append(target.target_id)
                target.hot = hot
            loads = [t.load for t in self._targets.values()]
            hot_ids = sorted(t.target_id for t in self._targets.values() if t.hot)
            self._rebalances += 1
        if newly_hot:
            log.warning("Targets over load threshold %.2f: %s", threshold, newly_hot)
        if cooled:
            log.info("Targets back under load threshold: %s", cooled)
        return {
            "hot_targets": hot_ids,
            "newly_hot": newly_hot,
            "cooled": cooled,
            "load_spread": round(max(loads) - min(loads), 4) if loads else 0.0,
        }

    def statistics(self) -> dict[str, Any]:
        with self._lock:
            loads = [t.load for t in self._targets.values()]
            targets = {
                t.target_id: {
                    "kind": t.kind.value,
                    "load": round(t.load, 4),
                    "avg_latency_ms": round(t.avg_latency, 2),
                    "failure_rate": round(t.failure_rate, 4),
                    "assignments": t.assignments,
                    "hot": t.hot,
                }
                for t in self._targets.values()
            }
            rebalances = self._rebalances
        return {
            "enabled": self.config.enabled,
            "targets": len(targets),
            "hot_targets": sum(1 for t in targets.values() if t["hot"]),
            "avg_load": round(sum(loads) / len(loads), 4) if loads else 0.0,
            "max_load": round(max(loads), 4) if loads else 0.0,
            "min_load": round(min(loads), 4) if loads else 0.0,
            "total_assignments": self._assignments.value,
            "overload_fallbacks": self._fallbacks.value,
            "errors": self._errors.value,
            "feedback": self._feedback_total.value,
            "prediction_accuracy": round(self.prediction_accuracy(), 4),
            "effective_learning_rate": round(self.effective_learning_rate(), 6),
            "rebalances": rebalances,
            "weights": {k: round(v, 6) for k, v in self.weights().as_dict().items()},
            "per_target": targets,
        }
