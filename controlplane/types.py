"""
Adaptive Control Plane — Type Definitions

Data structures shared by the optimizers: telemetry samples, feature
vectors, weight snapshots, model versions, experiences and the result
objects returned by every decision call.

Weight vectors and model versions are frozen. Components publish a new
object instead of mutating one in place, so a reader holding a reference
always sees a complete, consistent value.
"""

from __future__ import annotations

import enum
import math
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from controlplane.errors import FailureMode

WEIGHT_SUM_TOLERANCE = 1e-6
MIN_WEIGHT = 1e-4


# ─── Telemetry ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class PerformanceSample:
    """One throughput/latency observation for a batch size."""
    throughput: float
    latency: float
    batch_size: int
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class NodeMetric:
    """One consensus-node performance observation."""
    latency: float
    throughput: float
    available: bool = True
    timestamp: float = field(default_factory=time.time)


# ─── Weights & Models ───────────────────────────────────────────────

@dataclass(frozen=True)
class FeatureWeights:
    """
    Immutable named weight vector.

    Instances built through create() or renormalized() always sum to 1.0
    and hold no weight below MIN_WEIGHT.
    """
    names: tuple[str, ...]
    values: tuple[float, ...]

    def __post_init__(self):
        if len(self.names) != len(self.values):
            raise ValueError(
                f"weight names/values length mismatch: {len(self.names)} != {len(self.values)}"
            )
        if not self.names:
            raise ValueError("weight vector must not be empty")

    @staticmethod
    def create(weights: Mapping[str, float]) -> FeatureWeights:
        return FeatureWeights(
            names=tuple(weights.keys()),
            values=tuple(float(v) for v in weights.values()),
        ).renormalized()

    @staticmethod
    def uniform(names: Sequence[str]) -> FeatureWeights:
        share = 1.0 / len(names)
        return FeatureWeights(tuple(names), tuple(share for _ in names))

    def renormalized(self, floor: float = MIN_WEIGHT) -> FeatureWeights:
        """Floor non-finite or tiny weights, then scale to sum 1.0."""
        floored = [
            v if math.isfinite(v) and v > floor else floor
            for v in self.values
        ]
        total = sum(floored)
        return FeatureWeights(self.names, tuple(v / total for v in floored))

    def with_values(self, values: Iterable[float]) -> FeatureWeights:
        return FeatureWeights(self.names, tuple(values)).renormalized()

    def get(self, name: str) -> float:
        return self.values[self.names.index(name)]

    def dot(self, features: Sequence[float]) -> float:
        return sum(w * f for w, f in zip(self.values, features))

    @property
    def total(self) -> float:
        return sum(self.values)

    def is_normalized(self) -> bool:
        return abs(self.total - 1.0) <= WEIGHT_SUM_TOLERANCE

    def as_dict(self) -> dict[str, float]:
        return dict(zip(self.names, self.values))


@dataclass(frozen=True)
class ModelVersion:
    """
    A weight snapshot together with the accuracy it was accepted at.

    ``accuracy`` is the A/B score that admitted it. ``baseline_accuracy``
    is measured over the whole cycle sample and is what later cycles
    compare against to detect a regression; None when never measured.
    """
    weights: FeatureWeights
    accuracy: float
    version: int = 1
    reason: str = "initial"
    created_at: float = field(default_factory=time.time)
    baseline_accuracy: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "accuracy": round(self.accuracy, 4),
            "baseline_accuracy": (
                None if self.baseline_accuracy is None else round(self.baseline_accuracy, 4)
            ),
            "reason": self.reason,
            "created_at": self.created_at,
            "weights": {k: round(v, 6) for k, v in self.weights.as_dict().items()},
        }


# ─── Assignment ─────────────────────────────────────────────────────

ASSIGNMENT_FEATURES = ("load", "latency", "capacity", "history")


class TargetKind(str, enum.Enum):
    SHARD = "shard"
    VALIDATOR = "validator"


@dataclass(frozen=True)
class AssignmentFeatures:
    """
    Fixed-shape feature vector for an assignment decision. Every field
    is a headroom in [0, 1] where higher is better.
    """
    load_headroom: float
    latency_headroom: float
    capacity: float
    reliability: float

    def as_vector(self) -> tuple[float, float, float, float]:
        return (self.load_headroom, self.latency_headroom, self.capacity, self.reliability)


@dataclass(frozen=True)
class Outcome:
    """What actually happened after an assignment was executed."""
    latency: float
    load: float
    success: bool


@dataclass(frozen=True)
class Experience:
    """One (decision, outcome) pair kept in the replay buffer."""
    predicted_target: str
    features: AssignmentFeatures
    outcome: Outcome
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Assignment:
    """Result of LoadBalancer.assign()."""
    target_id: str | None
    confidence: float
    features: AssignmentFeatures | None = None
    reason: str = ""


# ─── Transactions & Ordering ────────────────────────────────────────

@dataclass(frozen=True)
class Transaction:
    """Transaction metadata supplied by the processing engine."""
    tx_id: str
    sender: str
    size: int = 0
    fee_price: float = 0.0
    dependencies: tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)
    value: float = 0.0
    gas_limit: int = 0
    kind: str = "transfer"
    required_capability: str | None = None


@dataclass(frozen=True)
class TransactionFeatures:
    """Per-transaction features that do not change once derived."""
    tx_id: str
    sender: str
    size: int
    fee_price: float
    complexity: int
    dependency_count: int
    created_at: float


@dataclass(frozen=True)
class ScoredTransaction:
    transaction: Transaction
    score: float
    components: dict[str, float] = field(default_factory=dict)


# ─── Anomalies ──────────────────────────────────────────────────────

class AnomalyType(str, enum.Enum):
    NONE = "none"
    TRANSACTION_PATTERN = "transaction_pattern"
    PERFORMANCE_DEGRADATION = "performance_degradation"
    SECURITY_THREAT = "security_threat"


@dataclass
class AnomalyReport:
    score: float
    anomalous: bool
    anomaly_type: AnomalyType = AnomalyType.NONE
    reason: str = ""
    components: dict[str, float] = field(default_factory=dict)

    @staticmethod
    def clear(reason: str = "") -> AnomalyReport:
        return AnomalyReport(score=0.0, anomalous=False, reason=reason)


# ─── Batch Sizing ───────────────────────────────────────────────────

@dataclass
class BatchDecision:
    new_batch: int
    optimized: bool
    reason: str
    old_batch: int = 0
    change_pct: float = 0.0


# ─── Consensus ──────────────────────────────────────────────────────

@dataclass
class LeaderPrediction:
    leader_id: str | None
    confidence: float
    scores: dict[str, float] = field(default_factory=dict)


class TimeoutDirection(str, enum.Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    NONE = "none"


@dataclass
class TimeoutRecommendation:
    recommended_ms: int
    direction: TimeoutDirection
    reason: str = ""


@dataclass
class PartitionReport:
    detected: bool
    unreachable_nodes: list[str] = field(default_factory=list)
    reason: str = ""


# ─── Model Lifecycle ────────────────────────────────────────────────

class CycleOutcome(str, enum.Enum):
    PROMOTED = "promoted"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass
class CycleReport:
    model: str
    outcome: CycleOutcome
    reason: str = ""
    candidate_accuracy: float | None = None
    active_version: int = 0
    learning_rate: float = 0.0
    experiences: int = 0
    ab_samples: int = 0
    failure_mode: FailureMode | None = None
