"""
Adaptive Control Plane

In-process decision support for a high-throughput transaction engine:
batch sizing, shard/validator assignment, transaction ordering,
anomaly detection, online model lifecycle and consensus tuning.

Usage:
    from controlplane import ControlPlane

    cp = ControlPlane()
    cp.start()
"""

from controlplane.types import (
    AnomalyReport,
    AnomalyType,
    Assignment,
    AssignmentFeatures,
    BatchDecision,
    CycleOutcome,
    CycleReport,
    Experience,
    FeatureWeights,
    LeaderPrediction,
    ModelVersion,
    NodeMetric,
    Outcome,
    PartitionReport,
    PerformanceSample,
    TargetKind,
    TimeoutDirection,
    TimeoutRecommendation,
    Transaction,
)
from controlplane.config import ControlPlaneConfig
from controlplane.errors import FailureMode, InsufficientData, InvalidModel, TrainingFailure
from controlplane.runtime import ControlPlane

__all__ = [
    "ControlPlane",
    "ControlPlaneConfig",
    "AnomalyReport",
    "AnomalyType",
    "Assignment",
    "AssignmentFeatures",
    "BatchDecision",
    "CycleOutcome",
    "CycleReport",
    "Experience",
    "FailureMode",
    "FeatureWeights",
    "InsufficientData",
    "InvalidModel",
    "LeaderPrediction",
    "ModelVersion",
    "NodeMetric",
    "Outcome",
    "PartitionReport",
    "PerformanceSample",
    "TargetKind",
    "TimeoutDirection",
    "TimeoutRecommendation",
    "TrainingFailure",
    "Transaction",
]
