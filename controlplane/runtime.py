"""
Adaptive Control Plane — Runtime

Builds every component from one ControlPlaneConfig, wires them to each
other, and runs the background work:

  lifecycle   checks for due training cycles (woken early when enough
              units have been processed)
  rebalance   marks overloaded shards/validators

This is the only object collaborators talk to. Push methods take
telemetry in; pull methods return decisions. Everything is in-process
and state starts from defaults on every construction.

Usage:
    from controlplane.runtime import ControlPlane

    with ControlPlane.from_environment() as cp:
        cp.load_balancer.register_target("shard-0")
        target = cp.assign(tx)
        ordered = cp.order(pending)
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Mapping, Sequence

from controlplane.anomaly import AnomalyDetector
from controlplane.batch_size import BatchSizeOptimizer
from controlplane.config import ControlPlaneConfig
from controlplane.consensus import ConsensusAdvisor
from controlplane.lifecycle import ModelLifecycleManager
from controlplane.load_balancer import LoadBalancer
from controlplane.ordering import TransactionOrderingEngine
from controlplane.replay import ExperienceReplayBuffer
from controlplane.types import (
    AnomalyReport, Assignment, AssignmentFeatures, BatchDecision,
    LeaderPrediction, NodeMetric, PartitionReport, PerformanceSample,
    TimeoutRecommendation, Transaction,
)
from engine.config_loader import ConfigLoader, get_config
from engine.logging import configure_logging
from engine.scheduler import PeriodicTask

log = logging.getLogger("control_plane.runtime")


class ControlPlane:
    """Facade over the control-plane components."""

    def __init__(
        self,
        config: ControlPlaneConfig | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ):
        self.config = config or ControlPlaneConfig()
        cfg = self.config
        cfg.validate()

        self.anomaly = AnomalyDetector(cfg.anomaly, clock=clock)
        self.batch_optimizer = BatchSizeOptimizer(
            cfg.batch_optimizer, anomaly_detector=self.anomaly,
        )
        self.buffer = ExperienceReplayBuffer(cfg.load_balancer.replay_capacity)
        self.lifecycle = ModelLifecycleManager(cfg.lifecycle, self.buffer, clock=clock)
        self.load_balancer = LoadBalancer(
            self.lifecycle, cfg.load_balancer, rng=rng, clock=clock,
        )
        self.ordering = TransactionOrderingEngine(self.lifecycle, cfg.ordering, clock=clock)
        self.consensus = ConsensusAdvisor(cfg.consensus, clock=clock)

        self._lifecycle_task = PeriodicTask(
            "lifecycle", cfg.lifecycle.check_interval, self.lifecycle.run_due_cycles,
        )
        self._rebalance_task = PeriodicTask(
            "rebalance", cfg.load_balancer.rebalance_interval, self.load_balancer.rebalance,
        )
        self._tasks = [self._lifecycle_task, self._rebalance_task]
        self.lifecycle.on_cycle_due(self._lifecycle_task.trigger)

    @staticmethod
    def from_loader(loader: ConfigLoader, **kwargs) -> ControlPlane:
        config = ControlPlaneConfig.from_loader(loader)
        configure_logging(level=config.log_level)
        return ControlPlane(config, **kwargs)

    @staticmethod
    def from_environment(
        env: str | None = None, project_root: str | None = None, **kwargs,
    ) -> ControlPlane:
        """Build from the cached config singleton (CP_ENV / CP_PROJECT_ROOT)."""
        return ControlPlane.from_loader(get_config(env, project_root), **kwargs)

    # ── Lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        for task in self._tasks:
            task.start()
        log.info("Control plane started")

    def stop(self, timeout: float | None = 10.0) -> bool:
        """Stop background tasks; in-flight cycles finish first."""
        stopped = all([task.stop(timeout) for task in self._tasks])
        log.info("Control plane stopped (clean=%s)", stopped)
        return stopped

    def __enter__(self) -> ControlPlane:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ── Push: telemetry from collaborators ──────────────────────────

    def ingest_performance(self, sample: PerformanceSample) -> AnomalyReport:
        self.ordering.record_batch_throughput(sample.throughput)
        return self.batch_optimizer.update_network_conditions(
            sample.latency, sample.throughput,
        )

    def ingest_transaction(self, tx: Transaction) -> AnomalyReport:
        return self.anomaly.analyze_transaction(tx)

    def ingest_heartbeat(self, node_id: str, last_seen: float | None = None) -> None:
        self.consensus.record_heartbeat(node_id, last_seen)

    def ingest_node_metric(self, node_id: str, metric: NodeMetric) -> None:
        self.consensus.record_performance(node_id, metric)

    def ingest_node_resources(self, cpu_pct: float, memory_pct: float) -> int:
        return self.batch_optimizer.update_node_performance(cpu_pct, memory_pct)

    def record_feedback(
        self,
        predicted_target: str,
        features: AssignmentFeatures,
        actual_latency: float,
        actual_load: float,
        success: bool,
    ) -> None:
        self.load_balancer.record_feedback(
            predicted_target, features, actual_latency, actual_load, success,
        )

    def record_processed(self, units: int = 1) -> bool:
        return self.lifecycle.record_processed(units)

    # ── Pull: decisions ─────────────────────────────────────────────

    def recommend_batch_size(
        self, current_throughput: float, current_latency: float, current_batch: int,
    ) -> BatchDecision:
        return self.batch_optimizer.optimize(
            current_throughput, current_latency, current_batch,
        )

    def assign(self, tx: Transaction) -> Assignment:
        return self.load_balancer.assign(tx)

    def order(self, pending: Sequence[Transaction]) -> list[Transaction]:
        return self.ordering.score_and_order(pending)

    def analyze_transaction(self, tx: Transaction) -> AnomalyReport:
        return self.anomaly.analyze_transaction(tx)

    def analyze_performance(self, throughput: float, latency: float) -> AnomalyReport:
        return self.anomaly.analyze_performance(throughput, latency)

    def predict_leader(self, candidates: Sequence[str]) -> LeaderPrediction:
        return self.consensus.predict_leader(candidates)

    def recommend_timeout(
        self, current_timeout_ms: float, avg_latency_ms: float, latency_variance_ms: float,
    ) -> TimeoutRecommendation:
        return self.consensus.recommend_timeout(
            current_timeout_ms, avg_latency_ms, latency_variance_ms,
        )

    def detect_partition(
        self, node_last_seen: Mapping[str, float] | None = None, now: float | None = None,
    ) -> PartitionReport:
        if node_last_seen is None:
            return self.consensus.detect_partition_from_heartbeats(now)
        return self.consensus.detect_partition(node_last_seen, now)

    def statistics(self) -> dict[str, Any]:
        return {
            "batch_optimizer": self.batch_optimizer.statistics(),
            "anomaly": self.anomaly.statistics(),
            "ordering": self.ordering.statistics(),
            "load_balancer": self.load_balancer.statistics(),
            "lifecycle": self.lifecycle.statistics(),
            "consensus": self.consensus.statistics(),
            "tasks": [task.snapshot() for task in self._tasks],
        }
