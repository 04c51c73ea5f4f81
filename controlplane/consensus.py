"""
Adaptive Control Plane — Consensus Tuning Advisor

Advisory signals for the consensus engine. Nothing here votes or
changes protocol state; the caller decides whether to act.

  predict_leader     rank candidates by uptime, latency, throughput and
                     latency stability from recorded node history
  recommend_timeout  size the election/round timeout from observed
                     latency and its spread
  detect_partition   nodes whose last heartbeat is older than the
                     partition threshold
"""

from __future__ import annotations

import logging
import statistics
import threading
import time
from collections import deque
from typing import Any, Callable, Mapping, Sequence

from controlplane.config import ConsensusConfig
from controlplane.stats import clamp
from controlplane.types import (
    LeaderPrediction, NodeMetric, PartitionReport, TimeoutDirection,
    TimeoutRecommendation,
)
from engine.logging import EventLogger

log = logging.getLogger("control_plane.consensus")


class ConsensusAdvisor:

    def __init__(
        self,
        config: ConsensusConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ConsensusConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._events = EventLogger("consensus")
        self._history: dict[str, deque[NodeMetric]] = {}
        self._heartbeats: dict[str, float] = {}
        self._leader_predictions = 0
        self._timeout_recommendations = 0
        self._partitions_detected = 0

    # ── Node telemetry ──────────────────────────────────────────────

    def record_performance(self, node_id: str, metric: NodeMetric) -> None:
        with self._lock:
            history = self._history.get(node_id)
            if history is None:
                history = deque(maxlen=self.config.history_size)
                self._history[node_id] = history
            history.append(metric)

    def record_heartbeat(self, node_id: str, last_seen: float | None = None) -> None:
        with self._lock:
            self._heartbeats[node_id] = self._clock() if last_seen is None else last_seen

    def forget_node(self, node_id: str) -> None:
        with self._lock:
            self._history.pop(node_id, None)
            self._heartbeats.pop(node_id, None)

    # ── Leader prediction ───────────────────────────────────────────

    def node_score(self, node_id: str) -> float:
        with self._lock:
            history = list(self._history.get(node_id, ()))
        return self._score(history)

    def _score(self, history: list[NodeMetric]) -> float:
        if not history:
            return self.config.unknown_node_score
        uptime = sum(1 for m in history if m.available) / len(history)
        latencies = [m.latency for m in history]
        avg_latency = statistics.fmean(latencies)
        avg_tps = statistics.fmean(m.throughput for m in history)
        latency_stddev = statistics.stdev(latencies) if len(latencies) > 1 else 0.0
        return (
            0.3 * uptime
            + 0.3 * (1.0 / (1.0 + avg_latency / 100.0))
            + 0.2 * min(1.0, avg_tps / 1_000_000.0)
            + 0.2 * (1.0 - min(1.0, latency_stddev / 50.0))
        )

    def predict_leader(self, candidates: Sequence[str]) -> LeaderPrediction:
        if not self.config.enabled or not candidates:
            return LeaderPrediction(None, 0.0)
        with self._lock:
            histories = {c: list(self._history.get(c, ())) for c in candidates}
            self._leader_predictions += 1
        scores = {c: self._score(h) for c, h in histories.items()}
        leader = max(candidates, key=lambda c: scores[c])
        return LeaderPrediction(leader, clamp(scores[leader], 0.0, 1.0), scores)

    # ── Timeouts ────────────────────────────────────────────────────

    def recommend_timeout(
        self,
        current_timeout_ms: float,
        avg_latency_ms: float,
        latency_variance_ms: float,
    ) -> TimeoutRecommendation:
        cfg = self.config
        if not cfg.enabled:
            return TimeoutRecommendation(
                int(current_timeout_ms), TimeoutDirection.NONE, "advisor disabled",
            )
        raw = cfg.safety_factor * (
            cfg.latency_multiplier * avg_latency_ms
            + cfg.variance_multiplier * latency_variance_ms
        )
        recommended = int(round(clamp(raw, cfg.min_timeout_ms, cfg.max_timeout_ms)))
        with self._lock:
            self._timeout_recommendations += 1

        if recommended > current_timeout_ms * cfg.increase_band:
            return TimeoutRecommendation(
                recommended, TimeoutDirection.INCREASE,
                f"latency {avg_latency_ms:.1f}ms needs a longer timeout",
            )
        if recommended < current_timeout_ms * cfg.decrease_band:
            return TimeoutRecommendation(
                recommended, TimeoutDirection.DECREASE,
                f"latency {avg_latency_ms:.1f}ms allows a shorter timeout",
            )
        return TimeoutRecommendation(
            recommended, TimeoutDirection.NONE, "current timeout is adequate",
        )

    # ── Partitions ──────────────────────────────────────────────────

    def detect_partition(
        self, node_last_seen: Mapping[str, float], now: float | None = None,
    ) -> PartitionReport:
        if not self.config.enabled:
            return PartitionReport(False, [], "advisor disabled")
        now = self._clock() if now is None else now
        threshold = self.config.partition_threshold
        unreachable = sorted(
            node for node, seen in node_last_seen.items() if now - seen > threshold
        )
        if not unreachable:
            return PartitionReport(False, [], "all nodes reachable")
        with self._lock:
            self._partitions_detected += 1
        reason = f"{len(unreachable)} of {len(node_last_seen)} nodes silent for > {threshold:g}s"
        self._events.warning(
            "partition_detected",
            unreachable=unreachable,
            total_nodes=len(node_last_seen),
        )
        return PartitionReport(True, unreachable, reason)

    def detect_partition_from_heartbeats(self, now: float | None = None) -> PartitionReport:
        with self._lock:
            heartbeats = dict(self._heartbeats)
        return self.detect_partition(heartbeats, now)

    def statistics(self) -> dict[str, Any]:
        with self._lock:
            return {
                "enabled": self.config.enabled,
                "nodes_tracked": len(self._history),
                "heartbeats_tracked": len(self._heartbeats),
                "leader_predictions": self._leader_predictions,
                "timeout_recommendations": self._timeout_recommendations,
                "partitions_detected": self._partitions_detected,
                "partition_threshold_s": self.config.partition_threshold,
            }
