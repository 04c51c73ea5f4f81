"""
Adaptive Control Plane — Batch Size Optimizer

Recommends the next batch size from live throughput/latency telemetry
using an ensemble of three signals:

  regression  fit throughput ~ batch_size over recent samples and solve
              for the batch size that reaches the target throughput
  ratio       efficiency = mean(throughput / target, target_latency / latency);
              shrink when inefficient, grow when comfortably ahead
  gradient    average throughput delta over the last few samples

The regression weight is raised when the fit is good (high R^2). The
combined result may move at most 30% per run during ramp-up and 20%
afterwards, and is always clamped to [min_batch, max_batch].

Usage:
    optimizer = BatchSizeOptimizer(BatchOptimizerConfig())
    decision = optimizer.optimize(1_450_000, 42.0, 8000)
    if decision.optimized:
        engine.set_batch_size(decision.new_batch)
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import asdict
from typing import Any, Callable

from controlplane.anomaly import AnomalyDetector
from controlplane.config import BatchOptimizerConfig
from controlplane.errors import InsufficientData, InvalidModel
from controlplane.stats import RollingRegression, RollingWindow
from controlplane.types import AnomalyReport, BatchDecision
from engine.logging import EventLogger
from engine.metrics import ShardedCounter

log = logging.getLogger("control_plane.batch_size")


class BatchSizeOptimizer:
    """
    Adaptive batch sizing. optimize() never raises: on any internal
    error it returns the caller's batch size (clamped) unchanged.
    """

    def __init__(
        self,
        config: BatchOptimizerConfig | None = None,
        anomaly_detector: AnomalyDetector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or BatchOptimizerConfig()
        self._detector = anomaly_detector
        self._clock = clock
        self._lock = threading.Lock()
        self._events = EventLogger("batch_size")
        self._errors = ShardedCounter()

        history = self.config.history_size
        self._throughput = RollingWindow(history)
        self._latency = RollingWindow(history)
        self._regression = RollingRegression(history)
        self._reset_state()

    def _reset_state(self) -> None:
        self._current = self.config.default_batch
        self._last_run: float | None = None
        self._runs = 0
        self._optimizations = 0
        self._last_regression_estimate: float | None = None
        self._last_r_squared = 0.0
        self._best_throughput = 0.0
        self._best_batch = self.config.default_batch
        self._last_decision: BatchDecision | None = None
        self._reactive_cuts = 0

    def optimal_batch_size(self) -> int:
        return self._current

    def _clamp(self, batch: float) -> int:
        return int(max(self.config.min_batch, min(self.config.max_batch, round(batch))))

    # ── Optimization ────────────────────────────────────────────────

    def optimize(
        self,
        current_throughput: float,
        current_latency: float,
        current_batch: int,
    ) -> BatchDecision:
        cfg = self.config
        if not cfg.enabled:
            return BatchDecision(
                cfg.default_batch, False, "optimizer disabled", current_batch,
            )
        with self._lock:
            now = self._clock()
            if self._last_run is not None and now - self._last_run < cfg.adaptation_interval:
                return BatchDecision(self._current, False, "cooldown", current_batch)
            try:
                decision = self._optimize(now, current_throughput, current_latency, current_batch)
            except Exception as e:
                self._errors.increment()
                log.warning("Batch size optimization failed: %s", e)
                decision = BatchDecision(
                    self._clamp(current_batch), False, "optimization error", current_batch,
                )
            self._last_decision = decision
            return decision

    def _optimize(
        self, now: float, throughput: float, latency: float, batch: int,
    ) -> BatchDecision:
        cfg = self.config
        self._last_run = now
        self._runs += 1
        self._throughput.add(throughput)
        self._latency.add(latency)
        self._regression.add(batch, throughput)
        if throughput > self._best_throughput:
            self._best_throughput = throughput
            self._best_batch = batch

        current = self._clamp(batch)
        if len(self._regression) < cfg.min_regression_samples:
            self._current = current
            return BatchDecision(current, False, "insufficient regression data", batch)

        regression, r_squared = self._regression_signal(current)
        ratio = self._ratio_signal(current, throughput, latency)
        gradient = self._gradient_signal(current)

        regression_weight = (
            cfg.regression_weight_high if r_squared > cfg.r_squared_threshold
            else cfg.regression_weight_low
        )
        gradient_weight = max(0.0, 1.0 - regression_weight - cfg.ratio_weight)
        combined = (
            regression_weight * regression
            + cfg.ratio_weight * ratio
            + gradient_weight * gradient
        )
        if not math.isfinite(combined):
            raise InvalidModel(f"non-finite combined estimate {combined}")

        max_change = (
            cfg.ramp_up_max_change if self._runs <= cfg.ramp_up_cycles
            else cfg.steady_max_change
        )
        limit = current * max_change
        proposed = current + max(-limit, min(limit, combined - current))
        new_batch = self._clamp(proposed)

        self._current = new_batch
        self._optimizations += 1
        change_pct = (new_batch - current) / current * 100.0 if current else 0.0
        if new_batch != current:
            self._events.emit(
                "batch_size_change",
                old_batch=current,
                new_batch=new_batch,
                change_pct=round(change_pct, 2),
                regression=round(regression, 1),
                ratio=round(ratio, 1),
                gradient=round(gradient, 1),
                r_squared=round(r_squared, 4),
            )
        return BatchDecision(new_batch, True, "ensemble optimization", batch, change_pct)

    def _regression_signal(self, current: int) -> tuple[float, float]:
        """Batch size predicted to hit target throughput, and the fit's R^2."""
        try:
            fit = self._regression.fit(self.config.min_regression_samples)
            if fit.slope <= 0:
                raise InvalidModel(f"non-positive slope {fit.slope:.6g}")
            estimate = fit.predict_x(self.config.target_tps)
            if not math.isfinite(estimate) or estimate <= 0:
                raise InvalidModel(f"unusable estimate {estimate}")
        except (InvalidModel, InsufficientData) as e:
            self._last_r_squared = 0.0
            fallback = self._last_regression_estimate
            log.debug("Regression signal unavailable (%s); using %s", e, fallback or current)
            return (fallback if fallback is not None else float(current)), 0.0
        self._last_regression_estimate = estimate
        self._last_r_squared = fit.r_squared
        return estimate, fit.r_squared

    def _ratio_signal(self, current: int, throughput: float, latency: float) -> float:
        cfg = self.config
        efficiency = (
            throughput / cfg.target_tps
            + cfg.target_latency_ms / max(1.0, latency)
        ) / 2.0
        if efficiency < cfg.efficiency_low:
            return current * cfg.ratio_decrease
        if efficiency > cfg.efficiency_high and latency < cfg.target_latency_ms:
            return current * cfg.ratio_increase
        return float(current)

    def _gradient_signal(self, current: int) -> float:
        cfg = self.config
        recent = self._throughput.last(cfg.gradient_window)
        if len(recent) < cfg.gradient_window or len(recent) < 2:
            return float(current)
        deltas = [b - a for a, b in zip(recent, recent[1:])]
        trend = sum(deltas) / len(deltas)
        if trend > 0:
            return current * cfg.gradient_increase
        if trend < -cfg.gradient_degradation_tps:
            return current * cfg.gradient_decrease
        return float(current)

    # ── Reactive adjustments ────────────────────────────────────────

    def update_network_conditions(self, latency: float, throughput: float) -> AnomalyReport:
        """
        Run the performance anomaly check and cut the batch size when it
        flags the network. Returns the anomaly report.
        """
        if self._detector is None:
            return AnomalyReport.clear("no anomaly detector")
        report = self._detector.analyze_performance(throughput, latency)
        if report.anomalous and self.config.enabled:
            self._reactive_cut(
                self.config.anomaly_reduction, f"network anomaly: {report.reason}",
            )
        return report

    def update_node_performance(self, cpu_pct: float, memory_pct: float) -> int:
        """Cut the batch size under CPU or memory pressure."""
        if not self.config.enabled:
            return self._current
        limit = self.config.resource_pressure_pct
        if cpu_pct <= limit and memory_pct <= limit:
            return self._current
        return self._reactive_cut(
            self.config.resource_reduction,
            f"resource pressure: cpu={cpu_pct:.1f}% memory={memory_pct:.1f}%",
        )

    def _reactive_cut(self, factor: float, reason: str) -> int:
        with self._lock:
            old = self._current
            self._current = max(self.config.min_batch, int(old * factor))
            self._reactive_cuts += 1
            new = self._current
        if new != old:
            log.warning("Batch size reduced %d -> %d (%s)", old, new, reason)
        return new

    # ── Statistics ──────────────────────────────────────────────────

    def statistics(self) -> dict[str, Any]:
        cfg = self.config
        with self._lock:
            last = asdict(self._last_decision) if self._last_decision else None
            return {
                "enabled": cfg.enabled,
                "current_batch": self._current,
                "min_batch": cfg.min_batch,
                "max_batch": cfg.max_batch,
                "target_tps": cfg.target_tps,
                "runs": self._runs,
                "optimizations": self._optimizations,
                "reactive_cuts": self._reactive_cuts,
                "errors": self._errors.value,
                "samples": len(self._throughput),
                "best_throughput": self._best_throughput,
                "best_batch": self._best_batch,
                "r_squared": round(self._last_r_squared, 4),
                "average_throughput": round(self._throughput.mean(), 2),
                "average_latency": round(self._latency.mean(), 2),
                "last_decision": last,
            }

    def reset(self) -> None:
        with self._lock:
            self._throughput.clear()
            self._latency.clear()
            self._regression.clear()
            self._reset_state()
        log.info("Batch size optimizer reset to default %d", self.config.default_batch)
