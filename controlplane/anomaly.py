"""
Adaptive Control Plane — Anomaly Detector

Rolling statistical baselines for transaction and performance telemetry.
Each check produces a component score in [0, 1]; the report is flagged
anomalous when the highest component score is strictly greater than the
configured sensitivity.

Transaction checks:
  size          Z-score of the size against the rolling size window
  frequency     address count relative to the mean count across addresses
  new_address   young address moving a value far above the rolling average

Performance checks:
  throughput    downward Z-score (degradation only)
  latency       upward Z-score (spikes only)

Baselines below the minimum sample count score 0 for that check. Every
analyzed value is added to its baseline after scoring, so the value
being judged is never part of the baseline it is judged against.

Usage:
    detector = AnomalyDetector(AnomalyConfig())
    report = detector.analyze_transaction(tx)
    if report.anomalous:
        quarantine(tx, report.reason)
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import asdict
from typing import Any, Callable

from controlplane.config import AnomalyConfig
from controlplane.errors import InsufficientData
from controlplane.stats import RollingWindow, clamp, deviation_score
from controlplane.types import AnomalyReport, AnomalyType, Transaction
from engine.logging import EventLogger
from engine.metrics import ShardedCounter

log = logging.getLogger("control_plane.anomaly")

_COMPONENT_TYPES = {
    "size": AnomalyType.TRANSACTION_PATTERN,
    "frequency": AnomalyType.SECURITY_THREAT,
    "new_address": AnomalyType.SECURITY_THREAT,
    "throughput": AnomalyType.PERFORMANCE_DEGRADATION,
    "latency": AnomalyType.PERFORMANCE_DEGRADATION,
}

_COMPONENT_REASONS = {
    "size": "unusual transaction size",
    "frequency": "high-frequency address",
    "new_address": "new address with large transaction value",
    "throughput": "throughput degradation",
    "latency": "latency spike",
}


def truncate_address(address: str) -> str:
    """Shorten an address for log output."""
    if not address or len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


class _AddressBook:
    """
    Per-address send counts and first-seen times, bounded by evicting the
    least recently active address. Keeps a running total so the mean
    count across addresses is O(1).
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._entries: OrderedDict[str, list[float]] = OrderedDict()  # addr -> [count, first_seen]
        self._total = 0

    def record(self, address: str, now: float) -> tuple[int, float]:
        entry = self._entries.get(address)
        if entry is None:
            entry = [0, now]
            self._entries[address] = entry
            if len(self._entries) > self.capacity:
                _, evicted = self._entries.popitem(last=False)
                self._total -= int(evicted[0])
        else:
            self._entries.move_to_end(address)
        entry[0] += 1
        self._total += 1
        return int(entry[0]), entry[1]

    def mean_count(self) -> float:
        if not self._entries:
            return 0.0
        return self._total / len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
        self._total = 0


class AnomalyDetector:
    """
    Statistical anomaly detection over transaction and performance streams.

    Thread-safe. analyze_* never raise: an internal error is logged,
    counted, and reported as a clear (non-anomalous) result.
    """

    def __init__(
        self,
        config: AnomalyConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or AnomalyConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._events = EventLogger("anomaly")

        window = self.config.window_size
        self._sizes = RollingWindow(window)
        self._values = RollingWindow(window)
        self._throughput = RollingWindow(window)
        self._latency = RollingWindow(window)
        self._addresses = _AddressBook(self.config.max_tracked_addresses)

        self._analyzed = ShardedCounter()
        self._total_anomalies = ShardedCounter()
        self._transaction_anomalies = ShardedCounter()
        self._security_anomalies = ShardedCounter()
        self._performance_anomalies = ShardedCounter()
        self._errors = ShardedCounter()

    # ── Transaction checks ──────────────────────────────────────────

    def analyze_transaction(self, tx: Transaction) -> AnomalyReport:
        if not self.config.enabled:
            return AnomalyReport.clear("detector disabled")
        try:
            now = self._clock()
            with self._lock:
                components = {
                    "size": self._size_score(tx.size),
                    "frequency": 0.0,
                    "new_address": 0.0,
                }
                count, first_seen = self._addresses.record(tx.sender, now)
                components["frequency"] = self._frequency_score(count)
                components["new_address"] = self._new_address_score(
                    tx.value, now - first_seen,
                )
                self._sizes.add(tx.size)
                self._values.add(tx.value)
            report = self._build_report(components)
            self._analyzed.increment()
            if report.anomalous:
                self._count(report.anomaly_type)
                self._events.warning(
                    "anomaly_detected",
                    tx_id=tx.tx_id,
                    sender=truncate_address(tx.sender),
                    anomaly_type=report.anomaly_type.value,
                    score=round(report.score, 4),
                    reason=report.reason,
                )
            return report
        except Exception as e:
            self._errors.increment()
            log.warning("Transaction anomaly check failed for %s: %s", tx.tx_id, e)
            return AnomalyReport.clear("analysis error")

    def _size_score(self, size: float) -> float:
        try:
            stats = self._sizes.require(self.config.min_samples)
        except InsufficientData:
            return 0.0
        return deviation_score(
            abs(size - stats.mean), stats.stddev, self.config.size_z_threshold,
        )

    def _frequency_score(self, count: int) -> float:
        mean = self._addresses.mean_count()
        if mean <= 0:
            return 0.0
        ratio = count / mean
        low, high = self.config.frequency_ratio_low, self.config.frequency_ratio_high
        if ratio <= low:
            return 0.0
        if ratio >= high:
            return 1.0
        return (ratio - low) / (high - low)

    def _new_address_score(self, value: float, age: float) -> float:
        max_age = self.config.new_address_age
        if age >= max_age or value <= 0:
            return 0.0
        try:
            avg = self._values.require(self.config.min_samples).mean
        except InsufficientData:
            return 0.0
        if avg <= 0 or value <= self.config.new_address_value_multiple * avg:
            return 0.0
        age_score = 1.0 - max(0.0, age) / max_age
        value_score = min(1.0, value / (2 * self.config.new_address_value_multiple * avg))
        return clamp((age_score + value_score) / 2.0, 0.0, 1.0)

    # ── Performance checks ──────────────────────────────────────────

    def analyze_performance(self, throughput: float, latency: float) -> AnomalyReport:
        if not self.config.enabled:
            return AnomalyReport.clear("detector disabled")
        try:
            with self._lock:
                components = {
                    "throughput": self._one_sided_score(
                        self._throughput, throughput, self.config.throughput_threshold,
                        downward=True,
                    ),
                    "latency": self._one_sided_score(
                        self._latency, latency, self.config.latency_threshold,
                        downward=False,
                    ),
                }
                self._throughput.add(throughput)
                self._latency.add(latency)
            report = self._build_report(components)
            self._analyzed.increment()
            if report.anomalous:
                self._count(report.anomaly_type)
                self._events.warning(
                    "anomaly_detected",
                    anomaly_type=report.anomaly_type.value,
                    score=round(report.score, 4),
                    reason=report.reason,
                    throughput=throughput,
                    latency=latency,
                )
            return report
        except Exception as e:
            self._errors.increment()
            log.warning("Performance anomaly check failed: %s", e)
            return AnomalyReport.clear("analysis error")

    def _one_sided_score(
        self, window: RollingWindow, current: float, threshold: float, downward: bool,
    ) -> float:
        try:
            stats = window.require(self.config.min_samples)
        except InsufficientData:
            return 0.0
        deviation = stats.mean - current if downward else current - stats.mean
        return deviation_score(deviation, stats.stddev, threshold)

    # ── Reporting ───────────────────────────────────────────────────

    def _build_report(self, components: dict[str, float]) -> AnomalyReport:
        components = {
            k: clamp(v, 0.0, 1.0) if math.isfinite(v) else 0.0
            for k, v in components.items()
        }
        name, score = max(components.items(), key=lambda kv: kv[1])
        if score > self.config.sensitivity:
            return AnomalyReport(
                score=score,
                anomalous=True,
                anomaly_type=_COMPONENT_TYPES[name],
                reason=_COMPONENT_REASONS[name],
                components=components,
            )
        return AnomalyReport(score=score, anomalous=False, components=components)

    def _count(self, anomaly_type: AnomalyType) -> None:
        self._total_anomalies.increment()
        if anomaly_type == AnomalyType.TRANSACTION_PATTERN:
            self._transaction_anomalies.increment()
        elif anomaly_type == AnomalyType.SECURITY_THREAT:
            self._security_anomalies.increment()
        elif anomaly_type == AnomalyType.PERFORMANCE_DEGRADATION:
            self._performance_anomalies.increment()

    def statistics(self) -> dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "sensitivity": self.config.sensitivity,
            "analyzed": self._analyzed.value,
            "total_anomalies": self._total_anomalies.value,
            "transaction_anomalies": self._transaction_anomalies.value,
            "security_anomalies": self._security_anomalies.value,
            "performance_anomalies": self._performance_anomalies.value,
            "errors": self._errors.value,
            "tracked_addresses": len(self._addresses),
            "size_baseline": asdict(self._sizes.stats()),
            "throughput_baseline": asdict(self._throughput.stats()),
            "latency_baseline": asdict(self._latency.stats()),
        }

    def reset(self) -> None:
        with self._lock:
            for window in (self._sizes, self._values, self._throughput, self._latency):
                window.clear()
            self._addresses.clear()
        for counter in (
            self._analyzed, self._total_anomalies, self._transaction_anomalies,
            self._security_anomalies, self._performance_anomalies, self._errors,
        ):
            counter.reset()
        log.info("Anomaly detector baselines reset")
