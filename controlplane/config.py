"""
Adaptive Control Plane — Component Configuration

Typed configuration for every component, parsed from the merged YAML
produced by engine.config_loader. Each section has a parse_* function
that fills in defaults for anything the YAML omits.

These are tunable thresholds and rates. The formulas that consume them
live in the component modules.

Usage:
    from engine.config_loader import load_config
    from controlplane.config import ControlPlaneConfig

    cfg = ControlPlaneConfig.from_loader(load_config(env="prod"))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Initial ordering weights: size, sender hotness, fee, age, dependencies.
DEFAULT_ORDERING_WEIGHTS = {
    "size": 0.20,
    "sender_hotness": 0.25,
    "fee": 0.15,
    "age": 0.20,
    "dependencies": 0.20,
}


class ConfigError(ValueError):
    """Raised when configuration values are inconsistent."""


def parse_duration(raw: Any, default: float) -> float:
    """
    Parse a duration in seconds. Accepts plain numbers or strings with
    an ms, s, m or h suffix ("500ms", "3s", "1m", "1h").
    """
    if raw is None:
        return default
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip().lower()
    if text.endswith("ms"):
        return float(text[:-2]) / 1000.0
    if text.endswith("s"):
        return float(text[:-1])
    if text.endswith("m"):
        return float(text[:-1]) * 60.0
    if text.endswith("h"):
        return float(text[:-1]) * 3600.0
    return float(text)


# ═══════════════════════════════════════════════════════════════════
# Component Sections
# ═══════════════════════════════════════════════════════════════════

@dataclass
class BatchOptimizerConfig:
    enabled: bool = True
    min_batch: int = 2000
    max_batch: int = 15000
    default_batch: int = 8000
    adaptation_interval: float = 3.0  # seconds between optimizations
    target_tps: float = 2_000_000.0
    target_latency_ms: float = 100.0
    history_size: int = 100
    min_regression_samples: int = 5
    # Ensemble
    r_squared_threshold: float = 0.8
    regression_weight_high: float = 0.5
    regression_weight_low: float = 0.3
    ratio_weight: float = 0.4
    efficiency_low: float = 0.7
    efficiency_high: float = 1.2
    ratio_decrease: float = 0.9
    ratio_increase: float = 1.1
    gradient_window: int = 5
    gradient_degradation_tps: float = 10_000.0
    gradient_increase: float = 1.05
    gradient_decrease: float = 0.95
    # Change caps
    ramp_up_cycles: int = 20
    ramp_up_max_change: float = 0.30
    steady_max_change: float = 0.20
    # Reactive cuts
    anomaly_reduction: float = 0.8
    resource_pressure_pct: float = 90.0
    resource_reduction: float = 0.85


@dataclass
class AnomalyConfig:
    enabled: bool = True
    sensitivity: float = 0.95
    window_size: int = 1000
    min_samples: int = 100
    size_z_threshold: float = 3.0
    throughput_threshold: float = 2.0  # standard deviations
    latency_threshold: float = 3.0     # standard deviations
    frequency_ratio_low: float = 2.0
    frequency_ratio_high: float = 10.0
    new_address_age: float = 3600.0    # seconds
    new_address_value_multiple: float = 10.0
    max_tracked_addresses: int = 100_000


@dataclass
class OrderingConfig:
    enabled: bool = True
    weights: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_ORDERING_WEIGHTS)
    )
    size_scale_bytes: float = 1000.0
    recency_window: float = 60.0       # seconds
    frequency_scale: float = 100.0
    recency_blend: float = 0.5
    fee_log_scale: float = 6.0
    fairness_window: float = 5.0       # seconds
    dependency_scale: float = 10.0
    grouping_enabled: bool = True
    hot_sender_threshold: int = 10
    learning_interval: int = 100       # batches
    improvement_threshold: float = 0.01
    adjustment_step: float = 0.01
    max_hotness_weight: float = 0.35
    min_size_weight: float = 0.10
    feature_cache_size: int = 100_000
    sender_cache_size: int = 100_000


@dataclass
class LoadBalancerConfig:
    enabled: bool = True
    load_threshold: float = 0.8
    latency_scale_ms: float = 1000.0
    decision_threshold: float = 0.5
    learning_rate: float = 0.01
    momentum: float = 0.9
    sample_size: int = 100
    replay_capacity: int = 10_000
    initial_accuracy: float = 0.90
    accuracy_low: float = 0.85
    accuracy_high: float = 0.95
    lr_boost: float = 1.5
    lr_damp: float = 0.5
    max_learning_rate: float = 0.1
    min_learning_rate: float = 0.001
    good_latency_ms: float = 100.0
    bad_latency_ms: float = 500.0
    ewma_alpha: float = 0.2
    rebalance_interval: float = 5.0    # seconds
    seed: int | None = None


@dataclass
class LifecycleConfig:
    enabled: bool = True
    update_interval: int = 1000        # processed units between cycles
    ab_fraction: float = 0.05
    accuracy_threshold: float = 0.95
    sample_size: int = 1000
    min_experiences: int = 10
    learning_rate: float = 0.01
    min_learning_rate: float = 0.001
    max_learning_rate: float = 0.1
    improvement_margin: float = 0.01
    lr_increase: float = 1.2
    lr_decrease: float = 0.8
    lr_plateau: float = 1.05
    rollback_tolerance: float = 0.05
    check_interval: float = 1.0        # seconds between due-cycle checks


@dataclass
class ConsensusConfig:
    enabled: bool = True
    history_size: int = 100
    partition_threshold: float = 5.0   # seconds
    min_timeout_ms: int = 100
    max_timeout_ms: int = 500
    safety_factor: float = 1.2
    latency_multiplier: float = 2.0
    variance_multiplier: float = 3.0
    increase_band: float = 1.1
    decrease_band: float = 0.9
    unknown_node_score: float = 0.5


# ═══════════════════════════════════════════════════════════════════
# Parsers
# ═══════════════════════════════════════════════════════════════════

def _pick(section: dict[str, Any], defaults: Any, keys: list[str]) -> dict[str, Any]:
    return {k: section.get(k, getattr(defaults, k)) for k in keys}


def parse_batch_optimizer_config(yaml_section: dict[str, Any] | None) -> BatchOptimizerConfig:
    """Parse the `batch_optimizer:` section."""
    if not yaml_section:
        return BatchOptimizerConfig()
    d = BatchOptimizerConfig()
    values = _pick(yaml_section, d, [
        "enabled", "min_batch", "max_batch", "default_batch", "target_tps",
        "target_latency_ms", "history_size", "min_regression_samples",
        "r_squared_threshold", "regression_weight_high", "regression_weight_low",
        "ratio_weight", "efficiency_low", "efficiency_high", "ratio_decrease",
        "ratio_increase", "gradient_window", "gradient_degradation_tps",
        "gradient_increase", "gradient_decrease", "ramp_up_cycles",
        "ramp_up_max_change", "steady_max_change", "anomaly_reduction",
        "resource_pressure_pct", "resource_reduction",
    ])
    values["adaptation_interval"] = parse_duration(
        yaml_section.get("adaptation_interval"), d.adaptation_interval,
    )
    return BatchOptimizerConfig(**values)


def parse_anomaly_config(yaml_section: dict[str, Any] | None) -> AnomalyConfig:
    """Parse the `anomaly:` section."""
    if not yaml_section:
        return AnomalyConfig()
    d = AnomalyConfig()
    values = _pick(yaml_section, d, [
        "enabled", "sensitivity", "window_size", "min_samples",
        "size_z_threshold", "throughput_threshold", "latency_threshold",
        "frequency_ratio_low", "frequency_ratio_high",
        "new_address_value_multiple", "max_tracked_addresses",
    ])
    values["new_address_age"] = parse_duration(
        yaml_section.get("new_address_age"), d.new_address_age,
    )
    return AnomalyConfig(**values)


def parse_ordering_config(yaml_section: dict[str, Any] | None) -> OrderingConfig:
    """Parse the `ordering:` section."""
    if not yaml_section:
        return OrderingConfig()
    d = OrderingConfig()
    values = _pick(yaml_section, d, [
        "enabled", "size_scale_bytes", "frequency_scale", "recency_blend",
        "fee_log_scale", "dependency_scale", "grouping_enabled",
        "hot_sender_threshold", "learning_interval", "improvement_threshold",
        "adjustment_step", "max_hotness_weight", "min_size_weight",
        "feature_cache_size", "sender_cache_size",
    ])
    weights = dict(DEFAULT_ORDERING_WEIGHTS)
    weights.update(yaml_section.get("weights") or {})
    values["weights"] = weights
    values["recency_window"] = parse_duration(
        yaml_section.get("recency_window"), d.recency_window,
    )
    values["fairness_window"] = parse_duration(
        yaml_section.get("fairness_window"), d.fairness_window,
    )
    return OrderingConfig(**values)


def parse_load_balancer_config(yaml_section: dict[str, Any] | None) -> LoadBalancerConfig:
    """Parse the `load_balancer:` section."""
    if not yaml_section:
        return LoadBalancerConfig()
    d = LoadBalancerConfig()
    values = _pick(yaml_section, d, [
        "enabled", "load_threshold", "latency_scale_ms", "decision_threshold",
        "learning_rate", "momentum", "sample_size",
        "replay_capacity", "initial_accuracy", "accuracy_low", "accuracy_high",
        "lr_boost", "lr_damp", "max_learning_rate", "min_learning_rate",
        "good_latency_ms", "bad_latency_ms", "ewma_alpha", "seed",
    ])
    values["rebalance_interval"] = parse_duration(
        yaml_section.get("rebalance_interval"), d.rebalance_interval,
    )
    return LoadBalancerConfig(**values)


def parse_lifecycle_config(yaml_section: dict[str, Any] | None) -> LifecycleConfig:
    """Parse the `lifecycle:` section."""
    if not yaml_section:
        return LifecycleConfig()
    d = LifecycleConfig()
    values = _pick(yaml_section, d, [
        "enabled", "update_interval", "ab_fraction", "accuracy_threshold",
        "sample_size", "min_experiences", "learning_rate", "min_learning_rate",
        "max_learning_rate", "improvement_margin", "lr_increase",
        "lr_decrease", "lr_plateau", "rollback_tolerance",
    ])
    values["check_interval"] = parse_duration(
        yaml_section.get("check_interval"), d.check_interval,
    )
    return LifecycleConfig(**values)


def parse_consensus_config(yaml_section: dict[str, Any] | None) -> ConsensusConfig:
    """Parse the `consensus:` section."""
    if not yaml_section:
        return ConsensusConfig()
    d = ConsensusConfig()
    values = _pick(yaml_section, d, [
        "enabled", "history_size", "min_timeout_ms", "max_timeout_ms",
        "safety_factor", "latency_multiplier", "variance_multiplier",
        "increase_band", "decrease_band", "unknown_node_score",
    ])
    values["partition_threshold"] = parse_duration(
        yaml_section.get("partition_threshold"), d.partition_threshold,
    )
    return ConsensusConfig(**values)


# ═══════════════════════════════════════════════════════════════════
# Top-level
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ControlPlaneConfig:
    batch_optimizer: BatchOptimizerConfig = field(default_factory=BatchOptimizerConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    ordering: OrderingConfig = field(default_factory=OrderingConfig)
    load_balancer: LoadBalancerConfig = field(default_factory=LoadBalancerConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    log_level: str = "INFO"

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> ControlPlaneConfig:
        data = data or {}
        cfg = ControlPlaneConfig(
            batch_optimizer=parse_batch_optimizer_config(data.get("batch_optimizer")),
            anomaly=parse_anomaly_config(data.get("anomaly")),
            ordering=parse_ordering_config(data.get("ordering")),
            load_balancer=parse_load_balancer_config(data.get("load_balancer")),
            lifecycle=parse_lifecycle_config(data.get("lifecycle")),
            consensus=parse_consensus_config(data.get("consensus")),
            log_level=str((data.get("logging") or {}).get("level", "INFO")),
        )
        cfg.validate()
        return cfg

    @staticmethod
    def from_loader(loader) -> ControlPlaneConfig:
        return ControlPlaneConfig.from_dict(loader.get_all())

    def validate(self) -> None:
        """Raise ConfigError listing every inconsistent setting."""
        errors = []
        b = self.batch_optimizer
        if b.min_batch <= 0:
            errors.append(f"batch_optimizer.min_batch must be > 0 (got {b.min_batch})")
        if b.min_batch > b.max_batch:
            errors.append(
                f"batch_optimizer.min_batch {b.min_batch} > max_batch {b.max_batch}"
            )
        if not b.min_batch <= b.default_batch <= b.max_batch:
            errors.append(
                f"batch_optimizer.default_batch {b.default_batch} outside "
                f"[{b.min_batch}, {b.max_batch}]"
            )
        if b.target_tps <= 0:
            errors.append("batch_optimizer.target_tps must be > 0")

        for name, value in (
            ("anomaly.sensitivity", self.anomaly.sensitivity),
            ("load_balancer.load_threshold", self.load_balancer.load_threshold),
            ("lifecycle.ab_fraction", self.lifecycle.ab_fraction),
            ("lifecycle.accuracy_threshold", self.lifecycle.accuracy_threshold),
        ):
            if not 0 < value <= 1:
                errors.append(f"{name} must be in (0, 1] (got {value})")

        lc = self.lifecycle
        if lc.min_learning_rate > lc.max_learning_rate:
            errors.append("lifecycle.min_learning_rate > max_learning_rate")
        if not lc.min_learning_rate <= lc.learning_rate <= lc.max_learning_rate:
            errors.append("lifecycle.learning_rate outside [min, max]")
        lb = self.load_balancer
        if not lb.min_learning_rate <= lb.learning_rate <= lb.max_learning_rate:
            errors.append("load_balancer.learning_rate outside [min, max]")

        for name, value in (
            ("ordering.learning_interval", self.ordering.learning_interval),
            ("ordering.feature_cache_size", self.ordering.feature_cache_size),
            ("ordering.sender_cache_size", self.ordering.sender_cache_size),
            ("anomaly.max_tracked_addresses", self.anomaly.max_tracked_addresses),
        ):
            if value < 1:
                errors.append(f"{name} must be >= 1 (got {value})")

        if self.consensus.min_timeout_ms > self.consensus.max_timeout_ms:
            errors.append("consensus.min_timeout_ms > max_timeout_ms")

        missing = set(DEFAULT_ORDERING_WEIGHTS) - set(self.ordering.weights)
        if missing:
            errors.append(f"ordering.weights missing {sorted(missing)}")

        if errors:
            raise ConfigError(
                "Invalid control plane config:\n" + "\n".join(f"  - {e}" for e in errors)
            )
