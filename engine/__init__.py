"""
Adaptive Control Plane - Engine Package

Process-level plumbing shared by every control-plane component:

  - engine.logging: JSON log formatter, logger namespace, diagnostic events
  - engine.config_loader: tiered YAML + environment configuration
  - engine.metrics: thread-safe counters with snapshot()
  - engine.scheduler: periodic background tasks with cooperative stop
"""

from engine.logging import EventLogger, configure_logging, get_logger
from engine.config_loader import ConfigLoader, get_config, load_config, reset_config
from engine.metrics import ShardedCounter, RunningStats
from engine.scheduler import PeriodicTask

__all__ = [
    "EventLogger", "configure_logging", "get_logger",
    "ConfigLoader", "get_config", "load_config", "reset_config",
    "ShardedCounter", "RunningStats",
    "PeriodicTask",
]
