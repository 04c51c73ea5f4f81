"""
Adaptive Control Plane — Structured Logging

JSON log lines for every control-plane component plus a small event
emitter for the diagnostic events the optimizers raise (promotions,
rollbacks, training failures, detected anomalies). Field names follow
OpenTelemetry resource conventions (service.name, service.version) so
the output can be shipped as-is.

Usage:
    from engine.logging import EventLogger, configure_logging

    configure_logging(level="INFO")
    events = EventLogger(component="lifecycle")
    events.emit("promotion", model="assignment", version=3, accuracy=0.97)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "control_plane"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Structured fields attached to a record under ``record.structured``
    are merged into the top-level object.
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("CP_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the control_plane logger with JSON output.

    Safe to call repeatedly: handlers installed by a previous call are
    replaced, and child loggers fall back to inheriting the new level.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries
    """
    logger = logging.getLogger(ROOT_LOGGER)
    numeric = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric)
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(numeric)
    logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the control_plane namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Diagnostic Events
# ═══════════════════════════════════════════════════════════════════

_RUN_ID = uuid.uuid4().hex[:16]


class EventLogger:
    """
    Emits structured diagnostic events for one component.

    Every event carries the component name and the process run_id so
    events from a single control-plane instance can be correlated.
    """

    def __init__(self, component: str, run_id: str | None = None):
        self.component = component
        self.run_id = run_id or _RUN_ID
        self._logger = get_logger(f"events.{component}")

    def emit(self, action: str, level: int = logging.INFO, **fields) -> None:
        if not self._logger.isEnabledFor(level):
            return
        structured = {
            "run_id": self.run_id,
            "component": self.component,
            "action": action,
            **fields,
        }
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def warning(self, action: str, **fields) -> None:
        self.emit(action, level=logging.WARNING, **fields)

    def error(self, action: str, **fields) -> None:
        self.emit(action, level=logging.ERROR, **fields)
