"""
Adaptive Control Plane — Error Taxonomy

These are raised inside a component and caught at its public boundary.
None of them reaches a hot-path caller: each maps to a fallback value.

  InsufficientData  -> return the current/default value unchanged
  InvalidModel      -> fall back to the previous estimate
  TrainingFailure   -> abort the cycle, keep the Active model
  (disabled)        -> deterministic pass-through default
"""

from __future__ import annotations

import enum


class FailureMode(str, enum.Enum):
    INSUFFICIENT_DATA = "insufficient_data"
    INVALID_MODEL = "invalid_model"
    TRAINING_FAILURE = "training_failure"
    DISABLED = "disabled"


class ControlPlaneError(Exception):
    """Base class for control-plane errors."""
    mode: FailureMode = FailureMode.TRAINING_FAILURE


class InsufficientData(ControlPlaneError):
    """Not enough samples to compute the statistic or signal."""
    mode = FailureMode.INSUFFICIENT_DATA


class InvalidModel(ControlPlaneError):
    """A fitted model is unusable (e.g. non-positive slope)."""
    mode = FailureMode.INVALID_MODEL


class TrainingFailure(ControlPlaneError):
    """A training cycle could not complete."""
    mode = FailureMode.TRAINING_FAILURE
