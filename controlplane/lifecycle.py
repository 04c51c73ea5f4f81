"""
Adaptive Control Plane — Model Lifecycle Manager

Owns every weight vector the hot path reads. Each named model slot
holds up to three versions:

  Active     what assign()/score_and_order() read right now
  Candidate  trained from Active during a cycle, never served
  Previous   the Active that the last promotion replaced

The slot state is one frozen ModelSlotState. Writers build a new state
and swap the reference under the slot lock; readers take the reference
without locking and always see a complete state.

Training cycle (run_cycle), triggered every `update_interval` processed
units:

  1. Sample up to `sample_size` recent experiences from the replay buffer.
     If Active scores more than `rollback_tolerance` below the baseline
     recorded over the full sample when it was promoted, and a Previous
     exists, roll back and stop.
  2. Split off the A/B set (every k-th experience, k = 1 / ab_fraction).
     Train a Candidate from a copy of Active using only the remaining
     experiences that Active mis-predicts.
  3. Candidate accuracy = agreement with actual outcomes on the A/B set.
  4. Promote iff accuracy > accuracy_threshold; otherwise discard.
  5. Adapt the slot learning rate from the cycle-over-cycle accuracy.

An exception in steps 1-4 aborts the cycle, leaves Active untouched and
emits a training_failure event.

Usage:
    manager = ModelLifecycleManager(LifecycleConfig(), buffer)
    manager.register_model("assignment", initial_weights, trainer=trainer)
    weights = manager.active_weights("assignment")
    if manager.record_processed(len(block)):
        manager.run_due_cycles()
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Protocol, Sequence

from controlplane.config import LifecycleConfig
from controlplane.errors import (
    ControlPlaneError, FailureMode, InsufficientData, TrainingFailure,
)
from controlplane.replay import ExperienceReplayBuffer
from controlplane.stats import clamp
from controlplane.types import (
    CycleOutcome, CycleReport, Experience, FeatureWeights, ModelVersion,
)
from engine.logging import EventLogger

log = logging.getLogger("control_plane.lifecycle")


# ═══════════════════════════════════════════════════════════════════
# Trainer Protocol
# ═══════════════════════════════════════════════════════════════════

class Trainer(Protocol):
    """What a model slot needs in order to be retrained online."""

    def label(self, experience: Experience) -> bool:
        """Actual outcome: was this a good decision?"""
        ...

    def predict(self, weights: FeatureWeights, experience: Experience) -> bool:
        """Would ``weights`` have predicted a good decision?"""
        ...

    def effective_learning_rate(self, base: float) -> float:
        ...

    def train(
        self,
        weights: FeatureWeights,
        experiences: Sequence[Experience],
        learning_rate: float,
    ) -> FeatureWeights:
        ...


def prediction_accuracy(
    trainer: Trainer, weights: FeatureWeights, experiences: Sequence[Experience],
) -> float:
    if not experiences:
        raise InsufficientData("no experiences to evaluate")
    hits = sum(
        1 for e in experiences if trainer.predict(weights, e) == trainer.label(e)
    )
    return hits / len(experiences)


def split_ab(
    experiences: Sequence[Experience], fraction: float,
) -> tuple[list[Experience], list[Experience]]:
    """
    Route every k-th experience (k = round(1 / fraction)) to the A/B set.
    A sample shorter than k still sends its last experience there.
    """
    stride = max(1, round(1.0 / fraction))
    ab, training = [], []
    for i, experience in enumerate(experiences):
        if i % stride == stride - 1:
            ab.append(experience)
        else:
            training.append(experience)
    if not ab and training:
        ab.append(training.pop())
    return ab, training


# ═══════════════════════════════════════════════════════════════════
# Model Slots
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ModelSlotState:
    active: ModelVersion
    candidate: ModelVersion | None = None
    previous: ModelVersion | None = None


class _ModelSlot:

    def __init__(self, name: str, initial: ModelVersion, trainer: Trainer | None,
                 learning_rate: float):
        self.name = name
        self.state = ModelSlotState(active=initial)
        self.trainer = trainer
        self.learning_rate = learning_rate
        self.last_cycle_accuracy: float | None = None
        self.lock = threading.Lock()
        self.cycle_lock = threading.Lock()
        self.cycles = 0
        self.promotions = 0
        self.rejections = 0
        self.rollbacks = 0
        self.failures = 0
        self.skipped = 0
        self.last_report: CycleReport | None = None


class ModelLifecycleManager:
    """Versioned weight store plus the online training cycle."""

    def __init__(
        self,
        config: LifecycleConfig | None = None,
        buffer: ExperienceReplayBuffer | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or LifecycleConfig()
        self.buffer = buffer if buffer is not None else ExperienceReplayBuffer()
        self._clock = clock
        self._events = EventLogger("lifecycle")
        self._slots: dict[str, _ModelSlot] = {}
        self._lock = threading.Lock()
        self._processed_since_cycle = 0
        self._total_processed = 0
        self._due = False
        self._on_due: Callable[[], None] | None = None

    # ── Registration & reads ────────────────────────────────────────

    def register_model(
        self,
        name: str,
        weights: FeatureWeights,
        trainer: Trainer | None = None,
        accuracy: float = 0.0,
        learning_rate: float | None = None,
    ) -> ModelVersion:
        """Create a slot; its learning rate starts at ``learning_rate`` or the lifecycle default."""
        initial = ModelVersion(
            weights=weights.renormalized(),
            accuracy=accuracy,
            version=1,
            reason="initial",
            created_at=self._clock(),
        )
        with self._lock:
            if name in self._slots:
                raise ValueError(f"model already registered: {name}")
            self._slots[name] = _ModelSlot(
                name, initial, trainer,
                self.config.learning_rate if learning_rate is None else learning_rate,
            )
        log.info("Registered model %s with %d features", name, len(weights.names))
        return initial

    def models(self) -> list[str]:
        return list(self._slots)

    def _slot(self, name: str) -> _ModelSlot:
        try:
            return self._slots[name]
        except KeyError:
            raise KeyError(f"unknown model: {name}") from None

    def state(self, name: str) -> ModelSlotState:
        return self._slot(name).state

    def active(self, name: str) -> ModelVersion:
        return self._slot(name).state.active

    def active_weights(self, name: str) -> FeatureWeights:
        return self._slot(name).state.active.weights

    def candidate(self, name: str) -> ModelVersion | None:
        return self._slot(name).state.candidate

    def previous(self, name: str) -> ModelVersion | None:
        return self._slot(name).state.previous

    def learning_rate(self, name: str) -> float:
        return self._slot(name).learning_rate

    # ── Promotion & rollback ────────────────────────────────────────

    def promote(
        self,
        name: str,
        weights: FeatureWeights,
        accuracy: float | None = None,
        reason: str = "promoted",
        baseline_accuracy: float | None = None,
    ) -> ModelVersion:
        """Atomically make ``weights`` Active and keep the old Active as Previous."""
        slot = self._slot(name)
        with slot.lock:
            old = slot.state.active
            new = ModelVersion(
                weights=weights.renormalized(),
                accuracy=old.accuracy if accuracy is None else accuracy,
                version=old.version + 1,
                reason=reason,
                created_at=self._clock(),
                baseline_accuracy=baseline_accuracy,
            )
            slot.state = ModelSlotState(active=new, candidate=None, previous=old)
            slot.promotions += 1
        self._events.emit(
            "promotion",
            model=name,
            version=new.version,
            previous_version=old.version,
            accuracy=round(new.accuracy, 4),
            reason=reason,
        )
        return new

    def rollback(self, name: str, reason: str = "manual") -> bool:
        """Restore Previous as Active. Only one generation is kept."""
        slot = self._slot(name)
        with slot.lock:
            previous = slot.state.previous
            if previous is None:
                log.warning("Rollback of %s requested but no previous version exists", name)
                return False
            replaced = slot.state.active
            slot.state = ModelSlotState(active=previous, candidate=None, previous=None)
            slot.rollbacks += 1
        self._events.warning(
            "rollback",
            model=name,
            restored_version=previous.version,
            replaced_version=replaced.version,
            reason=reason,
        )
        return True

    # ── Cycle triggering ────────────────────────────────────────────

    def on_cycle_due(self, callback: Callable[[], None] | None) -> None:
        """Register a callback fired when enough units have been processed."""
        self._on_due = callback

    def record_processed(self, units: int = 1) -> bool:
        """
        Count processed transactions/blocks. Returns True when a training
        cycle is due; the registered callback is fired once per due cycle.
        """
        fire = False
        with self._lock:
            self._total_processed += units
            self._processed_since_cycle += units
            if not self._due and self._processed_since_cycle >= self.config.update_interval:
                self._due = True
                fire = True
            due = self._due
        if fire and self._on_due is not None:
            self._on_due()
        return due

    @property
    def cycle_due(self) -> bool:
        return self._due

    def run_due_cycles(self) -> list[CycleReport]:
        """Run a cycle for every trainable model if one is due."""
        with self._lock:
            if not self._due:
                return []
            self._due = False
            self._processed_since_cycle = 0
        return [
            self.run_cycle(name)
            for name, slot in list(self._slots.items())
            if slot.trainer is not None
        ]

    # ── Training cycle ──────────────────────────────────────────────

    def run_cycle(self, name: str) -> CycleReport:
        slot = self._slot(name)
        if not self.config.enabled:
            return self._finish(slot, CycleReport(
                model=name, outcome=CycleOutcome.DISABLED, reason="lifecycle disabled",
                active_version=slot.state.active.version, learning_rate=slot.learning_rate,
                failure_mode=FailureMode.DISABLED,
            ))
        if slot.trainer is None:
            return self._finish(slot, CycleReport(
                model=name, outcome=CycleOutcome.SKIPPED, reason="model has no trainer",
                active_version=slot.state.active.version, learning_rate=slot.learning_rate,
            ))
        if not slot.cycle_lock.acquire(blocking=False):
            return CycleReport(
                model=name, outcome=CycleOutcome.SKIPPED, reason="cycle already running",
                active_version=slot.state.active.version, learning_rate=slot.learning_rate,
            )
        try:
            slot.cycles += 1
            try:
                report = self._train_and_evaluate(slot)
            except InsufficientData as e:
                report = CycleReport(
                    model=name, outcome=CycleOutcome.SKIPPED, reason=str(e),
                    active_version=slot.state.active.version,
                    experiences=len(self.buffer), failure_mode=e.mode,
                )
            except Exception as e:
                report = self._abort(slot, e)

            if report.outcome in (CycleOutcome.PROMOTED, CycleOutcome.REJECTED):
                self._adapt_learning_rate(slot, report.candidate_accuracy)
            report.learning_rate = slot.learning_rate
            return self._finish(slot, report)
        finally:
            slot.cycle_lock.release()

    def _train_and_evaluate(self, slot: _ModelSlot) -> CycleReport:
        trainer = slot.trainer
        name = slot.name
        experiences = self.buffer.recent(self.config.sample_size)
        if len(experiences) < self.config.min_experiences:
            raise InsufficientData(
                f"need {self.config.min_experiences} experiences, have {len(experiences)}"
            )

        active = slot.state.active
        active_accuracy = prediction_accuracy(trainer, active.weights, experiences)
        baseline = active.baseline_accuracy
        if (
            slot.state.previous is not None
            and baseline is not None
            and baseline - active_accuracy > self.config.rollback_tolerance
        ):
            reason = (
                f"active accuracy fell to {active_accuracy:.3f} "
                f"from {baseline:.3f}"
            )
            self.rollback(name, reason=reason)
            return CycleReport(
                model=name, outcome=CycleOutcome.ROLLED_BACK, reason=reason,
                candidate_accuracy=None, active_version=slot.state.active.version,
                experiences=len(experiences),
            )

        ab_set, training = split_ab(experiences, self.config.ab_fraction)
        if not ab_set:
            raise InsufficientData("no experiences routed to the A/B set")
        mispredicted = [
            e for e in training if trainer.predict(active.weights, e) != trainer.label(e)
        ]
        if not mispredicted:
            raise InsufficientData("active model mis-predicts none of the sampled experiences")

        learning_rate = trainer.effective_learning_rate(slot.learning_rate)
        trained = trainer.train(active.weights, mispredicted, learning_rate)
        if not trained.is_normalized() or trained.names != active.weights.names:
            raise TrainingFailure("trainer returned a malformed weight vector")

        candidate = ModelVersion(
            weights=trained,
            accuracy=0.0,
            version=active.version + 1,
            reason="candidate",
            created_at=self._clock(),
        )
        with slot.lock:
            slot.state = replace(slot.state, candidate=candidate)

        accuracy = prediction_accuracy(trainer, trained, ab_set)
        with slot.lock:
            slot.state = replace(slot.state, candidate=replace(candidate, accuracy=accuracy))

        if accuracy > self.config.accuracy_threshold:
            promoted = self.promote(
                name, trained, accuracy=accuracy,
                reason=f"A/B accuracy {accuracy:.3f} over {len(ab_set)} samples",
                baseline_accuracy=prediction_accuracy(trainer, trained, experiences),
            )
            return CycleReport(
                model=name, outcome=CycleOutcome.PROMOTED,
                reason="candidate accuracy above threshold",
                candidate_accuracy=accuracy, active_version=promoted.version,
                experiences=len(experiences), ab_samples=len(ab_set),
            )

        with slot.lock:
            slot.state = replace(slot.state, candidate=None)
            slot.rejections += 1
        reason = (
            f"candidate accuracy {accuracy:.3f} not above "
            f"threshold {self.config.accuracy_threshold:.3f}"
        )
        log.info("Model %s candidate rejected: %s", name, reason)
        self._events.emit(
            "promotion_rejected", model=name,
            candidate_accuracy=round(accuracy, 4), ab_samples=len(ab_set),
        )
        return CycleReport(
            model=name, outcome=CycleOutcome.REJECTED, reason=reason,
            candidate_accuracy=accuracy, active_version=slot.state.active.version,
            experiences=len(experiences), ab_samples=len(ab_set),
        )

    def _abort(self, slot: _ModelSlot, error: Exception) -> CycleReport:
        mode = (
            error.mode if isinstance(error, ControlPlaneError)
            else FailureMode.TRAINING_FAILURE
        )
        with slot.lock:
            slot.state = replace(slot.state, candidate=None)
            slot.failures += 1
        log.error("Training cycle for %s aborted: %s", slot.name, error, exc_info=True)
        self._events.error(
            "training_failure",
            model=slot.name,
            error_type=type(error).__name__,
            error=str(error)[:500],
            failure_mode=mode.value,
            active_version=slot.state.active.version,
        )
        return CycleReport(
            model=slot.name, outcome=CycleOutcome.FAILED,
            reason=f"{type(error).__name__}: {error}",
            active_version=slot.state.active.version,
            failure_mode=mode,
        )

    def _adapt_learning_rate(self, slot: _ModelSlot, accuracy: float | None) -> None:
        if accuracy is None:
            return
        previous = slot.last_cycle_accuracy
        slot.last_cycle_accuracy = accuracy
        if previous is None:
            return
        cfg = self.config
        delta = accuracy - previous
        if delta > cfg.improvement_margin:
            factor = cfg.lr_increase
        elif delta < -cfg.improvement_margin:
            factor = cfg.lr_decrease
        else:
            factor = cfg.lr_plateau
        old = slot.learning_rate
        slot.learning_rate = clamp(
            old * factor, cfg.min_learning_rate, cfg.max_learning_rate,
        )
        log.debug(
            "Model %s learning rate %.5f -> %.5f (accuracy delta %+.4f)",
            slot.name, old, slot.learning_rate, delta,
        )

    def _finish(self, slot: _ModelSlot, report: CycleReport) -> CycleReport:
        if report.outcome == CycleOutcome.SKIPPED:
            slot.skipped += 1
            log.debug("Cycle for %s skipped: %s", slot.name, report.reason)
        slot.last_report = report
        return report

    # ── Statistics ──────────────────────────────────────────────────

    def statistics(self) -> dict[str, Any]:
        models = {}
        for name, slot in list(self._slots.items()):
            state = slot.state
            last = slot.last_report
            models[name] = {
                "active": state.active.as_dict(),
                "previous_version": state.previous.version if state.previous else None,
                "has_candidate": state.candidate is not None,
                "learning_rate": round(slot.learning_rate, 6),
                "cycles": slot.cycles,
                "promotions": slot.promotions,
                "rejections": slot.rejections,
                "rollbacks": slot.rollbacks,
                "failures": slot.failures,
                "skipped": slot.skipped,
                "last_outcome": last.outcome.value if last else None,
                "last_failure_mode": (
                    last.failure_mode.value if last and last.failure_mode else None
                ),
                "last_reason": last.reason if last else None,
            }
        with self._lock:
            processed = self._total_processed
            since = self._processed_since_cycle
        return {
            "enabled": self.config.enabled,
            "update_interval": self.config.update_interval,
            "accuracy_threshold": self.config.accuracy_threshold,
            "ab_fraction": self.config.ab_fraction,
            "processed_units": processed,
            "processed_since_cycle": since,
            "cycle_due": self._due,
            "replay_buffer": self.buffer.snapshot(),
            "models": models,
        }
