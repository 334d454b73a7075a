"""CalibrationStateMachine: correction-factor learning and target self-tuning.

Phases::

    WAITING -> INITIAL_TRAINING -> CALIBRATING -> STABLE
                                        ^           |
                                        +-- RETRAINING

The machine always runs so the phase is observable; the target budget is
only rewritten when ``auto_calibrate_target`` is on.
"""

from __future__ import annotations

import logging
import math

from ..types import (
    CalibrationConfig,
    CalibrationPhase,
    CalibrationSnapshot,
    ConversationBudgetState,
    PromptMeasurement,
)
from .math_utils import clamp, ema, population_stdev

logger = logging.getLogger(__name__)

MIN_PREDICTED_CHAT_TOKENS = 1


class CalibrationStateMachine:
    def __init__(self, config: CalibrationConfig, memory_enabled: bool = False) -> None:
        self.config = config
        self.memory_enabled = memory_enabled

    # ------------------------------------------------------------------
    # Correction factor
    # ------------------------------------------------------------------

    def update_correction_factor(
        self,
        state: ConversationBudgetState,
        snapshot: CalibrationSnapshot | None,
        measurement: PromptMeasurement,
    ) -> float | None:
        """Blend actual/predicted chat tokens into the factor with adaptive EMA.

        Returns the new factor, or None when there was nothing to reconcile.
        """
        if snapshot is None or snapshot.predicted_total <= 0:
            return None
        if snapshot.predicted_chat_tokens < MIN_PREDICTED_CHAT_TOKENS:
            return None
        if measurement.chat_tokens <= 0:
            # No role headers matched; a zero ratio would collapse the factor.
            logger.debug("No chat segments in realized prompt, correction factor unchanged")
            return None
        return self.apply_ratio(state, measurement.chat_tokens / snapshot.predicted_chat_tokens)

    def apply_ratio(self, state: ConversationBudgetState, observed: float) -> float:
        cfg = self.config
        old = state.correction_factor
        alpha = min(cfg.base_alpha + abs(observed - old) * cfg.alpha_gain, cfg.max_alpha)
        state.correction_factor = ema(old, observed, alpha)
        logger.debug(
            "Correction factor %.3f -> %.3f (observed %.3f, alpha %.3f)",
            old, state.correction_factor, observed, alpha,
        )
        return state.correction_factor

    # ------------------------------------------------------------------
    # Memory token history and tolerance
    # ------------------------------------------------------------------

    def record_memory_tokens(self, state: ConversationBudgetState, tokens: int) -> None:
        if tokens <= 0:
            return
        state.memory_token_history.append(tokens)
        overflow = len(state.memory_token_history) - self.config.memory_history_size
        if overflow > 0:
            del state.memory_token_history[:overflow]

    def averaged_memory_tokens(self, state: ConversationBudgetState, current_tokens: int = 0) -> int:
        history = state.memory_token_history
        if not history:
            return current_tokens
        return sum(history) // len(history)

    def dynamic_tolerance(self, state: ConversationBudgetState, max_context: int) -> float:
        """Base tolerance widened by the volatility of injected memory."""
        base = self.config.tolerance
        if not self.memory_enabled or len(state.memory_token_history) < 2 or max_context <= 0:
            return base
        variance_term = (population_stdev(state.memory_token_history) / max_context) * 2
        return min(base + variance_term, self.config.max_tolerance)

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------

    def target_utilization(self, state: ConversationBudgetState, max_context: int) -> float:
        if self.config.auto_calibrate_target or max_context <= 0:
            return self.config.target_utilization
        return state.target_token_budget / max_context

    def start_threshold(self, state: ConversationBudgetState, max_context: int) -> int:
        if self.config.auto_calibrate_target:
            return math.floor(max_context * self.config.target_utilization)
        return state.target_token_budget

    def calibrate_target(
        self,
        state: ConversationBudgetState,
        max_context: int,
        memory_tokens: int = 0,
    ) -> bool:
        """Move the target toward the ideal utilization.

        Applied only when the change exceeds the hysteresis band; applying
        resets the cutoff and keeps the correction factor. Returns True if
        the target changed.
        """
        if not self.config.auto_calibrate_target or max_context <= 0:
            return False
        cfg = self.config
        ideal = math.floor(max_context * cfg.target_utilization)
        adjustment = self.averaged_memory_tokens(state, memory_tokens) if self.memory_enabled else 0
        factor = state.correction_factor if state.correction_factor > 0 else 1.0
        raw_target = math.floor((ideal - adjustment) / factor)
        current = state.target_token_budget
        damped = math.floor(current + (raw_target - current) * cfg.damping)
        final = clamp(
            damped,
            math.floor(max_context * cfg.min_target_ratio),
            math.floor(max_context * cfg.max_target_ratio),
        )
        logger.debug(
            "Calibrated target: ideal=%d memory=%d factor=%.3f raw=%d damped=%d final=%d",
            ideal, adjustment, factor, raw_target, damped, final,
        )
        return self.apply_target(state, final)

    def apply_target(self, state: ConversationBudgetState, new_target: int) -> bool:
        current = state.target_token_budget
        change = abs(new_target - current) / current if current > 0 else 1.0
        if change <= self.config.hysteresis:
            logger.debug("Target change %.1f%% within hysteresis, keeping %d", change * 100, current)
            return False
        state.target_token_budget = new_target
        state.last_applied_target = new_target
        state.cutoff_index = 0
        logger.info("Target budget %d -> %d for %s (cutoff reset)", current, new_target, state.conversation_id)
        return True

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def observe(
        self,
        state: ConversationBudgetState,
        actual_total: int,
        max_context: int,
        memory_tokens: int = 0,
    ) -> bool:
        """Advance the phase machine with one realized prompt size.

        Returns True if the target budget changed.
        """
        cfg = self.config
        if max_context <= 0:
            return False
        if self.memory_enabled:
            self.record_memory_tokens(state, memory_tokens)

        tolerance = self.dynamic_tolerance(state, max_context)
        utilization = actual_total / max_context
        deviation = abs(utilization - self.target_utilization(state, max_context))
        phase = state.calibration_state
        changed = False
        logger.debug(
            "Calibration %s: actual=%d utilization=%.3f deviation=%.3f tolerance=%.3f",
            phase.value, actual_total, utilization, deviation, tolerance,
        )

        if phase == CalibrationPhase.WAITING:
            threshold = self.start_threshold(state, max_context)
            if actual_total >= threshold:
                self._transition(state, CalibrationPhase.INITIAL_TRAINING)
                state.generation_count = 0

        elif phase == CalibrationPhase.INITIAL_TRAINING:
            state.generation_count += 1
            if state.generation_count >= cfg.training_generations:
                self._transition(state, CalibrationPhase.CALIBRATING)
                state.generation_count = 0
                changed = self.calibrate_target(state, max_context, memory_tokens)

        elif phase == CalibrationPhase.CALIBRATING:
            if deviation <= tolerance:
                state.stable_count += 1
                if state.stable_count >= cfg.stable_threshold:
                    self._transition(state, CalibrationPhase.STABLE)
                    state.deletion_count = 0
            else:
                decay = 2 if deviation > tolerance * 1.5 else 1
                state.stable_count = max(0, state.stable_count - decay)
                logger.debug("Outside tolerance, stable count decayed by %d to %d", decay, state.stable_count)
                changed = self.calibrate_target(state, max_context, memory_tokens)

        elif phase == CalibrationPhase.RETRAINING:
            state.retrain_count += 1
            if state.retrain_count >= cfg.training_generations:
                self._transition(state, CalibrationPhase.CALIBRATING)
                state.retrain_count = 0
                state.stable_count = 0
                changed = self.calibrate_target(state, max_context, memory_tokens)

        elif phase == CalibrationPhase.STABLE:
            if deviation > tolerance * 1.5:
                self._transition(state, CalibrationPhase.RETRAINING)
                state.retrain_count = 0
                state.stable_count = 0

        return changed

    def soft_recalibrate(self, state: ConversationBudgetState, reason: str) -> None:
        """Drop back to CALIBRATING without losing the correction factor.

        WAITING and INITIAL_TRAINING are left alone.
        """
        phase = state.calibration_state
        if phase in (CalibrationPhase.STABLE, CalibrationPhase.CALIBRATING):
            self._transition(state, CalibrationPhase.CALIBRATING, reason)
            state.stable_count = 0
            state.deletion_count = 0
        elif phase == CalibrationPhase.RETRAINING:
            state.deletion_count = 0

    def reset(self, state: ConversationBudgetState) -> None:
        state.calibration_state = CalibrationPhase.WAITING
        state.generation_count = 0
        state.stable_count = 0
        state.retrain_count = 0
        state.correction_factor = 1.0
        logger.info("Calibration reset to WAITING for %s", state.conversation_id)

    def prediction(self, state: ConversationBudgetState, max_context: int, last_actual: int) -> str:
        cfg = self.config
        phase = state.calibration_state
        if phase == CalibrationPhase.WAITING:
            needed = self.start_threshold(state, max_context) - last_actual
            if needed > 0:
                return f"Waiting: ~{needed:,} tokens until threshold"
            return "Threshold reached - starting soon"
        if phase == CalibrationPhase.INITIAL_TRAINING:
            left = cfg.training_generations - state.generation_count
            return f"Training: {left} gen{'s' if left != 1 else ''} remaining"
        if phase == CalibrationPhase.CALIBRATING:
            left = cfg.stable_threshold - state.stable_count
            return f"Calibrating: {left} stable gen{'s' if left != 1 else ''} needed"
        if phase == CalibrationPhase.RETRAINING:
            left = cfg.training_generations - state.retrain_count
            return f"Retraining: {left} gen{'s' if left != 1 else ''} remaining"
        return "Stable - Monitoring"

    def _transition(
        self,
        state: ConversationBudgetState,
        phase: CalibrationPhase,
        reason: str = "",
    ) -> None:
        logger.info(
            "Calibration %s -> %s for %s%s",
            state.calibration_state.value, phase.value, state.conversation_id,
            f" ({reason})" if reason else "",
        )
        state.calibration_state = phase
