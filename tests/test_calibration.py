"""Tests for the correction factor and calibration state machine."""

import pytest

from context_budget.core.calibration import CalibrationStateMachine
from context_budget.types import (
    CalibrationConfig,
    CalibrationPhase,
    CalibrationSnapshot,
    ConversationBudgetState,
    PromptMeasurement,
)

MAX_CONTEXT = 10000


def _state(target=8000, **kwargs) -> ConversationBudgetState:
    return ConversationBudgetState(
        conversation_id="c1", target_token_budget=target, last_applied_target=target, **kwargs,
    )


def _snapshot(chat: int) -> CalibrationSnapshot:
    return CalibrationSnapshot(
        predicted_total=chat + 1000, predicted_chat_tokens=chat, predicted_non_chat_tokens=1000,
    )


def _measurement(chat: int) -> PromptMeasurement:
    return PromptMeasurement(total_tokens=chat + 1000, chat_tokens=chat, segment_count=10)


class TestCorrectionFactor:
    def test_factor_sequence(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state()
        expected = [0.98, 0.952, 0.926]
        for actual_chat, factor in zip([900, 850, 830], expected):
            machine.update_correction_factor(state, _snapshot(1000), _measurement(actual_chat))
            assert state.correction_factor == pytest.approx(factor, abs=1e-3)

    def test_large_error_caps_alpha(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state()
        machine.apply_ratio(state, 2.0)
        # alpha capped at 0.4: 0.4 * 2.0 + 0.6 * 1.0
        assert state.correction_factor == pytest.approx(1.4)

    @pytest.mark.parametrize("k", [0.7, 1.3])
    def test_converges_to_constant_ratio(self, k):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state()
        previous_error = abs(state.correction_factor - k)
        for _ in range(30):
            machine.update_correction_factor(state, _snapshot(1000), _measurement(round(k * 1000)))
            error = abs(state.correction_factor - k)
            # Approaches from the starting side and never crosses k
            assert error < previous_error
            assert (state.correction_factor - k) * (1.0 - k) > 0
            previous_error = error
        assert abs(state.correction_factor - k) < 0.01

    def test_exact_prediction_keeps_factor(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state()
        machine.update_correction_factor(state, _snapshot(1000), _measurement(1000))
        assert state.correction_factor == pytest.approx(1.0)

    def test_skip_without_snapshot(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state()
        assert machine.update_correction_factor(state, None, _measurement(500)) is None
        assert state.correction_factor == 1.0

    def test_skip_when_no_predicted_chat(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state()
        assert machine.update_correction_factor(state, _snapshot(0), _measurement(500)) is None
        assert state.correction_factor == 1.0

    def test_skip_when_no_chat_segments(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state()
        assert machine.update_correction_factor(state, _snapshot(1000), _measurement(0)) is None
        assert state.correction_factor == 1.0


class TestPhases:
    def test_full_lifecycle_fixed_target(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state()

        machine.observe(state, 7000, MAX_CONTEXT)
        assert state.calibration_state == CalibrationPhase.WAITING

        machine.observe(state, 8000, MAX_CONTEXT)
        assert state.calibration_state == CalibrationPhase.INITIAL_TRAINING

        machine.observe(state, 8000, MAX_CONTEXT)
        machine.observe(state, 8000, MAX_CONTEXT)
        assert state.calibration_state == CalibrationPhase.CALIBRATING
        # fixed target is never rewritten
        assert state.target_token_budget == 8000

        for _ in range(5):
            machine.observe(state, 8100, MAX_CONTEXT)
        assert state.calibration_state == CalibrationPhase.STABLE

        machine.observe(state, 9000, MAX_CONTEXT)
        assert state.calibration_state == CalibrationPhase.RETRAINING

        machine.observe(state, 8000, MAX_CONTEXT)
        machine.observe(state, 8000, MAX_CONTEXT)
        assert state.calibration_state == CalibrationPhase.CALIBRATING
        assert state.stable_count == 0

    def test_stable_count_decays_outside_tolerance(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state(calibration_state=CalibrationPhase.CALIBRATING, stable_count=3)
        machine.observe(state, 8600, MAX_CONTEXT)  # deviation 0.06: within 1.5x tolerance
        assert state.stable_count == 2
        machine.observe(state, 9500, MAX_CONTEXT)  # deviation 0.15: far outside
        assert state.stable_count == 0

    def test_no_context_size_is_noop(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state()
        assert machine.observe(state, 9000, 0) is False
        assert state.calibration_state == CalibrationPhase.WAITING

    def test_auto_threshold_uses_utilization(self):
        machine = CalibrationStateMachine(CalibrationConfig(auto_calibrate_target=True))
        state = _state(target=2000)
        machine.observe(state, 7900, MAX_CONTEXT)
        assert state.calibration_state == CalibrationPhase.WAITING
        machine.observe(state, 8000, MAX_CONTEXT)
        assert state.calibration_state == CalibrationPhase.INITIAL_TRAINING

    def test_training_completion_calibrates_target(self):
        machine = CalibrationStateMachine(CalibrationConfig(auto_calibrate_target=True))
        state = _state(
            target=5000, cutoff_index=40,
            calibration_state=CalibrationPhase.INITIAL_TRAINING, generation_count=1,
        )
        changed = machine.observe(state, 8000, MAX_CONTEXT)
        assert changed is True
        assert state.calibration_state == CalibrationPhase.CALIBRATING
        assert state.target_token_budget == 7100
        assert state.cutoff_index == 0

    def test_soft_recalibrate(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state(
            calibration_state=CalibrationPhase.STABLE, stable_count=5,
            deletion_count=3, correction_factor=0.9,
        )
        machine.soft_recalibrate(state, "test")
        assert state.calibration_state == CalibrationPhase.CALIBRATING
        assert state.stable_count == 0
        assert state.deletion_count == 0
        assert state.correction_factor == 0.9

    def test_soft_recalibrate_ignored_while_waiting(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state(deletion_count=3)
        machine.soft_recalibrate(state, "test")
        assert state.calibration_state == CalibrationPhase.WAITING
        assert state.deletion_count == 3

    def test_reset(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state(calibration_state=CalibrationPhase.STABLE, correction_factor=0.8, stable_count=5)
        machine.reset(state)
        assert state.calibration_state == CalibrationPhase.WAITING
        assert state.correction_factor == 1.0
        assert state.stable_count == 0

    def test_prediction_text(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state()
        assert machine.prediction(state, MAX_CONTEXT, 5000) == "Waiting: ~3,000 tokens until threshold"
        state.calibration_state = CalibrationPhase.INITIAL_TRAINING
        state.generation_count = 1
        assert machine.prediction(state, MAX_CONTEXT, 8000) == "Training: 1 gen remaining"
        state.calibration_state = CalibrationPhase.STABLE
        assert machine.prediction(state, MAX_CONTEXT, 8000) == "Stable - Monitoring"


class TestTargetCalibration:
    def test_fixed_target_never_rewritten(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state(correction_factor=0.5)
        assert machine.calibrate_target(state, MAX_CONTEXT) is False
        assert state.target_token_budget == 8000

    def test_damped_move_resets_cutoff_keeps_factor(self):
        machine = CalibrationStateMachine(CalibrationConfig(auto_calibrate_target=True))
        state = _state(correction_factor=0.9, cutoff_index=60)
        assert machine.calibrate_target(state, MAX_CONTEXT) is True
        # raw floor(8000 / 0.9) = 8888; damped 8000 + 888 * 0.7
        assert state.target_token_budget == 8621
        assert state.last_applied_target == 8621
        assert state.cutoff_index == 0
        assert state.correction_factor == 0.9

    def test_hysteresis_blocks_small_change(self):
        machine = CalibrationStateMachine(CalibrationConfig(auto_calibrate_target=True))
        state = _state(correction_factor=0.97, cutoff_index=60)
        assert machine.calibrate_target(state, MAX_CONTEXT) is False
        assert state.target_token_budget == 8000
        assert state.cutoff_index == 60

    def test_memory_tokens_reserved(self):
        machine = CalibrationStateMachine(
            CalibrationConfig(auto_calibrate_target=True), memory_enabled=True,
        )
        state = _state(memory_token_history=[1000, 1000])
        assert machine.calibrate_target(state, MAX_CONTEXT) is True
        assert state.target_token_budget == 7300

    def test_clamped_to_max_ratio(self):
        machine = CalibrationStateMachine(CalibrationConfig(auto_calibrate_target=True))
        state = _state(correction_factor=0.3)
        machine.calibrate_target(state, MAX_CONTEXT)
        assert state.target_token_budget == 9500

    def test_clamped_to_min_ratio(self):
        machine = CalibrationStateMachine(CalibrationConfig(auto_calibrate_target=True))
        state = _state(correction_factor=10.0)
        machine.calibrate_target(state, MAX_CONTEXT)
        assert state.target_token_budget == 3000

    def test_converges_within_hysteresis(self):
        machine = CalibrationStateMachine(CalibrationConfig(auto_calibrate_target=True))
        state = _state(target=5000)
        for _ in range(20):
            machine.calibrate_target(state, MAX_CONTEXT)
        assert abs(8000 - state.target_token_budget) / state.target_token_budget < 0.072


class TestMemoryHistory:
    def test_history_bounded(self):
        machine = CalibrationStateMachine(CalibrationConfig(memory_history_size=3), memory_enabled=True)
        state = _state()
        for tokens in (100, 200, 300, 400, 0):
            machine.record_memory_tokens(state, tokens)
        assert state.memory_token_history == [200, 300, 400]
        assert machine.averaged_memory_tokens(state) == 300

    def test_dynamic_tolerance_widens_and_caps(self):
        machine = CalibrationStateMachine(CalibrationConfig(), memory_enabled=True)
        state = _state(memory_token_history=[1000, 1100])
        # pstdev 50 -> 50 / 10000 * 2 = 0.01
        assert machine.dynamic_tolerance(state, MAX_CONTEXT) == pytest.approx(0.06)
        state.memory_token_history = [1000, 3000]
        assert machine.dynamic_tolerance(state, MAX_CONTEXT) == pytest.approx(0.15)

    def test_dynamic_tolerance_without_memory(self):
        machine = CalibrationStateMachine(CalibrationConfig())
        state = _state(memory_token_history=[1000, 3000])
        assert machine.dynamic_tolerance(state, MAX_CONTEXT) == 0.05
