"""
Bounded-update primitive tests.

Weights stay in [0.2, 0.6] and sum to 1, SLO targets stay in [70, 98] and
move at most 5 points, signal weights stay in [0.5, 2.0].
"""

import pytest
from hypothesis import given, settings as hyp_settings
from hypothesis import strategies as st

from slocast.engine.bounds import (
    SIGNAL_WEIGHT_MAX,
    SIGNAL_WEIGHT_MIN,
    SLO_MAX,
    SLO_MAX_STEP,
    SLO_MIN,
    WEIGHT_MAX,
    WEIGHT_MIN,
    EnsembleWeights,
    bound_signal_weight,
    bound_slo_target,
    bounded_weight_update,
    clamp,
    project_weights,
)
from slocast.explain.feedback import feedback_update
from slocast.explain.schemas import Verdict

EPS = 1e-6


def assert_valid_weights(w: EnsembleWeights):
    assert abs(w.total - 1.0) <= EPS
    for value in (w.trend, w.conservative, w.optimistic):
        assert WEIGHT_MIN - EPS <= value <= WEIGHT_MAX + EPS


class TestClamp:
    def test_inside_range_unchanged(self):
        assert clamp(42.0) == 42.0

    def test_clamps_both_ends(self):
        assert clamp(-3.0) == 0.0
        assert clamp(130.0) == 100.0
        assert clamp(0.7, 0.2, 0.6) == 0.6


class TestProjectWeights:
    def test_defaults_are_already_valid(self):
        w = project_weights(0.33, 0.33, 0.34)
        assert w.trend == pytest.approx(0.33)
        assert w.conservative == pytest.approx(0.33)
        assert w.optimistic == pytest.approx(0.34)

    def test_over_cap_weight_is_pulled_into_box(self):
        """Clamp-then-divide would push 0.8 back above 0.6; projection never does."""
        w = project_weights(0.8, 0.1, 0.1)
        assert_valid_weights(w)
        assert w.trend == pytest.approx(WEIGHT_MAX)

    def test_all_weights_too_small(self):
        w = project_weights(0.0, 0.0, 0.0)
        assert_valid_weights(w)
        assert w.trend == pytest.approx(1 / 3)

    @given(
        trend=st.floats(min_value=-1.0, max_value=2.0),
        conservative=st.floats(min_value=-1.0, max_value=2.0),
        optimistic=st.floats(min_value=-1.0, max_value=2.0),
    )
    @hyp_settings(max_examples=200)
    def test_projection_always_valid(self, trend, conservative, optimistic):
        assert_valid_weights(project_weights(trend, conservative, optimistic))


class TestBoundedWeightUpdate:
    def test_high_reliability_favours_trend(self):
        current = EnsembleWeights.default()
        updated = bounded_weight_update(current, reliability=95.0, mae=1.0)
        assert updated.trend > current.trend
        assert updated.conservative < current.conservative
        assert_valid_weights(updated)

    def test_pivot_reliability_and_low_mae_is_a_no_op(self):
        current = EnsembleWeights.default()
        updated = bounded_weight_update(current, reliability=75.0, mae=2.0)
        assert updated.trend == pytest.approx(current.trend)
        assert updated.conservative == pytest.approx(current.conservative)

    def test_mae_shift_is_capped(self):
        """MAE of 50 would shift 0.94 uncapped; the shift is at most 0.1."""
        current = EnsembleWeights(0.5, 0.25, 0.25)
        updated = bounded_weight_update(current, reliability=75.0, mae=50.0)
        assert updated.trend == pytest.approx(0.4, abs=1e-6)
        assert updated.conservative == pytest.approx(0.35, abs=1e-6)

    @given(
        reliability=st.floats(min_value=0.0, max_value=100.0),
        mae=st.floats(min_value=0.0, max_value=60.0),
        steps=st.integers(min_value=1, max_value=30),
    )
    @hyp_settings(max_examples=100)
    def test_repeated_cycles_stay_bounded(self, reliability, mae, steps):
        w = EnsembleWeights.default()
        for _ in range(steps):
            w = bounded_weight_update(w, reliability, mae)
            assert_valid_weights(w)


class TestSloBounds:
    def test_step_limited_to_five(self):
        assert bound_slo_target(95.0, 80.0) == 90.0
        assert bound_slo_target(80.0, 97.0) == 85.0

    def test_absolute_range(self):
        assert bound_slo_target(72.0, 50.0) == SLO_MIN
        assert bound_slo_target(97.0, 120.0) == SLO_MAX

    @given(
        current=st.floats(min_value=SLO_MIN, max_value=SLO_MAX),
        proposed=st.floats(min_value=0.0, max_value=150.0),
    )
    @hyp_settings(max_examples=200)
    def test_target_always_in_range_and_step(self, current, proposed):
        target = bound_slo_target(current, proposed)
        assert SLO_MIN <= target <= SLO_MAX
        assert abs(target - current) <= SLO_MAX_STEP + EPS


class TestSignalWeightBounds:
    def test_bound_signal_weight(self):
        assert bound_signal_weight(3.0) == SIGNAL_WEIGHT_MAX
        assert bound_signal_weight(0.1) == SIGNAL_WEIGHT_MIN

    @given(verdicts=st.lists(st.sampled_from(list(Verdict)), min_size=1, max_size=80))
    @hyp_settings(max_examples=100)
    def test_feedback_sequence_stays_bounded(self, verdicts):
        weight, confidence, sample = 1.0, 50.0, 0
        for verdict in verdicts:
            weight, confidence, sample = feedback_update(weight, sample, verdict)
            assert SIGNAL_WEIGHT_MIN <= weight <= SIGNAL_WEIGHT_MAX
            assert 0.0 <= confidence <= 100.0
        assert sample == len(verdicts)
