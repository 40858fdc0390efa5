"""
Unit tests for the per-slice registration state machine.

Uses the translation-only FakeEngine from conftest.py on a synthetic head
phantom, so every accept/retry/fallback branch can be driven explicitly.
"""

import numpy as np
import pytest

from macaquemoco.reference.head_mask import MaskTier
from macaquemoco.registration.dependency import SliceDependencyGraph
from macaquemoco.registration.engine import InitStrategy
from macaquemoco.registration.parameters import resolve_quality_profile
from macaquemoco.registration.slice_registration import (
    MAX_ATTEMPTS,
    RETRY_TRANSITIONS,
    AttemptStatus,
    SliceOutcome,
    SliceRegistrar,
    next_init_strategy,
    select_mask_tier,
)
from macaquemoco.registration.transforms import AffineTransform2D


def _registrar(engine, masks, quality=2, n_volumes=5, **kwargs):
    graph = SliceDependencyGraph(n_volumes, masks.brain.shape[2])
    return SliceRegistrar(engine, masks, resolve_quality_profile(quality), graph, **kwargs)


def _linear_step(call):
    transform = call['stages'][0].transform
    return float(transform[transform.index('[') + 1:-1])


class TestRetryTransitions:
    """Tests for next_init_strategy()."""

    def test_transition_table(self):
        assert RETRY_TRANSITIONS[InitStrategy.ORIGIN] is InitStrategy.INTENSITY_BASED
        assert RETRY_TRANSITIONS[InitStrategy.INTENSITY_BASED] is InitStrategy.PREVIOUS_SLICE
        assert RETRY_TRANSITIONS[InitStrategy.PREVIOUS_SLICE] is InitStrategy.GEOMETRIC_CENTER
        assert RETRY_TRANSITIONS[InitStrategy.GEOMETRIC_CENTER] is InitStrategy.INTENSITY_BASED

    def test_full_ladder_from_origin(self):
        strategy = InitStrategy.ORIGIN
        ladder = [strategy]
        for attempt in range(2, MAX_ATTEMPTS + 1):
            strategy = next_init_strategy(attempt, strategy)
            ladder.append(strategy)
        assert ladder == [
            InitStrategy.ORIGIN,
            InitStrategy.INTENSITY_BASED,
            InitStrategy.PREVIOUS_SLICE,
            InitStrategy.GEOMETRIC_CENTER,
            InitStrategy.ORIGIN,
        ]

    def test_last_attempt_forces_origin(self):
        for strategy in InitStrategy:
            assert next_init_strategy(MAX_ATTEMPTS, strategy) is InitStrategy.ORIGIN


class TestSelectMaskTier:
    """Tests for select_mask_tier()."""

    def test_tiers_by_original_score(self):
        profile = resolve_quality_profile(2)
        assert select_mask_tier(-0.9, profile) is MaskTier.STRICT
        assert select_mask_tier(-0.8, profile) is MaskTier.REGULAR
        assert select_mask_tier(-0.5, profile) is MaskTier.LIBERAL

    def test_threshold_values_are_exclusive(self):
        profile = resolve_quality_profile(2)
        assert select_mask_tier(-0.85, profile) is MaskTier.REGULAR
        assert select_mask_tier(-0.75, profile) is MaskTier.LIBERAL

    def test_unscored_uses_liberal(self):
        assert select_mask_tier(None, resolve_quality_profile(2)) is MaskTier.LIBERAL


class TestSkippedSlices:
    """Slices that are never registered."""

    def test_already_perfect_slice_is_untouched(self, masks, make_engine, make_timeseries):
        engine = make_engine()
        data = make_timeseries(n_volumes=1)
        registrar = _registrar(engine, masks, quality=0, n_volumes=1)

        source = data[:, :, 4, 0]
        result = registrar.register_slice(0, 4, source)

        assert result.outcome is SliceOutcome.ALREADY_PERFECT
        assert result.affine.is_identity()
        assert np.array_equal(result.aligned, source)
        assert not np.any(result.warp)
        assert result.original_score < -0.95
        assert engine.linear_calls == []
        assert engine.nonlinear_calls == []

    def test_slice_above_brain_is_not_scored(self, masks, make_engine, make_timeseries):
        engine = make_engine()
        data = make_timeseries(n_volumes=1)
        registrar = _registrar(engine, masks, n_volumes=1)
        top = masks.top_slice
        assert top < data.shape[2] - 1

        result = registrar.register_slice(0, top + 1, data[:, :, top + 1, 0])

        assert result.outcome is SliceOutcome.ABOVE_BRAIN
        assert result.original_score is None
        assert result.final_score is None
        assert np.array_equal(result.aligned, data[:, :, top + 1, 0])
        assert np.array_equal(result.displacement, np.zeros_like(result.aligned))


class TestLinearRegistration:
    """Linear stage acceptance and retries."""

    def test_shifted_slice_is_recovered(self, masks, make_engine, make_timeseries):
        engine = make_engine()
        data = make_timeseries(n_volumes=1, shifts={(0, 4): 2})
        registrar = _registrar(engine, masks, n_volumes=1)

        result = registrar.register_slice(0, 4, data[:, :, 4, 0])

        assert result.outcome is SliceOutcome.LINEAR
        assert result.affine.y_translation == pytest.approx(-2.0)
        assert result.n_linear_attempts == 1
        assert result.linear_score < result.original_score
        assert result.final_score <= result.linear_score
        np.testing.assert_allclose(result.displacement, -2.0)

    def test_linear_result_beats_perfect_skips_nonlinear(self, masks, make_engine, make_timeseries):
        engine = make_engine()
        data = make_timeseries(n_volumes=1, shifts={(0, 4): 2})
        registrar = _registrar(engine, masks, quality=0, n_volumes=1)

        result = registrar.register_slice(0, 4, data[:, :, 4, 0])

        assert result.original_score > -0.95
        assert result.linear_score < -0.95
        assert result.outcome is SliceOutcome.LINEAR
        assert not result.nonlinear_ran
        assert engine.nonlinear_calls == []
        assert not np.any(result.warp)

    def test_overlap_failures_follow_retry_ladder(self, masks, make_engine, make_timeseries):
        engine = make_engine(fail_first=2)
        data = make_timeseries(n_volumes=1, shifts={(0, 4): 2})
        registrar = _registrar(engine, masks, n_volumes=1)

        result = registrar.register_slice(0, 4, data[:, :, 4, 0])

        assert [a.status for a in result.attempts] == [
            AttemptStatus.OVERLAP, AttemptStatus.OVERLAP, AttemptStatus.OK
        ]
        assert [a.strategy for a in result.attempts] == [
            InitStrategy.ORIGIN, InitStrategy.INTENSITY_BASED, InitStrategy.PREVIOUS_SLICE
        ]
        # no predecessor yet: the previous-slice initialization falls back to the origin
        assert engine.linear_calls[2]['initialization'].strategy is InitStrategy.ORIGIN
        assert result.outcome is SliceOutcome.LINEAR

    def test_attempts_are_bounded(self, masks, make_engine, make_timeseries):
        engine = make_engine(always_fail=True)
        data = make_timeseries(n_volumes=1, shifts={(0, 4): 2})
        registrar = _registrar(engine, masks, n_volumes=1)

        result = registrar.register_slice(0, 4, data[:, :, 4, 0])

        assert result.n_linear_attempts == MAX_ATTEMPTS
        assert len(engine.linear_calls) == MAX_ATTEMPTS
        assert result.attempts[-1].strategy is InitStrategy.ORIGIN
        steps = [_linear_step(call) for call in engine.linear_calls]
        assert steps[-1] == pytest.approx(steps[0] / 10.0)

    def test_tie_with_original_counts_as_failure(self, masks, make_engine, make_timeseries):
        engine = make_engine()
        data = make_timeseries(n_volumes=1)
        registrar = _registrar(engine, masks, quality=2, n_volumes=1)

        # an unshifted slice cannot improve on its original match
        result = registrar.register_slice(0, 4, data[:, :, 4, 0])

        assert all(a.status is AttemptStatus.QUALITY for a in result.attempts)
        assert result.n_linear_attempts == MAX_ATTEMPTS
        assert result.outcome is SliceOutcome.IDENTITY_FALLBACK

    def test_distorted_slice_retries(self, masks, make_engine, make_timeseries):
        engine = make_engine()
        data = make_timeseries(n_volumes=2)
        rng = np.random.RandomState(7)
        data[:, :, 7, 1] = rng.normal(0, 100, size=data.shape[:2])
        registrar = _registrar(engine, masks, n_volumes=2)

        result = registrar.register_slice(1, 7, data[:, :, 7, 1])

        assert result.n_linear_attempts > 1
        assert result.n_linear_attempts <= MAX_ATTEMPTS
        assert result.outcome in (SliceOutcome.NEIGHBOR_FALLBACK, SliceOutcome.IDENTITY_FALLBACK)

    def test_init_from_previous(self, masks, make_engine, make_timeseries):
        engine = make_engine()
        data = make_timeseries(n_volumes=1, shifts={(0, 2): 2, (0, 4): 2})
        registrar = _registrar(engine, masks, n_volumes=1, init_from_previous=True)

        registrar.register_slice(0, 2, data[:, :, 2, 0])
        result = registrar.register_slice(0, 4, data[:, :, 4, 0])

        init = engine.linear_calls[-1]['initialization']
        assert init.strategy is InitStrategy.PREVIOUS_SLICE
        assert init.transform.y_translation == pytest.approx(-2.0)
        assert result.attempts[0].strategy is InitStrategy.PREVIOUS_SLICE


class TestFallbacks:
    """Neighbor and identity fallbacks after exhausted retries."""

    def test_neighbor_fallback(self, masks, make_engine, make_timeseries):
        data = make_timeseries(n_volumes=1, shifts={(0, 2): 2, (0, 4): 2})
        registrar = _registrar(make_engine(), masks, n_volumes=1)
        first = registrar.register_slice(0, 2, data[:, :, 2, 0])
        assert first.outcome is SliceOutcome.LINEAR

        registrar.engine = make_engine(always_fail=True)
        result = registrar.register_slice(0, 4, data[:, :, 4, 0])

        assert result.outcome is SliceOutcome.NEIGHBOR_FALLBACK
        assert result.affine.y_translation == pytest.approx(first.affine.y_translation)
        assert result.linear_score < result.original_score

    def test_identity_fallback_without_predecessor(self, masks, make_engine, make_timeseries):
        data = make_timeseries(n_volumes=1, shifts={(0, 1): 2})
        registrar = _registrar(make_engine(always_fail=True), masks, n_volumes=1)

        source = data[:, :, 1, 0]
        result = registrar.register_slice(0, 1, source)

        assert result.outcome is SliceOutcome.IDENTITY_FALLBACK
        assert result.affine.is_identity()
        assert np.array_equal(result.aligned, source)
        assert result.linear_score == result.original_score


class TestNonlinearRegistration:
    """Non-linear stage acceptance."""

    def test_zero_warp_is_rejected(self, masks, make_engine, make_timeseries):
        engine = make_engine(warp_max_shift=0)
        data = make_timeseries(n_volumes=1, shifts={(0, 4): 2})
        registrar = _registrar(engine, masks, quality=2, n_volumes=1)

        result = registrar.register_slice(0, 4, data[:, :, 4, 0])

        assert result.nonlinear_ran
        assert result.outcome is SliceOutcome.LINEAR
        assert not np.any(result.warp)
        assert result.final_score == result.linear_score

    def test_improving_warp_is_kept(self, masks, make_engine, make_timeseries):
        # the linear search only reaches half of the shift
        engine = make_engine(max_shift=1, warp_max_shift=2)
        data = make_timeseries(n_volumes=1, shifts={(0, 4): 2})
        registrar = _registrar(engine, masks, quality=2, n_volumes=1)

        result = registrar.register_slice(0, 4, data[:, :, 4, 0])

        assert result.outcome is SliceOutcome.NONLINEAR
        assert result.final_score < result.linear_score
        assert result.affine.y_translation + result.warp.mean() == pytest.approx(-2.0)
        np.testing.assert_allclose(result.displacement, -2.0)


class TestRegisterVolume:
    """Tests for SliceRegistrar.register_volume()."""

    def test_scores_never_get_worse(self, masks, make_engine, make_timeseries):
        shifts = {(0, 2): 1, (0, 3): 2, (0, 5): 3, (0, 6): -1}
        data = make_timeseries(n_volumes=1, shifts=shifts)
        registrar = _registrar(make_engine(), masks, quality=1, n_volumes=1)

        results = registrar.register_volume(0, data[..., 0])

        assert [r.slice_idx for r in results] == list(range(data.shape[2]))
        for r in results:
            if r.original_score is None:
                continue
            assert r.final_score <= r.linear_score <= r.original_score

    def test_unchecked_registration_has_no_scores(self, masks, make_engine, make_timeseries):
        data = make_timeseries(n_volumes=1, shifts={(0, 3): 2})
        registrar = _registrar(make_engine(), masks, n_volumes=1, check_registration=False)

        results = registrar.register_volume(0, data[..., 0])

        assert all(r.original_score is None for r in results)
        assert all(r.final_score is None for r in results)
        assert results[3].tier is MaskTier.LIBERAL
        assert results[3].affine.y_translation == pytest.approx(-2.0)

    def test_accepted_transforms_are_recorded(self, masks, make_engine, make_timeseries):
        data = make_timeseries(n_volumes=1, shifts={(0, 3): 2})
        registrar = _registrar(make_engine(), masks, n_volumes=1)
        registrar.register_volume(0, data[..., 0])

        assert set(registrar.accepted) == {(0, s) for s in range(data.shape[2])}
        assert isinstance(registrar.accepted[(0, 3)], AffineTransform2D)

    def test_only_latest_volume_transforms_are_kept(self, masks, make_engine, make_timeseries):
        data = make_timeseries(n_volumes=3)
        registrar = _registrar(make_engine(), masks, n_volumes=3)
        for v in range(3):
            registrar.register_volume(v, data[..., v])
            assert {key[0] for key in registrar.accepted} == {v}

        assert len(registrar.accepted) == data.shape[2]
