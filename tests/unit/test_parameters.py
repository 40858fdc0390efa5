"""
Unit tests for quality profiles, registration stages and the slice
dependency graph.
"""

import pytest

from macaquemoco.config import ConfigurationError
from macaquemoco.registration.dependency import SliceDependencyGraph
from macaquemoco.registration.parameters import (
    FLOOR_THRESHOLD,
    GOOD_THRESHOLD,
    OKAY_THRESHOLD,
    resolve_quality_profile,
)


class TestResolveQualityProfile:
    """Tests for resolve_quality_profile()."""

    @pytest.mark.parametrize("level,perfect", [(0, -0.95), (1, -0.97), (2, -1.0), (3, -1.0), (7, -1.0)])
    def test_perfect_threshold_per_level(self, level, perfect):
        assert resolve_quality_profile(level).perfect_threshold == perfect

    def test_fixed_thresholds(self):
        profile = resolve_quality_profile(2)
        assert profile.good_threshold == GOOD_THRESHOLD == -0.85
        assert profile.okay_threshold == OKAY_THRESHOLD == -0.75
        assert profile.floor_threshold == FLOOR_THRESHOLD == -0.3

    def test_higher_levels_iterate_more(self):
        iterations = [resolve_quality_profile(q).linear.total_iterations for q in range(3)]
        assert iterations == sorted(iterations)
        assert resolve_quality_profile(3).nonlinear.total_iterations > \
            resolve_quality_profile(2).nonlinear.total_iterations

    def test_level_kept_above_three(self):
        profile = resolve_quality_profile(5)
        assert profile.level == 5
        assert profile.nonlinear == resolve_quality_profile(3).nonlinear

    def test_perfect_threshold_override(self):
        # quality 0 with a -0.9 override: the -0.9 threshold governs, level 0 settings otherwise
        profile = resolve_quality_profile(0, perfect_threshold=-0.9)
        assert profile.perfect_threshold == -0.9
        assert profile.linear == resolve_quality_profile(0).linear

    @pytest.mark.parametrize("threshold", [-1.5, 0.2])
    def test_perfect_threshold_out_of_range(self, threshold):
        with pytest.raises(ConfigurationError, match="perfect_threshold"):
            resolve_quality_profile(2, perfect_threshold=threshold)

    @pytest.mark.parametrize("level", [-1, 1.5, True, 'high'])
    def test_invalid_level(self, level):
        with pytest.raises(ConfigurationError, match="quality"):
            resolve_quality_profile(level)


class TestRegistrationStages:
    """Tests for the stage definitions of a profile."""

    def test_linear_stages(self):
        stages = resolve_quality_profile(2).linear_stages(0.01)
        assert [s.transform for s in stages] == ['Translation[0.01]', 'Affine[0.01]']
        assert all(s.is_linear for s in stages)
        assert stages[0].restrict_deformation == '0x1'
        assert stages[1].restrict_deformation == '0x0x0x1x0x1'

    def test_nonlinear_stage_is_phase_encode_only(self):
        (stage,) = resolve_quality_profile(2).nonlinear_stages()
        assert not stage.is_linear
        assert stage.transform.startswith('BSplineSyN')
        assert stage.restrict_deformation == '0x1'
        assert stage.metric_argument('f.nii.gz', 'm.nii.gz') == 'CC[f.nii.gz,m.nii.gz,1,3]'

    def test_mean_squares_metric_argument(self):
        stage = resolve_quality_profile(0).linear_stages()[0]
        assert stage.metric_argument('f', 'm') == 'MeanSquares[f,m,1]'

    def test_iterations_parsed_from_convergence(self):
        assert resolve_quality_profile(2).linear.iterations == (50, 20)


class TestSliceDependencyGraph:
    """Tests for SliceDependencyGraph."""

    def test_interleaved_predecessors(self):
        graph = SliceDependencyGraph(n_volumes=3, n_slices=6)
        assert graph.predecessor(1, 5) == (1, 3)
        assert graph.predecessor(1, 2) == (1, 0)
        assert graph.predecessor(1, 1) == (1, 0)
        assert graph.predecessor(1, 0) == (0, 0)
        assert graph.predecessor(0, 0) is None

    def test_custom_interleave(self):
        graph = SliceDependencyGraph(n_volumes=1, n_slices=6, interleave=3)
        assert graph.predecessor(0, 5) == (0, 2)
        assert graph.predecessor(0, 2) == (0, 0)

    def test_out_of_range(self):
        graph = SliceDependencyGraph(n_volumes=2, n_slices=4)
        with pytest.raises(IndexError):
            graph.predecessor(2, 0)

    def test_processing_order_visits_predecessors_first(self):
        graph = SliceDependencyGraph(n_volumes=3, n_slices=5)
        seen = set()
        for key in graph.processing_order():
            predecessor = graph.predecessor(*key)
            assert predecessor is None or predecessor in seen
            seen.add(key)
        assert len(seen) == 15
