"""
Tests for gridder/formulas/lattice.py and gridder/formulas/thresholds.py.

Pure lattice arithmetic and threshold flags, checked against hand-worked
values.
"""

import numpy as np
import pytest

from gridder.errors import ConfigurationError
from gridder.formulas.lattice import (
    align_down,
    align_up,
    approximate_gcd,
    cell_count,
    cluster_tolerance,
    cluster_values,
    distinct_values,
    lattice_residual,
    nearest_node,
    refine_spacing,
)
from gridder.formulas.thresholds import (
    classify_gridded,
    flag_absolute_threshold,
    flag_relative_threshold,
    validate_thresholds,
)


class TestDistinctValues:

    def test_sorted_unique_after_rounding(self):
        vals = [3.0, 1.0000000001, 1.0, 2.0, 3.0]
        np.testing.assert_array_equal(distinct_values(vals), [1.0, 2.0, 3.0])

    def test_nonfinite_dropped(self):
        assert len(distinct_values([1.0, np.nan, np.inf, 2.0])) == 2


class TestApproximateGcd:

    def test_exact_multiples(self):
        spacing, k = approximate_gcd([10000, 20000, 30000, 70000])
        assert spacing == pytest.approx(10000)
        assert k == 1

    def test_divisor_of_smallest_gap(self):
        """Smallest gap 20000 with a 30000 gap gives 10000 (k=2)."""
        spacing, k = approximate_gcd([20000, 30000])
        assert spacing == pytest.approx(10000)
        assert k == 2

    def test_tolerates_small_noise(self):
        spacing, _ = approximate_gcd([10000.2, 19999.9, 40000.3])
        assert spacing == pytest.approx(10000.2)

    def test_none_when_no_divisor(self):
        assert approximate_gcd([1.0, np.sqrt(2)], max_divisor=5) is None

    def test_empty_gaps(self):
        assert approximate_gcd([]) is None
        assert approximate_gcd([0.0, -1.0]) is None

    def test_noise_gaps_ignored(self):
        """Sub-metre gaps inside one grid line do not become the spacing."""
        spacing, k = approximate_gcd([0.3, 10000.0, 0.5, 20000.0], min_gap=10.0)
        assert spacing == pytest.approx(10000)
        assert k == 1

    def test_min_spacing_stops_search(self):
        assert approximate_gcd([1e-5, 3e-5], min_spacing=5e-4) is None
        assert approximate_gcd([1e-3, 3e-3], min_spacing=5e-4) == pytest.approx((1e-3, 1))


class TestClustering:

    def test_tolerance_scales_with_largest_gap(self):
        assert cluster_tolerance([0.0, 10.0, 1000.0]) == pytest.approx(0.99)
        assert cluster_tolerance([0.0, 10.0], cluster_tol=2.5) == 2.5
        assert cluster_tolerance([5.0]) == 0.0

    def test_runs_collapse_to_means(self):
        lines = cluster_values([0.0, 0.5, 1.0, 100.0, 100.2, 300.0], tol=2.0)
        np.testing.assert_allclose(lines, [0.5, 100.1, 300.0])

    def test_zero_tolerance_is_identity(self):
        np.testing.assert_array_equal(cluster_values([1.0, 2.0], tol=0.0), [1.0, 2.0])


class TestRefineSpacing:

    def test_fit_through_noisy_lines(self):
        pos = np.array([0.1, 9999.9, 30000.2, 49999.8])
        assert refine_spacing(pos, 9999.8) == pytest.approx(9999.97, abs=0.01)

    def test_exact_lattice_unchanged(self):
        assert refine_spacing([0.0, 20000.0, 50000.0], 10000.0) == pytest.approx(10000.0)

    def test_single_position(self):
        assert refine_spacing([5.0], 10.0) == 10.0


class TestLatticeResidual:

    def test_zero_on_lattice(self):
        assert lattice_residual([5, 15, 45, 105], 10) == pytest.approx(0.0)

    def test_half_cell_offset(self):
        assert lattice_residual([0, 15], 10) == pytest.approx(0.25)

    def test_explicit_origin(self):
        assert lattice_residual([5, 15], 10, origin=0) == pytest.approx(0.5)

    def test_nan_for_bad_spacing(self):
        assert np.isnan(lattice_residual([1, 2], 0))


class TestNearestNode:

    def test_center_nodes(self):
        coords, idx = nearest_node([4.0, 11.0, 29.0], origin=0, spacing=10, n_cells=3,
                                   node="center")
        np.testing.assert_allclose(coords, [5.0, 15.0, 25.0])
        np.testing.assert_array_equal(idx, [0, 1, 2])

    def test_corner_nodes(self):
        coords, _ = nearest_node([4.0, 6.0, 29.0], origin=0, spacing=10, n_cells=3,
                                 node="corner")
        np.testing.assert_allclose(coords, [0.0, 10.0, 30.0])

    def test_outside_points_clip_to_edge(self):
        coords, _ = nearest_node([-50.0, 500.0], origin=0, spacing=10, n_cells=3,
                                 node="center")
        np.testing.assert_allclose(coords, [5.0, 25.0])

    def test_unknown_node(self):
        with pytest.raises(ValueError, match="Unknown grid node"):
            nearest_node([1.0], 0, 10, 3, node="edge")


class TestAlignment:

    def test_align_down_up(self):
        assert align_down(12345, 1000) == 12000
        assert align_up(12345, 1000) == 13000

    def test_already_aligned_is_unchanged(self):
        assert align_down(30000, 10000) == 30000
        assert align_up(30000, 10000) == 30000

    def test_float_noise_snaps(self):
        assert align_down(29999.999999999996, 10000) == 30000

    def test_origin_offset(self):
        assert align_down(12, 10, origin=5) == 5
        assert align_up(12, 10, origin=5) == 15

    def test_cell_count(self):
        assert cell_count(25000, 10000) == 3
        assert cell_count(20000, 10000) == 2
        assert cell_count(0.3, 0.1) == 3


class TestThresholdFlags:

    def test_absolute_is_inclusive(self):
        np.testing.assert_array_equal(
            flag_absolute_threshold([5.0, 10.0, 10.1], 10.0), [True, True, False],
        )

    def test_relative_is_inclusive(self):
        np.testing.assert_array_equal(
            flag_relative_threshold([0.05, 0.1, 0.2], 0.1), [True, True, False],
        )

    def test_nan_is_not_gridded(self):
        assert not flag_absolute_threshold([np.nan], 10.0)[0]

    def test_conjunctive_requires_both(self):
        out = classify_gridded([5.0, 50.0, 5.0], [0.5, 0.05, 0.05],
                               absolute_threshold=10, relative_threshold=0.1,
                               policy="conjunctive")
        np.testing.assert_array_equal(out, [False, False, True])

    def test_disjunctive_requires_either(self):
        out = classify_gridded([5.0, 50.0, 50.0], [0.5, 0.05, 0.5],
                               absolute_threshold=10, relative_threshold=0.1,
                               policy="disjunctive")
        np.testing.assert_array_equal(out, [True, True, False])

    def test_unknown_policy(self):
        with pytest.raises(ConfigurationError):
            classify_gridded([1.0], [0.1], policy="majority")


class TestValidateThresholds:

    @pytest.mark.parametrize("rel, abs_", [(-0.1, 10), (0.1, -1), (float("nan"), 10),
                                           (0.1, float("inf")), ("x", 10)])
    def test_rejects_bad_values(self, rel, abs_):
        with pytest.raises(ConfigurationError) as exc:
            validate_thresholds(rel, abs_)
        assert exc.value.stage == "matching"

    def test_accepts_zero(self):
        validate_thresholds(0.0, 0.0, "conjunctive")

    def test_rejects_unknown_policy(self):
        with pytest.raises(ConfigurationError):
            validate_thresholds(0.1, 10, "sometimes")
