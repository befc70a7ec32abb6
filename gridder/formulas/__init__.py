"""
Pure lattice and classification formulas.

This subpackage holds the numerical core shared by the inference stages:
spacing estimation, lattice residuals, nearest-node snapping and the
gridded/non-gridded thresholds. config.py retains the default parameters;
this package holds the arithmetic.
"""

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
    THRESHOLD_POLICIES,
    classify_gridded,
    flag_absolute_threshold,
    flag_relative_threshold,
    validate_thresholds,
)

__all__ = [
    # lattice
    "align_down",
    "align_up",
    "approximate_gcd",
    "cell_count",
    "cluster_tolerance",
    "cluster_values",
    "distinct_values",
    "lattice_residual",
    "nearest_node",
    "refine_spacing",
    # thresholds
    "THRESHOLD_POLICIES",
    "classify_gridded",
    "flag_absolute_threshold",
    "flag_relative_threshold",
    "validate_thresholds",
]
