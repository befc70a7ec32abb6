"""
Gridded / non-gridded classification thresholds.

All functions are pure (no I/O, no side effects).
"""

import math

import numpy as np

from gridder import config
from gridder.errors import ConfigurationError

THRESHOLD_POLICIES = ("conjunctive", "disjunctive")


def flag_absolute_threshold(distance, threshold=None):
    """Flag distances within an absolute threshold (CRS linear unit).

    Parameters
    ----------
    distance : array-like
        Distance from each point to its nearest grid node.
    threshold : float, optional
        Defaults to config.DEFAULT_ABSOLUTE_THRESHOLD (10.0).

    Returns
    -------
    np.ndarray of bool
        True where ``distance <= threshold``. NaN distances are False.
    """
    if threshold is None:
        threshold = config.DEFAULT_ABSOLUTE_THRESHOLD
    d = np.asarray(distance, dtype="float64")
    with np.errstate(invalid="ignore"):
        return d <= threshold


def flag_relative_threshold(relative_distance, threshold=None):
    """Flag relative distances (fraction of resolution) within a threshold.

    Parameters
    ----------
    relative_distance : array-like
        Distance to the nearest node divided by the grid resolution.
    threshold : float, optional
        Defaults to config.DEFAULT_RELATIVE_THRESHOLD (0.1).

    Returns
    -------
    np.ndarray of bool
    """
    if threshold is None:
        threshold = config.DEFAULT_RELATIVE_THRESHOLD
    d = np.asarray(relative_distance, dtype="float64")
    with np.errstate(invalid="ignore"):
        return d <= threshold


def classify_gridded(distance, relative_distance, absolute_threshold=None,
                     relative_threshold=None, policy=None):
    """Combine the absolute and relative flags into a gridded label.

    "conjunctive" requires both thresholds to hold; "disjunctive"
    requires either.
    """
    if policy is None:
        policy = config.DEFAULT_THRESHOLD_POLICY
    abs_ok = flag_absolute_threshold(distance, absolute_threshold)
    rel_ok = flag_relative_threshold(relative_distance, relative_threshold)
    if policy == "conjunctive":
        return abs_ok & rel_ok
    if policy == "disjunctive":
        return abs_ok | rel_ok
    raise ConfigurationError(
        "Unknown threshold policy", stage="matching", policy=policy,
    )


def validate_thresholds(relative_threshold, absolute_threshold, policy=None):
    """Reject negative, non-finite or unknown threshold settings.

    Raises
    ------
    ConfigurationError
    """
    for name, value in (("relative_threshold", relative_threshold),
                        ("absolute_threshold", absolute_threshold)):
        if value is None:
            continue
        try:
            ok = math.isfinite(float(value)) and float(value) >= 0
        except (TypeError, ValueError):
            ok = False
        if not ok:
            raise ConfigurationError(
                f"{name} must be a finite, non-negative number",
                stage="matching", **{name: value},
            )
    if policy is not None and policy not in THRESHOLD_POLICIES:
        raise ConfigurationError(
            "Unknown threshold policy", stage="matching", policy=policy,
        )
