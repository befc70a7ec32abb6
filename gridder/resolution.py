"""
Grid resolution inference from projected occurrence coordinates.

For each axis the distinct coordinate values are sorted, consecutive gaps
are taken, and the largest spacing that divides every gap (within a
relative tolerance) is returned. Gaps of several cells, left by
unoccupied grid cells, are multiples of the true spacing and do not bias
the estimate. Values a small fraction of the largest gap apart are first
merged into one lattice line, so coordinates rounded to a few decimals
or carried through a reprojection still resolve to the grid spacing.
"""

from dataclasses import dataclass

import numpy as np

from gridder import config
from gridder.errors import DegenerateGeometryError, InsufficientDataError
from gridder.formulas.lattice import (
    approximate_gcd,
    cluster_tolerance,
    cluster_values,
    distinct_values,
    lattice_residual,
    refine_spacing,
)
from gridder.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


@dataclass(frozen=True)
class AxisResolution:
    """Spacing estimate along one axis, with diagnostics."""

    axis: str
    resolution: float
    n_values: int
    divisor: int
    residual: float


@dataclass(frozen=True)
class ResolutionEstimate:
    """Cell size along each axis, in the CRS linear unit."""

    res_x: float
    res_y: float
    x_axis: AxisResolution = None
    y_axis: AxisResolution = None

    def __post_init__(self):
        if not (self.res_x > 0 and self.res_y > 0
                and np.isfinite(self.res_x) and np.isfinite(self.res_y)):
            raise InsufficientDataError(
                "Resolution must be positive and finite",
                stage="resolution", res_x=self.res_x, res_y=self.res_y,
            )

    def as_tuple(self):
        return (self.res_x, self.res_y)

    @property
    def n_values_x(self):
        return self.x_axis.n_values if self.x_axis else None

    @property
    def n_values_y(self):
        return self.y_axis.n_values if self.y_axis else None

    @property
    def divisor_x(self):
        return self.x_axis.divisor if self.x_axis else None

    @property
    def divisor_y(self):
        return self.y_axis.divisor if self.y_axis else None

    @property
    def residual_x(self):
        return self.x_axis.residual if self.x_axis else None

    @property
    def residual_y(self):
        return self.y_axis.residual if self.y_axis else None

    def to_dict(self):
        return {
            "res_x": self.res_x,
            "res_y": self.res_y,
            "n_values_x": self.n_values_x,
            "n_values_y": self.n_values_y,
            "divisor_x": self.divisor_x,
            "divisor_y": self.divisor_y,
        }


def estimate_axis_resolution(values, axis="x", rel_tol=None, max_divisor=None,
                             min_resolution=None, decimals=None, round_to=None,
                             cluster_tol=None):
    """Estimate lattice spacing along one axis.

    Parameters
    ----------
    values : array-like
        Coordinates along the axis.
    axis : str
        Axis label used in diagnostics.
    rel_tol : float, optional
        Defaults to config.RESOLUTION_REL_TOL.
    max_divisor : int, optional
        Defaults to config.MAX_DIVISOR.
    min_resolution : float, optional
        Defaults to config.MIN_RESOLUTION.
    decimals : int, optional
        Rounding applied before taking distinct values
        (config.COORD_DECIMALS).
    round_to : int, optional
        Round the estimate to this many decimals.
    cluster_tol : float, optional
        Values closer than this are one lattice line. Defaults to
        config.CLUSTER_REL_TOL times the largest gap.

    Returns
    -------
    AxisResolution

    Raises
    ------
    InsufficientDataError
        Fewer than two distinct values, or no consistent divisor above
        ``min_resolution``.
    """
    if min_resolution is None:
        min_resolution = config.MIN_RESOLUTION

    uniq = distinct_values(values, decimals=decimals)
    if len(uniq) < 2:
        raise InsufficientDataError(
            "Fewer than two distinct coordinate values",
            stage="resolution", axis=axis, n_values=int(len(uniq)),
        )

    tol = cluster_tolerance(uniq, cluster_tol)
    lines = cluster_values(uniq, tol)
    if len(lines) < 2:
        raise InsufficientDataError(
            "All coordinate values fall on one lattice line",
            stage="resolution", axis=axis, n_values=int(len(uniq)),
            cluster_tol=tol,
        )

    gaps = np.diff(lines)
    found = approximate_gcd(gaps, rel_tol=rel_tol, max_divisor=max_divisor,
                            min_gap=tol)
    if found is None:
        raise InsufficientDataError(
            "No consistent lattice spacing divides the coordinate gaps",
            stage="resolution", axis=axis, n_values=int(len(uniq)),
            smallest_gap=float(gaps.min()),
        )

    spacing, k = found
    spacing = refine_spacing(lines, spacing)
    if round_to is not None:
        spacing = round(spacing, round_to)
    if spacing < min_resolution:
        raise InsufficientDataError(
            "Lattice spacing below the minimum resolution",
            stage="resolution", axis=axis, spacing=spacing,
            min_resolution=min_resolution,
        )

    residual = lattice_residual(uniq, spacing)
    log.debug("Axis %s: spacing %.6g from %d values on %d lines "
              "(k=%d, residual %.2e)",
              axis, spacing, len(uniq), len(lines), k, residual)
    return AxisResolution(
        axis=axis, resolution=float(spacing), n_values=int(len(uniq)),
        divisor=k, residual=residual,
    )


def infer_resolution(points, rel_tol=None, max_divisor=None, min_resolution=None,
                     decimals=None, round_to=None, cluster_tol=None):
    """Estimate (res_x, res_y) for points in a linear-unit CRS.

    Parameters
    ----------
    points : PointSet
        Points already projected into the grid's CRS.

    Returns
    -------
    ResolutionEstimate

    Raises
    ------
    InsufficientDataError
    """
    kwargs = dict(rel_tol=rel_tol, max_divisor=max_divisor,
                  min_resolution=min_resolution, decimals=decimals,
                  round_to=round_to, cluster_tol=cluster_tol)
    x_axis = estimate_axis_resolution(points.x, axis="x", **kwargs)
    y_axis = estimate_axis_resolution(points.y, axis="y", **kwargs)
    log.info("Inferred resolution %.6g x %.6g (%s)",
             x_axis.resolution, y_axis.resolution, points.crs)
    return ResolutionEstimate(
        res_x=x_axis.resolution, res_y=y_axis.resolution,
        x_axis=x_axis, y_axis=y_axis,
    )


def as_resolution(value):
    """Coerce a number, pair or ResolutionEstimate into a ResolutionEstimate.

    Raises
    ------
    DegenerateGeometryError
        For non-positive or non-finite values.
    """
    if isinstance(value, ResolutionEstimate):
        return value
    if np.isscalar(value):
        rx = ry = float(value)
    else:
        rx, ry = (float(v) for v in value)
    if not (rx > 0 and ry > 0 and np.isfinite(rx) and np.isfinite(ry)):
        raise DegenerateGeometryError(
            "Resolution must be positive and finite",
            stage="resolution", res_x=rx, res_y=ry,
        )
    return ResolutionEstimate(res_x=rx, res_y=ry)
