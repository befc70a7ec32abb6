"""
Extent inference for synthetic grids.

Two strategies produce the bounding box a grid is generated over:

- ``crs_extent``: the declared area of use of a CRS, expressed in that
  CRS's own units;
- ``empirical_occ_extent``: the bounding box of the occurrence points.

Either box is then aligned to the grid resolution, so cell edges fall on
exact multiples of the resolution, and optionally widened or narrowed by
an offset (left, bottom, right, top) to compensate for edge effects.
"""

import math
from dataclasses import dataclass

import numpy as np

from gridder import config
from gridder.crs.registry import CRSRegistry
from gridder.errors import ConfigurationError, DegenerateGeometryError
from gridder.formulas.lattice import align_down, align_up
from gridder.logging_config import get_pipeline_logger
from gridder.resolution import as_resolution

log = get_pipeline_logger(__name__)

ALIGN_MODES = ("outward", "inward", "none")


@dataclass(frozen=True)
class Extent:
    """Axis-aligned bounding box in the active CRS units."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    def __post_init__(self):
        values = (self.xmin, self.ymin, self.xmax, self.ymax)
        if not all(math.isfinite(v) for v in values):
            raise DegenerateGeometryError(
                "Extent bounds must be finite", stage="extent", bounds=values,
            )
        if not (self.xmin < self.xmax and self.ymin < self.ymax):
            raise DegenerateGeometryError(
                "Extent has zero or negative width/height",
                stage="extent", bounds=values,
            )
        for name, v in zip(("xmin", "ymin", "xmax", "ymax"), values):
            object.__setattr__(self, name, float(v))

    @property
    def width(self):
        return self.xmax - self.xmin

    @property
    def height(self):
        return self.ymax - self.ymin

    def as_tuple(self):
        return (self.xmin, self.ymin, self.xmax, self.ymax)

    def expand(self, offset):
        """Return a new Extent widened by (left, bottom, right, top).

        Negative values contract the extent.
        """
        left, bottom, right, top = _check_offset(offset)
        return Extent(self.xmin - left, self.ymin - bottom,
                      self.xmax + right, self.ymax + top)

    def contains(self, x, y):
        """Boolean mask of points inside the extent (edges included)."""
        x = np.asarray(x, dtype="float64")
        y = np.asarray(y, dtype="float64")
        return ((x >= self.xmin) & (x <= self.xmax) &
                (y >= self.ymin) & (y <= self.ymax))


def as_extent(value):
    """Coerce an Extent or a 4-sequence into an Extent."""
    if isinstance(value, Extent):
        return value
    try:
        xmin, ymin, xmax, ymax = (float(v) for v in value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            "Extent must be (xmin, ymin, xmax, ymax)", stage="extent", extent=value,
        ) from exc
    return Extent(xmin, ymin, xmax, ymax)


def _check_offset(offset):
    try:
        values = tuple(float(v) for v in offset)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            "Offset must be (left, bottom, right, top)", stage="extent", offset=offset,
        ) from exc
    if len(values) != 4 or not all(math.isfinite(v) for v in values):
        raise ConfigurationError(
            "Offset must be four finite numbers (left, bottom, right, top)",
            stage="extent", offset=offset,
        )
    return values


def align_bounds(bounds, res_x, res_y, mode=None, origin=(0.0, 0.0)):
    """Snap raw bounds to multiples of the resolution.

    Parameters
    ----------
    bounds : tuple
        (xmin, ymin, xmax, ymax); may be degenerate (a single point).
    res_x, res_y : float
    mode : str, optional
        "outward" (default) grows the box to the enclosing lattice lines
        and guarantees at least one cell per axis; "inward" shrinks it to
        the enclosed lattice lines; "none" returns it unchanged.
    origin : (float, float)
        A lattice line on each axis; multiples are counted from here.

    Returns
    -------
    tuple
    """
    if mode is None:
        mode = config.DEFAULT_ALIGN_MODE
    if mode not in ALIGN_MODES:
        raise ConfigurationError(
            f"Unknown alignment mode '{mode}'", stage="extent", align=mode,
        )
    xmin, ymin, xmax, ymax = bounds
    if mode == "none":
        return (xmin, ymin, xmax, ymax)

    ox, oy = origin
    if mode == "outward":
        axmin, axmax = align_down(xmin, res_x, ox), align_up(xmax, res_x, ox)
        aymin, aymax = align_down(ymin, res_y, oy), align_up(ymax, res_y, oy)
        if axmax <= axmin:
            axmax = axmin + res_x
        if aymax <= aymin:
            aymax = aymin + res_y
    else:
        axmin, axmax = align_up(xmin, res_x, ox), align_down(xmax, res_x, ox)
        aymin, aymax = align_up(ymin, res_y, oy), align_down(ymax, res_y, oy)
    return (float(axmin), float(aymin), float(axmax), float(aymax))


def _finalize(bounds, resolution, align, offset, origin, source):
    if resolution is not None:
        res = as_resolution(resolution)
        bounds = align_bounds(bounds, res.res_x, res.res_y, mode=align, origin=origin)
    if offset is not None:
        left, bottom, right, top = _check_offset(offset)
        xmin, ymin, xmax, ymax = bounds
        bounds = (xmin - left, ymin - bottom, xmax + right, ymax + top)
    extent = Extent(*bounds)
    log.info("Extent from %s: (%.6g, %.6g, %.6g, %.6g)", source, *extent.as_tuple())
    return extent


def crs_extent(crs, resolution=None, align=None, offset=None, origin=(0.0, 0.0),
               registry=None):
    """Extent from a CRS's declared area of use, in that CRS's units.

    Raises
    ------
    DegenerateGeometryError
        If the CRS declares no area of use or the aligned box is empty.
    """
    registry = registry or CRSRegistry()
    code = crs.code if hasattr(crs, "code") else crs
    bounds = registry.area_of_use_bounds(code)
    return _finalize(bounds, resolution, align, offset, origin, f"area of use of {code}")


def empirical_occ_extent(points, resolution=None, align=None, offset=None,
                         origin=(0.0, 0.0)):
    """Extent from the min/max of the occurrence coordinates.

    Raises
    ------
    DegenerateGeometryError
        If the points span zero width or height and no resolution is
        supplied to align them.
    """
    return _finalize(points.bounds(), resolution, align, offset, origin,
                     f"{len(points)} occurrence points")


def infer_extent(method=None, points=None, crs=None, resolution=None, align=None,
                 offset=None, origin=(0.0, 0.0), registry=None):
    """Dispatch to crs_extent or empirical_occ_extent by name."""
    if method is None:
        method = config.DEFAULT_EXTENT_METHOD
    if method == "crs_extent":
        if crs is None:
            raise ConfigurationError("crs_extent needs a CRS", stage="extent")
        return crs_extent(crs, resolution=resolution, align=align, offset=offset,
                          origin=origin, registry=registry)
    if method == "empirical_occ_extent":
        if points is None:
            raise ConfigurationError("empirical_occ_extent needs points", stage="extent")
        return empirical_occ_extent(points, resolution=resolution, align=align,
                                    offset=offset, origin=origin)
    raise ConfigurationError(
        f"Unknown extent method '{method}'", stage="extent",
        method=method, expected=config.EXTENT_METHODS,
    )
