"""
Typed occurrence point sets.

A PointSet is the immutable coordinate container passed between stages.
All points share one CRS; reprojecting produces a new PointSet.
"""

import re
from dataclasses import dataclass, field

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError, ProjError

from gridder import config
from gridder.errors import ConfigurationError, ReprojectionError
from gridder.logging_config import get_pipeline_logger
from gridder.schemas import check_table, occurrence_schema

log = get_pipeline_logger(__name__)

_AUTH_CODE_RE = re.compile(r"^[A-Za-z]+:\d+$")


def _readonly(values):
    arr = np.array(values, dtype="float64")
    arr.setflags(write=False)
    return arr


def normalize_crs(crs):
    """Canonical "AUTH:CODE" string for a CRS, or its WKT if it has none."""
    if isinstance(crs, int):
        crs = f"EPSG:{crs}"
    if isinstance(crs, str) and _AUTH_CODE_RE.match(crs.strip()):
        auth, code = crs.strip().split(":")
        return f"{auth.upper()}:{code}"
    try:
        parsed = CRS.from_user_input(crs)
    except CRSError as exc:
        raise ConfigurationError(f"Invalid CRS: {exc}", crs=str(crs)) from exc
    auth = parsed.to_authority()
    if auth is not None:
        return f"{auth[0]}:{auth[1]}"
    return parsed.to_wkt()


@dataclass(frozen=True, eq=False)
class PointSet:
    """Ordered 2-D coordinates sharing one CRS.

    Attributes
    ----------
    x, y : np.ndarray
        Read-only float64 coordinates (lon/lat or projected x/y).
    crs : str
        CRS identifier, e.g. "EPSG:4326".
    ids : tuple
        Source record identifiers; defaults to positional indices.
    """

    x: np.ndarray
    y: np.ndarray
    crs: str = config.DEFAULT_SOURCE_CRS
    ids: tuple = field(default=())

    def __post_init__(self):
        x = _readonly(self.x)
        y = _readonly(self.y)
        if x.ndim != 1 or x.shape != y.shape:
            raise ConfigurationError(
                "x and y must be 1-D arrays of equal length",
                x_shape=x.shape, y_shape=y.shape,
            )
        if not (np.isfinite(x).all() and np.isfinite(y).all()):
            raise ConfigurationError(
                "Point coordinates must be finite",
                n_nonfinite=int((~np.isfinite(x) | ~np.isfinite(y)).sum()),
            )
        ids = tuple(self.ids) if len(self.ids) else tuple(range(len(x)))
        if len(ids) != len(x):
            raise ConfigurationError(
                "ids must match the number of points",
                n_ids=len(ids), n_points=len(x),
            )
        object.__setattr__(self, "crs", normalize_crs(self.crs))
        object.__setattr__(self, "x", x)
        object.__setattr__(self, "y", y)
        object.__setattr__(self, "ids", ids)

    def __len__(self):
        return len(self.x)

    @classmethod
    def from_dataframe(cls, df, x_col=None, y_col=None, id_col=None, crs=None):
        """Build a PointSet from a DataFrame of occurrence records.

        The table is validated with the occurrence schema first; rows are
        kept in their original order.

        Raises
        ------
        ConfigurationError
            Missing, non-numeric, non-finite or out-of-range coordinates.
        """
        x_col = x_col or config.DEFAULT_X_COLUMN
        y_col = y_col or config.DEFAULT_Y_COLUMN
        crs = normalize_crs(crs or config.DEFAULT_SOURCE_CRS)
        geographic = CRS.from_user_input(crs).is_geographic

        schema = occurrence_schema(x_col, y_col, id_col=id_col, geographic=geographic)
        df = check_table(df, schema, stage="input")

        ids = tuple(df[id_col].tolist()) if id_col else tuple(df.index.tolist())
        log.debug("Loaded %d points from columns (%s, %s) in %s",
                  len(df), x_col, y_col, crs)
        return cls(
            x=df[x_col].to_numpy(dtype="float64"),
            y=df[y_col].to_numpy(dtype="float64"),
            crs=crs,
            ids=ids,
        )

    def bounds(self):
        """Return (xmin, ymin, xmax, ymax)."""
        if len(self) == 0:
            raise ConfigurationError("Empty point set has no bounds")
        return (float(self.x.min()), float(self.y.min()),
                float(self.x.max()), float(self.y.max()))

    def reproject(self, target_crs):
        """Return a new PointSet in ``target_crs``.

        Raises
        ------
        ReprojectionError
            If the transform cannot be built or yields non-finite values
            (typically points outside the target's valid domain).
        """
        target = normalize_crs(target_crs)
        if target == self.crs:
            return self
        try:
            transformer = Transformer.from_crs(self.crs, target, always_xy=True)
            tx, ty = transformer.transform(self.x, self.y, errcheck=False)
        except (CRSError, ProjError) as exc:
            raise ReprojectionError(
                str(exc), source_crs=self.crs, target_crs=target,
            ) from exc
        tx = np.asarray(tx, dtype="float64")
        ty = np.asarray(ty, dtype="float64")
        bad = ~(np.isfinite(tx) & np.isfinite(ty))
        if bad.any():
            raise ReprojectionError(
                "Coordinates fall outside the target CRS domain",
                source_crs=self.crs, target_crs=target, n_failed=int(bad.sum()),
            )
        return PointSet(x=tx, y=ty, crs=target, ids=self.ids)

    def to_dataframe(self):
        return pd.DataFrame({"record_id": list(self.ids), "x": self.x, "y": self.y})

    def to_geodataframe(self):
        df = self.to_dataframe()
        return gpd.GeoDataFrame(
            df, geometry=gpd.points_from_xy(df["x"], df["y"]), crs=self.crs,
        )
