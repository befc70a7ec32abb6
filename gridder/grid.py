"""
Synthetic grid generation.

A GridDefinition is an index-addressed lattice: cell (row, col) covers
``[xmin + col*res_x, xmin + (col+1)*res_x] x [ymin + row*res_y, ymin + (row+1)*res_y]``
with row 0 at the bottom edge of the extent. Cell polygons are only
materialized when asked for (masking, export, environmental statistics).

Country masking keeps every cell that intersects the boundary polygon and
drops cells wholly outside it; retained cells keep their exact geometry.
"""

import json
from dataclasses import dataclass, field, replace
from typing import Optional

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely

from gridder.errors import ConfigurationError, DegenerateGeometryError, NoBoundaryMatchError
from gridder.extent import Extent, as_extent
from gridder.formulas.lattice import cell_count
from gridder.logging_config import get_pipeline_logger
from gridder.points import normalize_crs
from gridder.resolution import as_resolution

log = get_pipeline_logger(__name__)

GRID_FORMAT_VERSION = 1


@dataclass(frozen=True, eq=False)
class GridDefinition:
    """Immutable synthetic lattice over an extent, in one CRS."""

    crs: str
    res_x: float
    res_y: float
    extent: Extent
    n_cols: int
    n_rows: int
    cell_index: Optional[np.ndarray] = None  # (k, 2) retained (row, col); None = all
    mask_name: Optional[str] = None
    notes: tuple = field(default=())

    def __post_init__(self):
        if self.cell_index is not None:
            idx = np.array(self.cell_index, dtype="int64").reshape(-1, 2)
            idx.setflags(write=False)
            object.__setattr__(self, "cell_index", idx)
        object.__setattr__(self, "notes", tuple(self.notes))

    def __eq__(self, other):
        if not isinstance(other, GridDefinition):
            return NotImplemented
        same_index = (
            (self.cell_index is None and other.cell_index is None)
            or (self.cell_index is not None and other.cell_index is not None
                and np.array_equal(self.cell_index, other.cell_index))
        )
        return (
            self.crs == other.crs
            and self.res_x == other.res_x
            and self.res_y == other.res_y
            and self.extent == other.extent
            and self.n_cols == other.n_cols
            and self.n_rows == other.n_rows
            and self.mask_name == other.mask_name
            and self.notes == other.notes
            and same_index
        )

    __hash__ = None

    @property
    def is_masked(self):
        return self.cell_index is not None

    @property
    def n_cells(self):
        if self.cell_index is None:
            return self.n_rows * self.n_cols
        return len(self.cell_index)

    @property
    def resolution(self):
        return (self.res_x, self.res_y)

    def rows_cols(self):
        """Row and column indices of retained cells, row-major order."""
        if self.cell_index is not None:
            return self.cell_index[:, 0], self.cell_index[:, 1]
        rows, cols = np.divmod(np.arange(self.n_rows * self.n_cols, dtype="int64"),
                               self.n_cols)
        return rows, cols

    def cell_ids(self):
        """Flat cell ids (row * n_cols + col) of retained cells."""
        rows, cols = self.rows_cols()
        return rows * self.n_cols + cols

    def cell_bounds(self):
        """DataFrame of retained cells: cell_id, row, col, xmin, ymin, xmax, ymax."""
        rows, cols = self.rows_cols()
        x0 = self.extent.xmin + cols * self.res_x
        y0 = self.extent.ymin + rows * self.res_y
        return pd.DataFrame({
            "cell_id": rows * self.n_cols + cols,
            "row": rows,
            "col": cols,
            "xmin": x0,
            "ymin": y0,
            "xmax": x0 + self.res_x,
            "ymax": y0 + self.res_y,
        })

    def cell_centers(self):
        """(x, y) arrays of retained cell centers."""
        rows, cols = self.rows_cols()
        return (self.extent.xmin + (cols + 0.5) * self.res_x,
                self.extent.ymin + (rows + 0.5) * self.res_y)

    def cell_corners(self):
        """(x, y) arrays of the lower-left corners of retained cells."""
        rows, cols = self.rows_cols()
        return (self.extent.xmin + cols * self.res_x,
                self.extent.ymin + rows * self.res_y)

    def cells(self):
        """Materialize retained cells as a GeoDataFrame of polygons."""
        df = self.cell_bounds()
        geoms = shapely.box(df["xmin"].to_numpy(), df["ymin"].to_numpy(),
                            df["xmax"].to_numpy(), df["ymax"].to_numpy())
        return gpd.GeoDataFrame(df, geometry=geoms, crs=self.crs)

    # ── Persistence ────────────────────────────────────────────────────

    def to_dict(self):
        return {
            "format_version": GRID_FORMAT_VERSION,
            "crs": self.crs,
            "res_x": self.res_x,
            "res_y": self.res_y,
            "extent": list(self.extent.as_tuple()),
            "n_cols": self.n_cols,
            "n_rows": self.n_rows,
            "cell_index": None if self.cell_index is None else self.cell_index.tolist(),
            "mask_name": self.mask_name,
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, d):
        return cls(
            crs=d["crs"],
            res_x=d["res_x"],
            res_y=d["res_y"],
            extent=Extent(*d["extent"]),
            n_cols=d["n_cols"],
            n_rows=d["n_rows"],
            cell_index=d.get("cell_index"),
            mask_name=d.get("mask_name"),
            notes=tuple(d.get("notes", ())),
        )

    def save(self, path):
        """Write the grid definition as JSON."""
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        log.info("Saved grid definition (%d cells): %s", self.n_cells, path)
        return path

    @classmethod
    def load(cls, path):
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def to_file(self, path, driver="GPKG"):
        """Export cell polygons with CRS/resolution/extent columns."""
        gdf = self.cells()
        gdf["res_x"] = self.res_x
        gdf["res_y"] = self.res_y
        gdf.to_file(path, driver=driver)
        log.info("Exported %d grid cells: %s", len(gdf), path)
        return path


def _skip_mask(grid, country, reason):
    log.warning("%s; masking skipped", reason)
    return replace(
        grid,
        notes=grid.notes + (f"no boundary match for '{country}'; masking skipped",),
    )


def _apply_mask(grid, country, boundary_provider):
    """Drop cells wholly outside the country boundary.

    A provider that raises NoBoundaryMatchError, returns None or returns
    an empty geometry leaves the grid unmasked with a note.
    """
    try:
        found = boundary_provider.get_boundary(country)
    except NoBoundaryMatchError as exc:
        return _skip_mask(grid, country, exc)
    boundary, boundary_crs = found if found is not None else (None, None)
    if boundary is None or boundary.is_empty:
        return _skip_mask(
            grid, country, f"Boundary provider returned no geometry for '{country}'",
        )

    boundary = gpd.GeoSeries([boundary], crs=boundary_crs).to_crs(grid.crs).iloc[0]
    shapely.prepare(boundary)
    cells = grid.cells()
    keep = shapely.intersects(np.asarray(cells.geometry), boundary)
    kept = cells.loc[keep, ["row", "col"]].to_numpy(dtype="int64")
    if len(kept) == 0:
        raise DegenerateGeometryError(
            "Country mask removes every grid cell", stage="grid",
            country=country, n_cells=grid.n_cells,
        )
    log.info("Masked grid to '%s': %d of %d cells retained",
             country, len(kept), grid.n_cells)
    return replace(grid, cell_index=kept, mask_name=country)


def generate_grid(crs, resolution, extent, country=None, boundary_provider=None):
    """Build the lattice of cells tiling ``extent`` at ``resolution``.

    Parameters
    ----------
    crs : str
        CRS of the extent and resolution.
    resolution : float, (float, float) or ResolutionEstimate
    extent : Extent or (xmin, ymin, xmax, ymax)
    country : str, optional
        Clip the lattice to this country's boundary.
    boundary_provider : BoundaryProvider, optional
        Required when ``country`` is given.

    Returns
    -------
    GridDefinition

    Raises
    ------
    DegenerateGeometryError
        Non-positive resolution or zero-area extent.
    ConfigurationError
        ``country`` without a boundary provider.
    """
    res = as_resolution(resolution)
    extent = as_extent(extent)
    crs = normalize_crs(crs)

    if country is not None and boundary_provider is None:
        raise ConfigurationError(
            "Country mask requested without a boundary provider",
            stage="grid", country=country,
        )

    n_cols = cell_count(extent.width, res.res_x)
    n_rows = cell_count(extent.height, res.res_y)
    if n_cols < 1 or n_rows < 1:
        raise DegenerateGeometryError(
            "Extent smaller than one cell", stage="grid",
            extent=extent.as_tuple(), resolution=res.as_tuple(),
        )

    grid = GridDefinition(
        crs=crs, res_x=res.res_x, res_y=res.res_y, extent=extent,
        n_cols=n_cols, n_rows=n_rows,
    )
    log.info("Generated %d x %d grid (%d cells) at %.6g x %.6g in %s",
             n_cols, n_rows, grid.n_cells, res.res_x, res.res_y, crs)

    if country is not None:
        grid = _apply_mask(grid, country, boundary_provider)
    return grid
