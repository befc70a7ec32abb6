"""
Grid matching: classify occurrence points as gridded or non-gridded.

For every point and every grid-metadata entry the distance to the nearest
node of that entry's lattice is measured. The lattice shares the grid's
origin (lower-left corner of its extent) and uses the entry's resolution;
nodes are cell centers or cell corners. Distances are reported both in the
CRS linear unit and relative to the resolution, and thresholded with
``gridder.formulas.thresholds``.

The aggregate label of a point is the entry with the smallest distance
among the entries it is gridded on, or "non-gridded" when there is none.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.spatial import cKDTree

from gridder import config
from gridder.errors import ConfigurationError
from gridder.formulas.lattice import cell_count, nearest_node
from gridder.formulas.thresholds import classify_gridded, validate_thresholds
from gridder.logging_config import get_pipeline_logger
from gridder.schemas import (
    GridMetadataSchema,
    MatchSummarySchema,
    check_table,
    validate_schema,
)

log = get_pipeline_logger(__name__)

GRID_NODES = ("center", "corner")

PER_GRID_COLUMNS = [
    "point_index", "record_id", "grid_id", "distance", "relative_distance", "gridded",
]
SUMMARY_COLUMNS = [
    "record_id", "x", "y", "closest_grid", "closest_distance",
    "closest_relative_distance", "gridded",
]


# ── Grid metadata ───────────────────────────────────────────────────────


@dataclass(frozen=True, eq=False)
class GridMetadata:
    """Ordered table of grid systems: ``grid_id``, ``res_x``, ``res_y``."""

    table: pd.DataFrame

    def __post_init__(self):
        table = self.table.copy()
        if "res_x" not in table.columns and "resolution" in table.columns:
            table["res_x"] = table["resolution"]
            table["res_y"] = table["resolution"]
        table = check_table(table, GridMetadataSchema, stage="matching")
        object.__setattr__(
            self, "table", table[["grid_id", "res_x", "res_y"]].reset_index(drop=True),
        )

    def __len__(self):
        return len(self.table)

    def __iter__(self):
        for row in self.table.itertuples(index=False):
            yield row.grid_id, float(row.res_x), float(row.res_y)

    @property
    def grid_ids(self):
        return self.table["grid_id"].tolist()

    @classmethod
    def from_dataframe(cls, df):
        """Build from a table with ``grid_id`` and ``res_x``/``res_y``
        (or a single ``resolution``) columns."""
        if len(df) == 0:
            raise ConfigurationError("Grid metadata table is empty", stage="matching")
        return cls(df)

    @classmethod
    def from_grid(cls, grid, grid_id=None):
        """Single-entry metadata describing a GridDefinition."""
        if grid_id is None:
            grid_id = f"{grid.crs}_{grid.res_x:g}x{grid.res_y:g}"
        return cls(pd.DataFrame({
            "grid_id": [grid_id], "res_x": [grid.res_x], "res_y": [grid.res_y],
        }))


def as_metadata(value, grid):
    """Coerce None, a DataFrame, or a list of dicts into GridMetadata."""
    if value is None:
        return GridMetadata.from_grid(grid)
    if isinstance(value, GridMetadata):
        return value
    if isinstance(value, pd.DataFrame):
        return GridMetadata.from_dataframe(value)
    return GridMetadata.from_dataframe(pd.DataFrame(list(value)))


# ── Match result ────────────────────────────────────────────────────────


@dataclass(frozen=True, eq=False)
class MatchResult:
    """Per-point, per-grid distances and the aggregated classification.

    Attributes
    ----------
    per_grid : pd.DataFrame
        Long table, one row per (point, grid entry).
    summary : pd.DataFrame
        One row per point, in input order.
    """

    per_grid: pd.DataFrame
    summary: pd.DataFrame
    relative_threshold: float
    absolute_threshold: float
    policy: str
    node: str
    crs: str

    def __len__(self):
        return len(self.summary)

    def gridded_count(self, grid_id=None):
        """Points gridded on ``grid_id``, or on any entry when omitted."""
        if grid_id is None:
            return int(self.summary["gridded"].sum())
        sel = self.per_grid[self.per_grid["grid_id"] == grid_id]
        return int(sel["gridded"].sum())

    def counts_by_grid(self):
        """Gridded point count per grid entry, in metadata order."""
        return (self.per_grid.groupby("grid_id", sort=False)["gridded"]
                .sum().astype("int64"))


# ── Nearest node search ─────────────────────────────────────────────────


def _lattice_offsets(x, y, grid, res_x, res_y, node):
    """Per-axis offsets to the nearest node of an unmasked lattice."""
    xmin, ymin = grid.extent.xmin, grid.extent.ymin
    nx = max(cell_count(grid.extent.width, res_x), 1)
    ny = max(cell_count(grid.extent.height, res_y), 1)
    node_x, _ = nearest_node(x, xmin, res_x, nx, node=node)
    node_y, _ = nearest_node(y, ymin, res_y, ny, node=node)
    return x - node_x, y - node_y


def _retained_nodes(grid, node):
    """Node coordinates of the retained cells of a masked grid."""
    if node == "center":
        return np.column_stack(grid.cell_centers())
    rows, cols = grid.rows_cols()
    corners = np.unique(np.concatenate([
        np.column_stack([rows + dr, cols + dc])
        for dr in (0, 1) for dc in (0, 1)
    ]), axis=0)
    return np.column_stack([
        grid.extent.xmin + corners[:, 1] * grid.res_x,
        grid.extent.ymin + corners[:, 0] * grid.res_y,
    ])


def _masked_offsets(x, y, grid, node):
    nodes = _retained_nodes(grid, node)
    tree = cKDTree(nodes)
    _, idx = tree.query(np.column_stack([x, y]))
    return x - nodes[idx, 0], y - nodes[idx, 1]


def node_offsets(x, y, grid, res_x, res_y, node=None):
    """Offsets (dx, dy) from each point to its nearest node.

    Masked grids searched at their own resolution only consider nodes of
    retained cells.
    """
    if node is None:
        node = config.DEFAULT_GRID_NODE
    if grid.is_masked and (res_x, res_y) == grid.resolution:
        return _masked_offsets(x, y, grid, node)
    return _lattice_offsets(x, y, grid, res_x, res_y, node)


# ── Matching ────────────────────────────────────────────────────────────


def _check_node(node):
    if node not in GRID_NODES:
        raise ConfigurationError(
            f"Unknown grid node '{node}'", stage="matching",
            node=node, expected=GRID_NODES,
        )


def _aggregate(points_df, per_grid):
    gridded = per_grid[per_grid["gridded"]]
    best = (gridded.sort_values(["point_index", "distance"], kind="mergesort")
            .drop_duplicates("point_index", keep="first")
            .set_index("point_index"))

    summary = points_df.copy()
    idx = np.arange(len(summary))
    summary["closest_grid"] = (
        best["grid_id"].reindex(idx).fillna(config.NON_GRIDDED_LABEL).to_numpy()
    )
    summary["closest_distance"] = best["distance"].reindex(idx).to_numpy(dtype="float64")
    summary["closest_relative_distance"] = (
        best["relative_distance"].reindex(idx).to_numpy(dtype="float64")
    )
    summary["gridded"] = summary["closest_grid"] != config.NON_GRIDDED_LABEL
    return summary[SUMMARY_COLUMNS]


def match_grid(points, grid, metadata=None, relative_threshold=None,
               absolute_threshold=None, node=None, policy=None):
    """Classify each point as gridded or not against each grid entry.

    Parameters
    ----------
    points : PointSet
        Occurrence points. Reprojected into the grid CRS if needed.
    grid : GridDefinition
        Supplies the CRS, the lattice origin and, when masked, the
        retained cells.
    metadata : GridMetadata, DataFrame or list of dict, optional
        Grid systems to test. Defaults to the grid itself.
    relative_threshold : float, optional
        Fraction of the resolution (config.DEFAULT_RELATIVE_THRESHOLD).
    absolute_threshold : float, optional
        CRS linear unit (config.DEFAULT_ABSOLUTE_THRESHOLD).
    node : str, optional
        "center" or "corner" (config.DEFAULT_GRID_NODE).
    policy : str, optional
        "conjunctive" or "disjunctive" (config.DEFAULT_THRESHOLD_POLICY).

    Returns
    -------
    MatchResult

    Raises
    ------
    ConfigurationError
        Invalid thresholds, node, policy or metadata, before any
        distance is computed.
    """
    if relative_threshold is None:
        relative_threshold = config.DEFAULT_RELATIVE_THRESHOLD
    if absolute_threshold is None:
        absolute_threshold = config.DEFAULT_ABSOLUTE_THRESHOLD
    if node is None:
        node = config.DEFAULT_GRID_NODE
    if policy is None:
        policy = config.DEFAULT_THRESHOLD_POLICY

    validate_thresholds(relative_threshold, absolute_threshold, policy)
    _check_node(node)
    metadata = as_metadata(metadata, grid)
    if len(metadata) == 0:
        raise ConfigurationError("Grid metadata table is empty", stage="matching")

    if points.crs != grid.crs:
        log.info("Reprojecting %d points from %s to grid CRS %s",
                 len(points), points.crs, grid.crs)
        points = points.reproject(grid.crs)

    x = np.asarray(points.x)
    y = np.asarray(points.y)
    ids = list(points.ids)
    point_index = np.arange(len(points))

    frames = []
    for grid_id, res_x, res_y in metadata:
        dx, dy = node_offsets(x, y, grid, res_x, res_y, node=node)
        distance = np.hypot(dx, dy)
        relative = np.hypot(dx / res_x, dy / res_y)
        gridded = classify_gridded(
            distance, relative,
            absolute_threshold=absolute_threshold,
            relative_threshold=relative_threshold,
            policy=policy,
        )
        frames.append(pd.DataFrame({
            "point_index": point_index,
            "record_id": ids,
            "grid_id": grid_id,
            "distance": distance,
            "relative_distance": relative,
            "gridded": gridded.astype(bool),
        }))
        log.debug("Grid %s: %d of %d points gridded",
                  grid_id, int(gridded.sum()), len(points))

    per_grid = pd.concat(frames, ignore_index=True)[PER_GRID_COLUMNS]
    summary = _aggregate(points.to_dataframe(), per_grid)

    for msg in validate_schema(summary, MatchSummarySchema, "matching"):
        log.warning(msg)

    result = MatchResult(
        per_grid=per_grid,
        summary=summary,
        relative_threshold=float(relative_threshold),
        absolute_threshold=float(absolute_threshold),
        policy=policy,
        node=node,
        crs=grid.crs,
    )
    log.info("Matched %d points against %d grid(s): %d gridded, %d non-gridded",
             len(points), len(metadata), result.gridded_count(),
             len(points) - result.gridded_count())
    return result
