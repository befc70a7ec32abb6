"""
Centralized configuration for grid inference and matching.

All default thresholds, tolerances, and runtime parameters are defined
here with a note on where each value comes from. Functions take these as
defaults and accept explicit overrides.
"""

import os

# ─── COORDINATE HANDLING ─────────────────────────────────────────────────
# Occurrence records are published in WGS84 longitude/latitude unless a
# dataset states otherwise (GBIF/Darwin Core decimalLongitude/Latitude).
DEFAULT_SOURCE_CRS = "EPSG:4326"

# Default Darwin Core column names for occurrence tables.
DEFAULT_X_COLUMN = "decimalLongitude"
DEFAULT_Y_COLUMN = "decimalLatitude"

# Distinct coordinate values are compared after rounding to this many
# decimals. 1e-6 m in a projected CRS is far below any survey grid, and
# 1e-6 degrees (~0.1 m) is below the 7th decimal published by most
# occurrence portals.
COORD_DECIMALS = 6

# ─── RESOLUTION INFERENCE ────────────────────────────────────────────────
# A gap d is accepted as a multiple of r when |d/r - round(d/r)| is at
# most this fraction of r.
RESOLUTION_REL_TOL = 0.01

# Largest integer k tried when dividing the smallest gap (r = d_min / k).
# Gaps observed in sparse grids rarely skip the true spacing by more than
# a few dozen cells at the smallest step.
MAX_DIVISOR = 100

# Estimates below this value (in the CRS linear unit) are reported as
# "no consistent divisor" rather than returned.
MIN_RESOLUTION = 1e-4

# Distinct values closer than this fraction of the largest gap are one
# lattice line spread by rounding or reprojection (5-decimal lon/lat is
# about 1 m of noise; a 1 km grid gap is 1000 m).
CLUSTER_REL_TOL = 1e-3

# Smallest lattice spacing accepted for a geographic CRS candidate, in
# degrees (about 1.8 arc-seconds). Published lon/lat rounded to 4-5
# decimals forms its own 1e-4 or 1e-5 degree lattice below this floor.
MIN_RESOLUTION_DEGREES = 5e-4

# ─── CRS INFERENCE ───────────────────────────────────────────────────────
# Number of points used to densify area-of-use edges when transforming a
# lon/lat bounding box into a projected CRS.
AREA_OF_USE_DENSIFY = 21

# Registry entries considered when no explicit candidate list is given.
CRS_AUTHORITY = "EPSG"

# Note prefix marking CRS candidates that could not be evaluated.
CANDIDATE_FAILURE = "candidate_failure"

# ─── GRID MATCHING THRESHOLDS ────────────────────────────────────────────
# A record is gridded when its distance to the nearest grid node is within
# both thresholds. Relative threshold is a fraction of the grid resolution;
# absolute threshold is in the CRS linear unit (metres for projected CRS).
DEFAULT_RELATIVE_THRESHOLD = 0.1
DEFAULT_ABSOLUTE_THRESHOLD = 10.0

# "conjunctive" (both thresholds) or "disjunctive" (either threshold).
DEFAULT_THRESHOLD_POLICY = "conjunctive"

# Grid nodes compared against: cell "center" or lower-left "corner".
DEFAULT_GRID_NODE = "center"

NON_GRIDDED_LABEL = "non-gridded"

# ─── EXTENT INFERENCE ────────────────────────────────────────────────────
EXTENT_METHODS = ("crs_extent", "empirical_occ_extent")
DEFAULT_EXTENT_METHOD = "empirical_occ_extent"
DEFAULT_ALIGN_MODE = "outward"

# ─── ENVIRONMENTAL LAYER STATISTICS ──────────────────────────────────────
DEFAULT_CELL_STATS = ["std"]

# ─── CACHE ───────────────────────────────────────────────────────────────
CACHE_DIR = os.path.join("output", ".cache")
CACHE_MAX_AGE_DAYS = 30

# ─── OUTPUT PATHS ────────────────────────────────────────────────────────
OUTPUT_FILES = {
    "matches": "matches.csv",
    "match_details": "match_details.csv",
    "grid": "grid.json",
    "crs_ranking": "crs_ranking.csv",
    "cell_stats": "cell_stats.csv",
    "run": "pipeline_run.json",
}


def default_max_workers():
    """Worker count for CRS candidate evaluation.

    GRIDDER_MAX_WORKERS overrides the default of CPU count - 1.
    """
    env = os.environ.get("GRIDDER_MAX_WORKERS")
    if env:
        try:
            return max(1, int(env))
        except ValueError:
            pass
    return max(1, (os.cpu_count() or 2) - 1)
