"""
Lattice arithmetic: spacing estimation, snapping residuals, nearest nodes.

All functions are pure (no I/O, no side effects) and operate on 1-D
numpy arrays of coordinates along a single axis.
"""

import numpy as np

from gridder import config


def distinct_values(values, decimals=None):
    """Sorted distinct coordinate values after rounding.

    Parameters
    ----------
    values : array-like
        Coordinates along one axis.
    decimals : int, optional
        Defaults to config.COORD_DECIMALS.

    Returns
    -------
    np.ndarray
    """
    if decimals is None:
        decimals = config.COORD_DECIMALS
    arr = np.asarray(values, dtype="float64")
    arr = arr[np.isfinite(arr)]
    return np.unique(np.round(arr, decimals))


def cluster_tolerance(uniq, cluster_tol=None):
    """Gap below which two distinct values count as the same lattice line.

    Defaults to config.CLUSTER_REL_TOL times the largest gap, so the
    tolerance scales with the data and never exceeds the lattice spacing
    unless the largest gap spans more than a thousand cells.
    """
    if cluster_tol is not None:
        return float(cluster_tol)
    uniq = np.asarray(uniq, dtype="float64")
    if uniq.size < 2:
        return 0.0
    return config.CLUSTER_REL_TOL * float(np.diff(uniq).max())


def cluster_values(uniq, tol):
    """Merge sorted distinct values closer than ``tol`` into their means.

    Rounded or re-projected coordinates spread one lattice line over
    several nearby values; each run of values whose consecutive gaps are
    all below ``tol`` collapses to a single position.
    """
    uniq = np.asarray(uniq, dtype="float64")
    if uniq.size < 2 or not tol > 0:
        return uniq
    breaks = np.flatnonzero(np.diff(uniq) >= tol) + 1
    return np.array([run.mean() for run in np.split(uniq, breaks)])


def refine_spacing(positions, spacing):
    """Least-squares lattice spacing through ``positions``.

    Each position is assigned its lattice index under the rough
    ``spacing`` and the slope of position against index is returned, so
    noise on individual lines averages out instead of entering through
    the smallest gap alone.
    """
    pos = np.asarray(positions, dtype="float64")
    if pos.size < 2 or not spacing > 0:
        return float(spacing)
    idx = np.rint((pos - pos[0]) / spacing)
    if np.unique(idx).size < 2:
        return float(spacing)
    return float(np.polyfit(idx, pos, 1)[0])


def approximate_gcd(gaps, rel_tol=None, max_divisor=None, min_gap=0.0,
                    min_spacing=0.0):
    """Largest spacing that divides every gap within a relative tolerance.

    The true spacing r divides the smallest gap, so candidates are
    ``d_min / k`` for k = 1, 2, ... and the first candidate that divides
    all gaps is the largest one. A gap d is divisible by r when
    ``|d/r - round(d/r)| <= rel_tol``. Gaps below ``min_gap`` are noise
    within one lattice line and are ignored; candidates below
    ``min_spacing`` are never returned.

    Parameters
    ----------
    gaps : array-like
        Positive gaps between lattice coordinates.
    rel_tol : float, optional
        Defaults to config.RESOLUTION_REL_TOL (0.01).
    max_divisor : int, optional
        Defaults to config.MAX_DIVISOR (100).

    Returns
    -------
    tuple[float, int] or None
        ``(spacing, k)``, or None when no candidate divides all gaps.
    """
    if rel_tol is None:
        rel_tol = config.RESOLUTION_REL_TOL
    if max_divisor is None:
        max_divisor = config.MAX_DIVISOR

    d = np.asarray(gaps, dtype="float64")
    d = d[np.isfinite(d) & (d > 0) & (d >= min_gap)]
    if d.size == 0:
        return None

    d_min = d.min()
    for k in range(1, int(max_divisor) + 1):
        spacing = d_min / k
        if spacing < min_spacing:
            break
        q = d / spacing
        if np.max(np.abs(q - np.rint(q))) <= rel_tol:
            return float(spacing), k
    return None


def lattice_residual(values, spacing, origin=None):
    """Mean distance to the nearest lattice line, as a fraction of spacing.

    Coordinates are measured from ``origin`` (default: the smallest
    value), so lattices offset from zero are handled. The result lies in
    [0, 0.5]; 0 means every value sits on the lattice.
    """
    arr = np.asarray(values, dtype="float64")
    arr = arr[np.isfinite(arr)]
    if arr.size == 0 or not spacing > 0:
        return float("nan")
    if origin is None:
        origin = arr.min()
    q = (arr - origin) / spacing
    return float(np.mean(np.abs(q - np.rint(q))))


def nearest_node(values, origin, spacing, n_cells, node=None):
    """Coordinate of the nearest lattice node along one axis.

    Nodes are cell corners (``origin + i * spacing`` for i in 0..n_cells)
    or cell centers (``origin + (i + 0.5) * spacing`` for i in
    0..n_cells-1). Indices are clipped to the lattice so points outside
    the extent snap to the nearest edge node.

    Parameters
    ----------
    values : array-like
    origin : float
        Lower edge of the extent along this axis.
    spacing : float
        Cell size along this axis.
    n_cells : int
        Number of cells along this axis.
    node : str, optional
        "corner" or "center". Defaults to config.DEFAULT_GRID_NODE.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        Node coordinates and integer node indices.
    """
    if node is None:
        node = config.DEFAULT_GRID_NODE
    arr = np.asarray(values, dtype="float64")
    if node == "corner":
        shift, last = 0.0, n_cells
    elif node == "center":
        shift, last = 0.5, n_cells - 1
    else:
        raise ValueError(f"Unknown grid node '{node}' (expected 'corner' or 'center')")

    idx = np.rint((arr - origin) / spacing - shift)
    idx = np.clip(idx, 0, max(last, 0)).astype("int64")
    return origin + (idx + shift) * spacing, idx


def align_down(value, spacing, origin=0.0):
    """Largest lattice line <= value."""
    return origin + np.floor(_snap_ratio((value - origin) / spacing)) * spacing


def align_up(value, spacing, origin=0.0):
    """Smallest lattice line >= value."""
    return origin + np.ceil(_snap_ratio((value - origin) / spacing)) * spacing


def _snap_ratio(q, eps=1e-9):
    # 29999.999999999996 / 10000 must floor to 3, not 2.
    r = np.rint(q)
    return np.where(np.abs(q - r) <= eps * np.maximum(1.0, np.abs(r)), r, q)


def cell_count(span, spacing):
    """Number of cells of ``spacing`` needed to cover ``span``."""
    return int(np.ceil(_snap_ratio(span / spacing)))
