"""
Shared fixtures for grid inference tests.

Provides synthetic occurrence lattices built with pyproj, a synthetic
raster and temporary directories, so each test module can focus on
verifying one stage against known inputs.
"""

import os
import tempfile

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_bounds
from shapely.geometry import box

from gridder.logging_config import reset_logging
from gridder.points import PointSet


# ---------------------------------------------------------------------------
# Constants for synthetic test geometry
# ---------------------------------------------------------------------------
# A 20 x 20 block of 10 km cells in Lambert-93 (EPSG:2154), central France.
LAMBERT93 = "EPSG:2154"
RES = 10000.0
X0, Y0 = 600000.0, 6600000.0
N_COLS = N_ROWS = 20
X1, Y1 = X0 + N_COLS * RES, Y0 + N_ROWS * RES

# Candidates that do not share Lambert-93's lattice.
OTHER_CANDIDATES = ["EPSG:3035", "EPSG:3857", "EPSG:4326", "EPSG:32631"]


def lattice_nodes(n_points=100, seed=0):
    """Distinct cell centers of the Lambert-93 block, in random order."""
    rng = np.random.default_rng(seed)
    flat = rng.choice(N_COLS * N_ROWS, size=n_points, replace=False)
    rows, cols = np.divmod(flat, N_COLS)
    return X0 + (cols + 0.5) * RES, Y0 + (rows + 0.5) * RES


@pytest.fixture(autouse=True)
def _isolated_logging():
    """Fresh logger state per test; run_ids do not leak between tests."""
    yield
    reset_logging()


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory that is cleaned up after test."""
    with tempfile.TemporaryDirectory(prefix="gridder_test_") as d:
        yield d


@pytest.fixture
def lattice_points():
    """100 points exactly on Lambert-93 10 km cell centers."""
    x, y = lattice_nodes()
    return PointSet(x=x, y=y, crs=LAMBERT93)


@pytest.fixture
def lattice_points_wgs84(lattice_points):
    """The Lambert-93 lattice points published as WGS84 lon/lat."""
    return lattice_points.reproject("EPSG:4326")


@pytest.fixture(params=[5, 6], ids=["5-decimals", "6-decimals"])
def rounded_wgs84(request, lattice_points_wgs84):
    """The WGS84 lattice points rounded the way occurrence portals publish them."""
    decimals = request.param
    return PointSet(
        x=np.round(lattice_points_wgs84.x, decimals),
        y=np.round(lattice_points_wgs84.y, decimals),
        crs="EPSG:4326",
        ids=lattice_points_wgs84.ids,
    )


@pytest.fixture
def perturbed_points():
    """100 lattice points each moved by 0.1-0.9 of a cell on both axes."""
    x, y = lattice_nodes(seed=1)
    rng = np.random.default_rng(7)
    dx = rng.uniform(0.1, 0.9, size=len(x)) * RES
    dy = rng.uniform(0.1, 0.9, size=len(y)) * RES
    return PointSet(x=x + dx, y=y + dy, crs=LAMBERT93)


@pytest.fixture
def block_extent():
    return (X0, Y0, X1, Y1)


@pytest.fixture
def west_half_boundary():
    """Polygon covering the western ten columns of the block, in Lambert-93."""
    return box(X0 + 1, Y0 + 1, X0 + 10 * RES - 1, Y1 - 1)


def _write_raster(path, data, bounds=(X0, Y0, X1, Y1), crs=LAMBERT93):
    """Helper: write a 2D float32 array as a single-band GeoTIFF."""
    height, width = data.shape
    meta = {
        "driver": "GTiff",
        "height": height,
        "width": width,
        "count": 1,
        "dtype": "float32",
        "crs": crs,
        "transform": from_bounds(*bounds, width, height),
        "nodata": np.nan,
    }
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with rasterio.open(path, "w", **meta) as dst:
        dst.write(data.astype("float32"), 1)
    return path


@pytest.fixture
def uniform_raster(tmp_dir):
    """1 km raster over the block with 5.0 everywhere."""
    data = np.full((200, 200), 5.0, dtype="float32")
    return _write_raster(os.path.join(tmp_dir, "uniform.tif"), data)


@pytest.fixture
def gradient_raster(tmp_dir):
    """1 km raster over the block whose value is the pixel column index."""
    data = np.tile(np.arange(200, dtype="float32"), (200, 1))
    return _write_raster(os.path.join(tmp_dir, "gradient.tif"), data)
