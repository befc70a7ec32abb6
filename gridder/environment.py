"""
Per-cell statistics of an environmental raster layer.

Consumed after grid generation only: the output describes the cells and
never feeds back into CRS, resolution or extent inference.
"""

import numpy as np
import pandas as pd
import rasterio
from rasterstats import zonal_stats

from gridder import config
from gridder.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


def cell_statistics(grid, raster_path, stats=None, all_touched=True, band=1):
    """Zonal statistics of a raster band over every retained grid cell.

    Parameters
    ----------
    grid : GridDefinition
    raster_path : str
        Any raster rasterio can open (GeoTIFF, VRT, ...).
    stats : list[str], optional
        rasterstats statistic names. Defaults to config.DEFAULT_CELL_STATS.
    all_touched : bool
        Count every pixel touched by a cell, not only those whose center
        falls inside it.
    band : int

    Returns
    -------
    pd.DataFrame
        Columns ``cell_id, row, col`` followed by one column per statistic.
    """
    stats = list(stats or config.DEFAULT_CELL_STATS)

    with rasterio.open(raster_path) as src:
        raster_crs = src.crs
        nodata = src.nodata

    cells = grid.cells()
    if raster_crs is not None:
        cells = cells.to_crs(raster_crs)
    else:
        log.warning("Raster %s has no CRS; assuming grid CRS %s",
                    raster_path, grid.crs)

    results = zonal_stats(
        cells.geometry, raster_path,
        stats=stats,
        band=band,
        nodata=nodata if nodata is not None else np.nan,
        all_touched=all_touched,
    )

    df = pd.DataFrame(results, columns=stats)
    df.insert(0, "col", cells["col"].to_numpy())
    df.insert(0, "row", cells["row"].to_numpy())
    df.insert(0, "cell_id", cells["cell_id"].to_numpy())
    log.info("Computed %s for %d cells from %s", ", ".join(stats), len(df), raster_path)
    return df
