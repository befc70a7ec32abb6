"""
Tests for gridder/grid.py and gridder/boundaries.py.

Covers exact tiling counts, lazy cell materialization, country masking
and JSON persistence of grid definitions.
"""

import math
import os

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Polygon, box

from gridder.boundaries import GeoFileBoundaryProvider, StaticBoundaryProvider
from gridder.errors import ConfigurationError, DegenerateGeometryError, NoBoundaryMatchError
from gridder.extent import Extent
from gridder.grid import GridDefinition, generate_grid

from conftest import LAMBERT93, RES, X0, Y0


class TestGenerateGrid:

    def test_cell_count_exact_tiling(self, block_extent):
        grid = generate_grid(LAMBERT93, RES, block_extent)
        assert (grid.n_cols, grid.n_rows) == (20, 20)
        assert grid.n_cells == 400
        assert not grid.is_masked

    @pytest.mark.parametrize("extent, res, expected", [
        ((0, 0, 25000, 15000), 10000, 6),
        ((0, 0, 10000, 10000), 3000, 16),
        ((0, 0, 1, 1), (0.3, 0.5), 8),
    ])
    def test_cell_count_is_ceil_product(self, extent, res, expected):
        grid = generate_grid(LAMBERT93, res, extent)
        rx, ry = (res, res) if np.isscalar(res) else res
        xmin, ymin, xmax, ymax = extent
        assert grid.n_cells == math.ceil((xmax - xmin) / rx) * math.ceil((ymax - ymin) / ry)
        assert grid.n_cells == expected

    def test_cells_stay_within_one_resolution_of_extent(self):
        grid = generate_grid(LAMBERT93, 10000, (0, 0, 25000, 15000))
        b = grid.cell_bounds()
        assert b["xmax"].max() <= 25000 + 10000
        assert b["ymax"].max() <= 15000 + 10000
        assert b["xmin"].min() == 0 and b["ymin"].min() == 0

    def test_cells_geodataframe(self, block_extent):
        grid = generate_grid(LAMBERT93, RES, block_extent)
        cells = grid.cells()
        assert isinstance(cells, gpd.GeoDataFrame)
        assert len(cells) == 400
        assert cells.crs.to_epsg() == 2154
        np.testing.assert_allclose(cells.geometry.area, RES * RES)

    def test_centers_and_corners(self):
        grid = generate_grid(LAMBERT93, 10, (0, 0, 20, 10))
        cx, cy = grid.cell_centers()
        np.testing.assert_allclose(cx, [5, 15])
        np.testing.assert_allclose(cy, [5, 5])
        kx, ky = grid.cell_corners()
        np.testing.assert_allclose(kx, [0, 10])

    def test_crs_normalized(self, block_extent):
        grid = generate_grid(2154, RES, block_extent)
        assert grid.crs == LAMBERT93

    def test_non_positive_resolution(self, block_extent):
        with pytest.raises(DegenerateGeometryError):
            generate_grid(LAMBERT93, 0, block_extent)

    def test_zero_area_extent(self):
        with pytest.raises(DegenerateGeometryError):
            generate_grid(LAMBERT93, RES, (0, 0, 0, 10))

    def test_country_without_provider(self, block_extent):
        with pytest.raises(ConfigurationError):
            generate_grid(LAMBERT93, RES, block_extent, country="France")


class TestCountryMask:

    def test_mask_keeps_intersecting_cells(self, block_extent, west_half_boundary):
        provider = StaticBoundaryProvider({"Westland": west_half_boundary}, crs=LAMBERT93)
        grid = generate_grid(LAMBERT93, RES, block_extent,
                             country="westland", boundary_provider=provider)
        assert grid.is_masked
        assert grid.mask_name == "westland"
        assert grid.n_cells == 200
        assert grid.n_cols == 20
        rows, cols = grid.rows_cols()
        assert cols.max() == 9
        assert set(grid.cell_ids()) == {r * 20 + c for r in range(20) for c in range(10)}

    def test_masked_cells_subset_with_identical_geometry(self, block_extent,
                                                         west_half_boundary):
        full = generate_grid(LAMBERT93, RES, block_extent)
        provider = StaticBoundaryProvider({"Westland": west_half_boundary}, crs=LAMBERT93)
        masked = generate_grid(LAMBERT93, RES, block_extent,
                               country="Westland", boundary_provider=provider)
        full_b = full.cell_bounds().set_index("cell_id")
        masked_b = masked.cell_bounds().set_index("cell_id")
        assert set(masked_b.index) <= set(full_b.index)
        np.testing.assert_array_equal(
            masked_b[["xmin", "ymin", "xmax", "ymax"]].to_numpy(),
            full_b.loc[masked_b.index, ["xmin", "ymin", "xmax", "ymax"]].to_numpy(),
        )

    def test_boundary_in_other_crs_is_reprojected(self, block_extent, west_half_boundary):
        wgs84 = gpd.GeoSeries([west_half_boundary], crs=LAMBERT93).to_crs(4326).iloc[0]
        provider = StaticBoundaryProvider({"Westland": wgs84}, crs="EPSG:4326")
        grid = generate_grid(LAMBERT93, RES, block_extent,
                             country="Westland", boundary_provider=provider)
        assert 180 <= grid.n_cells <= 240

    def test_no_match_skips_masking(self, block_extent, west_half_boundary):
        provider = StaticBoundaryProvider({"Westland": west_half_boundary}, crs=LAMBERT93)
        grid = generate_grid(LAMBERT93, RES, block_extent,
                             country="Atlantis", boundary_provider=provider)
        assert not grid.is_masked
        assert grid.n_cells == 400
        assert any("Atlantis" in n for n in grid.notes)

    @pytest.mark.parametrize("result", [None, (Polygon(), LAMBERT93)])
    def test_provider_returning_nothing_skips_masking(self, block_extent, result):
        class EmptyProvider:
            def get_boundary(self, country):
                return result

        grid = generate_grid(LAMBERT93, RES, block_extent,
                             country="Atlantis", boundary_provider=EmptyProvider())
        assert not grid.is_masked
        assert grid.n_cells == 400
        assert any("Atlantis" in n for n in grid.notes)

    def test_mask_removing_everything(self, block_extent):
        far_away = box(0, 0, 1000, 1000)
        provider = StaticBoundaryProvider({"Elsewhere": far_away}, crs=LAMBERT93)
        with pytest.raises(DegenerateGeometryError):
            generate_grid(LAMBERT93, RES, block_extent,
                          country="Elsewhere", boundary_provider=provider)


class TestGeoFileBoundaryProvider:

    def test_reads_and_matches_case_insensitively(self, tmp_dir, west_half_boundary):
        path = os.path.join(tmp_dir, "countries.gpkg")
        gpd.GeoDataFrame(
            {"name": ["Westland", "Eastland"],
             "geometry": [west_half_boundary, box(X0 + 10 * RES, Y0, X0 + 20 * RES, Y0 + RES)]},
            crs=LAMBERT93,
        ).to_file(path, driver="GPKG")

        provider = GeoFileBoundaryProvider(path)
        geom, crs = provider.get_boundary("  WESTLAND ")
        assert geom.equals(west_half_boundary)
        assert "2154" in crs

    def test_no_match(self, tmp_dir, west_half_boundary):
        path = os.path.join(tmp_dir, "countries.gpkg")
        gpd.GeoDataFrame({"name": ["Westland"], "geometry": [west_half_boundary]},
                         crs=LAMBERT93).to_file(path, driver="GPKG")
        with pytest.raises(NoBoundaryMatchError):
            GeoFileBoundaryProvider(path).get_boundary("Atlantis")

    def test_missing_name_field(self, tmp_dir, west_half_boundary):
        path = os.path.join(tmp_dir, "countries.gpkg")
        gpd.GeoDataFrame({"label": ["Westland"], "geometry": [west_half_boundary]},
                         crs=LAMBERT93).to_file(path, driver="GPKG")
        with pytest.raises(KeyError):
            GeoFileBoundaryProvider(path).get_boundary("Westland")


class TestPersistence:

    def test_json_round_trip(self, tmp_dir, block_extent):
        grid = generate_grid(LAMBERT93, RES, block_extent)
        path = grid.save(os.path.join(tmp_dir, "grid.json"))
        assert GridDefinition.load(path) == grid

    def test_masked_round_trip(self, tmp_dir, block_extent, west_half_boundary):
        provider = StaticBoundaryProvider({"Westland": west_half_boundary}, crs=LAMBERT93)
        grid = generate_grid(LAMBERT93, RES, block_extent,
                             country="Westland", boundary_provider=provider)
        loaded = GridDefinition.from_dict(grid.to_dict())
        assert loaded == grid
        assert loaded.cell_index.dtype == np.int64
        assert grid.to_dict()["format_version"] == 1

    def test_inequality(self, block_extent):
        a = generate_grid(LAMBERT93, RES, block_extent)
        b = generate_grid(LAMBERT93, RES / 2, block_extent)
        assert a != b

    def test_export_gpkg(self, tmp_dir):
        grid = generate_grid(LAMBERT93, RES, (X0, Y0, X0 + 3 * RES, Y0 + 2 * RES))
        path = grid.to_file(os.path.join(tmp_dir, "cells.gpkg"))
        gdf = gpd.read_file(path)
        assert len(gdf) == 6
        assert set(gdf["res_x"]) == {RES}

    def test_immutable(self, block_extent):
        grid = generate_grid(LAMBERT93, RES, block_extent)
        with pytest.raises(AttributeError):
            grid.res_x = 1.0

    def test_extent_kept(self, block_extent):
        grid = generate_grid(LAMBERT93, RES, block_extent)
        assert grid.extent == Extent(*block_extent)
