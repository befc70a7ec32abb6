"""
Tests for Pandera schema validation gates and PointSet construction.

Verifies that:
- Schemas reject invalid data (missing columns, wrong types, out-of-range)
- validate_schema() returns warnings in lenient mode
- validate_schema() raises in strict mode
- PointSet.from_dataframe() validates occurrence tables before use
"""

import numpy as np
import pandas as pd
import pandera as pa
import pytest

from gridder.errors import ConfigurationError, ReprojectionError
from gridder.points import PointSet, normalize_crs
from gridder.schemas import (
    GridMetadataSchema,
    MatchSummarySchema,
    check_table,
    occurrence_schema,
    validate_schema,
)


# ── Occurrence schema ───────────────────────────────────────────────────


class TestOccurrenceSchema:
    """Tests for the occurrence table schema factory."""

    def _valid_df(self):
        return pd.DataFrame({
            "gbifID": ["a", "b"],
            "decimalLongitude": [2.35, 4.83],
            "decimalLatitude": [48.85, 45.76],
            "species": ["Bufo bufo", "Bufo bufo"],
        })

    def test_valid_data_passes(self):
        occurrence_schema("decimalLongitude", "decimalLatitude").validate(self._valid_df())

    def test_longitude_out_of_range_fails(self):
        df = self._valid_df()
        df.loc[0, "decimalLongitude"] = 200.0
        with pytest.raises(pa.errors.SchemaError):
            occurrence_schema("decimalLongitude", "decimalLatitude").validate(df)

    def test_projected_tables_skip_range_check(self):
        df = pd.DataFrame({"x": [650000.0], "y": [6860000.0]})
        occurrence_schema("x", "y", geographic=False).validate(df)

    def test_missing_coordinate_fails(self):
        df = self._valid_df()
        df.loc[1, "decimalLatitude"] = np.nan
        with pytest.raises(pa.errors.SchemaError):
            occurrence_schema("decimalLongitude", "decimalLatitude").validate(df)

    def test_string_coordinates_coerced(self):
        df = self._valid_df()
        df["decimalLongitude"] = df["decimalLongitude"].astype(str)
        out = occurrence_schema("decimalLongitude", "decimalLatitude").validate(df)
        assert out["decimalLongitude"].dtype == np.float64


# ── Grid metadata / match summary ──────────────────────────────────────


class TestGridMetadataSchema:

    def test_valid(self):
        GridMetadataSchema.validate(pd.DataFrame({
            "grid_id": ["10km"], "res_x": [10000.0], "res_y": [10000.0],
        }))

    def test_zero_resolution_fails(self):
        with pytest.raises(pa.errors.SchemaError):
            GridMetadataSchema.validate(pd.DataFrame({
                "grid_id": ["10km"], "res_x": [0.0], "res_y": [10000.0],
            }))

    def test_duplicate_ids_fail(self):
        with pytest.raises(pa.errors.SchemaError):
            GridMetadataSchema.validate(pd.DataFrame({
                "grid_id": ["a", "a"], "res_x": [1.0, 2.0], "res_y": [1.0, 2.0],
            }))


class TestValidateSchema:

    def _summary(self):
        return pd.DataFrame({
            "record_id": [0, 1],
            "x": [1.0, 2.0],
            "y": [1.0, 2.0],
            "closest_grid": ["10km", "non-gridded"],
            "closest_distance": [0.0, np.nan],
            "gridded": [True, False],
        })

    def test_lenient_returns_empty_for_valid(self):
        assert validate_schema(self._summary(), MatchSummarySchema, "matching") == []

    def test_lenient_returns_warnings(self):
        df = self._summary()
        df.loc[0, "closest_distance"] = -5.0
        warnings = validate_schema(df, MatchSummarySchema, "matching")
        assert len(warnings) == 1
        assert warnings[0].startswith("[matching]")

    def test_strict_raises(self):
        df = self._summary()
        df.loc[0, "closest_distance"] = -5.0
        with pytest.raises(ValueError, match="Schema validation failed"):
            validate_schema(df, MatchSummarySchema, "matching", strict=True)

    def test_none_and_empty(self):
        assert validate_schema(None, MatchSummarySchema, "m") == ["[m] DataFrame is None"]
        with pytest.raises(ValueError):
            validate_schema(pd.DataFrame(), MatchSummarySchema, "m", strict=True)


class TestCheckTable:

    def test_returns_coerced_table(self):
        df = pd.DataFrame({"grid_id": [1], "res_x": [10], "res_y": [10]})
        out = check_table(df, GridMetadataSchema, stage="matching")
        assert out["grid_id"].iloc[0] == "1"
        assert out["res_x"].dtype == "float64"

    def test_collects_every_violation(self):
        df = pd.DataFrame({"grid_id": ["a", "b"], "res_x": [-1.0, 5.0], "res_y": [1.0, 0.0]})
        with pytest.raises(ConfigurationError) as exc:
            check_table(df, GridMetadataSchema, stage="matching")
        assert exc.value.stage == "matching"
        cols = sorted(c["column"] for c in exc.value.details["failure_cases"])
        assert cols == ["res_x", "res_y"]
        assert "GridMetadataSchema" in str(exc.value)


# ── PointSet ────────────────────────────────────────────────────────────


class TestPointSet:

    def test_from_dataframe_defaults(self):
        df = pd.DataFrame({"decimalLongitude": [2.0, 3.0], "decimalLatitude": [46.0, 47.0]},
                          index=[10, 11])
        pts = PointSet.from_dataframe(df)
        assert pts.crs == "EPSG:4326"
        assert pts.ids == (10, 11)
        assert len(pts) == 2

    def test_from_dataframe_id_column(self):
        df = pd.DataFrame({"id": ["r1", "r2"], "x": [650000.0, 660000.0],
                           "y": [6860000.0, 6870000.0]})
        pts = PointSet.from_dataframe(df, x_col="x", y_col="y", id_col="id", crs=2154)
        assert pts.ids == ("r1", "r2")
        assert pts.crs == "EPSG:2154"

    def test_from_dataframe_rejects_bad_coordinates(self):
        df = pd.DataFrame({"decimalLongitude": [2.0], "decimalLatitude": [95.0]})
        with pytest.raises(ConfigurationError) as exc:
            PointSet.from_dataframe(df)
        assert exc.value.stage == "input"
        assert exc.value.details["schema"] == "OccurrenceSchema"
        cases = exc.value.details["failure_cases"]
        assert [c["column"] for c in cases] == ["decimalLatitude"]
        assert cases[0]["failure_case"] == 95.0

    def test_from_dataframe_missing_column(self):
        df = pd.DataFrame({"lon": [2.0], "decimalLatitude": [46.0]})
        with pytest.raises(ConfigurationError, match="OccurrenceSchema"):
            PointSet.from_dataframe(df)

    def test_arrays_are_read_only(self, lattice_points):
        with pytest.raises(ValueError):
            lattice_points.x[0] = 0.0

    def test_length_mismatch(self):
        with pytest.raises(ConfigurationError):
            PointSet(x=[1.0, 2.0], y=[1.0])

    def test_non_finite(self):
        with pytest.raises(ConfigurationError):
            PointSet(x=[1.0, np.nan], y=[1.0, 2.0])

    def test_reproject_returns_new_set(self, lattice_points):
        wgs = lattice_points.reproject("EPSG:4326")
        assert wgs is not lattice_points
        assert wgs.crs == "EPSG:4326"
        assert wgs.ids == lattice_points.ids
        assert lattice_points.reproject("epsg:2154") is lattice_points

    def test_reproject_outside_domain(self):
        with pytest.raises(ReprojectionError):
            PointSet(x=[0.0], y=[95.0], crs="EPSG:4326").reproject("EPSG:3857")

    def test_geodataframe(self, lattice_points):
        gdf = lattice_points.to_geodataframe()
        assert len(gdf) == 100
        assert gdf.crs.to_epsg() == 2154
        assert list(gdf.columns[:3]) == ["record_id", "x", "y"]


class TestNormalizeCrs:

    @pytest.mark.parametrize("value, expected", [
        (2154, "EPSG:2154"),
        ("epsg:2154", "EPSG:2154"),
        ("EPSG:4326", "EPSG:4326"),
        ("+proj=longlat +datum=WGS84 +no_defs", None),
    ])
    def test_normalizes(self, value, expected):
        out = normalize_crs(value)
        if expected is not None:
            assert out == expected
        else:
            assert out

    def test_invalid(self):
        with pytest.raises(ConfigurationError):
            normalize_crs("not a crs")
