"""
Country boundary collaborators for grid masking.

A provider answers ``get_boundary(country)`` with a ``(geometry, crs)``
pair, or raises NoBoundaryMatchError. Boundary reference data is never
bundled; callers point a provider at their own vector file or mapping.
"""

from typing import Protocol

import geopandas as gpd
from shapely.geometry.base import BaseGeometry

from gridder.errors import NoBoundaryMatchError
from gridder.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


class BoundaryProvider(Protocol):
    def get_boundary(self, country: str) -> tuple[BaseGeometry, str]:
        ...


def _normalize_name(name):
    return " ".join(str(name).split()).casefold()


class GeoFileBoundaryProvider:
    """Boundaries read from a vector file (shapefile, GeoPackage, GeoJSON).

    Parameters
    ----------
    path : str
        Any file geopandas can read.
    name_field : str
        Attribute holding the country name. Matching is case-insensitive;
        every feature with that name is dissolved into one geometry.
    """

    def __init__(self, path, name_field="name"):
        self.path = path
        self.name_field = name_field
        self._gdf = None

    def _load(self):
        if self._gdf is None:
            gdf = gpd.read_file(self.path)
            if self.name_field not in gdf.columns:
                raise KeyError(
                    f"Boundary file {self.path} has no '{self.name_field}' column"
                )
            self._gdf = gdf
            log.info("Loaded %d boundary features from %s", len(gdf), self.path)
        return self._gdf

    def get_boundary(self, country):
        gdf = self._load()
        wanted = _normalize_name(country)
        match = gdf[gdf[self.name_field].map(_normalize_name) == wanted]
        if match.empty:
            raise NoBoundaryMatchError(
                "No boundary matches country", stage="grid",
                country=country, source=self.path,
            )
        crs = match.crs.to_string() if match.crs is not None else "EPSG:4326"
        return match.union_all(), crs


class StaticBoundaryProvider:
    """In-memory boundaries: ``{country name: geometry}`` in one CRS."""

    def __init__(self, boundaries, crs="EPSG:4326"):
        self.boundaries = {_normalize_name(k): v for k, v in boundaries.items()}
        self.crs = crs

    def get_boundary(self, country):
        geom = self.boundaries.get(_normalize_name(country))
        if geom is None:
            raise NoBoundaryMatchError(
                "No boundary matches country", stage="grid", country=country,
            )
        return geom, self.crs
