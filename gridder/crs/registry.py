"""
CRS registry collaborator backed by the PROJ database (pyproj).

Enumerates candidate reference systems, resolves their definitions and
declared areas of use, and reprojects coordinate arrays. No CRS reference
data is bundled: everything comes from the installed PROJ database.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from pyproj import CRS, Transformer
from pyproj.database import query_crs_info
from pyproj.enums import PJType
from pyproj.exceptions import CRSError, ProjError

from gridder import config
from gridder.errors import DegenerateGeometryError, ReprojectionError
from gridder.logging_config import get_pipeline_logger
from gridder.points import normalize_crs

log = get_pipeline_logger(__name__)


@dataclass(frozen=True)
class CRSCandidate:
    """A reference system drawn from the registry (read-only)."""

    code: str
    name: str = ""
    area_of_use: Optional[tuple] = None  # (west, south, east, north) in degrees
    kind: str = ""

    @property
    def definition(self):
        """WKT definition resolved through pyproj."""
        return CRS.from_user_input(self.code).to_wkt()

    def covers(self, lon_min, lat_min, lon_max, lat_max):
        """True if the lon/lat box lies inside the declared area of use.

        Candidates without a declared area of use cover everything.
        """
        if self.area_of_use is None:
            return True
        west, south, east, north = self.area_of_use
        if lat_min < south or lat_max > north:
            return False
        if west <= east:
            return west <= lon_min and lon_max <= east
        # Area of use crossing the antimeridian.
        return all(lon >= west or lon <= east for lon in (lon_min, lon_max))


_KIND_BY_TYPE = {
    PJType.PROJECTED_CRS: "projected",
    PJType.GEOGRAPHIC_2D_CRS: "geographic",
}


class CRSRegistry:
    """pyproj-backed registry of candidate CRS definitions."""

    def __init__(self, authority=None):
        self.authority = authority or config.CRS_AUTHORITY
        self._transformers = {}

    def __getstate__(self):
        # Transformers are rebuilt lazily in each worker process.
        state = self.__dict__.copy()
        state["_transformers"] = {}
        return state

    def candidates(self, codes=None, include_projected=True, include_geographic=True):
        """List CRS candidates.

        Parameters
        ----------
        codes : iterable, optional
            Explicit allow-list ("EPSG:2154", 2154, ...). Order is kept and
            duplicates are dropped. When omitted, every non-deprecated
            registry entry of the selected kinds is returned.
        include_projected, include_geographic : bool
            Kinds enumerated when ``codes`` is omitted.

        Returns
        -------
        list[CRSCandidate]
        """
        if codes is not None:
            seen = set()
            out = []
            for code in codes:
                cand = self.get(code)
                if cand.code in seen:
                    continue
                seen.add(cand.code)
                out.append(cand)
            return out

        pj_types = []
        if include_projected:
            pj_types.append(PJType.PROJECTED_CRS)
        if include_geographic:
            pj_types.append(PJType.GEOGRAPHIC_2D_CRS)
        if not pj_types:
            return []

        infos = query_crs_info(
            auth_name=self.authority, pj_types=pj_types, allow_deprecated=False,
        )
        out = []
        for info in infos:
            aou = info.area_of_use
            out.append(CRSCandidate(
                code=f"{info.auth_name}:{info.code}",
                name=info.name,
                area_of_use=(aou.west, aou.south, aou.east, aou.north) if aou else None,
                kind=_KIND_BY_TYPE.get(info.type, str(info.type)),
            ))
        log.info("Enumerated %d %s CRS candidates", len(out), self.authority)
        return out

    def get(self, code):
        """Resolve a single candidate.

        Unknown or invalid codes are returned as a bare candidate; the
        failure surfaces when the candidate is evaluated.
        """
        try:
            code = normalize_crs(code)
            crs = CRS.from_user_input(code)
        except (CRSError, ValueError):
            return CRSCandidate(code=str(code))
        aou = crs.area_of_use
        if crs.is_projected:
            kind = "projected"
        elif crs.is_geographic:
            kind = "geographic"
        else:
            kind = crs.type_name
        return CRSCandidate(
            code=code,
            name=crs.name,
            area_of_use=(aou.west, aou.south, aou.east, aou.north) if aou else None,
            kind=kind,
        )

    def _transformer(self, source_crs, target_crs):
        key = (source_crs, target_crs)
        if key not in self._transformers:
            self._transformers[key] = Transformer.from_crs(
                source_crs, target_crs, always_xy=True,
            )
        return self._transformers[key]

    def reproject(self, x, y, source_crs, target_crs):
        """Reproject coordinate arrays.

        Raises
        ------
        ReprojectionError
            On invalid definitions or non-finite output.
        """
        try:
            transformer = self._transformer(source_crs, target_crs)
            tx, ty = transformer.transform(
                np.asarray(x, dtype="float64"),
                np.asarray(y, dtype="float64"),
                errcheck=False,
            )
        except (CRSError, ProjError) as exc:
            raise ReprojectionError(
                str(exc), source_crs=source_crs, target_crs=target_crs,
            ) from exc
        tx = np.asarray(tx, dtype="float64")
        ty = np.asarray(ty, dtype="float64")
        bad = ~(np.isfinite(tx) & np.isfinite(ty))
        if bad.any():
            raise ReprojectionError(
                "Coordinates fall outside the target CRS domain",
                source_crs=source_crs, target_crs=target_crs,
                n_failed=int(bad.sum()),
            )
        return tx, ty

    def area_of_use_bounds(self, code, target_crs=None):
        """Declared area of use, transformed into ``target_crs``.

        Defaults to the CRS itself, i.e. the bounds in its own units.

        Raises
        ------
        DegenerateGeometryError
            If the CRS declares no area of use.
        """
        cand = self.get(code)
        if cand.area_of_use is None:
            raise DegenerateGeometryError(
                "CRS declares no area of use", stage="extent", crs=cand.code,
            )
        target = normalize_crs(target_crs or cand.code)
        west, south, east, north = cand.area_of_use
        try:
            transformer = self._transformer("EPSG:4326", target)
            return tuple(float(v) for v in transformer.transform_bounds(
                west, south, east, north, densify_pts=config.AREA_OF_USE_DENSIFY,
            ))
        except (CRSError, ProjError) as exc:
            raise ReprojectionError(
                str(exc), stage="extent", source_crs="EPSG:4326", target_crs=target,
            ) from exc
