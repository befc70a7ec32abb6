"""
CRS inference: rank candidate reference systems by lattice alignment.

Each candidate is evaluated independently: the points are reprojected
into the candidate CRS and scored by how closely their coordinates sit on
a regular lattice. Points that were snapped to a grid built in that CRS
land on exact multiples of the grid spacing; in any other CRS the
coordinates are mixed by the projection and the lattice disappears.

Candidates that cannot be evaluated (invalid definition, points outside
the declared area of use, non-finite reprojection) stay in the ranking
with an infinite score and a note explaining the failure.
"""

import json
import math
from dataclasses import asdict, dataclass
from functools import partial
from typing import Optional

import numpy as np
import pandas as pd
from pyproj import CRS
from pyproj.exceptions import CRSError

from gridder import config
from gridder.crs.registry import CRSCandidate, CRSRegistry
from gridder.errors import ConfigurationError, ReprojectionError
from gridder.formulas.lattice import (
    approximate_gcd,
    cluster_tolerance,
    cluster_values,
    distinct_values,
    lattice_residual,
    refine_spacing,
)
from gridder.logging_config import get_pipeline_logger
from gridder.parallel_processing import parallel_map_chunks
from gridder.points import normalize_crs

log = get_pipeline_logger(__name__)


@dataclass(frozen=True)
class CRSScore:
    """Alignment score of one candidate. Lower is better."""

    code: str
    score: float
    note: str = ""
    name: str = ""
    is_truth: bool = False
    n_distinct: int = 0

    @property
    def failed(self):
        return not math.isfinite(self.score)

    def sort_key(self):
        return (self.score, self.n_distinct, self.code)


@dataclass(frozen=True)
class CRSSearchResult:
    """Ranked, deduplicated CRS scores plus truth diagnostics."""

    scores: tuple
    truth_code: Optional[str] = None

    @property
    def best(self):
        """Best-ranked candidate that did not fail, or None."""
        for s in self.scores:
            if not s.failed:
                return s
        return None

    @property
    def n_candidates(self):
        return len(self.scores)

    @property
    def n_failed(self):
        return sum(1 for s in self.scores if s.failed)

    @property
    def truth_rank(self):
        """1-based rank of the truth code, or None if absent."""
        if self.truth_code is None:
            return None
        for i, s in enumerate(self.scores, start=1):
            if s.code == self.truth_code:
                return i
        return None

    @property
    def truth_score(self):
        rank = self.truth_rank
        return None if rank is None else self.scores[rank - 1].score

    def select(self, top=None, include_failed=False):
        """Best-first candidates, optionally limited and without failures."""
        out = [s for s in self.scores if include_failed or not s.failed]
        return out if top is None else out[:top]

    def to_dataframe(self):
        rows = []
        for i, s in enumerate(self.scores, start=1):
            row = asdict(s)
            row["rank"] = i
            rows.append(row)
        columns = ["rank", "code", "name", "score", "note", "is_truth", "n_distinct"]
        return pd.DataFrame(rows, columns=columns)

    def to_records(self):
        return {
            "truth_code": self.truth_code,
            "scores": [asdict(s) for s in self.scores],
        }

    @classmethod
    def from_records(cls, d):
        return cls(
            scores=tuple(CRSScore(**s) for s in d.get("scores", [])),
            truth_code=d.get("truth_code"),
        )

    def to_json(self, path=None):
        """Serialize to JSON text, writing it to ``path`` when given."""
        text = json.dumps(self.to_records(), indent=2)
        if path is not None:
            with open(path, "w") as f:
                f.write(text)
        return text

    @classmethod
    def from_json(cls, text_or_path):
        """Load from JSON text or a file path."""
        text = text_or_path
        if not text_or_path.lstrip().startswith("{"):
            with open(text_or_path) as f:
                text = f.read()
        return cls.from_records(json.loads(text))


# ── Scoring ─────────────────────────────────────────────────────────────


def axis_alignment(values, base_resolution=None, rel_tol=None, max_divisor=None,
                   min_spacing=0.0):
    """Lattice residual of one axis, as a fraction of the lattice spacing.

    The spacing is ``base_resolution`` when supplied. Otherwise nearby
    values are merged into lattice lines and the spacing is the largest
    approximate common divisor of the gaps between lines, or the smallest
    such gap when no common divisor exists. Either estimate is held at or
    above ``min_spacing``, so the rounding step of published coordinates
    cannot pass for a grid.

    Returns
    -------
    tuple[float, float, int]
        ``(residual, spacing, n_distinct)``. Residual is in [0, 0.5].
    """
    uniq = distinct_values(values)
    if len(uniq) < 2:
        return 0.0, float("nan"), int(len(uniq))

    if base_resolution is not None:
        spacing = float(base_resolution)
    else:
        tol = cluster_tolerance(uniq)
        lines = cluster_values(uniq, tol)
        gaps = np.diff(lines)
        found = approximate_gcd(gaps, rel_tol=rel_tol, max_divisor=max_divisor,
                                min_gap=tol, min_spacing=min_spacing)
        if found is not None:
            spacing = refine_spacing(lines, found[0])
        else:
            spacing = max(float(gaps.min()), min_spacing)

    return lattice_residual(values, spacing), spacing, int(len(uniq))


def score_alignment(x, y, base_resolution=None, rel_tol=None, max_divisor=None,
                    min_spacing=0.0):
    """Mean lattice residual over both axes. Lower is better.

    Parameters
    ----------
    x, y : array-like
        Coordinates in the candidate CRS.
    base_resolution : float or (float, float), optional
        Assumed lattice spacing in the candidate's unit.
    min_spacing : float
        Smallest estimated spacing accepted, in the candidate's unit.

    Returns
    -------
    tuple[float, int]
        ``(score, n_distinct)``, n_distinct summed over both axes.
    """
    if base_resolution is None or np.isscalar(base_resolution):
        bx = by = base_resolution
    else:
        bx, by = base_resolution
    kwargs = dict(rel_tol=rel_tol, max_divisor=max_divisor, min_spacing=min_spacing)
    rx, _, nx = axis_alignment(x, bx, **kwargs)
    ry, _, ny = axis_alignment(y, by, **kwargs)
    return (rx + ry) / 2.0, nx + ny


def min_spacing_for(candidate):
    """Spacing floor in the candidate's unit (degrees or linear)."""
    if candidate.kind == "geographic":
        return config.MIN_RESOLUTION_DEGREES
    return config.MIN_RESOLUTION


def _failure(candidate, reason):
    log.debug("Candidate %s failed: %s", candidate.code, reason,
              extra={"candidate": candidate.code, "stage": "crs"})
    return CRSScore(
        code=candidate.code,
        score=float("inf"),
        note=f"{config.CANDIDATE_FAILURE}: {reason}",
        name=candidate.name,
    )


def score_candidate(candidate, x, y, source_crs, registry, lonlat_bounds=None,
                    base_resolution=None, rel_tol=None, max_divisor=None):
    """Reproject the points into one candidate and score the alignment.

    Never raises for candidate-level problems; they become failure scores.
    """
    if not candidate.name:
        try:
            CRS.from_user_input(candidate.code)
        except CRSError as exc:
            return _failure(candidate, f"invalid definition ({exc})")

    if lonlat_bounds is not None and not candidate.covers(*lonlat_bounds):
        return _failure(candidate, "points outside the declared area of use")

    try:
        tx, ty = registry.reproject(x, y, source_crs, candidate.code)
    except ReprojectionError as exc:
        return _failure(candidate, f"reprojection failed ({exc})")

    score, n_distinct = score_alignment(
        tx, ty, base_resolution=base_resolution,
        rel_tol=rel_tol, max_divisor=max_divisor,
        min_spacing=min_spacing_for(candidate),
    )
    if math.isnan(score):
        return _failure(candidate, "no alignment score (non-positive spacing)")
    return CRSScore(
        code=candidate.code, score=float(score), name=candidate.name,
        n_distinct=n_distinct,
    )


def _score_chunk(chunk, x, y, source_crs, registry, lonlat_bounds,
                 base_resolution, rel_tol, max_divisor):
    """Worker: score a disjoint chunk of candidates with ``registry``."""
    out = []
    for candidate in chunk:
        try:
            out.append(score_candidate(
                candidate, x, y, source_crs, registry,
                lonlat_bounds=lonlat_bounds, base_resolution=base_resolution,
                rel_tol=rel_tol, max_divisor=max_divisor,
            ))
        except Exception as exc:
            out.append(_failure(candidate, f"unexpected error ({exc})"))
    return out


# ── Engine ──────────────────────────────────────────────────────────────


class CRSInferenceEngine:
    """Search a CRS catalog for the system the points were gridded in.

    Parameters
    ----------
    registry : CRSRegistry, optional
        CRS collaborator (defaults to the pyproj-backed registry). It
        resolves the candidate catalog and performs every reprojection;
        worker processes receive a pickled copy.
    max_workers : int, optional
        Worker-pool size. Defaults to config.default_max_workers().
    base_resolution : float or (float, float), optional
        Assumed lattice spacing in the candidate unit. When omitted the
        spacing is estimated per candidate.
    check_area_of_use : bool
        Record candidates whose declared area of use does not contain the
        points as failures without reprojecting.
    """

    def __init__(self, registry=None, max_workers=None, base_resolution=None,
                 check_area_of_use=True, rel_tol=None, max_divisor=None):
        self.registry = registry or CRSRegistry()
        self.max_workers = max_workers or config.default_max_workers()
        self.base_resolution = base_resolution
        self.check_area_of_use = check_area_of_use
        self.rel_tol = rel_tol
        self.max_divisor = max_divisor

    def _resolve_candidates(self, candidates):
        if candidates is None:
            return self.registry.candidates()
        resolved = []
        codes = []
        for c in candidates:
            if isinstance(c, CRSCandidate):
                resolved.append(c)
            else:
                codes.append(c)
        resolved.extend(self.registry.candidates(codes=codes))
        seen = set()
        out = []
        for c in resolved:
            if c.code not in seen:
                seen.add(c.code)
                out.append(c)
        return out

    def _lonlat_bounds(self, points):
        if not self.check_area_of_use:
            return None
        if CRS.from_user_input(points.crs).is_geographic:
            return points.bounds()
        try:
            return points.reproject("EPSG:4326").bounds()
        except ReprojectionError as exc:
            log.warning("Cannot express points in lon/lat (%s); "
                        "area-of-use check disabled", exc)
            return None

    def infer(self, points, candidates=None, truth_code=None):
        """Score every candidate and rank best-first.

        Parameters
        ----------
        points : PointSet
            Occurrence points in their source CRS.
        candidates : iterable, optional
            Allow-list of codes or CRSCandidate objects. Defaults to the
            full registry.
        truth_code : str, optional
            Known CRS, recorded for diagnostics only.

        Returns
        -------
        CRSSearchResult

        Raises
        ------
        ConfigurationError
            Fewer than two points.
        """
        if len(points) < 2:
            raise ConfigurationError(
                "CRS inference needs at least two points",
                stage="crs", n_points=len(points),
            )
        if truth_code is not None:
            truth_code = normalize_crs(truth_code)

        catalog = self._resolve_candidates(candidates)
        if not catalog:
            raise ConfigurationError("Empty CRS candidate catalog", stage="crs")

        worker = partial(
            _score_chunk,
            x=np.asarray(points.x), y=np.asarray(points.y),
            source_crs=points.crs,
            registry=self.registry,
            lonlat_bounds=self._lonlat_bounds(points),
            base_resolution=self.base_resolution,
            rel_tol=self.rel_tol,
            max_divisor=self.max_divisor,
        )
        results = parallel_map_chunks(
            worker, catalog, max_workers=self.max_workers,
            on_error=lambda chunk, exc: [
                _failure(c, f"worker error ({exc})") for c in chunk
            ],
        )

        if truth_code is not None:
            results = [
                CRSScore(**{**asdict(s), "is_truth": s.code == truth_code})
                for s in results
            ]
        ranked = tuple(sorted(results, key=CRSScore.sort_key))
        search = CRSSearchResult(scores=ranked, truth_code=truth_code)

        best = search.best
        log.info("Scored %d CRS candidates (%d failed); best: %s",
                 search.n_candidates, search.n_failed,
                 f"{best.code} ({best.score:.3g})" if best else "none")
        if truth_code is not None:
            if search.truth_rank is None:
                log.warning("Truth CRS %s was not among the candidates", truth_code)
            else:
                log.info("Truth CRS %s ranked %d (score %.3g)",
                         truth_code, search.truth_rank, search.truth_score)
        return search


def infer_crs(points, candidates=None, truth_code=None, max_workers=None,
              base_resolution=None, registry=None):
    """Rank CRS candidates for ``points``. See CRSInferenceEngine.infer."""
    engine = CRSInferenceEngine(
        registry=registry, max_workers=max_workers,
        base_resolution=base_resolution,
    )
    return engine.infer(points, candidates=candidates, truth_code=truth_code)
