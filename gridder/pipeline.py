"""
End-to-end grid inference: CRS -> resolution -> extent -> grid -> matching.

Each stage input is either ``Provided(value)``, which skips the stage and
uses the value as is, or ``Infer(params)``, which computes it from the
points and the upstream stage outputs. Stages run in a fixed order and
never revisit an upstream value. Matching always runs.

Usage:
    from gridder.pipeline import Infer, MatchParams, Provided, run_pipeline
    out = run_pipeline(points, crs=Provided("EPSG:2154"))
    out.match.summary
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

from gridder import config
from gridder.cache_manager import cached_crs_search, coordinates_hash
from gridder.crs.inference import CRSInferenceEngine, CRSSearchResult
from gridder.crs.registry import CRSRegistry
from gridder.errors import ConfigurationError, GridderError, InsufficientDataError
from gridder.extent import Extent, as_extent, infer_extent
from gridder.formulas.thresholds import validate_thresholds
from gridder.grid import GridDefinition, generate_grid
from gridder.logging_config import get_pipeline_logger, set_run_id
from gridder.matching import GRID_NODES, MatchResult, match_grid
from gridder.pipeline_types import PipelineRunResult, StepResult
from gridder.points import normalize_crs
from gridder.resolution import ResolutionEstimate, as_resolution, infer_resolution
from gridder.step_runner import run_step, skip_step

log = get_pipeline_logger(__name__)

STAGES = ("crs", "resolution", "extent", "grid", "matching")

# Keyword arguments accepted by Infer(...) for each stage.
INFER_PARAMS = {
    "crs": {"candidates", "truth_code", "max_workers", "base_resolution",
            "check_area_of_use"},
    "resolution": {"rel_tol", "max_divisor", "min_resolution", "decimals", "round_to",
                   "cluster_tol"},
    "extent": {"method", "align", "offset", "origin"},
    "grid": {"country", "boundary_provider"},
}


@dataclass(frozen=True)
class Provided:
    """Stage value supplied by the caller; the stage is skipped."""

    value: Any


@dataclass(frozen=True)
class Infer:
    """Compute the stage value, with optional stage parameters."""

    params: dict = field(default_factory=dict)


@dataclass(frozen=True)
class MatchParams:
    """Matching settings. None falls back to the config defaults."""

    relative_threshold: Optional[float] = None
    absolute_threshold: Optional[float] = None
    node: Optional[str] = None
    policy: Optional[str] = None
    metadata: Any = None

    def resolved(self):
        return MatchParams(
            relative_threshold=(config.DEFAULT_RELATIVE_THRESHOLD
                                if self.relative_threshold is None
                                else self.relative_threshold),
            absolute_threshold=(config.DEFAULT_ABSOLUTE_THRESHOLD
                                if self.absolute_threshold is None
                                else self.absolute_threshold),
            node=self.node or config.DEFAULT_GRID_NODE,
            policy=self.policy or config.DEFAULT_THRESHOLD_POLICY,
            metadata=self.metadata,
        )


@dataclass(frozen=True, eq=False)
class PipelineOutput:
    """Everything a run produced. ``crs_search`` is None when the CRS was provided."""

    match: MatchResult
    grid: GridDefinition
    crs_search: Optional[CRSSearchResult]
    resolution: ResolutionEstimate
    extent: Extent
    run: PipelineRunResult


# ── Configuration checks ────────────────────────────────────────────────


def _check_stage_spec(name, spec):
    if isinstance(spec, Provided):
        if spec.value is None:
            raise ConfigurationError("Provided value is None", stage=name)
        return
    if not isinstance(spec, Infer):
        raise ConfigurationError(
            "Stage input must be Provided(value) or Infer(params)",
            stage=name, got=type(spec).__name__,
        )
    unknown = set(spec.params) - INFER_PARAMS[name]
    if unknown:
        raise ConfigurationError(
            "Unknown inference parameters", stage=name,
            unknown=sorted(unknown), expected=sorted(INFER_PARAMS[name]),
        )


def _validate_config(crs, resolution, extent, grid, matching):
    """Reject inconsistent overrides before any stage runs.

    Returns the normalized provided values as a dict.
    """
    for name, spec in (("crs", crs), ("resolution", resolution),
                       ("extent", extent), ("grid", grid)):
        _check_stage_spec(name, spec)

    if not isinstance(matching, MatchParams):
        raise ConfigurationError(
            "matching must be a MatchParams", stage="matching",
            got=type(matching).__name__,
        )
    validate_thresholds(matching.relative_threshold, matching.absolute_threshold,
                        matching.policy)
    if matching.node is not None and matching.node not in GRID_NODES:
        raise ConfigurationError(
            f"Unknown grid node '{matching.node}'", stage="matching",
            node=matching.node, expected=GRID_NODES,
        )

    provided = {}
    if isinstance(crs, Provided):
        provided["crs"] = normalize_crs(crs.value)
    if isinstance(resolution, Provided):
        provided["resolution"] = as_resolution(resolution.value)
    if isinstance(extent, Provided):
        provided["extent"] = as_extent(extent.value)
    else:
        method = extent.params.get("method", config.DEFAULT_EXTENT_METHOD)
        if method not in config.EXTENT_METHODS:
            raise ConfigurationError(
                f"Unknown extent method '{method}'", stage="extent",
                method=method, expected=config.EXTENT_METHODS,
            )

    if isinstance(grid, Provided):
        g = grid.value
        if not isinstance(g, GridDefinition):
            raise ConfigurationError(
                "Provided grid must be a GridDefinition", stage="grid",
                got=type(g).__name__,
            )
        if "crs" in provided and provided["crs"] != g.crs:
            raise ConfigurationError(
                "Provided CRS differs from the provided grid's CRS",
                stage="grid", crs=provided["crs"], grid_crs=g.crs,
            )
        if ("resolution" in provided
                and provided["resolution"].as_tuple() != g.resolution):
            raise ConfigurationError(
                "Provided resolution differs from the provided grid's resolution",
                stage="grid", resolution=provided["resolution"].as_tuple(),
                grid_resolution=g.resolution,
            )
        if "extent" in provided and provided["extent"] != g.extent:
            raise ConfigurationError(
                "Provided extent differs from the provided grid's extent",
                stage="grid", extent=provided["extent"].as_tuple(),
                grid_extent=g.extent.as_tuple(),
            )
        provided["grid"] = g
    else:
        if (grid.params.get("country") is not None
                and grid.params.get("boundary_provider") is None):
            raise ConfigurationError(
                "Country mask requested without a boundary provider",
                stage="grid", country=grid.params["country"],
            )
    return provided


# ── Stage execution ─────────────────────────────────────────────────────


def _execute(run, name, fn, *args, input_summary=None, output_summary_fn=None,
             **kwargs):
    """Run one stage through run_step, recording its StepResult on ``run``."""
    try:
        step, value = run_step(
            name, fn, *args,
            input_summary=input_summary,
            output_summary_fn=output_summary_fn,
            raise_on_error=True,
            **kwargs,
        )
    except Exception as exc:
        if isinstance(exc, GridderError) and exc.stage is None:
            exc.stage = name
        run.step_results.append(StepResult(
            step_name=name, status="error",
            input_summary=input_summary or {}, error=str(exc),
        ))
        raise
    run.step_results.append(step)
    return value


def _skip(run, name, input_summary):
    run.step_results.append(skip_step(name, input_summary=input_summary))


def _search_crs(points, params, registry, cache):
    candidates = params.get("candidates")
    engine = CRSInferenceEngine(
        registry=registry,
        max_workers=params.get("max_workers"),
        base_resolution=params.get("base_resolution"),
        check_area_of_use=params.get("check_area_of_use", True),
    )

    def compute():
        return engine.infer(points, candidates=candidates,
                            truth_code=params.get("truth_code"))

    search = cached_crs_search(
        cache, compute,
        points=coordinates_hash(points),
        candidates=("registry" if candidates is None
                    else ",".join(str(c) for c in candidates)),
        base_resolution=params.get("base_resolution"),
        check_area_of_use=params.get("check_area_of_use", True),
        truth_code=params.get("truth_code"),
    )
    if search.best is None:
        raise InsufficientDataError(
            "No CRS candidate could be evaluated", stage="crs",
            n_candidates=search.n_candidates,
        )
    return search


def _crs_summary(search):
    best = search.best
    return {"best": best.code, "score": best.score,
            "n_candidates": search.n_candidates, "n_failed": search.n_failed,
            "truth_rank": search.truth_rank}


def run_pipeline(points, crs=None, resolution=None, extent=None, grid=None,
                 matching=None, registry=None, cache=None, run=None):
    """Infer or accept each stage, generate the grid and match the points.

    Parameters
    ----------
    points : PointSet
        Occurrence points in their source CRS.
    crs, resolution, extent, grid : Provided or Infer, optional
        Stage inputs; default ``Infer()``. A provided grid implies its
        CRS, resolution and extent.
    matching : MatchParams, optional
    registry : CRSRegistry, optional
    cache : CacheManager, optional
        Reuse CRS search results for identical points and candidates.
    run : PipelineRunResult, optional
        Receives the stage records; created when omitted. Passing one in
        keeps the partial record available when a stage raises.

    Returns
    -------
    PipelineOutput

    Raises
    ------
    ConfigurationError
        Inconsistent overrides, before any stage runs.
    GridderError
        The first failing stage's error, with its stage name.
    """
    crs = Infer() if crs is None else crs
    resolution = Infer() if resolution is None else resolution
    extent = Infer() if extent is None else extent
    grid = Infer() if grid is None else grid
    matching = MatchParams() if matching is None else matching

    provided = _validate_config(crs, resolution, extent, grid, matching)
    matching = matching.resolved()
    registry = registry or CRSRegistry()

    if run is None:
        run = PipelineRunResult()
    run.run_id = run.run_id or set_run_id()
    run.n_points = len(points)
    t0 = time.perf_counter()
    log.info("Pipeline run %s: %d points in %s", run.run_id, len(points), points.crs)

    crs_search = None
    if "grid" in provided:
        g = provided["grid"]
        crs_code = g.crs
        res = ResolutionEstimate(res_x=g.res_x, res_y=g.res_y)
        ext = g.extent
        _skip(run, "crs", {"crs": crs_code, "from": "grid"})
        _skip(run, "resolution", {"resolution": res.as_tuple(), "from": "grid"})
        _skip(run, "extent", {"extent": ext.as_tuple(), "from": "grid"})
        _skip(run, "grid", {"n_cells": g.n_cells})
    else:
        # ── CRS ──
        if "crs" in provided:
            crs_code = provided["crs"]
            _skip(run, "crs", {"crs": crs_code})
        else:
            crs_search = _execute(
                run, "crs", _search_crs, points, crs.params, registry, cache,
                input_summary={"n_points": len(points), "source_crs": points.crs},
                output_summary_fn=_crs_summary,
            )
            crs_code = crs_search.best.code

        projected = None
        needs_points = (
            "resolution" not in provided
            or ("extent" not in provided
                and extent.params.get("method", config.DEFAULT_EXTENT_METHOD)
                == "empirical_occ_extent")
        )
        if needs_points:
            projected = _execute(
                run, "reproject", points.reproject, crs_code,
                input_summary={"source_crs": points.crs, "target_crs": crs_code},
            )

        # ── Resolution ──
        if "resolution" in provided:
            res = provided["resolution"]
            _skip(run, "resolution", {"resolution": res.as_tuple()})
        else:
            res = _execute(
                run, "resolution", infer_resolution, projected,
                input_summary={"crs": crs_code, "n_points": len(projected)},
                output_summary_fn=lambda r: {"res_x": r.res_x, "res_y": r.res_y},
                **resolution.params,
            )

        # ── Extent ──
        if "extent" in provided:
            ext = provided["extent"]
            _skip(run, "extent", {"extent": ext.as_tuple()})
        else:
            ext = _execute(
                run, "extent", infer_extent,
                points=projected, crs=crs_code, resolution=res,
                registry=registry,
                input_summary={"crs": crs_code,
                               "method": extent.params.get(
                                   "method", config.DEFAULT_EXTENT_METHOD)},
                output_summary_fn=lambda e: {"extent": list(e.as_tuple())},
                **extent.params,
            )

        # ── Grid ──
        g = _execute(
            run, "grid", generate_grid, crs_code, res, ext,
            input_summary={"crs": crs_code, "resolution": list(res.as_tuple()),
                           "country": grid.params.get("country")},
            output_summary_fn=lambda gd: {"n_cells": gd.n_cells,
                                          "masked": gd.is_masked},
            **grid.params,
        )

    # ── Matching ──
    match = _execute(
        run, "matching", match_grid, points, g,
        metadata=matching.metadata,
        relative_threshold=matching.relative_threshold,
        absolute_threshold=matching.absolute_threshold,
        node=matching.node,
        policy=matching.policy,
        input_summary={"n_points": len(points), "grid_crs": g.crs,
                       "policy": matching.policy},
        output_summary_fn=lambda m: {"gridded": m.gridded_count(),
                                     "non_gridded": len(m) - m.gridded_count()},
    )

    run.total_time_seconds = time.perf_counter() - t0
    log.info("Pipeline run %s finished in %.1fs: %d/%d points gridded",
             run.run_id, run.total_time_seconds, match.gridded_count(), len(points))
    return PipelineOutput(
        match=match, grid=g, crs_search=crs_search,
        resolution=res, extent=ext, run=run,
    )
