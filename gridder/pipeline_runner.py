#!/usr/bin/env python3
"""
Command-line entry point for grid inference on an occurrence table.

Reads a CSV of occurrence records, runs the pipeline with any stage
overrides given on the command line, and writes:

- ``matches.csv``: one row per record with the aggregated classification
- ``match_details.csv``: one row per (record, grid entry)
- ``grid.json``: the grid definition used
- ``crs_ranking.csv``: the CRS ranking, when the CRS was inferred
- ``pipeline_run.json``: stage statuses, timings and provenance

Usage:
    # Infer everything from WGS84 occurrences
    python3 -m gridder.pipeline_runner occurrences.csv --candidates EPSG:2154,EPSG:3035

    # Known CRS and resolution, mask to a country
    python3 -m gridder.pipeline_runner occurrences.csv --crs EPSG:2154 \\
        --resolution 10000 --country France --boundaries countries.gpkg
"""

import argparse
import json
import os
import sys

import pandas as pd

from gridder import config
from gridder.boundaries import GeoFileBoundaryProvider
from gridder.cache_manager import CacheManager
from gridder.environment import cell_statistics
from gridder.errors import ConfigurationError, GridderError
from gridder.grid import GridDefinition
from gridder.logging_config import get_pipeline_logger, set_run_id, setup_logging
from gridder.pipeline import Infer, MatchParams, Provided, run_pipeline
from gridder.pipeline_types import PipelineRunResult
from gridder.points import PointSet

log = get_pipeline_logger(__name__)


def _floats(text, n=None, name="value"):
    values = [float(v) for v in str(text).replace(",", " ").split()]
    if n is not None and len(values) not in n:
        raise ConfigurationError(
            f"{name} expects {' or '.join(map(str, n))} numbers", value=text,
        )
    return values


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Infer the grid behind occurrence records and flag gridded points"
    )
    parser.add_argument("occurrences", help="CSV of occurrence records")
    parser.add_argument("--x-col", default=config.DEFAULT_X_COLUMN, dest="x_col",
                        help="Longitude / x column")
    parser.add_argument("--y-col", default=config.DEFAULT_Y_COLUMN, dest="y_col",
                        help="Latitude / y column")
    parser.add_argument("--id-col", default=None, dest="id_col",
                        help="Record identifier column (default: row number)")
    parser.add_argument("--source-crs", default=config.DEFAULT_SOURCE_CRS,
                        dest="source_crs", help="CRS of the input coordinates")

    stages = parser.add_argument_group("stage overrides")
    stages.add_argument("--crs", default=None, help="Grid CRS (skips CRS inference)")
    stages.add_argument("--resolution", default=None,
                        help="Cell size 'r' or 'rx,ry' (skips resolution inference)")
    stages.add_argument("--extent", default=None,
                        help="'xmin,ymin,xmax,ymax' in the grid CRS (skips extent inference)")
    stages.add_argument("--grid", default=None,
                        help="Grid definition JSON (skips every inference stage)")
    stages.add_argument("--extent-method", choices=config.EXTENT_METHODS,
                        default=config.DEFAULT_EXTENT_METHOD, dest="extent_method")
    stages.add_argument("--offset", default=None,
                        help="'left,bottom,right,top' added to the inferred extent")
    stages.add_argument("--country", default=None, help="Mask the grid to this country")
    stages.add_argument("--boundaries", default=None,
                        help="Vector file of country boundaries (needed with --country)")
    stages.add_argument("--boundary-name-field", default="name",
                        dest="boundary_name_field")

    crs = parser.add_argument_group("CRS search")
    crs.add_argument("--candidates", default=None,
                     help="Comma-separated CRS codes to search (default: whole registry)")
    crs.add_argument("--truth-crs", default=None, dest="truth_crs",
                     help="Known CRS, reported in the ranking diagnostics")
    crs.add_argument("--base-resolution", type=float, default=None,
                     dest="base_resolution",
                     help="Assumed lattice spacing in candidate units")
    crs.add_argument("--workers", type=int, default=None,
                     help="Worker processes (default: CPU count - 1)")
    crs.add_argument("--no-cache", action="store_true", default=False,
                     dest="no_cache", help="Do not reuse cached CRS searches")

    match = parser.add_argument_group("matching")
    match.add_argument("--rel-thd", type=float, default=config.DEFAULT_RELATIVE_THRESHOLD,
                       dest="relative_threshold",
                       help="Relative threshold (fraction of resolution)")
    match.add_argument("--abs-thd", type=float, default=config.DEFAULT_ABSOLUTE_THRESHOLD,
                       dest="absolute_threshold",
                       help="Absolute threshold (CRS linear unit)")
    match.add_argument("--node", choices=("center", "corner"),
                       default=config.DEFAULT_GRID_NODE)
    match.add_argument("--policy", choices=("conjunctive", "disjunctive"),
                       default=config.DEFAULT_THRESHOLD_POLICY)
    match.add_argument("--grid-metadata", default=None, dest="grid_metadata",
                       help="CSV of grid systems (grid_id, res_x, res_y)")

    parser.add_argument("--env-raster", default=None, dest="env_raster",
                        help="Raster to summarize per grid cell")
    parser.add_argument("--output-dir", default="output", dest="output_dir")
    return parser.parse_args(argv)


def build_stage_inputs(args):
    """Translate parsed arguments into pipeline stage inputs."""
    if args.crs:
        crs = Provided(args.crs)
    else:
        params = {}
        if args.candidates:
            params["candidates"] = [c.strip() for c in args.candidates.split(",") if c.strip()]
        if args.truth_crs:
            params["truth_code"] = args.truth_crs
        if args.base_resolution is not None:
            params["base_resolution"] = args.base_resolution
        if args.workers is not None:
            params["max_workers"] = args.workers
        crs = Infer(params)

    if args.resolution:
        res = _floats(args.resolution, n=(1, 2), name="--resolution")
        resolution = Provided(res[0] if len(res) == 1 else tuple(res))
    else:
        resolution = Infer()

    if args.extent:
        extent = Provided(tuple(_floats(args.extent, n=(4,), name="--extent")))
    else:
        params = {"method": args.extent_method}
        if args.offset:
            params["offset"] = tuple(_floats(args.offset, n=(4,), name="--offset"))
        extent = Infer(params)

    if args.grid:
        grid = Provided(GridDefinition.load(args.grid))
    else:
        params = {}
        if args.country:
            params["country"] = args.country
            if args.boundaries:
                params["boundary_provider"] = GeoFileBoundaryProvider(
                    args.boundaries, name_field=args.boundary_name_field,
                )
        grid = Infer(params)

    metadata = None
    if args.grid_metadata:
        metadata = pd.read_csv(args.grid_metadata)
    matching = MatchParams(
        relative_threshold=args.relative_threshold,
        absolute_threshold=args.absolute_threshold,
        node=args.node,
        policy=args.policy,
        metadata=metadata,
    )
    return {"crs": crs, "resolution": resolution, "extent": extent,
            "grid": grid, "matching": matching}


def save_pipeline_result(run, output_dir):
    """Save PipelineRunResult as JSON for provenance."""
    result_path = os.path.join(output_dir, config.OUTPUT_FILES["run"])
    with open(result_path, "w") as f:
        json.dump(run.to_dict(), f, indent=2, default=str)
    log.info("Pipeline result saved: %s", result_path)
    return result_path


def write_outputs(out, output_dir, env_raster=None):
    """Write match tables, grid and CRS ranking. Returns the paths written."""
    paths = []

    path = os.path.join(output_dir, config.OUTPUT_FILES["matches"])
    out.match.summary.to_csv(path, index=False)
    paths.append(path)

    path = os.path.join(output_dir, config.OUTPUT_FILES["match_details"])
    out.match.per_grid.to_csv(path, index=False)
    paths.append(path)

    paths.append(out.grid.save(os.path.join(output_dir, config.OUTPUT_FILES["grid"])))

    if out.crs_search is not None:
        path = os.path.join(output_dir, config.OUTPUT_FILES["crs_ranking"])
        out.crs_search.to_dataframe().to_csv(path, index=False)
        paths.append(path)

    if env_raster:
        path = os.path.join(output_dir, config.OUTPUT_FILES["cell_stats"])
        cell_statistics(out.grid, env_raster).to_csv(path, index=False)
        paths.append(path)

    for p in paths:
        log.info("Wrote %s", p)
    return paths


def main(argv=None):
    args = parse_args(argv)
    run_id = set_run_id()
    os.makedirs(args.output_dir, exist_ok=True)
    setup_logging(run_dir=args.output_dir)
    log.info("Grid inference on %s (run_id=%s)", args.occurrences, run_id)

    df = pd.read_csv(args.occurrences)
    try:
        points = PointSet.from_dataframe(
            df, x_col=args.x_col, y_col=args.y_col, id_col=args.id_col,
            crs=args.source_crs,
        )
    except GridderError as exc:
        log.error("Invalid occurrence table %s: %s", args.occurrences, exc)
        return 1

    run = PipelineRunResult(run_id=run_id)
    cache = None if args.no_cache else CacheManager()
    try:
        out = run_pipeline(points, registry=None, cache=cache, run=run,
                           **build_stage_inputs(args))
    except GridderError as exc:
        log.error("Pipeline failed: %s", exc)
        save_pipeline_result(run, args.output_dir)
        return 1

    run.output_files = write_outputs(out, args.output_dir, env_raster=args.env_raster)
    save_pipeline_result(run, args.output_dir)
    log.info("%d of %d records gridded", out.match.gridded_count(), len(points))
    return 0


if __name__ == "__main__":
    sys.exit(main())
