"""
Pandera DataFrame schemas for pipeline validation gates.

Declarative checks for the tables that enter and leave the pipeline:
occurrence inputs, grid metadata tables, CRS rankings and match
summaries.

Usage:
    from gridder.schemas import GridMetadataSchema
    GridMetadataSchema.validate(df)  # raises pa.errors.SchemaError on failure

Caller-supplied tables go through ``check_table`` instead, which reports
every violation as one ConfigurationError.
"""

import numpy as np
import pandera as pa
from pandera import Column, Check, DataFrameSchema

from gridder.errors import ConfigurationError, GridderError


# ── Occurrence input ────────────────────────────────────────────────────

def occurrence_schema(x_col, y_col, id_col=None, geographic=True):
    """Build the schema for an occurrence table with the given columns.

    Coordinates must be finite floats; geographic tables are additionally
    range-checked as longitude/latitude.
    """
    x_checks = [Check(lambda s: np.isfinite(s), element_wise=False,
                      error="coordinate must be finite")]
    y_checks = list(x_checks)
    if geographic:
        x_checks.append(Check.in_range(-180.0, 180.0))
        y_checks.append(Check.in_range(-90.0, 90.0))

    columns = {
        x_col: Column(float, x_checks, nullable=False, coerce=True),
        y_col: Column(float, y_checks, nullable=False, coerce=True),
    }
    if id_col is not None:
        columns[id_col] = Column(nullable=False)

    return DataFrameSchema(
        columns=columns,
        # Occurrence tables carry many other Darwin Core fields.
        strict=False,
        coerce=False,
        name="OccurrenceSchema",
    )


# ── Grid metadata ───────────────────────────────────────────────────────

GridMetadataSchema = DataFrameSchema(
    columns={
        "grid_id": Column(str, nullable=False, unique=True, coerce=True),
        "res_x": Column(float, Check.greater_than(0.0), nullable=False, coerce=True),
        "res_y": Column(float, Check.greater_than(0.0), nullable=False, coerce=True),
    },
    strict=False,
    coerce=False,
    name="GridMetadataSchema",
)


# ── CRS ranking ─────────────────────────────────────────────────────────

CRSRankingSchema = DataFrameSchema(
    columns={
        "rank": Column(int, Check.greater_than(0), nullable=False),
        "code": Column(str, nullable=False, unique=True),
        "score": Column(float, Check.greater_than_or_equal_to(0.0), nullable=False),
        "note": Column(str, nullable=False),
        "is_truth": Column(bool, nullable=False),
    },
    strict=False,
    coerce=False,
    name="CRSRankingSchema",
)


# ── Match summary ───────────────────────────────────────────────────────

MatchSummarySchema = DataFrameSchema(
    columns={
        "x": Column(float, nullable=False),
        "y": Column(float, nullable=False),
        "closest_grid": Column(str, nullable=False),
        "closest_distance": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
        "gridded": Column(bool, nullable=False),
    },
    strict=False,
    coerce=False,
    name="MatchSummarySchema",
)


# ── Validation gate ─────────────────────────────────────────────────────

def _gate_failure(step_name, message, strict):
    if strict:
        raise GridderError(message, stage=step_name)
    return [f"[{step_name}] {message}"]


def validate_schema(df, schema, step_name, strict=False):
    """Check a stage's table against a schema.

    Every violation is collected (lazy validation) and reported as one
    ``"[step] Schema violation: ..."`` message. In lenient mode the
    messages are returned for logging; with ``strict=True`` the first
    problem raises.

    Returns
    -------
    list[str]
        Empty when the table passes.

    Raises
    ------
    GridderError
        (a ValueError) when ``strict`` and the table is missing, empty or
        invalid.
    """
    if df is None:
        return _gate_failure(step_name, "DataFrame is None", strict)
    if df.empty:
        return _gate_failure(step_name, "DataFrame is empty (0 rows)", strict)

    try:
        schema.validate(df, lazy=True)
    except pa.errors.SchemaErrors as exc:
        cases = exc.failure_cases
        messages = [
            f"[{step_name}] Schema violation: column='{row.column}' "
            f"check='{row.check}' failure_case={row.failure_case}"
            for row in cases.itertuples()
        ]
        if strict:
            raise GridderError(
                f"Schema validation failed with {len(messages)} errors",
                stage=step_name, schema=schema.name,
            ) from exc
        return messages
    return []


def check_table(df, schema, stage):
    """Validate a caller-supplied table and return the coerced copy.

    Raises
    ------
    ConfigurationError
        Naming the schema, with every failing column, check and value in
        ``details["failure_cases"]``.
    """
    try:
        return schema.validate(df, lazy=True)
    except pa.errors.SchemaErrors as exc:
        failures = [
            {"column": row.column, "check": str(row.check),
             "failure_case": row.failure_case}
            for row in exc.failure_cases.itertuples()
        ]
        raise ConfigurationError(
            f"{schema.name} validation failed with {len(failures)} errors",
            stage=stage, schema=schema.name, failure_cases=failures,
        ) from exc
