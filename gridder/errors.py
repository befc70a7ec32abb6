"""
Error kinds raised by the grid inference stages.

All errors derive from ValueError so the step runner's expected-exception
set covers them. Each carries the stage that raised it and the offending
values, so a caller can retry the stage with an explicit override.

Single CRS candidate failures are not raised: they are recorded inline in
the CRS ranking with an infinite score and a note (see config.CANDIDATE_FAILURE).
"""


class GridderError(ValueError):
    """Base class for stage-level failures."""

    def __init__(self, message, stage=None, **details):
        super().__init__(message)
        self.stage = stage
        self.details = details

    def __str__(self):
        msg = super().__str__()
        if self.stage:
            msg = f"[{self.stage}] {msg}"
        if self.details:
            detail = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            msg = f"{msg} ({detail})"
        return msg


class InsufficientDataError(GridderError):
    """Too few distinct coordinates, or no consistent lattice spacing."""


class DegenerateGeometryError(GridderError):
    """Zero-area extent or non-positive resolution."""


class NoBoundaryMatchError(GridderError):
    """Country boundary lookup found nothing; masking is skipped."""


class ConfigurationError(GridderError):
    """Inconsistent thresholds or overrides, rejected before computing."""


class ReprojectionError(GridderError):
    """Coordinates could not be transformed into the target CRS."""
