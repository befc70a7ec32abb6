"""
Stage executor shared by every pipeline stage.

``run_step`` calls the stage's work function, times it, logs a one-line
summary and returns a ``StepResult`` next to the function's value. The
pipeline passes ``raise_on_error=True`` so the original exception (with
its stage name and offending values) reaches the caller; other callers
get an error StepResult and ``None`` instead.
"""

import traceback
from datetime import datetime, timezone
from typing import Callable, TypeVar

import pandas as pd

from gridder.logging_config import StepTimer, get_pipeline_logger, log_step_summary
from gridder.pipeline_types import StepResult, StepStatus

T = TypeVar("T")

log = get_pipeline_logger(__name__)

# Failures logged as a one-line message; anything else gets a traceback.
EXPECTED_ERRORS = (
    ValueError,
    KeyError,
    FileNotFoundError,
    pd.errors.EmptyDataError,
)


def _utc_now():
    return datetime.now(timezone.utc).isoformat()


def run_step(
    step_name: str,
    fn: Callable[..., T],
    *args,
    input_summary: dict | None = None,
    output_summary_fn: Callable[[T], dict] | None = None,
    expected_exceptions: tuple[type[Exception], ...] = EXPECTED_ERRORS,
    raise_on_error: bool = False,
    **kwargs,
) -> tuple[StepResult, T | None]:
    """Run ``fn(*args, **kwargs)`` as the stage ``step_name``.

    Parameters
    ----------
    step_name : str
    fn : Callable
    input_summary : dict, optional
        Recorded on the StepResult.
    output_summary_fn : callable, optional
        Maps the return value to a summary dict; not called for None.
    expected_exceptions : tuple
        Exceptions logged without a traceback.
    raise_on_error : bool
        Re-raise the original exception after logging.

    Returns
    -------
    tuple[StepResult, T | None]
    """
    inputs = input_summary or {}
    value = None
    failure = None

    with StepTimer() as timer:
        try:
            value = fn(*args, **kwargs)
        except Exception as exc:
            failure = exc
            if isinstance(exc, expected_exceptions):
                log.error("%s failed: %s", step_name, exc)
            else:
                log.error("%s failed unexpectedly", step_name, exc_info=True)
            tb = traceback.format_exc()

    if failure is not None:
        log_step_summary(log, step_name, StepStatus.ERROR.value,
                         input_summary=inputs, timing_seconds=timer.elapsed)
        if raise_on_error:
            raise failure
        return StepResult(
            step_name=step_name,
            status=StepStatus.ERROR.value,
            input_summary=inputs,
            error=tb,
            timing_seconds=timer.elapsed,
            completed_at=_utc_now(),
        ), None

    outputs = {}
    if output_summary_fn is not None and value is not None:
        outputs = output_summary_fn(value)
    log_step_summary(log, step_name, StepStatus.SUCCESS.value,
                     input_summary=inputs, output_summary=outputs,
                     timing_seconds=timer.elapsed)
    return StepResult(
        step_name=step_name,
        status=StepStatus.SUCCESS.value,
        input_summary=inputs,
        output_summary=outputs,
        timing_seconds=timer.elapsed,
        completed_at=_utc_now(),
    ), value


def skip_step(step_name: str, input_summary: dict | None = None) -> StepResult:
    """Record a stage whose value was supplied by the caller."""
    inputs = input_summary or {}
    log_step_summary(log, step_name, StepStatus.SKIPPED.value, input_summary=inputs)
    return StepResult(
        step_name=step_name,
        status=StepStatus.SKIPPED.value,
        input_summary=inputs,
        completed_at=_utc_now(),
    )
