"""
Logging for gridder: one ``gridder`` logger tree, two outputs.

The console gets short human-readable lines. When a run directory is
given, every record is also written as one JSON object per line to
``<run_dir>/pipeline.jsonl``, carrying the run_id and any structured
fields passed through ``extra=`` (stage, candidate, summaries, timing).

Modules never configure logging themselves:

    from gridder.logging_config import get_pipeline_logger
    log = get_pipeline_logger(__name__)

The CLI calls ``setup_logging(run_dir=...)`` once per run.
"""

import json
import logging
import os
import time
import uuid
from logging.handlers import RotatingFileHandler

ROOT_LOGGER = "gridder"
RUN_LOG_NAME = "pipeline.jsonl"

# Record attributes copied into JSON entries when a call site sets them.
STRUCTURED_FIELDS = (
    "stage",
    "step_name",
    "status",
    "candidate",
    "input_summary",
    "output_summary",
    "timing_seconds",
    "warnings",
)

_state = {"configured": False, "run_handler": None, "run_id": None}


def _new_run_id():
    return uuid.uuid4().hex[:8]


def get_run_id():
    """Current run_id; one is generated on first use."""
    if _state["run_id"] is None:
        _state["run_id"] = _new_run_id()
    return _state["run_id"]


def set_run_id(run_id=None):
    """Start a new run. Returns the run_id now stamped on every record."""
    _state["run_id"] = run_id or _new_run_id()
    return _state["run_id"]


class RunIdFilter(logging.Filter):
    def filter(self, record):
        record.run_id = get_run_id()
        return True


class JsonLinesFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record):
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}",
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "run_id": getattr(record, "run_id", None),
            "message": record.getMessage(),
        }
        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )


def _console_level(level):
    if level is not None:
        return level
    name = os.environ.get("LOG_LEVEL", "INFO").upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(run_dir=None, console_level=None, file_level=logging.DEBUG):
    """Attach handlers to the ``gridder`` logger.

    The console handler is added once. A per-run JSON Lines file is added
    the first time a ``run_dir`` is passed. Setting ``GRIDDER_LOG_DIR``
    also keeps a rotating JSON log there across runs.

    Parameters
    ----------
    run_dir : str, optional
        Directory receiving ``pipeline.jsonl``; created if missing.
    console_level : int, optional
        Defaults to the LOG_LEVEL environment variable, else INFO.
    file_level : int
        Level for the file handlers.
    """
    root = logging.getLogger(ROOT_LOGGER)

    if not _state["configured"]:
        root.setLevel(logging.DEBUG)
        root.addFilter(RunIdFilter())

        console = logging.StreamHandler()
        console.setLevel(_console_level(console_level))
        console.setFormatter(ConsoleFormatter())
        root.addHandler(console)

        persistent_dir = os.environ.get("GRIDDER_LOG_DIR")
        if persistent_dir:
            os.makedirs(persistent_dir, exist_ok=True)
            rotating = RotatingFileHandler(
                os.path.join(persistent_dir, "gridder.log"),
                maxBytes=10 * 1024 * 1024,
                backupCount=3,
            )
            rotating.setLevel(file_level)
            rotating.setFormatter(JsonLinesFormatter())
            root.addHandler(rotating)

        _state["configured"] = True

    if run_dir and _state["run_handler"] is None:
        os.makedirs(run_dir, exist_ok=True)
        handler = logging.FileHandler(os.path.join(run_dir, RUN_LOG_NAME))
        handler.setLevel(file_level)
        handler.setFormatter(JsonLinesFormatter())
        root.addHandler(handler)
        _state["run_handler"] = handler


def reset_logging():
    """Drop every gridder handler and filter and forget the run_id (tests)."""
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)
    for f in list(root.filters):
        root.removeFilter(f)
    _state.update(configured=False, run_handler=None, run_id=None)


def get_pipeline_logger(name, run_dir=None):
    """Logger for a gridder module, configuring defaults on first use."""
    if not _state["configured"]:
        setup_logging(run_dir=run_dir)
    return logging.getLogger(name)


def log_step_summary(logger, step_name, status="success", input_summary=None,
                     output_summary=None, timing_seconds=None, warnings_list=None):
    """Emit the one-line record that closes a pipeline stage.

    Errors are logged at WARNING so they stand out on the console; the
    traceback itself is logged by the step runner.
    """
    text = f"[{step_name}] {status}"
    if timing_seconds is not None:
        text += f" in {timing_seconds:.2f}s"
    if output_summary:
        text += " " + ", ".join(f"{k}={v}" for k, v in output_summary.items())

    extra = {
        "stage": step_name,
        "step_name": step_name,
        "status": status,
        "input_summary": input_summary or None,
        "output_summary": output_summary or None,
        "timing_seconds": timing_seconds,
        "warnings": warnings_list or None,
    }
    level = logging.WARNING if status == "error" else logging.INFO
    logger.log(level, text, extra=extra)


class StepTimer:
    """Wall-clock timer: ``with StepTimer() as t: ...`` then ``t.elapsed``."""

    def __init__(self):
        self.start = None
        self.elapsed = 0.0

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, *exc):
        self.elapsed = time.perf_counter() - self.start
        return False
