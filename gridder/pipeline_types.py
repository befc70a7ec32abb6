"""
Run records for the grid inference pipeline.

A ``PipelineRunResult`` collects one ``StepResult`` per stage in execution
order (crs, reproject, resolution, extent, grid, matching) and is written
to ``pipeline_run.json`` for provenance.
"""

import subprocess
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class StepStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


def _utc_now():
    return datetime.now(timezone.utc).isoformat()


def _git_revision():
    """Short commit hash of the working tree, when run from a git checkout."""
    try:
        out = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True, text=True, check=True,
        )
    except (subprocess.SubprocessError, FileNotFoundError):
        return None
    return out.stdout.strip() or None


@dataclass
class StepResult:
    """Outcome of one stage.

    ``skipped`` marks a stage whose value the caller provided; it counts
    as ok. ``error`` holds the traceback or message of a failed stage.
    """

    step_name: str
    status: str
    input_summary: dict = field(default_factory=dict)
    output_summary: dict = field(default_factory=dict)
    timing_seconds: float = 0.0
    warnings: list = field(default_factory=list)
    error: Optional[str] = None
    started_at: str = field(default_factory=_utc_now)
    completed_at: Optional[str] = None

    @property
    def ok(self):
        return self.status != StepStatus.ERROR.value

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, d):
        known = {f: d[f] for f in cls.__dataclass_fields__ if f in d}
        return cls(**known)


@dataclass
class PipelineRunResult:
    """All stage records of one run plus provenance."""

    run_id: str = ""
    n_points: int = 0
    step_results: list = field(default_factory=list)
    total_time_seconds: float = 0.0
    output_files: list = field(default_factory=list)
    git_sha: Optional[str] = field(default_factory=_git_revision)
    started_at: str = field(default_factory=_utc_now)

    @property
    def all_ok(self):
        return all(s.ok for s in self.step_results)

    @property
    def failed_steps(self):
        return [s for s in self.step_results if not s.ok]

    def step(self, step_name):
        """The StepResult recorded for ``step_name``, or None."""
        return next((s for s in self.step_results if s.step_name == step_name), None)

    def stage_status(self, step_name):
        s = self.step(step_name)
        return None if s is None else s.status

    def to_dict(self):
        return {
            "run_id": self.run_id,
            "n_points": self.n_points,
            "all_ok": self.all_ok,
            "total_time_seconds": self.total_time_seconds,
            "started_at": self.started_at,
            "git_sha": self.git_sha,
            "output_files": list(self.output_files),
            "steps": [s.to_dict() for s in self.step_results],
        }

    @classmethod
    def from_dict(cls, d):
        return cls(
            run_id=d.get("run_id", ""),
            n_points=d.get("n_points", 0),
            step_results=[StepResult.from_dict(s) for s in d.get("steps", [])],
            total_time_seconds=d.get("total_time_seconds", 0.0),
            output_files=list(d.get("output_files", [])),
            git_sha=d.get("git_sha"),
            started_at=d.get("started_at", ""),
        )
