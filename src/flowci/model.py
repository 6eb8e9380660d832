# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Dict, List, Mapping, Optional, Union

from .expr import Expression


# ---------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------
# Step kinds: shell command vs packaged action
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Command:
    """Run a shell script."""
    run: str
    shell: str | None = None


@dataclass(frozen=True)
class ActionRef:
    """Invoke a builtin action, e.g. ``actions/cache@v4``."""
    name: str
    version: str | None = None
    params: Mapping[str, object] = field(default_factory=dict)

    @classmethod
    def parse(cls, uses: str, params: Mapping[str, object] | None = None) -> ActionRef:
        name, _, version = uses.strip().partition("@")
        return cls(name=name, version=version or None, params=dict(params or {}))

    @property
    def uses(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


StepKind = Union[Command, ActionRef]


@dataclass(frozen=True)
class Step:
    """A single command or action invocation inside a job."""
    name: str
    kind: StepKind
    id: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    condition: Optional[Expression] = None
    continue_on_error: bool = False
    timeout: float | None = None
    cwd: str | None = None

    @property
    def run(self) -> str | None:
        return self.kind.run if isinstance(self.kind, Command) else None

    @property
    def uses(self) -> str | None:
        return self.kind.uses if isinstance(self.kind, ActionRef) else None

    @property
    def cache_key(self) -> str | None:
        """Declared cache key template, for cache action steps."""
        if isinstance(self.kind, ActionRef) and self.kind.name == "actions/cache":
            key = self.kind.params.get("key")
            return str(key) if key is not None else None
        return None

    @property
    def label(self) -> str:
        return self.name or self.id or (self.run or self.uses or "<step>").splitlines()[0]


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + gating metadata.

    Runtime status is not stored here; the scheduler tracks it in PipelineRun.
    """
    id: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    name: str | None = None
    runs_on: str | None = None
    condition: Optional[Expression] = None
    env: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout: float | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


# ---------------------------------------------------------------------
# Pipeline + triggers
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Trigger:
    event: str
    branches: tuple[str, ...] = ()
    paths: tuple[str, ...] = ()
    paths_ignore: tuple[str, ...] = ()

    def matches_branch(self, branch: str) -> bool:
        if not self.branches:
            return True
        return any(fnmatch(branch, pattern) for pattern in self.branches)

    def matches_paths(self, changed_files: Optional[List[str]]) -> bool:
        # unknown change set -> do not filter
        if changed_files is None:
            return True
        files = list(changed_files)
        if self.paths_ignore:
            files = [f for f in files if not any(_path_match(f, p) for p in self.paths_ignore)]
            if not files:
                return False
        if self.paths:
            return any(any(_path_match(f, p) for p in self.paths) for f in files)
        return True


def _path_match(path: str, pattern: str) -> bool:
    if pattern.endswith("/**"):
        return path == pattern[:-3] or path.startswith(pattern[:-2])
    return fnmatch(path, pattern)


@dataclass
class Pipeline:
    name: str
    jobs: list[Job]
    triggers: list[Trigger] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    source: str | None = None

    def job(self, job_id: str) -> Job:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    @property
    def job_ids(self) -> list[str]:
        return [j.id for j in self.jobs]

    def triggered_by(self, event: str, branch: str, changed_files: Optional[List[str]] = None) -> bool:
        """True when the event/branch/change set matches a declared trigger (or none are declared)."""
        if not self.triggers:
            return True
        for trig in self.triggers:
            if trig.event != event:
                continue
            if trig.matches_branch(branch) and trig.matches_paths(changed_files):
                return True
        return False


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: StepStatus
    id: str | None = None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    exported_env: Dict[str, str] = field(default_factory=dict)  # GITHUB_ENV writes
    started_at: float | None = None
    finished_at: float | None = None
    error: str | None = None
    hint: str | None = None  # install hint carried by a CIError

    @property
    def duration(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at


@dataclass
class JobResult:
    job: str
    status: JobStatus
    steps: list[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    started_at: float | None = None
    finished_at: float | None = None
    error: str | None = None
    reason: str | None = None  # why skipped / cancelled

    @property
    def exit_code(self) -> int | None:
        for s in reversed(self.steps):
            if s.status == StepStatus.FAILED:
                return s.exit_code
        if self.status == JobStatus.SUCCEEDED:
            return 0
        return None

    @property
    def duration(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at


@dataclass
class PipelineRun:
    """Snapshot of one execution: per-job status plus aggregate result."""
    run_id: str
    pipeline: str
    statuses: Dict[str, JobStatus] = field(default_factory=dict)
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    result: RunResult | None = None

    def status_of(self, job_id: str) -> JobStatus:
        return self.statuses[job_id]

    @property
    def failed_jobs(self) -> list[str]:
        return [j for j, s in self.statuses.items() if s == JobStatus.FAILED]

    @property
    def skipped_jobs(self) -> list[str]:
        return [j for j, s in self.statuses.items() if s == JobStatus.SKIPPED]
