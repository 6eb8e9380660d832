# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class FlowCIError(Exception):
    """Base class for every error raised by flowci."""


# ----------------------------------------------------------------------
# Definition errors (raised before any job starts)
# ----------------------------------------------------------------------

class DefinitionError(FlowCIError, ValueError):
    """The pipeline definition is invalid and cannot be scheduled."""


class CycleError(DefinitionError):
    def __init__(self, job: str, path: list[str]):
        self.job = job
        self.path = list(path)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.path)}")


class UnknownJobError(DefinitionError):
    def __init__(self, job: str, missing: str, known: list[str]):
        self.job = job
        self.missing = missing
        self.known = sorted(known)
        super().__init__(
            f"Job '{job}' needs missing job '{missing}'. Known jobs: {self.known}"
        )


class ExpressionError(DefinitionError):
    """Malformed guard expression or template."""

    def __init__(self, source: str, reason: str, position: int | None = None):
        self.source = source
        self.reason = reason
        self.position = position
        where = f" at offset {position}" if position is not None else ""
        super().__init__(f"Invalid expression {source!r}{where}: {reason}")


class UnknownVariableError(FlowCIError, LookupError):
    """An expression referenced a context variable that does not exist.

    Not a definition error: it is raised at evaluation time and guard
    evaluation turns it into ``False``.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Unknown context variable: {path}")


# ----------------------------------------------------------------------
# Execution errors
# ----------------------------------------------------------------------

@dataclass(eq=False)
class CIError(FlowCIError):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - journal records
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class StepFailure(FlowCIError):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class CancellationRequested(FlowCIError):
    """Cooperative cancellation signal; ends a job as Cancelled, not Failed."""


# ----------------------------------------------------------------------
# Store errors
# ----------------------------------------------------------------------

class ArtifactNotFoundError(FlowCIError, LookupError):
    def __init__(self, name: str, run_id: str):
        self.name = name
        self.run_id = run_id
        super().__init__(f"Artifact '{name}' not found for run {run_id}")


class DuplicatePublishError(FlowCIError):
    def __init__(self, name: str, run_id: str, producer: str | None = None):
        self.name = name
        self.run_id = run_id
        self.producer = producer
        by = f" by job '{producer}'" if producer else ""
        super().__init__(f"Artifact '{name}' already published for run {run_id}{by}")


__all__ = [
    "ArtifactNotFoundError",
    "CIError",
    "CancellationRequested",
    "CycleError",
    "DefinitionError",
    "DuplicatePublishError",
    "ExpressionError",
    "FlowCIError",
    "StepFailure",
    "UnknownJobError",
    "UnknownVariableError",
]
