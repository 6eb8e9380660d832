"""Protocol and shared helpers for builtin actions.

An action is the ``uses:`` side of a step: a named, versioned unit that
receives rendered ``with:`` parameters plus the step context and returns
its outputs. Failures are reported by raising ``CIError`` (tool missing,
bad parameters) or ``StepFailure`` (an external command exited non-zero).
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Mapping, Protocol, Sequence, runtime_checkable

from ..errors import CancellationRequested, CIError, StepFailure
from ..process import ProcessResult, run_process

if TYPE_CHECKING:
    from ..context import StepContext


TOOL_HINTS = {
    "git": "Install git or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "trivy": "Install trivy (https://aquasecurity.github.io/trivy) or fix PATH.",
    "kubectl": "Install kubectl or fix PATH.",
}


@dataclass
class ActionOutcome:
    outputs: Dict[str, str] = field(default_factory=dict)
    stdout: str = ""
    stderr: str = ""
    exported_env: Dict[str, str] = field(default_factory=dict)


@runtime_checkable
class Action(Protocol):
    """Interface every builtin action implements."""

    name: str

    def run(self, params: Mapping[str, Any], ctx: StepContext) -> ActionOutcome:
        """Execute the action.

        Args:
            params: ``with:`` parameters, templates already rendered.
            ctx: The step context (workspace, env, stores, cancel event).

        Returns:
            ActionOutcome carrying the step outputs.
        """
        ...


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def check_tool_available(tool: str, ctx: StepContext) -> None:
    """Raise a CIError with an install hint when `tool` is not on PATH."""
    if shutil.which(tool, path=ctx.env.get("PATH")) is None and shutil.which(tool) is None:
        hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        raise CIError(
            kind="tool_unavailable",
            job=ctx.job,
            step=ctx.step_name,
            message=f"{tool} is not available",
            details={"hint": hint, "tool": tool},
        )


def require(params: Mapping[str, Any], key: str, ctx: StepContext) -> str:
    value = params.get(key)
    if value is None or str(value).strip() == "":
        raise CIError(
            kind="invalid_params",
            job=ctx.job,
            step=ctx.step_name,
            message=f"missing required input '{key}'",
            details={},
        )
    return str(value)


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def as_list(value: Any) -> list[str]:
    """Accept a YAML list or a newline/comma separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    out: list[str] = []
    for line in str(value).splitlines():
        out.extend(p.strip() for p in line.split(",") if p.strip())
    return out


def as_lines(value: Any) -> list[str]:
    """Like as_list, but only newlines separate items (values may contain commas)."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [line.strip() for line in str(value).splitlines() if line.strip()]


def run_tool(
    args: Sequence[str],
    ctx: StepContext,
    *,
    stdin: str | None = None,
    check: bool = True,
) -> ProcessResult:
    """
    Run an external tool inside the step's workdir with the step env.

    Raises:
        CancellationRequested: the run was cancelled while the tool ran
        StepFailure: non-zero exit and check=True
    """
    env = {**os.environ, **ctx.run.default_env()}
    env.update(ctx.env)
    result = run_process(
        args,
        cwd=ctx.workdir,
        env=env,
        stdin=stdin,
        timeout=ctx.timeout,
        cancel_event=ctx.cancel_event,
        grace_period=ctx.grace_period,
        mask=ctx.mask,
    )
    if result.cancelled:
        raise CancellationRequested(f"{args[0]} interrupted by cancellation")
    if check and not result.ok:
        raise StepFailure(
            job=ctx.job,
            step=ctx.step_name,
            cmd=ctx.mask(" ".join(args)),
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result
