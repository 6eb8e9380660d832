"""Step execution: shell commands and builtin actions.

The executor turns one ``Step`` plus its ``StepContext`` into a
``StepResult``. It never raises for step-level problems; a failing command,
a missing tool or a missing artifact all come back as a Failed result so
the job runner can decide what happens next.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Mapping

from .actions import resolve
from .context import StepContext
from .errors import CancellationRequested, CIError, FlowCIError, StepFailure
from .expr import render
from .model import ActionRef, Command, Step, StepResult, StepStatus
from .process import run_process

logger = logging.getLogger(__name__)

_HEREDOC_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_.-]*)<<(\S+)$")


def parse_command_file(text: str) -> Dict[str, str]:
    """
    Parse a $GITHUB_OUTPUT / $GITHUB_ENV file.

    Supports `name=value` lines and multi-line heredocs:
        name<<EOF
        line 1
        line 2
        EOF
    """
    out: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        m = _HEREDOC_RE.match(line)
        if m:
            name, marker = m.groups()
            body: List[str] = []
            while i < len(lines) and lines[i] != marker:
                body.append(lines[i])
                i += 1
            i += 1  # closing marker
            out[name] = "\n".join(body)
            continue
        if "=" in line:
            name, _, value = line.partition("=")
            out[name.strip()] = value
        else:
            logger.warning("ignoring malformed command file line: %r", line[:80])
    return out


def shell_command(shell: str | None, script: str) -> List[str]:
    """argv for a `run:` script. Defaults to bash (pipefail) and falls back to sh."""
    if shell is None:
        shell = "bash" if shutil.which("bash") else "sh"
    if shell == "bash":
        return ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c", script]
    if shell == "sh":
        return ["sh", "-e", "-c", script]
    return [shell, "-c", script]


class StepExecutor:
    """Runs a single step and reports a StepResult."""

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval

    def execute(self, step: Step, ctx: StepContext) -> StepResult:
        result = StepResult(name=step.label, status=StepStatus.RUNNING, id=step.id, started_at=time.time())
        try:
            if isinstance(step.kind, Command):
                self._run_command(step, step.kind, ctx, result)
            elif isinstance(step.kind, ActionRef):
                self._run_action(step, step.kind, ctx, result)
            else:
                raise TypeError(f"Unknown step kind: {step.kind!r}")
        except CancellationRequested as e:
            result.status = StepStatus.CANCELLED
            result.error = str(e) or "cancelled"
        except StepFailure as e:
            result.status = StepStatus.FAILED
            result.exit_code = e.exit_code
            result.stdout = result.stdout or e.stdout
            result.stderr = result.stderr or e.stderr
            result.error = str(e)
        except CIError as e:
            result.status = StepStatus.FAILED
            result.error = str(e)
            result.hint = e.details.get("hint")
        except (FlowCIError, OSError) as e:
            result.status = StepStatus.FAILED
            result.error = f"{type(e).__name__}: {e}"
        result.finished_at = time.time()
        if result.error:
            result.error = ctx.mask(result.error)
        return result

    # ------------------------------------------------------------------

    def _run_command(self, step: Step, cmd: Command, ctx: StepContext, result: StepResult) -> None:
        workdir = ctx.workdir
        if not workdir.is_dir():
            raise CIError(
                kind="cwd_missing",
                job=ctx.job,
                step=step.label,
                message=f"working directory not found: {workdir}",
                details={},
            )

        script = render(cmd.run, ctx.scope())
        logger.debug("[%s] run: %s", ctx.job, cmd.run.splitlines()[0] if cmd.run else "")

        with tempfile.TemporaryDirectory(prefix="flowci-step-") as tmp:
            output_file = Path(tmp) / "output"
            env_file = Path(tmp) / "env"
            output_file.touch()
            env_file.touch()

            env: Dict[str, str] = dict(os.environ)
            env.update(ctx.run.default_env())
            env.update(ctx.env)
            env["GITHUB_OUTPUT"] = str(output_file)
            env["GITHUB_ENV"] = str(env_file)

            proc = run_process(
                shell_command(cmd.shell, script),
                cwd=workdir,
                env=env,
                timeout=ctx.timeout,
                cancel_event=ctx.cancel_event,
                grace_period=ctx.grace_period,
                poll_interval=self.poll_interval,
                mask=ctx.mask,
            )

            result.exit_code = proc.exit_code
            result.stdout = proc.stdout
            result.stderr = proc.stderr
            if proc.cancelled:
                raise CancellationRequested(f"step '{step.label}' interrupted by cancellation")
            if proc.timed_out:
                result.status = StepStatus.FAILED
                result.error = f"timed out after {ctx.timeout:g}s"
                return
            if proc.exit_code != 0:
                raise StepFailure(
                    job=ctx.job,
                    step=step.label,
                    cmd=cmd.run.strip().splitlines()[0] if cmd.run.strip() else "",
                    exit_code=proc.exit_code,
                    stdout=proc.stdout,
                    stderr=proc.stderr,
                )

            result.outputs = parse_command_file(output_file.read_text(encoding="utf-8", errors="replace"))
            result.exported_env = parse_command_file(env_file.read_text(encoding="utf-8", errors="replace"))
        result.status = StepStatus.SUCCEEDED

    def _run_action(self, step: Step, ref: ActionRef, ctx: StepContext, result: StepResult) -> None:
        action = resolve(ref.uses)
        params: Mapping[str, object] = render(dict(ref.params), ctx.scope())
        logger.debug("[%s] uses: %s", ctx.job, ref.uses)

        outcome = action.run(params, ctx)
        result.exit_code = 0
        result.stdout = ctx.mask(outcome.stdout)
        result.stderr = ctx.mask(outcome.stderr)
        result.outputs = {k: str(v) for k, v in outcome.outputs.items()}
        result.exported_env = dict(outcome.exported_env)
        result.status = StepStatus.SUCCEEDED
