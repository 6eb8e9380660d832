# runner.py
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Mapping, Optional

from .context import ExpressionScope, JobResources, RunContext, StepContext
from .errors import FlowCIError
from .executor import StepExecutor
from .expr import evaluate_guard, render
from .model import Job, JobResult, JobStatus, Step, StepResult, StepStatus
from .ui.console import get_console

logger = logging.getLogger(__name__)

# StepStatus -> the `outcome` string exposed as steps.<id>.outcome
_OUTCOME = {
    StepStatus.SUCCEEDED: "success",
    StepStatus.FAILED: "failure",
    StepStatus.SKIPPED: "skipped",
    StepStatus.CANCELLED: "cancelled",
}


def _as_env(values: Mapping[str, Any]) -> Dict[str, str]:
    return {str(k): "" if v is None else str(v) for k, v in values.items()}


class JobRunner:
    """
    Runs the steps of one job, strictly in declaration order.

    - a failed step fails the job; later steps are skipped unless their
      guard calls always()/failure()
    - step continue-on-error keeps the job green
    - cancellation is checked between steps
    - post hooks (cache saves) run only for a successful job
    """

    def __init__(
        self,
        executor: Optional[StepExecutor] = None,
        *,
        grace_period: float = 10.0,
    ):
        self.executor = executor or StepExecutor()
        self.grace_period = grace_period

    # ------------------------------------------------------------------

    def _job_env(self, job: Job, run: RunContext, pipeline_env: Mapping[str, str]) -> Dict[str, str]:
        env: Dict[str, str] = dict(run.env)
        for layer in (pipeline_env, job.env):
            rendered = render(dict(layer), ExpressionScope(run, env=env))
            env.update(_as_env(rendered))
        return env

    def _should_run(self, step: Step, scope: ExpressionScope, job_status: str) -> bool:
        if step.condition is None:
            return job_status == "success"
        if step.condition.uses_status_function:
            return evaluate_guard(step.condition, scope)
        return job_status == "success" and evaluate_guard(step.condition, scope)

    def run_job(
        self,
        job: Job,
        run: RunContext,
        resources: JobResources,
        *,
        pipeline_env: Optional[Mapping[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> JobResult:
        console = get_console()
        result = JobResult(job=job.id, status=JobStatus.RUNNING, started_at=time.time())
        console.print_job_start(job.display_name)

        job_env = self._job_env(job, run, pipeline_env or {})
        exported: Dict[str, str] = {}
        steps_ctx: Dict[str, Dict[str, Any]] = {}
        job_status = "success"
        deadline = time.monotonic() + job.timeout if job.timeout else None

        for step in job.steps:
            if cancel_event is not None and cancel_event.is_set():
                job_status = "cancelled"
            if deadline is not None and job_status == "success" and time.monotonic() >= deadline:
                job_status = "failure"
                result.error = f"job exceeded its timeout of {job.timeout:g}s"

            env = {**job_env, **exported}
            scope = ExpressionScope(run, env=env, steps=steps_ctx, job_status=job_status)

            if job_status == "cancelled" or not self._should_run(step, scope, job_status):
                status = StepStatus.CANCELLED if job_status == "cancelled" else StepStatus.SKIPPED
                sres = StepResult(name=step.label, status=status, id=step.id)
                result.steps.append(sres)
                if step.id:
                    steps_ctx[step.id] = {"outputs": {}, "outcome": _OUTCOME[status], "conclusion": _OUTCOME[status]}
                if status == StepStatus.SKIPPED:
                    console.print_step_skipped(job.id, step.label, "condition" if step.condition else job_status)
                continue

            env.update(_as_env(render(dict(step.env), scope)))
            timeout = step.timeout
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0.0)
                timeout = remaining if timeout is None else min(timeout, remaining)

            sctx = StepContext(
                run=run,
                job=job.id,
                resources=resources,
                env=env,
                steps=steps_ctx,
                job_status=job_status,
                step_id=step.id,
                step_name=step.label,
                cwd=step.cwd,
                timeout=timeout,
                grace_period=self.grace_period,
                cancel_event=cancel_event,
            )
            console.print_step(job.id, step.label)
            sres = self.executor.execute(step, sctx)
            result.steps.append(sres)
            console.print_output(job.id, sres.stdout)

            outcome = _OUTCOME.get(sres.status, "failure")
            conclusion = outcome
            if sres.status == StepStatus.FAILED:
                if step.continue_on_error:
                    conclusion = "success"
                    logger.info("[%s] step '%s' failed, continuing (continue-on-error)", job.id, step.label)
                else:
                    job_status = "failure"
                    result.error = sres.error
                    console.print_failure(step.label, sres.error or "", exit_code=sres.exit_code, hint=sres.hint)
            elif sres.status == StepStatus.CANCELLED:
                job_status = "cancelled"

            exported.update(sres.exported_env)
            if step.id:
                steps_ctx[step.id] = {"outputs": dict(sres.outputs), "outcome": outcome, "conclusion": conclusion}

        if job_status == "success":
            self._run_post_hooks(job, run, resources, {**job_env, **exported}, steps_ctx, cancel_event)
            scope = ExpressionScope(run, env={**job_env, **exported}, steps=steps_ctx)
            result.outputs = _as_env(render(dict(job.outputs), scope))

        result.status = {
            "success": JobStatus.SUCCEEDED,
            "failure": JobStatus.FAILED,
            "cancelled": JobStatus.CANCELLED,
        }[job_status]
        result.finished_at = time.time()

        if result.status == JobStatus.SUCCEEDED:
            console.print_success(job.display_name, result.duration)
        elif result.status == JobStatus.CANCELLED:
            result.reason = "cancelled"
            console.print_job_cancelled(job.display_name)
        else:
            console.print_failure(job.display_name, result.error or "", exit_code=result.exit_code, is_job=True)
        return result

    def _run_post_hooks(
        self,
        job: Job,
        run: RunContext,
        resources: JobResources,
        env: Dict[str, str],
        steps_ctx: Dict[str, Dict[str, Any]],
        cancel_event: Optional[threading.Event],
    ) -> None:
        # last registered runs first
        for name, hook in reversed(resources.post_hooks):
            sctx = StepContext(
                run=run,
                job=job.id,
                resources=resources,
                env=env,
                steps=steps_ctx,
                step_name=name,
                grace_period=self.grace_period,
                cancel_event=cancel_event,
            )
            try:
                hook(sctx)
            except (FlowCIError, OSError) as e:
                # a failed cache save does not fail the job
                logger.warning("[%s] %s failed: %s", job.id, name, e)
