# scheduler.py
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, Optional

from .artifacts import ArtifactRegistry
from .cache import CacheStore
from .context import ExpressionScope, JobResources, RunContext
from .dag import DependencyGraph
from .expr import evaluate_guard
from .journal import Journal
from .model import Job, JobResult, JobStatus, Pipeline, PipelineRun, RunResult
from .runner import JobRunner
from .ui.console import get_console

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Drives one pipeline run over the dependency graph.

    The scheduler thread is the only writer of job statuses. Jobs execute on
    a bounded thread pool; the loop applies cascade skips, promotes ready
    jobs, evaluates job guards at dispatch time and waits for any completion
    with a timeout so cancellation is always noticed.

    The graph is built (and validated) in __init__, so a DefinitionError is
    raised before any job runs.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        run_ctx: RunContext,
        *,
        cache: CacheStore,
        artifacts: ArtifactRegistry,
        journal: Optional[Journal] = None,
        concurrency: int = 4,
        grace_period: float = 10.0,
        poll_interval: float = 0.2,
        runner: Optional[JobRunner] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.pipeline = pipeline
        self.graph = DependencyGraph.from_jobs(pipeline.jobs)
        self.run_ctx = run_ctx
        self.cache = cache
        self.artifacts = artifacts
        self.journal = journal or Journal(None)
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.runner = runner or JobRunner(grace_period=grace_period)
        self.interrupted = False

        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {j.id: j for j in pipeline.jobs}
        self.state = PipelineRun(
            run_id=run_ctx.run_id,
            pipeline=pipeline.name,
            statuses={
                j: (JobStatus.BLOCKED if self.graph.needs(j) else JobStatus.PENDING)
                for j in self.graph.jobs
            },
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation: running steps are terminated, unstarted jobs end Cancelled."""
        if not self._cancel.is_set():
            logger.info("run %s: cancellation requested", self.run_ctx.run_id)
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def snapshot(self) -> Dict[str, JobStatus]:
        with self._lock:
            return dict(self.state.statuses)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set(self, job_id: str, status: JobStatus) -> None:
        with self._lock:
            self.state.statuses[job_id] = status

    def _finish(self, res: JobResult) -> None:
        self._set(res.job, res.status)
        self.state.jobs[res.job] = res
        self.journal.job_finished(self.state.run_id, res)

    def _skip(self, job_id: str, reason: str, status: JobStatus = JobStatus.SKIPPED) -> None:
        now = time.time()
        self._finish(JobResult(job=job_id, status=status, started_at=now, finished_at=now, reason=reason))
        if status == JobStatus.SKIPPED:
            get_console().print_job_skipped(self._jobs[job_id].display_name, reason)

    def _job_context(self, job: Job) -> RunContext:
        needs = {}
        for dep in job.needs:
            res = self.state.jobs.get(dep)
            needs[dep] = {
                "result": "success",
                "outputs": dict(res.outputs) if res else {},
            }
        return self.run_ctx.with_needs(needs)

    def _guard_allows(self, job: Job, ctx: RunContext) -> bool:
        scope = ExpressionScope(ctx, env=self.pipeline.env)
        return evaluate_guard(job.condition, scope)

    def _skip_reason(self, job_id: str) -> str:
        statuses = self.state.statuses
        for dep in self.graph.needs(job_id):
            if statuses.get(dep) in (JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED):
                return f"dependency '{dep}' {statuses[dep].value}"
        return "dependency not satisfied"

    def _execute(self, job: Job, ctx: RunContext) -> JobResult:
        self.journal.job_started(self.state.run_id, job.id)
        resources = JobResources(cache=self.cache, artifacts=self.artifacts)
        return self.runner.run_job(
            job,
            ctx,
            resources,
            pipeline_env=self.pipeline.env,
            cancel_event=self._cancel,
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def plan(self) -> Dict[str, str]:
        """Dry run: evaluate guards in topological order without executing any step."""
        decisions: Dict[str, str] = {}
        statuses = dict(self.state.statuses)
        for job_id in self.graph.order():
            job = self._jobs[job_id]
            broken = [d for d in job.needs if statuses[d] == JobStatus.SKIPPED]
            if broken:
                statuses[job_id] = JobStatus.SKIPPED
                decisions[job_id] = f"skipped: dependency '{broken[0]}' skipped"
            elif job.needs and job.condition is not None and "needs" in job.condition.roots:
                # upstream outputs only exist once the dependencies have run
                statuses[job_id] = JobStatus.SUCCEEDED
                decisions[job_id] = "would run (guard depends on runtime outputs)"
            elif not self._guard_allows(job, self._job_context(job)):
                statuses[job_id] = JobStatus.SKIPPED
                decisions[job_id] = "skipped: condition false"
            else:
                statuses[job_id] = JobStatus.SUCCEEDED
                decisions[job_id] = "would run"
        return decisions

    def run(self, dry_run: bool = False) -> PipelineRun:
        console = get_console()
        run = self.state
        self.journal.run_started(run, self.graph.jobs, self.run_ctx.event, self.run_ctx.ref, self.run_ctx.sha)

        if dry_run:
            decisions = self.plan()
            console.print_plan(self.graph.levels(), decisions)
            for job_id, decision in decisions.items():
                if decision.startswith("skipped"):
                    self._set(job_id, JobStatus.SKIPPED)
            run.result = RunResult.SUCCESS
            run.finished_at = time.time()
            self.journal.run_finished(run)
            return run

        console.print_run_started(self.run_ctx.repository, self.pipeline.name, len(self.graph.jobs), run.run_id)
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="flowci-job") as pool:
            while True:
                try:
                    self._dispatch(pool, in_flight)
                    if not in_flight:
                        if all(s.terminal for s in run.statuses.values()):
                            break
                        if not self._progress_possible():
                            self._abandon_stuck()
                            break
                        continue
                    done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                    for fut in done:
                        self._collect(fut, in_flight.pop(fut))
                except KeyboardInterrupt:
                    self.interrupted = True
                    console.print_warning("interrupted, cancelling run")
                    self.cancel()

        run.finished_at = time.time()
        run.result = self._aggregate()
        self.journal.run_finished(run)
        console.print_results({j: s.value for j, s in run.statuses.items()}, run.result.value)
        return run

    def _dispatch(self, pool: ThreadPoolExecutor, in_flight: Dict[Future, str]) -> None:
        statuses = self.state.statuses

        if self.cancelled:
            for job_id in self.graph.jobs:
                if not statuses[job_id].terminal and statuses[job_id] != JobStatus.RUNNING:
                    self._skip(job_id, "run cancelled", JobStatus.CANCELLED)
            return

        for job_id in self.graph.cascade_skips(statuses):
            self._skip(job_id, self._skip_reason(job_id))

        for job_id in self.graph.topological_ready(statuses):
            self._set(job_id, JobStatus.READY)

        for job_id in self.graph.jobs:
            if len(in_flight) >= self.concurrency:
                break
            if statuses[job_id] != JobStatus.READY:
                continue
            job = self._jobs[job_id]
            ctx = self._job_context(job)
            if not self._guard_allows(job, ctx):
                self._skip(job_id, "condition false")
                continue
            self._set(job_id, JobStatus.RUNNING)
            in_flight[pool.submit(self._execute, job, ctx)] = job_id

    def _collect(self, fut: Future, job_id: str) -> None:
        try:
            res = fut.result()
        except Exception as e:
            # nothing from a job crosses the scheduler boundary
            logger.exception("job %s crashed", job_id)
            res = JobResult(job=job_id, status=JobStatus.FAILED, finished_at=time.time(),
                            error=f"{type(e).__name__}: {e}")
            get_console().print_failure(self._jobs[job_id].display_name, res.error, is_job=True)
        self._finish(res)

    def _progress_possible(self) -> bool:
        statuses = self.state.statuses
        if self.cancelled:
            return any(not s.terminal for s in statuses.values())
        return bool(self.graph.cascade_skips(statuses) or self.graph.topological_ready(statuses)
                    or any(s == JobStatus.READY for s in statuses.values()))

    def _abandon_stuck(self) -> None:
        for job_id, status in self.state.statuses.items():
            if not status.terminal:
                logger.error("job %s can never run (status=%s)", job_id, status.value)
                self._skip(job_id, "unreachable")

    def _aggregate(self) -> RunResult:
        if self.cancelled:
            return RunResult.CANCELLED
        for job_id, status in self.state.statuses.items():
            if status == JobStatus.FAILED and not self._jobs[job_id].continue_on_error:
                return RunResult.FAILURE
        return RunResult.SUCCESS


def run_pipeline(
    pipeline: Pipeline,
    run_ctx: RunContext,
    *,
    cache: CacheStore,
    artifacts: ArtifactRegistry,
    journal: Optional[Journal] = None,
    concurrency: int = 4,
    dry_run: bool = False,
    **kwargs,
) -> PipelineRun:
    """Convenience wrapper: build a Scheduler and run it."""
    sched = Scheduler(
        pipeline,
        run_ctx,
        cache=cache,
        artifacts=artifacts,
        journal=journal,
        concurrency=concurrency,
        **kwargs,
    )
    return sched.run(dry_run=dry_run)
