"""Tests for the flowci.scheduler module."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from flowci.artifacts import ArtifactRegistry
from flowci.cache import CacheStore
from flowci.context import RunContext
from flowci.dsl import job, sh, wf
from flowci.errors import CycleError, DefinitionError
from flowci.journal import Journal, read_journal
from flowci.loader import parse_pipeline
from flowci.model import JobStatus, Pipeline, RunResult
from flowci.runner import JobRunner
from flowci.scheduler import Scheduler, run_pipeline

CI_PIPELINE = """
name: ci
on:
  push:
    branches: [main]
  pull_request:
jobs:
  setup:
    steps:
      - id: versions
        run: echo "node=20" >> "$GITHUB_OUTPUT"
    outputs:
      node: ${{ steps.versions.outputs.node }}
  security:
    needs: setup
    steps:
      - run: echo "audit with node ${{ needs.setup.outputs.node }}"
  test:
    needs: security
    steps:
      - run: echo test
  lint:
    needs: security
    steps:
      - run: echo lint
  build:
    needs: [test, lint]
    steps:
      - run: mkdir -p dist && echo "bundle" > dist/app.js
      - uses: actions/upload-artifact@v4
        with:
          name: dist
          path: dist/
  docker:
    needs: build
    steps:
      - uses: actions/download-artifact@v4
        with:
          name: dist
          path: downloaded
      - run: test -f downloaded/app.js
      - run: exit "${DOCKER_EXIT:-0}"
  update-k8s:
    needs: docker
    if: github.ref == 'refs/heads/main' && github.event_name == 'push'
    steps:
      - run: echo deploy
"""


@pytest.fixture
def ci_pipeline() -> Pipeline:
    return parse_pipeline(yaml.safe_load(CI_PIPELINE), source="ci.yml")


def _ctx(workspace: Path, **kwargs) -> RunContext:
    kwargs.setdefault("run_id", "run-1")
    return RunContext(workspace=workspace, **kwargs)


def _scheduler(pipeline: Pipeline, ctx: RunContext, cache_store: CacheStore,
               artifact_registry: ArtifactRegistry, **kwargs) -> Scheduler:
    kwargs.setdefault("poll_interval", 0.05)
    kwargs.setdefault("grace_period", 1.0)
    return Scheduler(pipeline, ctx, cache=cache_store, artifacts=artifact_registry, **kwargs)


# =============================================================================
# End to end
# =============================================================================


class TestCIPipeline:
    """The setup -> security -> {test, lint} -> build -> docker -> update-k8s DAG."""

    def test_push_to_main_runs_everything(
        self, ci_pipeline: Pipeline, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        sched = _scheduler(ci_pipeline, _ctx(workspace, event="push", branch="main"), cache_store, artifact_registry)
        run = sched.run()
        assert run.result == RunResult.SUCCESS
        assert all(s == JobStatus.SUCCEEDED for s in run.statuses.values())
        assert run.jobs["setup"].outputs == {"node": "20"}
        assert run.jobs["security"].steps[0].stdout == "audit with node 20\n"

    def test_pull_request_skips_deploy(
        self, ci_pipeline: Pipeline, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        ctx = _ctx(workspace, event="pull_request", branch="feature/login")
        run = _scheduler(ci_pipeline, ctx, cache_store, artifact_registry).run()
        assert run.result == RunResult.SUCCESS
        assert run.status_of("update-k8s") == JobStatus.SKIPPED
        assert run.jobs["update-k8s"].reason == "condition false"
        assert run.skipped_jobs == ["update-k8s"]
        for job_id in ("setup", "security", "test", "lint", "build", "docker"):
            assert run.status_of(job_id) == JobStatus.SUCCEEDED

    def test_docker_failure_blocks_deploy(
        self, ci_pipeline: Pipeline, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        ctx = _ctx(workspace, event="push", branch="main", env={"DOCKER_EXIT": "1"})
        run = _scheduler(ci_pipeline, ctx, cache_store, artifact_registry).run()
        assert run.result == RunResult.FAILURE
        assert run.status_of("docker") == JobStatus.FAILED
        assert run.jobs["docker"].exit_code == 1
        assert run.status_of("update-k8s") == JobStatus.SKIPPED
        assert run.jobs["update-k8s"].reason == "dependency 'docker' failed"
        assert run.failed_jobs == ["docker"]

    def test_artifact_published_by_build(
        self, ci_pipeline: Pipeline, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        _scheduler(ci_pipeline, _ctx(workspace), cache_store, artifact_registry).run()
        art = artifact_registry.fetch("dist", "run-1")
        assert art.producer == "build"
        assert (workspace / "downloaded" / "app.js").read_text(encoding="utf-8") == "bundle\n"

    def test_not_triggered_on_other_branch(self, ci_pipeline: Pipeline) -> None:
        assert ci_pipeline.triggered_by("push", "main")
        assert not ci_pipeline.triggered_by("push", "develop")
        assert ci_pipeline.triggered_by("pull_request", "feature/x")
        assert not ci_pipeline.triggered_by("workflow_dispatch", "main")


# =============================================================================
# Failure propagation
# =============================================================================


class TestPropagation:
    """Tests for skips, guards and continue-on-error at job level."""

    def test_failure_cascades_but_independent_jobs_run(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        pipeline = wf(
            job("a", sh("fail", "exit 3")),
            job("b", sh("never", "touch b-ran"), needs=["a"]),
            job("c", sh("transitive", "touch c-ran"), needs=["b"]),
            job("other", sh("ok", "true")),
        )
        run = _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry).run()
        assert run.result == RunResult.FAILURE
        assert run.statuses == {
            "a": JobStatus.FAILED,
            "b": JobStatus.SKIPPED,
            "c": JobStatus.SKIPPED,
            "other": JobStatus.SUCCEEDED,
        }
        assert run.jobs["c"].reason == "dependency 'b' skipped"
        assert not (workspace / "b-ran").exists()
        assert not (workspace / "c-ran").exists()

    def test_unknown_guard_variable_skips(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        """A guard referencing an undefined variable is false, not an error."""
        pipeline = wf(
            job("deploy", sh("go", "touch deployed"), when="vars.DEPLOY == 'yes'"),
            job("notify", sh("go", "true"), needs=["deploy"]),
        )
        run = _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry).run()
        assert run.result == RunResult.SUCCESS
        assert run.status_of("deploy") == JobStatus.SKIPPED
        assert run.status_of("notify") == JobStatus.SKIPPED
        assert not (workspace / "deployed").exists()

    def test_job_continue_on_error(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        """The run stays green, dependents are still skipped."""
        pipeline = wf(
            job("flaky", sh("fail", "exit 1"), continue_on_error=True),
            job("after", sh("ok", "true"), needs=["flaky"]),
        )
        run = _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry).run()
        assert run.result == RunResult.SUCCESS
        assert run.status_of("flaky") == JobStatus.FAILED
        assert run.status_of("after") == JobStatus.SKIPPED

    def test_job_guard_sees_pipeline_env(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        pipeline = wf(
            job("release", sh("go", "true"), when="env.CHANNEL == 'stable'"),
            env={"CHANNEL": "stable"},
        )
        run = _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry).run()
        assert run.status_of("release") == JobStatus.SUCCEEDED

    def test_crashing_runner_fails_only_that_job(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        class CrashingRunner(JobRunner):
            def run_job(self, job, run, resources, **kwargs):
                if job.id == "boom":
                    raise RuntimeError("kaboom")
                return super().run_job(job, run, resources, **kwargs)

        pipeline = wf(job("boom", sh("x", "true")), job("fine", sh("x", "true")))
        sched = _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry, runner=CrashingRunner())
        run = sched.run()
        assert run.status_of("boom") == JobStatus.FAILED
        assert "kaboom" in run.jobs["boom"].error
        assert run.status_of("fine") == JobStatus.SUCCEEDED

    def test_guard_runtime_error_skips(
        self, workspace: Path, tmp_path: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        """A guard that fails on runtime values is false; the run still returns and is journaled."""
        journal_path = tmp_path / "journal.jsonl"
        pipeline = wf(
            job(
                "config",
                sh("emit", 'echo "cfg=not json" >> "$GITHUB_OUTPUT"', id="emit"),
                outputs={"cfg": "${{ steps.emit.outputs.cfg }}"},
            ),
            job("deploy", sh("go", "touch deployed"), needs=["config"],
                when="fromJSON(needs.config.outputs.cfg).enabled"),
            job("audit", sh("go", "touch audited"), when="fromJSON('not json')"),
        )
        sched = _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry, journal=Journal(journal_path))
        run = sched.run()
        assert run.result == RunResult.SUCCESS
        assert run.status_of("config") == JobStatus.SUCCEEDED
        assert run.status_of("deploy") == JobStatus.SKIPPED
        assert run.jobs["deploy"].reason == "condition false"
        assert run.status_of("audit") == JobStatus.SKIPPED
        assert not (workspace / "deployed").exists()
        assert list(read_journal(journal_path))[-1]["event"] == "run_finished"


# =============================================================================
# Definition errors
# =============================================================================


class TestDefinitionErrors:
    """Invalid graphs are rejected before any job runs."""

    def test_cycle_rejected_before_running(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        pipeline = wf(
            job("a", sh("x", "touch ran"), needs=["b"]),
            job("b", sh("x", "touch ran"), needs=["a"]),
        )
        with pytest.raises(CycleError):
            _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry)
        assert not (workspace / "ran").exists()

    def test_unknown_need_rejected(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        pipeline = wf(job("a", sh("x", "true"), needs=["ghost"]))
        with pytest.raises(DefinitionError, match="ghost"):
            _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry)

    def test_invalid_concurrency(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        with pytest.raises(ValueError):
            _scheduler(wf(job("a", sh("x", "true"))), _ctx(workspace), cache_store, artifact_registry, concurrency=0)

    @pytest.mark.parametrize("guard", ["startsWith(github.ref)", "format()", "always(1)", "join('a', ',', 'x')"])
    def test_guard_with_wrong_argument_count_rejected(self, guard: str) -> None:
        doc = {"jobs": {
            "a": {"steps": [{"run": "true"}]},
            "b": {"needs": "a", "if": guard, "steps": [{"run": "true"}]},
        }}
        with pytest.raises(DefinitionError, match=r"jobs\.b\.if"):
            parse_pipeline(doc)


# =============================================================================
# Concurrency, cancellation, dry run
# =============================================================================


class CountingRunner(JobRunner):
    """Records the highest number of jobs running at once."""

    def __init__(self) -> None:
        super().__init__(grace_period=1.0)
        self._lock = threading.Lock()
        self.running = 0
        self.peak = 0

    def run_job(self, job, run, resources, **kwargs):
        with self._lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            return super().run_job(job, run, resources, **kwargs)
        finally:
            with self._lock:
                self.running -= 1


class TestExecutionControl:
    """Tests for the concurrency limit, cancellation and dry runs."""

    def test_concurrency_limit(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        runner = CountingRunner()
        pipeline = wf(*[job(f"j{i}", sh("nap", "sleep 0.3")) for i in range(4)])
        run = _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry,
                         concurrency=2, runner=runner).run()
        assert run.result == RunResult.SUCCESS
        assert runner.peak == 2

    def test_independent_jobs_run_in_parallel(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        runner = CountingRunner()
        pipeline = wf(job("root", sh("x", "true")),
                      job("test", sh("nap", "sleep 0.3"), needs=["root"]),
                      job("lint", sh("nap", "sleep 0.3"), needs=["root"]))
        _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry, concurrency=4, runner=runner).run()
        assert runner.peak == 2

    def test_cancel_mid_run(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        pipeline = wf(
            job("quick", sh("x", "true")),
            job("slow", sh("nap", "sleep 10")),
            job("after", sh("x", "touch after-ran"), needs=["slow"]),
        )
        sched = _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry)
        timer = threading.Timer(0.5, sched.cancel)
        timer.start()
        try:
            run = sched.run()
        finally:
            timer.cancel()

        assert run.result == RunResult.CANCELLED
        assert run.status_of("quick") == JobStatus.SUCCEEDED
        assert run.status_of("slow") == JobStatus.CANCELLED
        assert run.status_of("after") == JobStatus.CANCELLED
        assert run.jobs["after"].reason == "run cancelled"
        assert not (workspace / "after-ran").exists()

    def test_dry_run(
        self, ci_pipeline: Pipeline, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        """Guards are evaluated, nothing executes."""
        ctx = _ctx(workspace, event="pull_request", branch="feature/x")
        sched = _scheduler(ci_pipeline, ctx, cache_store, artifact_registry)
        decisions = sched.plan()
        assert decisions["build"] == "would run"
        assert decisions["update-k8s"] == "skipped: condition false"

        run = sched.run(dry_run=True)
        assert run.result == RunResult.SUCCESS
        assert run.status_of("update-k8s") == JobStatus.SKIPPED
        assert run.jobs == {}
        assert not (workspace / "dist").exists()

    def test_dry_run_guard_on_upstream_outputs(
        self, workspace: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        """Outputs do not exist before a real run, so such guards are not reported as false."""
        pipeline = wf(
            job("build", sh("tag", 'echo "tag=v1" >> "$GITHUB_OUTPUT"', id="tag"),
                outputs={"tag": "${{ steps.tag.outputs.tag }}"}),
            job("publish", sh("go", "true"), needs=["build"], when="needs.build.outputs.tag != ''"),
            job("notify", sh("go", "true"), needs=["publish"]),
        )
        sched = _scheduler(pipeline, _ctx(workspace), cache_store, artifact_registry)
        decisions = sched.plan()
        assert decisions["publish"] == "would run (guard depends on runtime outputs)"
        assert decisions["notify"] == "would run"
        run = sched.run(dry_run=True)
        assert run.status_of("publish") != JobStatus.SKIPPED

    def test_journal(
        self, workspace: Path, tmp_path: Path, cache_store: CacheStore, artifact_registry: ArtifactRegistry
    ) -> None:
        journal_path = tmp_path / "journal.jsonl"
        pipeline = wf(job("a", sh("x", "true")), job("b", sh("x", "exit 2"), needs=["a"]))
        run_pipeline(pipeline, _ctx(workspace), cache=cache_store, artifacts=artifact_registry,
                     journal=Journal(journal_path), poll_interval=0.05)

        records = list(read_journal(journal_path, run_id="run-1"))
        events = [r["event"] for r in records]
        assert events[0] == "run_started"
        assert events[-1] == "run_finished"
        finished = {r["job"]: r for r in records if r["event"] == "job_finished"}
        assert finished["a"]["status"] == "succeeded"
        assert finished["b"]["status"] == "failed"
        assert finished["b"]["exit_code"] == 2
        assert records[-1]["result"] == "failure"
