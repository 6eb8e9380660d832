"""Tests for the flowci.model module."""

from __future__ import annotations

import pytest

from flowci.model import (
    ActionRef,
    Command,
    Job,
    JobResult,
    JobStatus,
    Pipeline,
    Step,
    StepResult,
    StepStatus,
    Trigger,
)


class TestStep:
    """Tests for Step helpers."""

    def test_label_prefers_name_then_id_then_first_line(self) -> None:
        assert Step(name="Build", kind=Command("make")).label == "Build"
        assert Step(name="", id="compile", kind=Command("make")).label == "compile"
        assert Step(name="", kind=Command("npm ci\nnpm test")).label == "npm ci"
        assert Step(name="", kind=ActionRef.parse("actions/checkout@v4")).label == "actions/checkout@v4"

    def test_action_ref_parse(self) -> None:
        ref = ActionRef.parse("docker/build-push-action@v5", {"push": True})
        assert (ref.name, ref.version, ref.uses) == ("docker/build-push-action", "v5", "docker/build-push-action@v5")
        assert ActionRef.parse("local-action").uses == "local-action"

    def test_cache_key(self) -> None:
        cache = Step(name="", kind=ActionRef.parse("actions/cache@v4", {"key": "npm-${{ hashFiles('x') }}"}))
        assert cache.cache_key == "npm-${{ hashFiles('x') }}"
        assert Step(name="", kind=Command("ls")).cache_key is None


class TestTrigger:
    """Tests for Trigger matching."""

    @pytest.mark.parametrize(
        ("branches", "branch", "expected"),
        [
            ((), "anything", True),
            (("main",), "main", True),
            (("main",), "develop", False),
            (("release/*",), "release/1.2", True),
        ],
    )
    def test_branches(self, branches: tuple[str, ...], branch: str, expected: bool) -> None:
        assert Trigger("push", branches=branches).matches_branch(branch) is expected

    def test_paths_ignore(self) -> None:
        trig = Trigger("push", paths_ignore=("kubernetes/**", "README.md"))
        assert trig.matches_paths(None)
        assert not trig.matches_paths(["kubernetes/deployment.yaml", "README.md"])
        assert trig.matches_paths(["kubernetes/deployment.yaml", "src/app.js"])

    def test_paths(self) -> None:
        trig = Trigger("push", paths=("src/**",))
        assert trig.matches_paths(["src/app.js"])
        assert not trig.matches_paths(["docs/index.md"])

    def test_pipeline_without_triggers_always_runs(self) -> None:
        pipeline = Pipeline(name="p", jobs=[Job(id="a", steps=[])])
        assert pipeline.triggered_by("schedule", "any")

    def test_pipeline_matches_event(self) -> None:
        pipeline = Pipeline(
            name="p",
            jobs=[Job(id="a", steps=[])],
            triggers=[Trigger("push", branches=("main",)), Trigger("pull_request")],
        )
        assert pipeline.triggered_by("push", "main")
        assert not pipeline.triggered_by("push", "feature")
        assert pipeline.triggered_by("pull_request", "feature")
        assert not pipeline.triggered_by("workflow_dispatch", "main")


class TestJobResult:
    """Tests for JobResult.exit_code."""

    def test_failed_step_exit_code(self) -> None:
        res = JobResult(job="a", status=JobStatus.FAILED, steps=[
            StepResult(name="one", status=StepStatus.SUCCEEDED, exit_code=0),
            StepResult(name="two", status=StepStatus.FAILED, exit_code=7),
            StepResult(name="three", status=StepStatus.SKIPPED),
        ])
        assert res.exit_code == 7

    def test_success_is_zero(self) -> None:
        assert JobResult(job="a", status=JobStatus.SUCCEEDED).exit_code == 0

    def test_skipped_has_none(self) -> None:
        assert JobResult(job="a", status=JobStatus.SKIPPED).exit_code is None

    def test_terminal_statuses(self) -> None:
        assert JobStatus.CANCELLED.terminal
        assert not JobStatus.READY.terminal
