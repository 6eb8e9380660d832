"""Tests for the flowci.loader module."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from flowci.errors import CycleError, DefinitionError
from flowci.loader import load_pipeline, parse_pipeline
from flowci.model import ActionRef, Command

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


def _doc(**jobs: Any) -> dict[str, Any]:
    return {"name": "t", "jobs": jobs}


def _one_step(step: dict[str, Any], **job: Any) -> dict[str, Any]:
    return _doc(build={"steps": [step], **job})


# =============================================================================
# Bundled examples
# =============================================================================


class TestExamples:
    """The example pipelines shipped with the repository load cleanly."""

    def test_yaml_example(self) -> None:
        pipeline = load_pipeline(EXAMPLES / "pipeline.yml")
        assert pipeline.name == "CI/CD Pipeline"
        assert pipeline.job_ids == ["setup", "security", "test", "lint", "build", "docker", "update-k8s"]
        assert pipeline.job("update-k8s").condition is not None
        assert pipeline.job("docker").env["REGISTRY"] == "ghcr.io"
        assert pipeline.source.endswith("pipeline.yml")

    def test_yaml_example_triggers(self) -> None:
        """paths-ignore drops pushes that only touch ignored files."""
        pipeline = load_pipeline(EXAMPLES / "pipeline.yml")
        assert pipeline.triggered_by("push", "main", ["src/index.js"])
        assert not pipeline.triggered_by("push", "main", ["kubernetes/deployment.yaml", "README.md"])
        assert pipeline.triggered_by("pull_request", "main")
        assert not pipeline.triggered_by("push", "feature/x")

    def test_python_example(self) -> None:
        pipeline = load_pipeline(EXAMPLES / "flowci_workflow.py")
        assert pipeline.name == "flowci"
        assert pipeline.job_ids == ["lint", "type-check", "test", "package"]
        assert pipeline.job("package").needs == ["test", "type-check"]
        assert pipeline.job("type-check").steps[0].continue_on_error is True


# =============================================================================
# YAML documents
# =============================================================================


class TestParsePipeline:
    """Tests for parse_pipeline."""

    def test_steps(self) -> None:
        doc = _doc(build={
            "runs-on": "ubuntu-latest",
            "timeout-minutes": 2,
            "steps": [
                {"name": "Checkout", "uses": "actions/checkout@v4"},
                {"id": "compile", "run": "make", "working-directory": "app", "env": {"DEBUG": True}},
            ],
        })
        job = parse_pipeline(doc).job("build")
        assert job.timeout == 120.0
        assert job.runs_on == "ubuntu-latest"
        checkout, compile_ = job.steps
        assert checkout.kind == ActionRef("actions/checkout", "v4", {})
        assert isinstance(compile_.kind, Command)
        assert compile_.id == "compile"
        assert compile_.cwd == "app"
        assert compile_.env == {"DEBUG": "true"}

    def test_yaml_on_key_read_as_true(self) -> None:
        """PyYAML turns a bare `on:` key into True."""
        doc = {True: {"push": {"branches": ["main"]}}, "jobs": {"a": {"steps": [{"run": "true"}]}}}
        pipeline = parse_pipeline(doc)
        assert pipeline.triggers[0].event == "push"
        assert pipeline.triggers[0].branches == ("main",)

    @pytest.mark.parametrize(("raw", "events"), [("push", ["push"]), (["push", "pull_request"], ["push", "pull_request"])])
    def test_short_trigger_forms(self, raw: Any, events: list[str]) -> None:
        doc = {"on": raw, "jobs": {"a": {"steps": [{"run": "true"}]}}}
        assert [t.event for t in parse_pipeline(doc).triggers] == events

    def test_default_name(self) -> None:
        doc = {"jobs": {"a": {"steps": [{"run": "true"}]}}}
        assert parse_pipeline(doc, default_name="ci").name == "ci"

    def test_needs_string_or_list(self) -> None:
        doc = _doc(a={"steps": [{"run": "true"}]}, b={"needs": "a", "steps": [{"run": "true"}]})
        assert parse_pipeline(doc).job("b").needs == ["a"]

    def test_cycle(self) -> None:
        doc = _doc(
            a={"needs": "b", "steps": [{"run": "true"}]},
            b={"needs": "a", "steps": [{"run": "true"}]},
        )
        with pytest.raises(CycleError):
            parse_pipeline(doc)


class TestDefinitionErrors:
    """Invalid documents are rejected with the location of the problem."""

    @pytest.mark.parametrize(
        ("doc", "message"),
        [
            ({"jobs": {}}, "non-empty 'jobs'"),
            (_doc(build={"steps": []}), "non-empty 'steps'"),
            (_doc(build={"stepz": [{"run": "true"}]}), "unknown job keys: stepz"),
            (_doc(**{"1bad": {"steps": [{"run": "true"}]}}), "job ids must start"),
            (_one_step({"run": "true", "uses": "actions/checkout@v4"}), "exactly one of"),
            (_one_step({"name": "nothing"}), "exactly one of"),
            (_one_step({"run": "true", "with": {"a": 1}}), "'with' is only valid"),
            (_one_step({"run": "true", "shel": "bash"}), "unknown step keys: shel"),
            (_one_step({"run": "   "}), "non-empty string"),
            (_one_step({"uses": "acme/deploy@v1"}), "Unknown action"),
            (_one_step({"run": "true", "id": "has space"}), "invalid step id"),
            (_one_step({"run": "true", "timeout-minutes": -1}), "must be positive"),
            (_one_step({"run": "true", "timeout-minutes": "soon"}), "must be a number"),
            (_one_step({"run": "true"}, **{"if": "github.ref =="}), "jobs.build.if"),
            (_one_step({"run": "true", "if": "nope()"}), "unknown function"),
            (_one_step({"run": "echo ${{ env.X"}), "jobs.build.steps[0].run"),
            (_one_step({"run": "true"}, needs=["ghost"]), "ghost"),
        ],
    )
    def test_rejected(self, doc: dict[str, Any], message: str) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parse_pipeline(doc)
        assert message in str(exc_info.value)

    def test_duplicate_step_id(self) -> None:
        doc = _doc(build={"steps": [{"id": "x", "run": "true"}, {"id": "x", "run": "true"}]})
        with pytest.raises(DefinitionError, match="duplicate step id 'x'"):
            parse_pipeline(doc)

    def test_not_a_mapping(self) -> None:
        with pytest.raises(DefinitionError):
            parse_pipeline(["not", "a", "mapping"])  # type: ignore[arg-type]


# =============================================================================
# Files
# =============================================================================


class TestLoadFiles:
    """Tests for load_pipeline on files."""

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        f = tmp_path / "bad.yml"
        f.write_text("jobs: [unclosed\n", encoding="utf-8")
        with pytest.raises(DefinitionError, match="invalid YAML"):
            load_pipeline(f)

    def test_empty_yaml(self, tmp_path: Path) -> None:
        f = tmp_path / "empty.yaml"
        f.write_text("", encoding="utf-8")
        with pytest.raises(DefinitionError, match="empty pipeline file"):
            load_pipeline(f)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(DefinitionError, match="cannot read"):
            load_pipeline(tmp_path / "nope.yml")

    def test_unsupported_suffix(self, tmp_path: Path) -> None:
        with pytest.raises(DefinitionError, match="Unsupported pipeline file type"):
            load_pipeline(tmp_path / "pipeline.toml")

    def test_python_jobs_list(self, tmp_path: Path) -> None:
        """A JOBS list becomes a pipeline named after the file."""
        f = tmp_path / "nightly_workflow.py"
        f.write_text(
            "from flowci import job, sh\n"
            "JOBS = [job('a', sh('x', 'true')), job('b', sh('y', 'true'), needs=['a'])]\n",
            encoding="utf-8",
        )
        pipeline = load_pipeline(f)
        assert pipeline.name == "nightly_workflow"
        assert pipeline.job_ids == ["a", "b"]
        assert pipeline.source == str(f.resolve())

    def test_python_module_level_pipeline(self, tmp_path: Path) -> None:
        f = tmp_path / "ci.py"
        f.write_text(
            "from flowci import job, sh, wf\n"
            "PIPELINE = wf(job('a', sh('x', 'true')), name='module-level')\n",
            encoding="utf-8",
        )
        assert load_pipeline(f).name == "module-level"

    def test_python_without_pipeline(self, tmp_path: Path) -> None:
        f = tmp_path / "empty.py"
        f.write_text("X = 1\n", encoding="utf-8")
        with pytest.raises(DefinitionError, match="must return/define a Pipeline"):
            load_pipeline(f)

    def test_python_cycle(self, tmp_path: Path) -> None:
        f = tmp_path / "loop.py"
        f.write_text(
            "from flowci import job, sh\n"
            "JOBS = [job('a', sh('x', 'true'), needs=['b']), job('b', sh('y', 'true'), needs=['a'])]\n",
            encoding="utf-8",
        )
        with pytest.raises(CycleError):
            load_pipeline(f)

    def test_python_unknown_action(self, tmp_path: Path) -> None:
        """Actions used from the DSL are resolved at load time, like YAML `uses:`."""
        f = tmp_path / "ci.py"
        f.write_text(
            "from flowci import job, uses, wf\n"
            "PIPELINE = wf(job('a', uses('nope/missing@v1', 'x')))\n",
            encoding="utf-8",
        )
        with pytest.raises(DefinitionError, match=r"jobs\.a\.steps\[0\]: Unknown action 'nope/missing@v1'"):
            load_pipeline(f)

    def test_python_duplicate_step_id(self, tmp_path: Path) -> None:
        f = tmp_path / "ci.py"
        f.write_text(
            "from flowci import job, sh, wf\n"
            "PIPELINE = wf(job('a', sh('one', 'true', id='s'), sh('two', 'true', id='s')))\n",
            encoding="utf-8",
        )
        with pytest.raises(DefinitionError, match="duplicate step id 's'"):
            load_pipeline(f)

    @pytest.mark.parametrize(
        ("source", "error"),
        [
            ("def broken(:\n", "SyntaxError"),
            ("from flowci import job\nJOBS = [job('a')]\n", "ValueError"),
            ("import not_a_real_module_for_flowci\n", "ModuleNotFoundError"),
        ],
    )
    def test_python_file_errors_are_definition_errors(self, tmp_path: Path, source: str, error: str) -> None:
        f = tmp_path / "ci.py"
        f.write_text(source, encoding="utf-8")
        with pytest.raises(DefinitionError, match=f"error while loading the workflow file: {error}"):
            load_pipeline(f)

    def test_python_workflow_function_errors(self, tmp_path: Path) -> None:
        f = tmp_path / "ci.py"
        f.write_text(
            "from flowci import build\n"
            "def workflow():\n"
            "    return [build('empty').build()]\n",
            encoding="utf-8",
        )
        with pytest.raises(DefinitionError, match=r"calling workflow\(\) in the workflow file: ValueError"):
            load_pipeline(f)
