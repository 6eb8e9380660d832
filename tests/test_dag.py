"""Tests for the flowci.dag module."""

from __future__ import annotations

import pytest

from flowci.dag import DependencyGraph
from flowci.errors import CycleError, DefinitionError, UnknownJobError
from flowci.model import Command, Job, JobStatus, Step


def _job(job_id: str, needs: list[str] | None = None) -> Job:
    return Job(id=job_id, steps=[Step(name="noop", kind=Command("true"))], needs=list(needs or []))


def _graph(*edges: tuple[str, list[str]]) -> DependencyGraph:
    return DependencyGraph.from_jobs([_job(j, n) for j, n in edges])


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    """Tests for building and validating the graph."""

    def test_forward_reference_is_allowed(self) -> None:
        """A job may need a job declared after it."""
        g = _graph(("test", ["build"]), ("build", []))
        assert g.needs("test") == ["build"]
        assert g.dependents("build") == ["test"]

    def test_duplicate_needs_are_collapsed(self) -> None:
        """Listing a dependency twice keeps one edge."""
        g = _graph(("a", []), ("b", ["a", "a"]))
        assert g.needs("b") == ["a"]

    def test_duplicate_job_id(self) -> None:
        """Registering the same id twice is a definition error."""
        g = DependencyGraph()
        g.add_job("a")
        with pytest.raises(DefinitionError, match="Duplicate job id"):
            g.add_job("a")

    def test_unknown_dependency(self) -> None:
        """A dangling `needs` entry names the job and the missing dependency."""
        with pytest.raises(UnknownJobError) as exc_info:
            _graph(("a", []), ("b", ["ghost"]))
        assert exc_info.value.job == "b"
        assert exc_info.value.missing == "ghost"
        assert exc_info.value.known == ["a", "b"]

    def test_self_dependency_is_a_cycle(self) -> None:
        """A job needing itself is rejected."""
        with pytest.raises(CycleError) as exc_info:
            _graph(("a", ["a"]))
        assert exc_info.value.path == ["a", "a"]

    def test_cycle_detected(self) -> None:
        """A -> B -> C -> A is rejected with the cycle path."""
        with pytest.raises(CycleError) as exc_info:
            _graph(("a", ["c"]), ("b", ["a"]), ("c", ["b"]))
        assert "a" in exc_info.value.path
        assert "Dependency cycle detected" in str(exc_info.value)

    def test_cycle_error_is_definition_error(self) -> None:
        """Cycles are caught by a generic DefinitionError handler."""
        assert issubclass(CycleError, DefinitionError)
        assert issubclass(UnknownJobError, DefinitionError)


# =============================================================================
# Queries
# =============================================================================


class TestLevels:
    """Tests for stage computation."""

    def test_levels_follow_declaration_order(self) -> None:
        """Independent jobs share a stage, ordered as declared."""
        g = _graph(
            ("setup", []),
            ("security", ["setup"]),
            ("test", ["security"]),
            ("lint", ["security"]),
            ("build", ["test", "lint"]),
        )
        assert g.levels() == [["setup"], ["security"], ["test", "lint"], ["build"]]
        assert g.order() == ["setup", "security", "test", "lint", "build"]

    def test_every_dependency_precedes_its_dependent(self) -> None:
        """order() is a valid topological order."""
        g = _graph(("d", ["b", "c"]), ("b", ["a"]), ("c", ["a"]), ("a", []))
        order = g.order()
        for job in g.jobs:
            for dep in g.needs(job):
                assert order.index(dep) < order.index(job)

    def test_descendants(self) -> None:
        """Transitive dependents are returned in declaration order."""
        g = _graph(("a", []), ("b", ["a"]), ("c", ["b"]), ("d", []))
        assert g.descendants("a") == ["b", "c"]
        assert g.descendants("d") == []


class TestReadiness:
    """Tests for topological_ready and cascade_skips."""

    def test_roots_are_ready(self) -> None:
        """Jobs without needs are ready immediately."""
        g = _graph(("a", []), ("b", ["a"]))
        statuses = {"a": JobStatus.PENDING, "b": JobStatus.BLOCKED}
        assert g.topological_ready(statuses) == ["a"]

    def test_ready_after_all_dependencies_succeed(self) -> None:
        """A job becomes ready only when every dependency Succeeded."""
        g = _graph(("a", []), ("b", []), ("c", ["a", "b"]))
        statuses = {"a": JobStatus.SUCCEEDED, "b": JobStatus.RUNNING, "c": JobStatus.BLOCKED}
        assert g.topological_ready(statuses) == []
        statuses["b"] = JobStatus.SUCCEEDED
        assert g.topological_ready(statuses) == ["c"]

    def test_cascade_is_transitive(self) -> None:
        """A failure skips every downstream job, not only direct dependents."""
        g = _graph(("a", []), ("b", ["a"]), ("c", ["b"]), ("d", []))
        statuses = {
            "a": JobStatus.FAILED,
            "b": JobStatus.BLOCKED,
            "c": JobStatus.BLOCKED,
            "d": JobStatus.RUNNING,
        }
        assert g.cascade_skips(statuses) == ["b", "c"]

    @pytest.mark.parametrize("status", [JobStatus.SKIPPED, JobStatus.CANCELLED])
    def test_skipped_and_cancelled_also_cascade(self, status: JobStatus) -> None:
        """Skipped and Cancelled dependencies block dependents too."""
        g = _graph(("a", []), ("b", ["a"]))
        assert g.cascade_skips({"a": status, "b": JobStatus.BLOCKED}) == ["b"]

    def test_cascade_does_not_mutate_input(self) -> None:
        """cascade_skips works on a copy of the status map."""
        g = _graph(("a", []), ("b", ["a"]))
        statuses = {"a": JobStatus.FAILED, "b": JobStatus.BLOCKED}
        g.cascade_skips(statuses)
        assert statuses["b"] == JobStatus.BLOCKED
