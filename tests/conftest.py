"""Shared pytest fixtures for the flowci test suite."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable

import pytest

from flowci.artifacts import ArtifactRegistry
from flowci.cache import CacheStore
from flowci.context import JobResources, RunContext, Secrets, StepContext
from flowci.ui.console import Console, set_console

# pylint: disable=redefined-outer-name


@pytest.fixture(autouse=True)
def quiet_console() -> Console:
    """Keep job progress off the test output; errors and results still print."""
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def cache_store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def artifact_registry(tmp_path: Path) -> ArtifactRegistry:
    return ArtifactRegistry(tmp_path / "artifacts")


@pytest.fixture
def run_ctx(workspace: Path) -> RunContext:
    return RunContext(
        run_id="run-1",
        event="push",
        branch="main",
        sha="a1b2c3d4e5f60718293a4b5c6d7e8f9012345678",
        repository="acme/shop",
        actor="octocat",
        workspace=workspace,
        secrets=Secrets({"TOKEN": "s3cr3t-value"}),
    )


@pytest.fixture
def resources(cache_store: CacheStore, artifact_registry: ArtifactRegistry) -> JobResources:
    return JobResources(cache=cache_store, artifacts=artifact_registry)


@pytest.fixture
def make_step_ctx(run_ctx: RunContext, resources: JobResources) -> Callable[..., StepContext]:
    """Build a StepContext for job 'build' with overridable fields."""

    def _make(**overrides: Any) -> StepContext:
        fields: dict[str, Any] = {
            "run": run_ctx,
            "job": "build",
            "resources": resources,
            "step_name": "step",
            "grace_period": 1.0,
            "cancel_event": threading.Event(),
        }
        fields.update(overrides)
        return StepContext(**fields)

    return _make
