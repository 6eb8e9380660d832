# flowci_workflow.py
# A Python package pipeline: lint and type-check in parallel, then tests
# with a pip cache, then a wheel published as an artifact on main.
from __future__ import annotations

from flowci import job, on, sh, uses, wf


def workflow():
    return wf(
        job(
            "lint",
            sh("Ruff check", "ruff check ."),
            sh("Ruff format check", "ruff format --check ."),
        ),
        job(
            "type-check",
            sh("mypy", "python -m mypy src/flowci --ignore-missing-imports", continue_on_error=True),
        ),
        job(
            "test",
            uses(
                "actions/cache@v4",
                "Cache pip",
                with_={
                    "path": "~/.cache/pip",
                    "key": "pip-${{ hashFiles('pyproject.toml') }}",
                    "restore-keys": "pip-",
                },
            ),
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            needs=["lint"],
        ),
        job(
            "package",
            sh("Build wheel", "python -m pip wheel --no-deps -w dist ."),
            uses("actions/upload-artifact@v4", "Upload wheel", with_={"name": "wheel", "path": "dist/"}),
            needs=["test", "type-check"],
            when="branch == 'main'",
        ),
        name="flowci",
        triggers=[on("push", branches=["main", "release/*"]), on("pull_request")],
    )
