# src/flowci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .expr import Expression, parse, validate_templates
from .model import ActionRef, Command, Job, Pipeline, Step, Trigger


def _guard(condition: str | Expression | None) -> Optional[Expression]:
    if condition is None or isinstance(condition, Expression):
        return condition
    return parse(condition)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    when: str | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
    shell: str | None = None,
) -> Step:
    """Create a shell step."""
    validate_templates(cmd)
    return Step(
        name=name,
        kind=Command(run=cmd, shell=shell),
        id=id,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=_guard(when),
        continue_on_error=continue_on_error,
        timeout=timeout,
        cwd=cwd,
    )


def uses(
    action: str,
    name: str = "",
    *,
    id: str | None = None,
    with_: Optional[Mapping[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
    when: str | None = None,
    continue_on_error: bool = False,
) -> Step:
    """
    Create an action step:

        uses("actions/cache@v4", "Cache npm", with_={"path": "~/.npm", "key": "npm-..."})
    """
    params = dict(with_ or {})
    validate_templates(params)
    return Step(
        name=name,
        kind=ActionRef.parse(action, params),
        id=id,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=_guard(when),
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[Sequence[str]] = None,
    name: str | None = None,
    when: str | None = None,
    env: Optional[Dict[str, str]] = None,
    outputs: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        id=id,
        steps=steps_final,
        needs=list(needs or []),
        name=name,
        condition=_guard(when),
        env={k: str(v) for k, v in (env or {}).items()},
        outputs=dict(outputs or {}),
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._name: str | None = None
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._condition: str | None = None

    def named(self, name: str):
        self._name = name
        return self

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, action: str, name: str = "", **kwargs):
        self._steps.append(uses(action, name, **kwargs))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_output(self, name: str, value: str):
        self._outputs[name] = value
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return job(
            self.id,
            steps_list=self._steps,
            needs=self._needs,
            name=self._name,
            when=self._condition,
            env=self._env,
            outputs=self._outputs,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def on(event: str, *, branches: Sequence[str] = (), paths: Sequence[str] = (),
       paths_ignore: Sequence[str] = ()) -> Trigger:
    return Trigger(event, tuple(branches), tuple(paths), tuple(paths_ignore))


def wf(
    *jobs: Job,
    name: str = "workflow",
    triggers: Sequence[Trigger] = (),
    env: Optional[Dict[str, str]] = None,
) -> Pipeline:
    """
    Workflow definition helper. Use this name so you can define your own
    `def workflow(): return wf(job(...), job(...))`.

    Users can write:
        from flowci import wf, job, sh

        def workflow():
            return wf(
                job("lint", sh("ruff", "ruff check .")),
                job("test", sh("pytest", "pytest -q"), needs=["lint"]),
                name="ci",
            )

    Or at module level:
        PIPELINE = wf(job(...), job(...))
    """
    return Pipeline(
        name=name,
        jobs=list(jobs),
        triggers=list(triggers),
        env={k: str(v) for k, v in (env or {}).items()},
    )
