"""Pipeline loading.

Two sources are supported:

* YAML files in the GitHub Actions dialect (``.yml`` / ``.yaml``)
* Python workflow files using :mod:`flowci.dsl` (``.py``)

Every problem found while loading is reported as a ``DefinitionError``
carrying the location (``jobs.build.steps[2]``), before anything runs.
"""

from __future__ import annotations

import logging
import re
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .actions import resolve
from .dag import DependencyGraph
from .errors import DefinitionError, ExpressionError
from .expr import parse, validate_templates
from .model import ActionRef, Command, Job, Pipeline, Step, Trigger

logger = logging.getLogger(__name__)

_ID_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_STEP_KEYS = {
    "name", "id", "uses", "run", "with", "env", "if", "continue-on-error",
    "working-directory", "shell", "timeout-minutes",
}
_JOB_KEYS = {
    "name", "runs-on", "needs", "if", "env", "outputs", "continue-on-error",
    "timeout-minutes", "steps",
}


def _fail(where: str, message: str) -> DefinitionError:
    return DefinitionError(f"{where}: {message}")


def _str_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return [str(v) for v in value]
    raise _fail(where, f"expected a string or a list of strings, got {type(value).__name__}")


def _str_map(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise _fail(where, f"expected a mapping, got {type(value).__name__}")
    out: Dict[str, str] = {}
    for k, v in value.items():
        if isinstance(v, bool):
            v = "true" if v else "false"
        out[str(k)] = "" if v is None else str(v)
    validate_templates(out)
    return out


def _minutes(value: Any, where: str) -> Optional[float]:
    if value is None:
        return None
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        raise _fail(where, f"timeout-minutes must be a number, got {value!r}") from None
    if minutes <= 0:
        raise _fail(where, "timeout-minutes must be positive")
    return minutes * 60.0


def _guard(value: Any, where: str):
    if value is None:
        return None
    try:
        return parse(value)
    except ExpressionError as e:
        raise _fail(where, str(e)) from e


# ---------------------------------------------------------------------
# YAML -> model
# ---------------------------------------------------------------------

def _parse_triggers(raw: Any) -> List[Trigger]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [Trigger(raw)]
    if isinstance(raw, list):
        return [Trigger(str(e)) for e in raw]
    if not isinstance(raw, dict):
        raise _fail("on", "expected an event name, a list or a mapping")

    triggers: List[Trigger] = []
    for event, cfg in raw.items():
        cfg = cfg or {}
        if not isinstance(cfg, dict):
            raise _fail(f"on.{event}", "expected a mapping")
        for key in cfg:
            if key not in ("branches", "paths", "paths-ignore"):
                logger.warning("on.%s.%s is not supported and is ignored", event, key)
        triggers.append(Trigger(
            event=str(event),
            branches=tuple(_str_list(cfg.get("branches"), f"on.{event}.branches")),
            paths=tuple(_str_list(cfg.get("paths"), f"on.{event}.paths")),
            paths_ignore=tuple(_str_list(cfg.get("paths-ignore"), f"on.{event}.paths-ignore")),
        ))
    return triggers


def _parse_step(raw: Any, where: str) -> Step:
    if not isinstance(raw, dict):
        raise _fail(where, "a step must be a mapping")
    unknown = set(raw) - _STEP_KEYS
    if unknown:
        raise _fail(where, f"unknown step keys: {', '.join(sorted(map(str, unknown)))}")

    has_run, has_uses = "run" in raw, "uses" in raw
    if has_run == has_uses:
        raise _fail(where, "a step needs exactly one of 'run' or 'uses'")

    if has_run:
        if raw.get("with"):
            raise _fail(where, "'with' is only valid together with 'uses'")
        script = raw["run"]
        if not isinstance(script, str) or not script.strip():
            raise _fail(where, "'run' must be a non-empty string")
        try:
            validate_templates(script)
        except ExpressionError as e:
            raise _fail(f"{where}.run", str(e)) from e
        kind = Command(run=script, shell=raw.get("shell"))
    else:
        uses = str(raw["uses"])
        params = raw.get("with") or {}
        if not isinstance(params, dict):
            raise _fail(f"{where}.with", "expected a mapping")
        try:
            resolve(uses)
            validate_templates(params)
        except DefinitionError as e:
            raise _fail(where, str(e)) from e
        kind = ActionRef.parse(uses, params)

    step_id = raw.get("id")
    if step_id is not None and not _ID_RE.match(str(step_id)):
        raise _fail(where, f"invalid step id {step_id!r}")

    try:
        env = _str_map(raw.get("env"), f"{where}.env")
    except ExpressionError as e:
        raise _fail(f"{where}.env", str(e)) from e

    return Step(
        name=str(raw.get("name") or ""),
        kind=kind,
        id=str(step_id) if step_id is not None else None,
        env=env,
        condition=_guard(raw.get("if"), f"{where}.if"),
        continue_on_error=bool(raw.get("continue-on-error", False)),
        timeout=_minutes(raw.get("timeout-minutes"), where),
        cwd=raw.get("working-directory"),
    )


def _parse_job(job_id: str, raw: Any) -> Job:
    where = f"jobs.{job_id}"
    if not _ID_RE.match(job_id):
        raise _fail(where, "job ids must start with a letter or '_' and contain only [A-Za-z0-9_-]")
    if not isinstance(raw, dict):
        raise _fail(where, "a job must be a mapping")
    unknown = set(raw) - _JOB_KEYS
    if unknown:
        raise _fail(where, f"unknown job keys: {', '.join(sorted(map(str, unknown)))}")

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise _fail(where, "a job needs a non-empty 'steps' list")
    steps = [_parse_step(s, f"{where}.steps[{i}]") for i, s in enumerate(raw_steps)]

    try:
        env = _str_map(raw.get("env"), f"{where}.env")
        outputs = _str_map(raw.get("outputs"), f"{where}.outputs")
    except ExpressionError as e:
        raise _fail(where, str(e)) from e

    return Job(
        id=job_id,
        steps=steps,
        needs=_str_list(raw.get("needs"), f"{where}.needs"),
        name=raw.get("name"),
        runs_on=raw.get("runs-on"),
        condition=_guard(raw.get("if"), f"{where}.if"),
        env=env,
        outputs=outputs,
        continue_on_error=bool(raw.get("continue-on-error", False)),
        timeout=_minutes(raw.get("timeout-minutes"), where),
    )


def parse_pipeline(data: Mapping[str, Any], *, source: str | None = None, default_name: str = "pipeline") -> Pipeline:
    """Build and validate a Pipeline from an already-decoded YAML document."""
    if not isinstance(data, Mapping):
        raise DefinitionError("pipeline document must be a mapping")

    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise DefinitionError("pipeline needs a non-empty 'jobs' mapping")

    # YAML 1.1 reads a bare `on` key as boolean True
    triggers_raw = data["on"] if "on" in data else data.get(True)

    try:
        env = _str_map(data.get("env"), "env")
    except ExpressionError as e:
        raise _fail("env", str(e)) from e

    pipeline = Pipeline(
        name=str(data.get("name") or default_name),
        jobs=[_parse_job(str(jid), raw) for jid, raw in jobs_raw.items()],
        triggers=_parse_triggers(triggers_raw),
        env=env,
        source=source,
    )
    validate_pipeline(pipeline)
    return pipeline


def validate_pipeline(pipeline: Pipeline) -> DependencyGraph:
    """
    Checks that do not depend on the source format: step ids, actions,
    templates, then the job graph.

    Raises CycleError / UnknownJobError / DefinitionError.
    """
    for job in pipeline.jobs:
        seen: Dict[str, int] = {}
        for i, step in enumerate(job.steps):
            where = f"jobs.{job.id}.steps[{i}]"
            if step.id is not None:
                if step.id in seen:
                    raise _fail(where, f"duplicate step id '{step.id}' (also steps[{seen[step.id]}])")
                seen[step.id] = i
            try:
                if isinstance(step.kind, ActionRef):
                    resolve(step.kind.uses)
                    validate_templates(dict(step.kind.params))
                else:
                    validate_templates(step.kind.run)
            except DefinitionError as e:
                raise _fail(where, str(e)) from e
    return DependencyGraph.from_jobs(pipeline.jobs)


def load_yaml(path: str | Path) -> Pipeline:
    p = Path(path).expanduser().resolve()
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise DefinitionError(f"cannot read pipeline file {p}: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError(f"{p.name}: invalid YAML: {e}") from e
    if data is None:
        raise DefinitionError(f"{p.name}: empty pipeline file")
    return parse_pipeline(data, source=str(p), default_name=p.stem)


# ---------------------------------------------------------------------
# Python workflow files
# ---------------------------------------------------------------------

def _workflow_error(path: Path, action: str, exc: Exception) -> DefinitionError:
    """User code in a workflow file failed; report it like any other definition error."""
    return DefinitionError(f"{path.name}: error while {action} the workflow file: {type(exc).__name__}: {exc}")


def load_python(path: str | Path) -> Pipeline:
    """
    Load a workflow from a python file.

    The file must define one of:
      - workflow() -> Pipeline | List[Job]
      - PIPELINE = Pipeline(...)
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise DefinitionError(f"Workflow file not found: {wf_path}")

    module_name = f"flowci_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except DefinitionError:
        raise
    except Exception as e:
        raise _workflow_error(wf_path, "loading", e) from e

    result: Any = None
    if callable(globals_dict.get("workflow")):
        try:
            result = globals_dict["workflow"]()
        except DefinitionError:
            raise
        except TypeError as e:
            if "positional argument" in str(e):
                raise DefinitionError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from flowci import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise _workflow_error(wf_path, "calling workflow() in", e) from e
        except Exception as e:
            raise _workflow_error(wf_path, "calling workflow() in", e) from e
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, list) and all(isinstance(j, Job) for j in result):
        result = Pipeline(name=wf_path.stem, jobs=result)
    if not isinstance(result, Pipeline):
        raise DefinitionError(
            "Workflow must return/define a Pipeline or a List[Job]. "
            "Define workflow(), PIPELINE = wf(...) or JOBS = [Job, ...]."
        )
    if result.source is None:
        result.source = str(wf_path)

    validate_pipeline(result)
    return result


def load_pipeline(path: str | Path) -> Pipeline:
    """Load a pipeline from a .yml/.yaml or .py file."""
    suffix = Path(path).suffix.lower()
    if suffix in (".yml", ".yaml"):
        return load_yaml(path)
    if suffix == ".py":
        return load_python(path)
    raise DefinitionError(f"Unsupported pipeline file type '{suffix}' (expected .yml, .yaml or .py)")
