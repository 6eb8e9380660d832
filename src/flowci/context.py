"""Immutable execution contexts and the expression scope built from them.

Nothing here is global: the scheduler builds one ``RunContext`` per run,
derives a per-job copy carrying that job's upstream outputs, and the job
runner hands a fresh ``StepContext`` to every step.
"""

from __future__ import annotations

import json
import platform
import re
import tempfile
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from .artifacts import ArtifactRegistry
from .cache import CacheStore, hash_files
from .errors import UnknownVariableError
from .expr import loose_equals, to_text

MASK = "***"


class Secrets(Mapping[str, str]):
    """Opaque secret values. Readable by key, never shown by repr/str."""

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Dict[str, str] = {str(k): str(v) for k, v in (values or {}).items()}

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Secrets({len(self)} redacted)"

    __str__ = __repr__

    def mask(self, text: str) -> str:
        """Replace every secret value (and each line of multi-line values) with ***."""
        if not text or not self._values:
            return text
        needles: List[str] = []
        for value in self._values.values():
            if not value:
                continue
            needles.append(value)
            needles.extend(line for line in value.splitlines() if len(line.strip()) >= 3)
        for needle in sorted(set(needles), key=len, reverse=True):
            text = text.replace(needle, MASK)
        return text


def _frozen(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class RunContext:
    """Run-wide facts visible to every job: event, ref, sha, env, secrets."""
    run_id: str
    event: str = "push"
    branch: str = "main"
    sha: str = "0" * 40
    repository: str = "local/workspace"
    actor: str = "flowci"
    workspace: Path = field(default_factory=Path.cwd)
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: Secrets = field(default_factory=Secrets)
    needs: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "workspace", Path(self.workspace).resolve())
        object.__setattr__(self, "env", _frozen(self.env))
        object.__setattr__(self, "needs", _frozen(self.needs))
        if not isinstance(self.secrets, Secrets):
            object.__setattr__(self, "secrets", Secrets(self.secrets))

    @property
    def ref(self) -> str:
        if self.branch.startswith("refs/"):
            return self.branch
        return f"refs/heads/{self.branch}"

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.branch

    @property
    def github(self) -> Mapping[str, Any]:
        return MappingProxyType({
            "ref": self.ref,
            "ref_name": self.ref_name,
            "sha": self.sha,
            "repository": self.repository,
            "repository_owner": self.repository.split("/", 1)[0],
            "actor": self.actor,
            "event_name": self.event,
            "workspace": str(self.workspace),
            "run_id": self.run_id,
        })

    def default_env(self) -> Dict[str, str]:
        """Variables every command sees, GitHub-compatible names."""
        return {
            "CI": "true",
            "GITHUB_ACTIONS": "true",
            "GITHUB_REF": self.ref,
            "GITHUB_REF_NAME": self.ref_name,
            "GITHUB_SHA": self.sha,
            "GITHUB_REPOSITORY": self.repository,
            "GITHUB_ACTOR": self.actor,
            "GITHUB_EVENT_NAME": self.event,
            "GITHUB_WORKSPACE": str(self.workspace),
            "GITHUB_RUN_ID": self.run_id,
        }

    def with_needs(self, needs: Mapping[str, Mapping[str, Any]]) -> RunContext:
        return replace(self, needs=needs)

    def scope(self, **kwargs: Any) -> ExpressionScope:
        return ExpressionScope(self, **kwargs)


PostHook = Callable[["StepContext"], None]


@dataclass
class JobResources:
    """Shared stores plus job-scoped mutable state (post hooks, action state)."""
    cache: CacheStore
    artifacts: ArtifactRegistry
    post_hooks: List[tuple[str, PostHook]] = field(default_factory=list)
    state: Dict[str, Any] = field(default_factory=dict)

    def add_post_hook(self, name: str, hook: PostHook) -> None:
        self.post_hooks.append((name, hook))


@dataclass(frozen=True)
class StepContext:
    """Everything a single step may read. A new instance is built per step."""
    run: RunContext
    job: str
    resources: JobResources
    env: Mapping[str, str] = field(default_factory=dict)
    steps: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    job_status: str = "success"
    step_id: str | None = None
    step_name: str = ""
    cwd: Path | None = None
    timeout: float | None = None
    grace_period: float = 10.0
    cancel_event: threading.Event | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", _frozen(self.env))
        object.__setattr__(self, "steps", _frozen(self.steps))

    @property
    def workspace(self) -> Path:
        return self.run.workspace

    @property
    def workdir(self) -> Path:
        if self.cwd is None:
            return self.workspace
        p = Path(self.cwd)
        return p if p.is_absolute() else (self.workspace / p).resolve()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def mask(self, text: str) -> str:
        return self.run.secrets.mask(text)

    def scope(self) -> ExpressionScope:
        return ExpressionScope(self.run, env=self.env, steps=self.steps, job_status=self.job_status)


# ---------------------------------------------------------------------
# Expression scope
# ---------------------------------------------------------------------

_FORMAT_RE = re.compile(r"\{\{|\}\}|\{(\d+)\}")


def _format(fmt: Any, *args: Any) -> str:
    def sub(m: re.Match) -> str:
        if m.group(0) == "{{":
            return "{"
        if m.group(0) == "}}":
            return "}"
        idx = int(m.group(1))
        return to_text(args[idx]) if idx < len(args) else ""

    return _FORMAT_RE.sub(sub, to_text(fmt))


class ExpressionScope:
    """Resolves root names and functions for guard/template evaluation."""

    def __init__(
        self,
        run: RunContext,
        *,
        env: Optional[Mapping[str, str]] = None,
        steps: Optional[Mapping[str, Mapping[str, Any]]] = None,
        job_status: str = "success",
    ):
        self.run = run
        self.env = dict(run.env)
        self.env.update(env or {})
        self.steps = steps or {}
        self.job_status = job_status

    def resolve(self, name: str) -> Any:
        run = self.run
        roots: Dict[str, Callable[[], Any]] = {
            "github": lambda: run.github,
            "env": lambda: self.env,
            "secrets": lambda: run.secrets,
            "needs": lambda: run.needs,
            "steps": lambda: self.steps,
            "job": lambda: {"status": self.job_status},
            "runner": lambda: {"os": platform.system(), "temp": tempfile.gettempdir()},
            # shorthands
            "branch": lambda: run.ref_name,
            "event": lambda: run.event,
            "ref": lambda: run.ref,
            "sha": lambda: run.sha,
        }
        if name not in roots:
            raise UnknownVariableError(name)
        return roots[name]()

    def call(self, name: str, args: Sequence[Any]) -> Any:
        if name == "always":
            return True
        if name == "success":
            return self.job_status == "success"
        if name == "failure":
            return self.job_status == "failure"
        if name == "cancelled":
            return self.job_status == "cancelled"
        if name == "contains":
            search, item = (list(args) + [None, None])[:2]
            if isinstance(search, (list, tuple)):
                return any(loose_equals(v, item) for v in search)
            return to_text(item).casefold() in to_text(search).casefold()
        if name == "startsWith":
            return to_text(args[0]).casefold().startswith(to_text(args[1]).casefold())
        if name == "endsWith":
            return to_text(args[0]).casefold().endswith(to_text(args[1]).casefold())
        if name == "format":
            return _format(*args)
        if name == "join":
            sep = to_text(args[1]) if len(args) > 1 else ","
            items = args[0] if isinstance(args[0], (list, tuple)) else [args[0]]
            return sep.join(to_text(v) for v in items)
        if name == "toJSON":
            return json.dumps(args[0], indent=2, sort_keys=True, default=str)
        if name == "fromJSON":
            return json.loads(to_text(args[0]))
        if name == "hashFiles":
            return hash_files(self.run.workspace, [to_text(a) for a in args])
        raise UnknownVariableError(f"{name}()")
