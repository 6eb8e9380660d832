# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Set

from .errors import CycleError, DefinitionError, UnknownJobError
from .model import Job, JobStatus

_BROKEN = (JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED)
_WAITING = (JobStatus.PENDING, JobStatus.BLOCKED)


class DependencyGraph:
    """
    DAG of jobs keyed by their declared `needs`.

    Edges point from a dependency to its dependents (dep must run BEFORE job).
    Declaration order is kept and used as the tie-break everywhere.
    """

    def __init__(self) -> None:
        self._order: List[str] = []
        self._needs: Dict[str, List[str]] = {}
        self._dependents: Dict[str, List[str]] = {}

    @classmethod
    def from_jobs(cls, jobs: Iterable[Job]) -> DependencyGraph:
        graph = cls()
        for job in jobs:
            graph.add_job(job.id, job.needs)
        graph.validate()
        return graph

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_job(self, job_id: str, depends_on: Iterable[str] = ()) -> None:
        """
        Register a job. Dependencies may be declared before or after the job
        itself; dangling names are reported by validate().

        Raises:
            DefinitionError: duplicate job id
            CycleError: the new edges would close a cycle
        """
        if job_id in self._needs:
            raise DefinitionError(f"Duplicate job id: {job_id}")

        deps: List[str] = []
        for d in depends_on:
            if d not in deps:
                deps.append(d)

        for d in deps:
            if d == job_id:
                raise CycleError(job_id, [job_id, job_id])
            path = self._path_between(d, job_id)
            if path is not None:
                raise CycleError(job_id, [job_id, *path])

        self._order.append(job_id)
        self._needs[job_id] = deps
        self._dependents.setdefault(job_id, [])
        for d in deps:
            self._dependents.setdefault(d, []).append(job_id)

    def _path_between(self, start: str, target: str) -> List[str] | None:
        """Follow `needs` edges from start; return the path if target is reachable."""
        q = deque([[start]])
        seen: Set[str] = {start}
        while q:
            path = q.popleft()
            node = path[-1]
            if node == target:
                return path
            for nxt in self._needs.get(node, []):
                if nxt not in seen:
                    seen.add(nxt)
                    q.append(path + [nxt])
        return None

    def validate(self) -> None:
        known = set(self._needs)
        for job_id in self._order:
            for d in self._needs[job_id]:
                if d not in known:
                    raise UnknownJobError(job_id, d, list(known))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def jobs(self) -> List[str]:
        return list(self._order)

    def needs(self, job_id: str) -> List[str]:
        return list(self._needs[job_id])

    def dependents(self, job_id: str) -> List[str]:
        return list(self._dependents.get(job_id, []))

    def descendants(self, job_id: str) -> List[str]:
        """All transitive dependents, in declaration order."""
        seen: Set[str] = set()
        stack = list(self._dependents.get(job_id, []))
        while stack:
            n = stack.pop()
            if n not in seen:
                seen.add(n)
                stack.extend(self._dependents.get(n, []))
        return [j for j in self._order if j in seen]

    def topological_ready(self, statuses: Mapping[str, JobStatus]) -> List[str]:
        """Waiting jobs whose dependencies all Succeeded, in declaration order."""
        ready: List[str] = []
        for job_id in self._order:
            if statuses.get(job_id) not in _WAITING:
                continue
            if all(statuses.get(d) == JobStatus.SUCCEEDED for d in self._needs[job_id]):
                ready.append(job_id)
        return ready

    def cascade_skips(self, statuses: Mapping[str, JobStatus]) -> List[str]:
        """
        Non-terminal jobs that can never run because a dependency Failed,
        was Skipped or Cancelled, propagated transitively.
        """
        view = dict(statuses)
        out: List[str] = []
        changed = True
        while changed:
            changed = False
            for job_id in self._order:
                if view.get(job_id) not in _WAITING:
                    continue
                if any(view.get(d) in _BROKEN for d in self._needs[job_id]):
                    view[job_id] = JobStatus.SKIPPED
                    out.append(job_id)
                    changed = True
        return out

    def levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Each stage could run in parallel.
        """
        indeg = {n: len(self._needs[n]) for n in self._order}
        position = {n: i for i, n in enumerate(self._order)}
        current = [n for n in self._order if indeg[n] == 0]

        levels: List[List[str]] = []
        processed = 0
        while current:
            levels.append(current)
            processed += len(current)
            nxt: List[str] = []
            for node in current:
                for child in self._dependents.get(node, []):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            current = sorted(nxt, key=position.__getitem__)

        if processed != len(indeg):
            remaining = [n for n in self._order if indeg[n] > 0]
            raise CycleError(remaining[0], remaining)

        return levels

    def order(self) -> List[str]:
        return [n for level in self.levels() for n in level]
