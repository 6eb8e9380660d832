# journal.py
from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .model import JobResult, PipelineRun

logger = logging.getLogger(__name__)


class Journal:
    """
    Append-only JSON-lines record of a run:
      {"event": "run_started", ...}
      {"event": "job_finished", "job": ..., "status": ..., "exit_code": ...}
      {"event": "run_finished", "result": ...}

    One line per record, flushed immediately, safe to call from worker threads.
    """

    def __init__(self, path: str | Path | None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, event: str, **fields: Any) -> Dict[str, Any]:
        record: Dict[str, Any] = {"event": event, "ts": time.time(), **fields}
        if self.path is None:
            return record
        line = json.dumps(record, sort_keys=True, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        return record

    # ---- typed helpers ----

    def run_started(self, run: PipelineRun, jobs: List[str], event: str, ref: str, sha: str) -> None:
        self.write("run_started", run_id=run.run_id, pipeline=run.pipeline, jobs=jobs,
                   trigger=event, ref=ref, sha=sha)

    def job_started(self, run_id: str, job: str) -> None:
        self.write("job_started", run_id=run_id, job=job)

    def job_finished(self, run_id: str, res: JobResult) -> None:
        self.write(
            "job_finished",
            run_id=run_id,
            job=res.job,
            status=res.status.value,
            exit_code=res.exit_code,
            started_at=res.started_at,
            finished_at=res.finished_at,
            duration=round(res.duration, 3),
            reason=res.reason,
            error=res.error,
            steps=[{"name": s.name, "status": s.status.value, "exit_code": s.exit_code} for s in res.steps],
            outputs=res.outputs,
        )

    def run_finished(self, run: PipelineRun) -> None:
        self.write(
            "run_finished",
            run_id=run.run_id,
            result=run.result.value if run.result else None,
            statuses={j: s.value for j, s in run.statuses.items()},
            started_at=run.started_at,
            finished_at=run.finished_at,
        )


def read_journal(path: str | Path, run_id: Optional[str] = None) -> Iterator[Dict[str, Any]]:
    """Yield records (optionally only one run's). Corrupt lines are skipped with a warning."""
    with Path(path).open(encoding="utf-8") as f:
        for n, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                rec = json.loads(line)
            except ValueError:
                logger.warning("%s:%d: skipping corrupt journal line", path, n)
                continue
            if run_id is None or rec.get("run_id") == run_id:
                yield rec
