# artifacts.py
from __future__ import annotations

import json
import logging
import re
import shutil
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .cache import Payload, extract_snapshot, snapshot
from .errors import ArtifactNotFoundError, DuplicatePublishError

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIR = ".flowci/artifacts"
DEFAULT_RETENTION_DAYS = 90

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class Artifact:
    """A published, immutable inter-job payload."""
    name: str
    run_id: str
    producer: str | None
    path: Path
    kind: str  # "bytes" | "snapshot"
    created_at: float
    retention_days: int
    files: int = 0

    @property
    def expires_at(self) -> float:
        return self.created_at + self.retention_days * 86400

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def extract_to(self, dest: str | Path) -> List[str]:
        if self.kind != "snapshot":
            raise ValueError(f"Artifact {self.name!r} holds raw bytes, not files")
        return extract_snapshot(self.path, dest)


class ArtifactRegistry:
    """
    Per-run named artifact storage:
      root/
        <run_id>/
          <name>/
            artifact.json
            payload.blob

    (name, run_id) can be published once; later publishes fail.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR, default_retention_days: int = DEFAULT_RETENTION_DAYS):
        self.root = Path(root).resolve()
        self.default_retention_days = default_retention_days
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _dir(self, name: str, run_id: str) -> Path:
        if not _NAME_RE.match(name):
            raise ValueError(f"Invalid artifact name: {name!r}")
        if not _NAME_RE.match(run_id):
            raise ValueError(f"Invalid run id: {run_id!r}")
        return self.root / run_id / name

    def publish(
        self,
        name: str,
        run_id: str,
        payload: Payload,
        *,
        producer: str | None = None,
        base: str | Path = ".",
        retention_days: int | None = None,
    ) -> Artifact:
        """
        Publish an artifact for a run.

        Raises:
            DuplicatePublishError: (name, run_id) was already published
        """
        target = self._dir(name, run_id)
        if target.exists():
            raise DuplicatePublishError(name, run_id, self._producer_of(target))

        staging = target.parent / f".{name}.{uuid.uuid4().hex}.tmp"
        staging.mkdir(parents=True)
        try:
            blob = staging / "payload.blob"
            if isinstance(payload, (bytes, bytearray)):
                kind, files = "bytes", 0
                blob.write_bytes(bytes(payload))
            else:
                kind = "snapshot"
                paths = [payload] if isinstance(payload, (str, Path)) else list(payload)
                files = snapshot(paths, blob, base=base)

            meta = {
                "name": name,
                "run_id": run_id,
                "producer": producer,
                "kind": kind,
                "files": files,
                "created_at": time.time(),
                "retention_days": int(retention_days or self.default_retention_days),
            }
            (staging / "artifact.json").write_text(json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8")

            with self._lock:
                if target.exists():
                    raise DuplicatePublishError(name, run_id, self._producer_of(target))
                staging.rename(target)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.info("artifact published: %s (run=%s, producer=%s, files=%d)", name, run_id, producer, files)
        return self._load(target)

    def _producer_of(self, target: Path) -> str | None:
        try:
            return json.loads((target / "artifact.json").read_text(encoding="utf-8")).get("producer")
        except (OSError, ValueError):
            return None

    def _load(self, target: Path) -> Artifact:
        meta = json.loads((target / "artifact.json").read_text(encoding="utf-8"))
        return Artifact(
            name=meta["name"],
            run_id=meta["run_id"],
            producer=meta.get("producer"),
            path=target / "payload.blob",
            kind=meta.get("kind", "bytes"),
            created_at=float(meta["created_at"]),
            retention_days=int(meta.get("retention_days", DEFAULT_RETENTION_DAYS)),
            files=int(meta.get("files", 0)),
        )

    def fetch(self, name: str, run_id: str) -> Artifact:
        """
        Raises:
            ArtifactNotFoundError: nothing published under (name, run_id)
        """
        target = self._dir(name, run_id)
        if not (target / "artifact.json").exists():
            raise ArtifactNotFoundError(name, run_id)
        return self._load(target)

    def list(self, run_id: str) -> List[Artifact]:
        run_dir = self.root / run_id
        if not run_dir.is_dir():
            return []
        return [
            self._load(d)
            for d in sorted(run_dir.iterdir())
            if not d.name.startswith(".") and (d / "artifact.json").exists()
        ]

    def purge_expired(self, now: Optional[float] = None) -> List[str]:
        """Delete artifacts past their retention. Returns '<run_id>/<name>' for each removed."""
        now = time.time() if now is None else now
        removed: List[str] = []
        for run_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for art in self.list(run_dir.name):
                if art.expires_at <= now:
                    shutil.rmtree(art.path.parent, ignore_errors=True)
                    removed.append(f"{art.run_id}/{art.name}")
            if run_dir.exists() and not any(run_dir.iterdir()):
                run_dir.rmdir()
        return removed
