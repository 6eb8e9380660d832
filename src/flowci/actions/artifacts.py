# actions/artifacts.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, List, Mapping

from ..cache import resolve_globs
from ..errors import CIError
from ..ui.console import get_console
from . import register
from .base import ActionOutcome, as_list

logger = logging.getLogger(__name__)

_IF_NO_FILES = ("warn", "error", "ignore")


def _common_root(paths: List[Path]) -> Path:
    """Least common ancestor, so `path: dist/` stores `app.js`, not `dist/app.js`."""
    if len(paths) == 1:
        p = paths[0]
        return p if p.is_dir() else p.parent
    return Path(os.path.commonpath([str(p if p.is_dir() else p.parent) for p in paths]))


@register
class UploadArtifact:
    name = "actions/upload-artifact"

    def run(self, params: Mapping[str, Any], ctx) -> ActionOutcome:
        name = str(params.get("name") or "artifact")
        patterns = as_list(params.get("path"))
        mode = str(params.get("if-no-files-found") or "warn").lower()
        if mode not in _IF_NO_FILES:
            raise CIError(
                kind="invalid_params",
                job=ctx.job,
                step=ctx.step_name,
                message=f"if-no-files-found must be one of {', '.join(_IF_NO_FILES)}, got '{mode}'",
                details={},
            )
        retention = int(params.get("retention-days") or 0) or None

        found = [p.resolve() for p in resolve_globs(ctx.workdir, patterns)]
        if not found:
            msg = f"no files found for artifact '{name}' with path {patterns}"
            if mode == "error":
                raise CIError(kind="no_files", job=ctx.job, step=ctx.step_name, message=msg, details={})
            if mode == "warn":
                get_console().print_warning(f"[{ctx.job}] {msg}")
            return ActionOutcome()

        base = _common_root(found)
        art = ctx.resources.artifacts.publish(
            name,
            ctx.run.run_id,
            found,
            producer=ctx.job,
            base=base,
            retention_days=retention,
        )
        get_console().print_info(f"[{ctx.job}] ARTIFACT: uploaded {name} ({art.files} files)")
        return ActionOutcome(outputs={"artifact-name": art.name, "artifact-files": str(art.files)})


@register
class DownloadArtifact:
    name = "actions/download-artifact"

    def run(self, params: Mapping[str, Any], ctx) -> ActionOutcome:
        name = str(params.get("name") or "artifact")
        dest = Path(str(params.get("path") or ".")).expanduser()
        if not dest.is_absolute():
            dest = ctx.workdir / dest

        # ArtifactNotFoundError propagates and fails the job
        art = ctx.resources.artifacts.fetch(name, ctx.run.run_id)
        restored = art.extract_to(dest)
        logger.info("artifact %s: %d files -> %s", name, len(restored), dest)
        return ActionOutcome(outputs={"download-path": str(dest.resolve())})
