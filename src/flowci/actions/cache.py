# actions/cache.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Mapping

from ..cache import CacheHit
from ..errors import CIError
from ..ui.console import get_console
from . import register
from .base import ActionOutcome, as_bool, as_list, require

logger = logging.getLogger(__name__)


def _existing(paths: List[str], workspace: Path) -> List[str]:
    out: List[str] = []
    for p in paths:
        full = Path(p).expanduser()
        if not full.is_absolute():
            full = workspace / full
        if full.exists():
            out.append(p)
    return out


@register
class Cache:
    """
    Restore `path` from the cache store at this step; save it when the job
    finishes successfully and the primary key was not an exact hit.

    Inputs: key, path, restore-keys, fail-on-cache-miss, lookup-only
    Outputs: cache-hit ("true" only on an exact primary-key hit), cache-matched-key
    """
    name = "actions/cache"

    def run(self, params: Mapping[str, Any], ctx) -> ActionOutcome:
        key = require(params, "key", ctx)
        paths = as_list(params.get("path"))
        if not paths:
            require(params, "path", ctx)
        restore_keys = as_list(params.get("restore-keys"))
        console = get_console()

        store = ctx.resources.cache
        hit: CacheHit = store.restore(key, restore_keys)
        if hit.hit:
            console.print_cache_hit(ctx.job, f"{hit.reason}: {hit.matched_key}")
            if not as_bool(params.get("lookup-only")) and hit.entry is not None:
                restored = hit.entry.extract_to(ctx.workspace)
                logger.debug("cache %s: restored %d files", hit.matched_key, len(restored))
        else:
            console.print_cache_miss(ctx.job)
            if as_bool(params.get("fail-on-cache-miss")):
                raise CIError(
                    kind="cache_miss",
                    job=ctx.job,
                    step=ctx.step_name,
                    message=f"no cache entry for key '{key}'",
                    details={"restore-keys": ", ".join(restore_keys) or "-"},
                )

        if not hit.exact:
            ctx.resources.add_post_hook(f"Post {ctx.step_name}", _save_hook(key, paths))

        return ActionOutcome(outputs={
            "cache-hit": "true" if hit.exact else "false",
            "cache-matched-key": hit.matched_key or "",
        })


def _save_hook(key: str, paths: List[str]):
    def save(ctx) -> None:
        present = _existing(paths, ctx.workspace)
        if not present:
            logger.warning("cache %s not saved: none of %s exist", key, paths)
            return
        entry = ctx.resources.cache.put(key, present, base=ctx.workspace)
        get_console().print_cache_saved(ctx.job, entry.key)

    return save
