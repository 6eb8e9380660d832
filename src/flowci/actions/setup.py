# actions/setup.py
from __future__ import annotations

import logging
import re
from typing import Any, Mapping

from ..errors import CIError
from . import register
from .base import ActionOutcome, check_tool_available, run_tool

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"v?(\d+(?:\.\d+)*)")


def version_matches(installed: str, wanted: str) -> bool:
    """'20' matches v20.11.1, '20.11' matches 20.11.x, 'lts/*' / '*' match anything."""
    wanted = wanted.strip()
    if not wanted or wanted in ("*", "latest", "node") or wanted.startswith("lts"):
        return True
    m_have = _VERSION_RE.search(installed)
    m_want = _VERSION_RE.search(wanted.lstrip("^~>="))
    if not m_have or not m_want:
        return False
    have = m_have.group(1).split(".")
    want = m_want.group(1).split(".")
    return have[: len(want)] == want


@register
class SetupNode:
    """Verifies the host node matches `node-version`; nothing is installed."""
    name = "actions/setup-node"

    def run(self, params: Mapping[str, Any], ctx) -> ActionOutcome:
        check_tool_available("node", ctx)
        installed = run_tool(["node", "--version"], ctx).stdout.strip()

        wanted = str(params.get("node-version") or "")
        if wanted and not version_matches(installed, wanted):
            raise CIError(
                kind="version_mismatch",
                job=ctx.job,
                step=ctx.step_name,
                message=f"node {installed} does not satisfy node-version '{wanted}'",
                details={"hint": "Install the requested Node.js version or adjust node-version."},
            )

        if params.get("cache"):
            # package manager caching is done with an explicit actions/cache step
            logger.debug("setup-node: ignoring cache=%s", params.get("cache"))

        return ActionOutcome(outputs={"node-version": installed})


@register
class SetupBuildx:
    name = "docker/setup-buildx-action"

    def run(self, params: Mapping[str, Any], ctx) -> ActionOutcome:
        check_tool_available("docker", ctx)
        res = run_tool(["docker", "buildx", "version"], ctx, check=False)
        ctx.resources.state["buildx"] = res.ok
        if not res.ok:
            logger.warning("docker buildx not available, builds fall back to 'docker build'")
        return ActionOutcome(outputs={"name": "default" if res.ok else ""}, stdout=res.stdout)
