# actions/checkout.py
from __future__ import annotations

import logging
from typing import Any, Mapping

from ..errors import CIError
from . import register
from .base import ActionOutcome, check_tool_available, run_tool

logger = logging.getLogger(__name__)


@register
class Checkout:
    """
    The workspace already is the checkout. This action only verifies it
    exists and, when `ref` is given, switches it to that ref with git.
    """
    name = "actions/checkout"

    def run(self, params: Mapping[str, Any], ctx) -> ActionOutcome:
        if not ctx.workspace.is_dir():
            raise CIError(
                kind="workspace_missing",
                job=ctx.job,
                step=ctx.step_name,
                message=f"workspace not found: {ctx.workspace}",
                details={},
            )

        ref = str(params.get("ref") or "").strip()
        if ref:
            check_tool_available("git", ctx)
            run_tool(["git", "-C", str(ctx.workspace), "checkout", "--quiet", ref], ctx)
            sha = run_tool(["git", "-C", str(ctx.workspace), "rev-parse", "HEAD"], ctx).stdout.strip()
        else:
            sha = ctx.run.sha

        logger.debug("checkout: workspace=%s ref=%s", ctx.workspace, ref or ctx.run.ref)
        return ActionOutcome(outputs={"ref": ref or ctx.run.ref, "commit": sha})
