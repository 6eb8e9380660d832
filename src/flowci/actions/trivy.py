# actions/trivy.py
from __future__ import annotations

import logging
from typing import Any, Mapping

from . import register
from .base import ActionOutcome, as_bool, as_list, check_tool_available, require, run_tool
from .docker import ImageLifecycle

logger = logging.getLogger(__name__)


def trivy_command(params: Mapping[str, Any]) -> list[str]:
    scan_type = str(params.get("scan-type") or "image")
    target = str(params.get("image-ref") if scan_type == "image" else params.get("scan-ref") or ".")
    cmd = ["trivy", scan_type, "--quiet", "--format", str(params.get("format") or "table")]
    cmd.extend(["--exit-code", str(params.get("exit-code") or "0")])
    if as_bool(params.get("ignore-unfixed")):
        cmd.append("--ignore-unfixed")
    vuln_types = as_list(params.get("vuln-type"))
    if vuln_types:
        cmd.extend(["--vuln-type", ",".join(vuln_types)])
    severities = as_list(params.get("severity"))
    if severities:
        cmd.extend(["--severity", ",".join(s.upper() for s in severities)])
    if params.get("output"):
        cmd.extend(["--output", str(params["output"])])
    cmd.append(target)
    return cmd


@register
class TrivyScan:
    """
    Runs `trivy` as an opaque scanner. A non-zero exit (findings at or above
    `severity` with `exit-code: 1`) fails the step. A clean scan of an image
    built in this job moves it to Scanned.
    """
    name = "aquasecurity/trivy-action"

    def run(self, params: Mapping[str, Any], ctx) -> ActionOutcome:
        check_tool_available("trivy", ctx)
        scan_type = str(params.get("scan-type") or "image")
        if scan_type == "image":
            require(params, "image-ref", ctx)

        res = run_tool(trivy_command(params), ctx)

        if scan_type == "image":
            ref = str(params["image-ref"])
            if not ImageLifecycle.of(ctx).scanned(ref):
                logger.info("scanned %s (not built in this job)", ref)
        return ActionOutcome(stdout=res.stdout, stderr=res.stderr)
