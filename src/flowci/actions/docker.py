# actions/docker.py
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from ..errors import CIError
from ..ui.console import get_console
from . import register
from .base import ActionOutcome, as_bool, as_lines, as_list, check_tool_available, require, run_tool

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Image lifecycle (per job)
# ---------------------------------------------------------------------

class ImageState(str, Enum):
    BUILT = "built"
    SCANNED = "scanned"
    PUSHED = "pushed"


@dataclass
class ImageRecord:
    tags: FrozenSet[str]
    state: ImageState


class ImageLifecycle:
    """
    Tracks images built inside one job: Built -> Scanned -> Pushed.

    An image is identified by the tag set it was built with; scanning or
    pushing any one of those tags refers to the same image.
    """

    STATE_KEY = "docker.images"

    def __init__(self) -> None:
        self._records: List[ImageRecord] = []

    @classmethod
    def of(cls, ctx) -> ImageLifecycle:
        return ctx.resources.state.setdefault(cls.STATE_KEY, cls())

    def find(self, tags: List[str]) -> Optional[ImageRecord]:
        wanted = set(tags)
        for rec in reversed(self._records):
            if rec.tags & wanted:
                return rec
        return None

    def state_of(self, tag: str) -> Optional[ImageState]:
        rec = self.find([tag])
        return rec.state if rec else None

    def built(self, tags: List[str]) -> ImageRecord:
        wanted = frozenset(tags)
        # a rebuild replaces any record sharing a tag
        self._records = [r for r in self._records if not (r.tags & wanted)]
        rec = ImageRecord(wanted, ImageState.BUILT)
        self._records.append(rec)
        return rec

    def scanned(self, tag: str) -> bool:
        rec = self.find([tag])
        if rec is None:
            return False
        if rec.state == ImageState.BUILT:
            rec.state = ImageState.SCANNED
        return True

    def pushed(self, rec: ImageRecord) -> None:
        rec.state = ImageState.PUSHED


# ---------------------------------------------------------------------
# docker/login-action
# ---------------------------------------------------------------------

@register
class Login:
    name = "docker/login-action"

    def run(self, params: Mapping[str, Any], ctx) -> ActionOutcome:
        check_tool_available("docker", ctx)
        registry = str(params.get("registry") or "docker.io")
        username = require(params, "username", ctx)
        password = require(params, "password", ctx)

        # password only ever travels over stdin
        res = run_tool(
            ["docker", "login", registry, "--username", username, "--password-stdin"],
            ctx,
            stdin=password,
        )
        return ActionOutcome(stdout=res.stdout, stderr=res.stderr)


# ---------------------------------------------------------------------
# docker/metadata-action
# ---------------------------------------------------------------------

_TAG_INVALID = re.compile(r"[^A-Za-z0-9_.-]")


def sanitize_tag(tag: str) -> str:
    tag = _TAG_INVALID.sub("-", tag)
    return tag.lstrip(".-")[:128]


def _parse_tag_rule(rule: str) -> Dict[str, str]:
    """'type=sha,format=long' -> {'type': 'sha', 'format': 'long'}; bare 'latest' -> raw."""
    if "=" not in rule:
        return {"type": "raw", "value": rule}
    attrs: Dict[str, str] = {}
    for part in rule.split(","):
        k, _, v = part.partition("=")
        attrs[k.strip()] = v.strip()
    return attrs


def compute_tags(rules: List[str], *, sha: str, ref: str, event: str) -> List[str]:
    """Resolve metadata-action tag rules against the run's git facts."""
    tags: List[str] = []
    for rule in rules:
        attrs = _parse_tag_rule(rule)
        if attrs.get("enable", "true").lower() == "false":
            continue
        kind = attrs.get("type", "raw")
        prefix, suffix = attrs.get("prefix"), attrs.get("suffix", "")

        if kind == "sha":
            value = sha if attrs.get("format") == "long" else sha[:7]
            tag = f"{'sha-' if prefix is None else prefix}{value}{suffix}"
        elif kind == "ref":
            ev = attrs.get("event", "branch")
            if ev == "branch" and ref.startswith("refs/heads/"):
                value = ref[len("refs/heads/"):]
            elif ev == "tag" and ref.startswith("refs/tags/"):
                value = ref[len("refs/tags/"):]
            elif ev == "pr" and ref.startswith("refs/pull/"):
                value = "pr-" + ref.split("/")[2]
            else:
                continue
            tag = f"{prefix or ''}{value}{suffix}"
        elif kind == "raw":
            value = attrs.get("value", "")
            if not value:
                continue
            tag = f"{prefix or ''}{value}{suffix}"
        else:
            raise ValueError(f"unsupported tag type '{kind}' in '{rule}'")

        tag = sanitize_tag(tag)
        if tag and tag not in tags:
            tags.append(tag)
    return tags


@register
class Metadata:
    name = "docker/metadata-action"

    def run(self, params: Mapping[str, Any], ctx) -> ActionOutcome:
        images = as_list(params.get("images"))
        if not images:
            require(params, "images", ctx)
        rules = as_lines(params.get("tags")) or ["type=sha"]

        run = ctx.run
        try:
            tags = compute_tags(rules, sha=run.sha, ref=run.ref, event=run.event)
        except ValueError as e:
            raise CIError(kind="invalid_params", job=ctx.job, step=ctx.step_name, message=str(e), details={})

        full_tags = [f"{image.lower()}:{tag}" for image in images for tag in tags]
        labels = {
            "org.opencontainers.image.title": run.repository.split("/")[-1],
            "org.opencontainers.image.source": f"https://github.com/{run.repository}",
            "org.opencontainers.image.version": tags[0] if tags else "",
            "org.opencontainers.image.created": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "org.opencontainers.image.revision": run.sha,
        }
        for extra in as_lines(params.get("labels")):
            k, _, v = extra.partition("=")
            labels[k.strip()] = v.strip()

        return ActionOutcome(outputs={
            "tags": "\n".join(full_tags),
            "labels": "\n".join(f"{k}={v}" for k, v in labels.items()),
            "version": tags[0] if tags else "",
        })


# ---------------------------------------------------------------------
# docker/build-push-action
# ---------------------------------------------------------------------

@register
class BuildPush:
    """
    `push: false` builds and records the image as Built. `push: true` pushes
    the image already built (and ideally scanned) in this job without a
    rebuild; if no matching image exists yet it is built first.
    """
    name = "docker/build-push-action"

    def _build(self, params: Mapping[str, Any], tags: List[str], ctx) -> str:
        buildx = bool(ctx.resources.state.get("buildx"))
        cmd = ["docker", "buildx", "build"] if buildx else ["docker", "build"]
        if params.get("file"):
            cmd.extend(["--file", str(params["file"])])
        for tag in tags:
            cmd.extend(["--tag", tag])
        for label in as_lines(params.get("labels")):
            cmd.extend(["--label", label])
        for arg in as_lines(params.get("build-args")):
            cmd.extend(["--build-arg", arg])
        if buildx and as_bool(params.get("load"), default=True):
            cmd.append("--load")
        cmd.append(str(params.get("context") or "."))

        res = run_tool(cmd, ctx)
        ImageLifecycle.of(ctx).built(tags)
        logger.info("image built: %s", ", ".join(tags))
        return res.stdout

    def run(self, params: Mapping[str, Any], ctx) -> ActionOutcome:
        check_tool_available("docker", ctx)
        tags = as_list(params.get("tags"))
        push = as_bool(params.get("push"))
        lifecycle = ImageLifecycle.of(ctx)
        stdout = ""

        if not push:
            stdout = self._build(params, tags, ctx)
            return ActionOutcome(outputs={"tags": "\n".join(tags), "pushed": "false"}, stdout=stdout)

        if not tags:
            require(params, "tags", ctx)

        rec = lifecycle.find(tags)
        if rec is not None and rec.state == ImageState.PUSHED:
            raise CIError(
                kind="image_already_pushed",
                job=ctx.job,
                step=ctx.step_name,
                message=f"image {sorted(rec.tags)[0]} was already pushed in this job",
                details={"tags": ", ".join(sorted(rec.tags))},
            )
        if rec is None:
            stdout = self._build(params, tags, ctx)
            rec = lifecycle.find(tags)
        elif rec.state == ImageState.BUILT:
            get_console().print_warning(f"[{ctx.job}] pushing image that was not scanned: {', '.join(tags)}")

        for tag in tags:
            stdout += run_tool(["docker", "push", tag], ctx).stdout
        lifecycle.pushed(rec)
        logger.info("image pushed: %s", ", ".join(tags))
        return ActionOutcome(outputs={"tags": "\n".join(tags), "pushed": "true"}, stdout=stdout)
