# git.py
# Small, focused wrapper around the Git CLI.
# Every git invocation in flowci goes through _git(); nothing else shells out to git.

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    pass


def _git(args: list[str], cwd: str | Path | None = None) -> str:
    """
    Execute a git command and return its stripped stdout.

    Raises:
        GitError: git is missing or exited non-zero
    """
    try:
        out = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            capture_output=True,
            check=True,
        )
    except FileNotFoundError as e:
        raise GitError("git is not installed") from e
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    return out.stdout.strip()


def repo_root(cwd: str | Path | None = None) -> Path:
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: str | Path | None = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def current_branch(cwd: str | Path | None = None) -> str:
    """Branch name, or the short sha when HEAD is detached."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    if name == "HEAD":
        return _git(["rev-parse", "--short", "HEAD"], cwd)
    return name


def is_dirty(cwd: str | Path | None = None) -> bool:
    """Modified, staged or untracked files present."""
    return _git(["status", "--porcelain"], cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: str | Path | None = None) -> List[str]:
    """Paths (relative to the repo root) changed between two refs."""
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd)
    return out.splitlines() if out else []


def merge_base(with_ref: str = "origin/main", cwd: str | Path | None = None) -> str:
    return _git(["merge-base", "HEAD", with_ref], cwd)


def get_remote_url(remote: str = "origin", cwd: str | Path | None = None) -> Optional[str]:
    try:
        return _git(["remote", "get-url", remote], cwd) or None
    except GitError:
        return None


_SLUG_RE = re.compile(r"[:/]([^/:]+/[^/]+?)(?:\.git)?/?$")


def repository_slug(url: str | None) -> Optional[str]:
    """
    'git@github.com:owner/repo.git' / 'https://github.com/owner/repo' -> 'owner/repo'
    """
    if not url:
        return None
    m = _SLUG_RE.search(url.strip())
    return m.group(1) if m else None


def working_changes(compare_ref: str = "origin/main", cwd: str | Path | None = None) -> Tuple[Optional[str], List[str]]:
    """
    Files that changed for a local run.

    Returns:
      (head, changed):
        head    - HEAD sha when the tree is clean, None when dirty
        changed - dirty tree: staged + unstaged + untracked files;
                  clean tree: diff against merge-base(compare_ref), falling
                  back to HEAD~1, then to every tracked file (first commit)
    """
    root = repo_root(cwd)

    if is_dirty(root):
        files = set()
        for args in (
            ["diff", "--name-only"],
            ["diff", "--name-only", "--cached"],
            ["ls-files", "--others", "--exclude-standard"],
        ):
            out = _git(args, root)
            if out:
                files.update(out.splitlines())
        return None, sorted(files)

    head = head_sha(root)
    try:
        base = merge_base(compare_ref, root)
    except GitError:
        # no remote configured, unrelated histories...
        logger.debug("no merge-base with %s, comparing against HEAD~1", compare_ref)
        base = "HEAD~1"
    try:
        return head, changed_files(base, "HEAD", root)
    except GitError:
        # first commit: everything tracked counts as changed
        tracked = _git(["ls-files"], root)
        return head, tracked.splitlines() if tracked else []
