"""Console output formatting utilities for flowci."""

from __future__ import annotations

import sys
import threading
from typing import Mapping, Optional, Sequence


class Console:
    """Centralized console output formatting.

    Jobs run on worker threads, so every line is written under a lock and
    job-scoped lines carry a ``[job]`` prefix.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Args are fixed for the life of the console; the CLI swaps in a new one.

        Args:
            debug: echo captured step output and full failure text
            quiet: print only errors, failures, the plan and final results
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False, force: bool = False) -> None:
        if self.quiet and not (err or force):
            return
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)
            stream.flush()

    def print_header(self, title: str) -> None:
        """Title line plus an underline of the same width."""
        self._out("", title, "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        pipeline: str,
        job_count: int,
        run_id: str,
    ) -> None:
        """Banner printed once, before the first job is dispatched."""
        self._out(
            "",
            "RUN STARTED",
            f"Repository: {repository}",
            f"Pipeline: {pipeline}",
            f"Run ID: {run_id}",
            f"Jobs: {job_count}",
            "",
        )

    def print_not_triggered(self, pipeline: str, event: str, branch: str) -> None:
        self._out(f"Pipeline '{pipeline}' is not triggered by {event} on {branch}; nothing to do.", force=True)

    def print_plan(self, levels: Sequence[Sequence[str]], decisions: Mapping[str, str]) -> None:
        """Print the dry-run plan: one line per job, grouped by stage."""
        self._out("", "PLAN", force=True)
        for i, level in enumerate(levels, start=1):
            self._out(f"  stage {i}:", force=True)
            for job_id in level:
                self._out(f"    {job_id} ({decisions.get(job_id, 'would run')})", force=True)

    def print_job_start(self, name: str) -> None:
        self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        self._out(f"[{job}] STEP SKIPPED: {name} ({reason})")

    def print_output(self, job: str, text: str) -> None:
        """Echo captured (already masked) step output in debug mode."""
        if not self.debug or not text:
            return
        self._out(*(f"[{job}] | {line}" for line in text.rstrip("\n").splitlines()))

    def print_success(self, name: str, duration: Optional[float] = None) -> None:
        took = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"JOB SUCCEEDED: {name}{took}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Report a failed step or job. Always printed, even when quiet.

        Outside debug mode only the first line of ``reason`` is shown; the
        full text (masked step stderr, CIError details) needs --debug.
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"  Exit code: {exit_code}")
        if hint:
            lines.append(f"  Hint: {hint}")
        if self.debug:
            lines.append(f"  Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            if error_line:
                lines.append(f"  Error: {error_line}")
        self._out(*lines, force=True)

    def print_cache_hit(self, job: str, reason: str) -> None:
        self._out(f"[{job}] CACHE: hit ({reason})")

    def print_cache_miss(self, job: str) -> None:
        self._out(f"[{job}] CACHE: miss")

    def print_cache_saved(self, job: str, key: str) -> None:
        short_key = key[:32] + "..." if len(key) > 32 else key
        self._out(f"[{job}] CACHE: saved ({short_key})")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_job_cancelled(self, name: str) -> None:
        self._out(f"JOB CANCELLED: {name}")

    def print_results(self, results: Mapping[str, str], result: str) -> None:
        """One line per job in pipeline order, then the aggregate result."""
        self._out("", "=" * 40, "RESULTS", "=" * 40, force=True)
        for job, status in results.items():
            self._out(f"  {job}: {status.upper()}", force=True)
        self._out("", f"PIPELINE: {result.upper()}", force=True)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Write an error block to stderr: title, message, indented details and
        an optional suggestion separated by a blank line.
        """
        lines = ["", f"ERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.extend(["", suggestion])
        self._out(*lines, err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)


# replaced by the CLI (debug/quiet) and by tests
_console: Optional[Console] = None


def get_console() -> Console:
    """Return the process-wide console, creating a default one on first use."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
