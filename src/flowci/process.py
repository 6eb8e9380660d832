# process.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

# exit code reported for a command killed by its timeout (same as coreutils `timeout`)
TIMEOUT_EXIT_CODE = 124
OUTPUT_TAIL = 64_000


@dataclass
class ProcessResult:
    args: Sequence[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


def _stop(proc: subprocess.Popen, grace_period: float) -> tuple[str, str]:
    """SIGTERM the process group, then SIGKILL if it outlives the grace period."""
    _signal_group(proc, signal.SIGTERM)
    try:
        return proc.communicate(timeout=max(grace_period, 0.0))
    except subprocess.TimeoutExpired:
        logger.warning("pid %d ignored SIGTERM for %.1fs, killing", proc.pid, grace_period)
        _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        return proc.communicate()


def run_process(
    args: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Optional[Mapping[str, str]] = None,
    stdin: str | None = None,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
    grace_period: float = 10.0,
    poll_interval: float = 0.1,
    mask: Callable[[str], str] | None = None,
) -> ProcessResult:
    """
    Run a command to completion, capturing stdout/stderr.

    While it runs, the cancel event and the timeout are checked every
    `poll_interval` seconds. Either one stops the whole process group:
    SIGTERM first, SIGKILL after `grace_period`.

    Args:
        args: argv list (no shell interpretation here)
        stdin: text written to the process' stdin, e.g. a registry password
        mask: applied to captured output before it is returned

    Returns:
        ProcessResult. Never raises for non-zero exits; raises OSError if
        the executable cannot be started.
    """
    started = time.monotonic()
    deadline = started + timeout if timeout else None
    logger.debug("exec %s (cwd=%s)", list(args)[:3], cwd)

    proc = subprocess.Popen(
        list(args),
        cwd=str(cwd) if cwd is not None else None,
        env=dict(env) if env is not None else None,
        stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=True,
    )

    pending_input = stdin
    timed_out = cancelled = False
    while True:
        wait = poll_interval
        if deadline is not None:
            wait = max(0.0, min(wait, deadline - time.monotonic()))
        try:
            # input may only be sent on the first communicate() call
            stdout, stderr = proc.communicate(input=pending_input, timeout=wait)
            break
        except subprocess.TimeoutExpired:
            pending_input = None
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            stdout, stderr = _stop(proc, grace_period)
            break
        if deadline is not None and time.monotonic() >= deadline:
            timed_out = True
            stdout, stderr = _stop(proc, grace_period)
            break

    exit_code = proc.returncode
    if timed_out:
        exit_code = TIMEOUT_EXIT_CODE

    stdout = (stdout or "")[-OUTPUT_TAIL:]
    stderr = (stderr or "")[-OUTPUT_TAIL:]
    if mask is not None:
        stdout, stderr = mask(stdout), mask(stderr)

    return ProcessResult(
        args=list(args),
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration=time.monotonic() - started,
        timed_out=timed_out,
        cancelled=cancelled,
    )
