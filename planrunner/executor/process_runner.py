"""Run child processes with a deadline and a cancellation token.

Used by every step that shells out (commands, tests, git, external tools).
The process is polled in short slices so that both the deadline and the
cancel event are observed while it runs; either one kills the whole
process group.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from planrunner.errors import ExecutionCancelled, StepExecutionFailure, StepTimeout

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _kill(proc: subprocess.Popen) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError) as e:
        logger.debug(f"Kill of pid {proc.pid} skipped: {e}")


def run_process(
    args: Union[str, list[str]],
    *,
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ProcessResult:
    """Run a process to completion and capture its output.

    A string runs through the platform shell; a list runs as argv.

    Raises:
        StepTimeout: the deadline passed (process killed)
        ExecutionCancelled: cancel_event was set (process killed)
        StepExecutionFailure: the executable could not be started (terminal)
    """
    shell = isinstance(args, str)
    try:
        proc = subprocess.Popen(
            args,
            shell=shell,
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=(os.name == "posix"),
        )
    except FileNotFoundError as e:
        raise StepExecutionFailure(f"Executable not found: {e.filename or args}", retryable=False)
    except OSError as e:
        raise StepExecutionFailure(f"Failed to start process: {e}", retryable=False)

    deadline = time.monotonic() + timeout if timeout is not None else None
    label = args if shell else " ".join(args)

    while True:
        try:
            stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
            return ProcessResult(proc.returncode, stdout or "", stderr or "")
        except subprocess.TimeoutExpired:
            pass

        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Killing cancelled process {proc.pid}: {label}")
            _kill(proc)
            proc.communicate()
            raise ExecutionCancelled()

        if deadline is not None and time.monotonic() >= deadline:
            logger.warning(f"Killing process {proc.pid} after {timeout:.1f}s: {label}")
            _kill(proc)
            proc.communicate()
            raise StepTimeout(f"Command timed out after {timeout:.1f}s: {label}")
