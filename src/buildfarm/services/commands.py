"""Subprocess execution for build steps.

Every command runs in its own session so that cancelling it reaches the
whole process group (make and everything make started), not just the
direct child.
"""

import logging
import os
import signal
import subprocess
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..constants import MAKE_CHECK_TIMEOUT, TERMINATE_GRACE_SECONDS
from ..models import StepResult

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """A command could not be started."""


@dataclass
class CommandResult:
    """Exit status and whole output (stdout and stderr interleaved)."""

    status: int
    lines: list[str] = field(default_factory=list)

    def to_step_result(self) -> StepResult:
        return StepResult(status=self.status, log=list(self.lines))


class CancelToken:
    """Tracks live processes so a watchdog can terminate them.

    Once cancelled, the token stays cancelled and any process registered
    afterwards is terminated immediately.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._procs: set[subprocess.Popen[str]] = set()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def register(self, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._procs.add(proc)
            cancelled = self.cancelled
        if cancelled:
            terminate_process_group(proc)

    def unregister(self, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._procs.discard(proc)

    def cancel(self, reason: str, grace: float = TERMINATE_GRACE_SECONDS) -> int:
        """Mark cancelled and terminate every registered process group.

        Returns:
            Number of process groups that were signalled
        """
        with self._lock:
            if self._reason is None:
                self._reason = reason
            procs = list(self._procs)
        for proc in procs:
            terminate_process_group(proc, grace)
        return len(procs)


def terminate_process_group(
    proc: subprocess.Popen[str], grace: float = TERMINATE_GRACE_SECONDS
) -> None:
    """Send SIGTERM to a process group, then SIGKILL if it is still alive.

    The process must have been started with ``start_new_session=True`` so its
    pid is also its process group id.
    """
    if proc.poll() is not None:
        return

    logger.info(f"Sending SIGTERM to process group {proc.pid}")
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return

    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process group {proc.pid} ignored SIGTERM after {grace}s, sending SIGKILL")
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        proc.wait()


def _exit_status(returncode: int) -> int:
    """Map a Popen return code to a shell-style exit status."""
    if returncode < 0:
        return 128 - returncode
    return returncode


def run_log(
    args: Sequence[str | os.PathLike[str]],
    cwd: Path,
    env: Mapping[str, str] | None = None,
    token: CancelToken | None = None,
) -> CommandResult:
    """Run a command and capture its whole output.

    Args:
        args: Command and arguments
        cwd: Working directory
        env: Complete environment for the child (defaults to ours)
        token: Cancel token the process is registered with while it runs

    Returns:
        CommandResult with exit status and output lines

    Raises:
        CommandError: If the command cannot be started
    """
    argv = [os.fspath(a) for a in args]
    logger.debug(f"Running {' '.join(argv)} in {cwd}")

    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except FileNotFoundError:
        raise CommandError(f"Command not found: {argv[0]}") from None
    except OSError as e:
        raise CommandError(f"Cannot run {argv[0]}: {e}") from e

    if token is not None:
        token.register(proc)
    try:
        output, _ = proc.communicate()
    except BaseException:
        terminate_process_group(proc)
        raise
    finally:
        if token is not None:
            token.unregister(proc)

    return CommandResult(status=_exit_status(proc.returncode), lines=output.splitlines(True))


def check_make(make: str) -> bool:
    """Return True if ``make`` is GNU make."""
    try:
        result = subprocess.run(
            [make, "-v"],
            capture_output=True,
            text=True,
            timeout=MAKE_CHECK_TIMEOUT,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0 and "GNU Make" in result.stdout
