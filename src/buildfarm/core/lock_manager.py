"""Lock manager for per-branch run exclusion.

Uses a non-blocking ``flock`` on ``<branch>/builder.LCK`` so that the lock
disappears with the process that held it; there are no stale locks to clear.
The file content (pid, branch, start time) is for diagnostics only.
"""

import contextlib
import fcntl
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from ..constants import LOCK_FILE
from ..models import Lock

logger = logging.getLogger(__name__)

MAX_LOCK_RETRIES = 3  # Retries when the lock file is replaced under us


class LockError(Exception):
    """Error acquiring or managing lock."""


@dataclass
class LockToken:
    """An acquired branch lock.

    Attributes:
        path: Lock file path.
        fd: Open descriptor holding the flock (-1 once released).
        lock: Diagnostic record written into the file.
        released: Whether release_lock has run.
    """

    path: Path
    fd: int
    lock: Lock
    released: bool = field(default=False)


def _lock_path(branch_dir: Path) -> Path:
    """Get path to lock file."""
    return branch_dir / LOCK_FILE


def _is_pid_running(pid: int) -> bool:
    """Check if a process with given PID is running."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True


def get_current_lock(branch_dir: Path) -> Lock | None:
    """Get the diagnostic record of the current holder.

    Args:
        branch_dir: Branch directory under the build root

    Returns:
        Lock if a readable record exists and its process is alive, None otherwise
    """
    lock_path = _lock_path(branch_dir)
    if not lock_path.exists():
        return None

    try:
        lock = Lock.model_validate_json(lock_path.read_text())
    except (OSError, ValueError):
        # Empty or half-written file - treat as no lock
        return None
    # Left behind by a killed run; the flock went with it
    return lock if _is_pid_running(lock.pid) else None


def _same_file(fd: int, path: Path) -> bool:
    """Check the descriptor still refers to the file at path."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    fst = os.fstat(fd)
    return (st.st_dev, st.st_ino) == (fst.st_dev, fst.st_ino)


def acquire_lock(branch_dir: Path, branch: str, strict: bool = False) -> LockToken | None:
    """Acquire the branch lock without blocking.

    Args:
        branch_dir: Branch directory under the build root (created if needed)
        branch: Branch being built
        strict: Raise instead of returning None when the lock is busy

    Returns:
        LockToken if acquired, None if another process holds the lock

    Raises:
        LockError: If strict and the lock is busy, or the lock file cannot be used
    """
    branch_dir.mkdir(parents=True, exist_ok=True)
    lock_path = _lock_path(branch_dir)
    lock = Lock(pid=os.getpid(), branch=branch)

    for _ in range(MAX_LOCK_RETRIES):
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as e:
            raise LockError(f"Cannot open lock file {lock_path}: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            existing = get_current_lock(branch_dir)
            holder = f" (PID {existing.pid})" if existing else ""
            if strict:
                raise LockError(f"Another process holds the lock on {branch_dir}{holder}") from None
            logger.info(f"Another process holds the lock on {branch_dir}{holder}")
            return None

        if not _same_file(fd, lock_path):
            # The previous holder unlinked the file while we were opening it
            os.close(fd)
            continue

        os.ftruncate(fd, 0)
        os.write(fd, lock.model_dump_json(indent=2).encode())
        return LockToken(path=lock_path, fd=fd, lock=lock)

    raise LockError("Failed to acquire lock after multiple attempts")


def release_lock(token: LockToken | None) -> None:
    """Release a lock. Safe to call more than once.

    Args:
        token: Token returned by acquire_lock (None is ignored)
    """
    if token is None or token.released:
        return
    token.released = True
    if token.lock.pid != os.getpid():
        # Inherited by a child; the holder releases it
        return
    with contextlib.suppress(FileNotFoundError):
        token.path.unlink()
    with contextlib.suppress(OSError):
        os.close(token.fd)
    token.fd = -1
