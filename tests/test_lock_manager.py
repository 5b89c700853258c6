"""Tests for lock manager."""

import os
import subprocess
from pathlib import Path
from unittest import mock

import pytest

from buildfarm.core.lock_manager import (
    LockError,
    acquire_lock,
    get_current_lock,
    release_lock,
)


@pytest.fixture
def branch_dir(tmp_path: Path) -> Path:
    """Create temporary branch directory."""
    d = tmp_path / "HEAD"
    d.mkdir()
    return d


class TestAcquireLock:
    """Tests for acquire_lock function."""

    def test_acquire_creates_lock_file(self, branch_dir: Path) -> None:
        """Acquiring lock creates lock file with our PID."""
        token = acquire_lock(branch_dir, "HEAD")
        assert token is not None
        assert token.lock.pid == os.getpid()
        assert (branch_dir / "builder.LCK").exists()
        release_lock(token)

    def test_acquire_creates_branch_dir(self, tmp_path: Path) -> None:
        """Missing branch directory is created."""
        token = acquire_lock(tmp_path / "REL_16_STABLE", "REL_16_STABLE")
        assert token is not None
        assert (tmp_path / "REL_16_STABLE" / "builder.LCK").exists()
        release_lock(token)

    def test_second_acquire_is_busy(self, branch_dir: Path) -> None:
        """A held flock makes a second acquisition return None."""
        first = acquire_lock(branch_dir, "HEAD")
        assert first is not None
        try:
            assert acquire_lock(branch_dir, "HEAD") is None
        finally:
            release_lock(first)

    def test_busy_lock_strict_raises(self, branch_dir: Path) -> None:
        """Strict mode turns a busy lock into an error."""
        first = acquire_lock(branch_dir, "HEAD")
        try:
            with pytest.raises(LockError, match="Another process holds the lock"):
                acquire_lock(branch_dir, "HEAD", strict=True)
        finally:
            release_lock(first)

    def test_leftover_file_is_not_a_lock(self, branch_dir: Path) -> None:
        """A lock file with no flock on it does not block."""
        (branch_dir / "builder.LCK").write_text('{"pid": 99999, "branch": "HEAD"}')
        token = acquire_lock(branch_dir, "HEAD")
        assert token is not None
        release_lock(token)

    def test_acquire_after_release(self, branch_dir: Path) -> None:
        """Lock can be taken again once released."""
        release_lock(acquire_lock(branch_dir, "HEAD"))
        token = acquire_lock(branch_dir, "HEAD")
        assert token is not None
        release_lock(token)

    def test_replaced_file_gives_up(self, branch_dir: Path) -> None:
        """Fails after retrying when the file keeps changing under us."""
        with (
            mock.patch("buildfarm.core.lock_manager._same_file", return_value=False),
            pytest.raises(LockError, match="multiple attempts"),
        ):
            acquire_lock(branch_dir, "HEAD")


class TestReleaseLock:
    """Tests for release_lock function."""

    def test_release_removes_lock_file(self, branch_dir: Path) -> None:
        """Releasing lock removes lock file."""
        token = acquire_lock(branch_dir, "HEAD")
        release_lock(token)
        assert not (branch_dir / "builder.LCK").exists()
        assert token.released

    def test_release_twice(self, branch_dir: Path) -> None:
        """Releasing an already released lock is a no-op."""
        token = acquire_lock(branch_dir, "HEAD")
        release_lock(token)
        release_lock(token)
        assert token.fd == -1

    def test_release_none(self) -> None:
        """None is ignored."""
        release_lock(None)

    def test_release_in_other_process_keeps_file(self, branch_dir: Path) -> None:
        """A forked child does not remove its parent's lock."""
        token = acquire_lock(branch_dir, "HEAD")
        with mock.patch("buildfarm.core.lock_manager.os.getpid", return_value=token.lock.pid + 1):
            release_lock(token)
        assert (branch_dir / "builder.LCK").exists()
        os.close(token.fd)


class TestGetCurrentLock:
    """Tests for get_current_lock function."""

    def test_no_lock(self, branch_dir: Path) -> None:
        assert get_current_lock(branch_dir) is None

    def test_reads_holder(self, branch_dir: Path) -> None:
        token = acquire_lock(branch_dir, "HEAD")
        lock = get_current_lock(branch_dir)
        assert lock is not None
        assert lock.pid == os.getpid()
        assert lock.branch == "HEAD"
        release_lock(token)

    def test_garbage_file(self, branch_dir: Path) -> None:
        (branch_dir / "builder.LCK").write_text("not json")
        assert get_current_lock(branch_dir) is None

    def test_dead_holder_is_not_reported(self, branch_dir: Path) -> None:
        """A record left by a killed run names no holder."""
        proc = subprocess.Popen(["true"])
        proc.wait()
        (branch_dir / "builder.LCK").write_text(f'{{"pid": {proc.pid}, "branch": "HEAD"}}')
        assert get_current_lock(branch_dir) is None
