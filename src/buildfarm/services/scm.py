"""Source control collaborator.

The run controller only depends on the ``SCM`` protocol; ``GitSCM`` keeps a
local clone in ``<branch_root>/pgsql`` and copies it to ``pgsql.build`` for
each run so the clone itself is never dirtied by a build.
"""

import logging
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from .commands import CancelToken, CommandError, run_log

logger = logging.getLogger(__name__)

REPO_DIR = "pgsql"
BUILD_DIR = "pgsql.build"


class ScmError(Exception):
    """Checkout or another SCM operation failed.

    Attributes:
        log: Output of the failing command, reported with the checkout stage.
    """

    def __init__(self, message: str, log: list[str] | None = None) -> None:
        super().__init__(message)
        self.log = log or [f"{message}\n"]


class SCM(Protocol):
    """Interface the run controller needs from source control."""

    def build_path(self, use_vpath: bool) -> Path: ...

    def source_path(self) -> Path: ...

    def checkout(self, branch: str, token: CancelToken | None = None) -> list[str]: ...

    def find_changed(
        self, since: int | None, since_success: int | None
    ) -> tuple[int, list[str], list[str]]: ...

    def copy_source_required(self) -> bool: ...

    def copy_source(self) -> None: ...

    def get_versions(self, files: list[str]) -> list[str]: ...

    def head_ref(self) -> str: ...

    def cleanup(self) -> None: ...

    def rm_worktree(self) -> None: ...


def parse_changed_log(output: str, since: int) -> list[str]:
    """Parse ``git log --format=@%ct --name-only`` output.

    Only files from commits strictly newer than ``since`` are returned,
    each path once, in first-seen order.
    """
    files: dict[str, None] = {}
    commit_time = 0
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("@") and line[1:].isdigit():
            commit_time = int(line[1:])
            continue
        if commit_time > since:
            files.setdefault(line, None)
    return list(files)


class GitSCM:
    """Git implementation of the SCM collaborator."""

    def __init__(
        self,
        url: str,
        branch_root: Path,
        env: Mapping[str, str] | None = None,
        git: str = "git",
    ) -> None:
        self.url = url
        self.branch_root = branch_root
        self.repo_dir = branch_root / REPO_DIR
        self.env = env
        self.git = git
        self._use_vpath = False

    def build_path(self, use_vpath: bool) -> Path:
        self._use_vpath = use_vpath
        return self.branch_root / BUILD_DIR

    def source_path(self) -> Path:
        """The pristine clone; configure runs from here in vpath builds."""
        return self.repo_dir

    def run_git(
        self, *args: str, cwd: Path | None = None, token: CancelToken | None = None
    ) -> list[str]:
        """Run a git command, raising ScmError on failure.

        Args:
            *args: git arguments
            cwd: Working directory (defaults to the clone)
            token: Cancel token for the checkout watchdog

        Returns:
            Output lines

        Raises:
            ScmError: If git fails, cannot be started, or was cancelled
        """
        try:
            result = run_log([self.git, *args], cwd or self.repo_dir, self.env, token)
        except CommandError as e:
            raise ScmError(str(e)) from e
        if token is not None and token.cancelled:
            raise ScmError(
                f"git {args[0]} cancelled: {token.reason}",
                [*result.lines, f"git {args[0]} cancelled: {token.reason}\n"],
            )
        if result.status != 0:
            raise ScmError(
                f"git {args[0]} failed with status {result.status}",
                [f"git {' '.join(args)}\n", *result.lines],
            )
        return result.lines

    def checkout(self, branch: str, token: CancelToken | None = None) -> list[str]:
        """Clone or update the local clone to the tip of ``branch``."""
        log: list[str] = []
        if not (self.repo_dir / ".git").is_dir():
            clone_args = ["clone", "-q", self.url, str(self.repo_dir)]
            if branch != "HEAD":
                clone_args[2:2] = ["-b", branch]
            log += self.run_git(*clone_args, cwd=self.branch_root, token=token)
        else:
            log += self.run_git("fetch", "-q", "origin", token=token)
            log += self.run_git("reset", "-q", "--hard", f"origin/{branch}", token=token)
        log += self.run_git("clean", "-dfxq", token=token)
        log += self.run_git("log", "-1", "--format=commit %H%n%cD", token=token)
        return log

    def head_ref(self) -> str:
        return "".join(self.run_git("rev-parse", "HEAD")).strip()

    def find_changed(
        self, since: int | None, since_success: int | None
    ) -> tuple[int, list[str], list[str]]:
        """Return (current snapshot, changed since run, changed since success).

        The snapshot is the commit time of the checked-out head.
        """
        current = int("".join(self.run_git("log", "-1", "--format=%ct")).strip() or 0)
        changed = self._changed_since(since) if since else []
        changed_since_success = self._changed_since(since_success) if since_success else []
        return current, changed, changed_since_success

    def _changed_since(self, since: int) -> list[str]:
        output = "".join(
            self.run_git("log", f"--since=@{since}", "--format=@%ct", "--name-only", "HEAD")
        )
        return parse_changed_log(output, since)

    def get_versions(self, files: list[str]) -> list[str]:
        """Annotate each file with the abbreviated id of its last commit."""
        versions = []
        for path in files:
            sha = "".join(self.run_git("log", "-1", "--format=%h", "--", path)).strip()
            versions.append(f"{path} {sha}" if sha else path)
        return versions

    def copy_source_required(self) -> bool:
        return True

    def copy_source(self) -> None:
        target = self.build_path(self._use_vpath)
        shutil.rmtree(target, ignore_errors=True)
        shutil.copytree(self.repo_dir, target, ignore=shutil.ignore_patterns(".git"), symlinks=True)

    def cleanup(self) -> None:
        """Remove anything a vpath build left in the clone."""
        if (self.repo_dir / ".git").is_dir():
            try:
                self.run_git("clean", "-dfxq")
            except ScmError as e:
                logger.warning(f"git clean failed: {e}")

    def rm_worktree(self) -> None:
        shutil.rmtree(self.repo_dir, ignore_errors=True)
