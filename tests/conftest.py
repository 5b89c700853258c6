"""Shared test fixtures for buildfarm tests."""

import io
import subprocess
from collections.abc import Generator
from pathlib import Path
from unittest import mock

import pytest
from rich.console import Console
from typer.testing import CliRunner

from buildfarm.config import BuildFarmConfig, RunOptions
from buildfarm.core.modules import ModuleRegistry
from buildfarm.core.run_context import RunContext
from buildfarm.models import BuildRun
from buildfarm.output import OutputContext
from buildfarm.services.logs import RunLogs


def git(cwd: Path, *args: str) -> str:
    """Run git in cwd and return stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


@pytest.fixture
def runner() -> CliRunner:
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def not_root() -> Generator[None, None, None]:
    """Pretend not to be root so validate_environment accepts the run."""
    with mock.patch("buildfarm.config.os.geteuid", return_value=1000):
        yield


@pytest.fixture
def upstream_repo(tmp_path: Path) -> Path:
    """Create a git repository acting as the upstream of a branch.

    Contains a ``configure.ac`` and one source file in a single commit.
    """
    repo = tmp_path / "upstream"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "master")
    git(repo, "config", "user.email", "test@test.com")
    git(repo, "config", "user.name", "Test User")
    (repo / "configure.ac").write_text(
        "AC_INIT([PostgreSQL], [17devel], [pgsql-bugs@lists.postgresql.org], [],"
        " [https://www.postgresql.org/])\n"
    )
    (repo / "src").mkdir()
    (repo / "src" / "main.c").write_text("int main(void) { return 0; }\n")
    git(repo, "add", ".")
    git(repo, "commit", "-q", "-m", "Initial commit")
    return repo


@pytest.fixture
def config(tmp_path: Path) -> BuildFarmConfig:
    """Minimal configuration with an absolute build root."""
    return BuildFarmConfig(
        animal="testanimal",
        secret="s3cret",
        build_root=tmp_path / "buildroot",
        locales=["C"],
    )


@pytest.fixture
def quiet_output() -> OutputContext:
    """Output context writing to a throwaway console."""
    return OutputContext(Console(file=io.StringIO()), json_mode=False)


@pytest.fixture
def run_context(tmp_path: Path, config: BuildFarmConfig) -> RunContext:
    """A run context for branch HEAD whose directories exist."""
    branch_root = config.build_root / "HEAD"
    build_dir = branch_root / "pgsql.build"
    build_dir.mkdir(parents=True)
    tmpdir = tmp_path / "tmp"
    tmpdir.mkdir()
    return RunContext(
        config=config,
        options=RunOptions(),
        run=BuildRun(branch="HEAD", start_time=1_700_000_000),
        build_root=config.build_root,
        branch_root=branch_root,
        build_dir=build_dir,
        source_dir=build_dir,
        install_dir=branch_root / "inst",
        tmpdir=tmpdir,
        logs=RunLogs(branch_root / "testanimal.lastrun-logs"),
        env={"PATH": "/usr/bin:/bin"},
        modules=ModuleRegistry(),
        port=5999,
    )
