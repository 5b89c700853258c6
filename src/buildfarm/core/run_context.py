"""Run-scoped state passed explicitly to every component.

The context owns the environment the build commands see. Nothing here
touches ``os.environ``; steps that need temporary variables (PGHOST inside
a locale, NO_TEMP_INSTALL for a TAP run) use ``overlay``.
"""

import re
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import BuildFarmConfig, RunOptions
from ..constants import TEMP_INSTALL_THRESHOLD
from ..models import BuildRun, FilterSet
from ..services.commands import CancelToken, CommandResult, run_log
from ..services.database import DatabaseService
from ..services.logs import RunLogs

if TYPE_CHECKING:
    from .modules import ModuleRegistry

# Variables reported verbatim in the config summary; all others are masked
_VISIBLE_ENV = re.compile(r"^(?:PG(?!PASSWORD)|MAKE|CC|CPP|CXX|LD|LIBRAR|INCLUDE|C(?:XX)?FLAGS)")
_VISIBLE_ENV_EXACT = re.compile(r"^(HOME|LOGNAME|USER|PATH|SHELL)$")


def masked_environment(environ: Mapping[str, str]) -> dict[str, str]:
    """Copy of the environment safe to send in a report."""
    return {
        key: value
        if _VISIBLE_ENV.search(key) or _VISIBLE_ENV_EXACT.match(key)
        else "xxxxxx"
        for key, value in environ.items()
    }


def prepend_path(current: str | None, entry: str) -> str:
    return f"{entry}:{current}" if current else entry


@dataclass
class RunContext:
    """Everything one build run needs, in one place.

    Attributes:
        config: Validated animal configuration.
        options: Command-line options for this invocation.
        run: Mutable run state (snapshots, completed steps).
        build_root: Absolute build root.
        branch_root: ``<build_root>/<branch>``.
        build_dir: Directory the build runs in.
        source_dir: Directory holding ``configure``.
        install_dir: Installation prefix.
        tmpdir: Private directory for sockets and the extra config file.
        logs: Per-step log files for this run.
        env: Environment for every command the run starts.
        filters: Skip/only step filters.
        token: Cancels in-flight commands on timeout or interruption.
        database: Test cluster control.
        modules: Registered lifecycle-hook objects.
        port: Port test clusters listen on.
        build_version: Version parsed from the source tree.
        temp_installs: Number of temporary installs done so far.
        orig_env: Masked copy of the environment the run started with.
        build_failed: Set by cleanup when the build tree was left behind.
    """

    config: BuildFarmConfig
    options: RunOptions
    run: BuildRun
    build_root: Path
    branch_root: Path
    build_dir: Path
    source_dir: Path
    install_dir: Path
    tmpdir: Path
    logs: RunLogs
    env: dict[str, str]
    filters: FilterSet = field(default_factory=FilterSet)
    token: CancelToken = field(default_factory=CancelToken)
    modules: "ModuleRegistry | None" = None
    port: int = 0
    build_version: tuple[int, ...] = ()
    temp_installs: int = 0
    orig_env: dict[str, str] = field(default_factory=dict)
    build_failed: bool = False
    database: DatabaseService = field(init=False)

    def __post_init__(self) -> None:
        self.database = DatabaseService(self.install_dir)

    @property
    def branch(self) -> str:
        return self.run.branch

    @property
    def verbose(self) -> int:
        return self.options.verbose

    @property
    def from_source(self) -> bool:
        return self.options.source_dir is not None

    @contextmanager
    def overlay(self, **values: str) -> Iterator[dict[str, str]]:
        """Temporarily set environment variables for commands run inside the block.

        The whole environment is restored on exit, including changes made
        inside the block.
        """
        saved = dict(self.env)
        self.env.update(values)
        try:
            yield self.env
        finally:
            self.env.clear()
            self.env.update(saved)

    def run_command(
        self, args: Sequence[str | Path], cwd: Path | None = None
    ) -> CommandResult:
        """Run a command in the build directory with the run's environment."""
        return run_log(args, cwd or self.build_dir, self.env, self.token)

    def make_cmd(self, *targets: str, parallel: bool = False) -> list[str]:
        """Build a make command line, adding -j for parallel-safe targets."""
        cmd = [self.config.make]
        if parallel and self.config.make_jobs > 1:
            cmd += ["-j", str(self.config.make_jobs)]
        return [*cmd, *targets]

    def temp_install_flags(self) -> list[str]:
        """Make arguments that skip the temporary install once enough exist."""
        if self.temp_installs >= TEMP_INSTALL_THRESHOLD:
            return ["NO_TEMP_INSTALL=yes"]
        return []
