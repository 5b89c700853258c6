"""Control of the test database clusters, one per locale.

Clusters live in ``<install_dir>/data-<locale>`` and share one server log
file, ``<install_dir>/logfile``. Start output includes the server log; stop
output includes only what the server logged while shutting down.
"""

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path

from .commands import CancelToken, CommandError, CommandResult, run_log
from .logs import file_lines

logger = logging.getLogger(__name__)

DB_USER = "buildfarm"
LOG_BANNER = "=========== db log file ==========\n"


class DatabaseService:
    """initdb/pg_ctl wrapper for the installed tree.

    Attributes:
        install_dir: Installation prefix holding bin/ and the data directories.
        running: Locales whose server is currently started.
        start_count: Starts since the last initdb, used to label start/stop logs.
    """

    def __init__(self, install_dir: Path) -> None:
        self.install_dir = install_dir
        self.running: set[str] = set()
        self.start_count = 0

    @property
    def logfile(self) -> Path:
        return self.install_dir / "logfile"

    def data_dir(self, locale: str) -> str:
        return f"data-{locale}"

    def _pg_ctl(self, *args: str) -> list[str]:
        return [str(self.install_dir / "bin" / "pg_ctl"), *args]

    def initdb(
        self,
        locale: str,
        socket_dir: Path,
        extra_lines: Iterable[str] = (),
        env: Mapping[str, str] | None = None,
        token: CancelToken | None = None,
    ) -> CommandResult:
        """Create the cluster for a locale and append our settings to postgresql.conf."""
        self.start_count = 0
        result = run_log(
            [
                self.install_dir / "bin" / "initdb",
                "-U",
                DB_USER,
                "-E",
                "UTF8",
                f"--locale={locale}",
                self.data_dir(locale),
            ],
            self.install_dir,
            env,
            token,
        )
        if result.status == 0:
            conf = self.install_dir / self.data_dir(locale) / "postgresql.conf"
            with open(conf, "a") as f:
                f.write(f"unix_socket_directories = '{socket_dir}'\n")
                f.write("listen_addresses = ''\n")
                for line in extra_lines:
                    f.write(f"{line}\n")
        return result

    def start(
        self,
        locale: str,
        env: Mapping[str, str] | None = None,
        token: CancelToken | None = None,
    ) -> CommandResult:
        """Start the cluster and wait until it accepts connections.

        A failed start is followed by a quiet stop attempt so that a half
        started server does not outlive the run.
        """
        self.start_count += 1
        self.logfile.unlink(missing_ok=True)
        result = run_log(
            self._pg_ctl("-D", self.data_dir(locale), "-l", "logfile", "-w", "start"),
            self.install_dir,
            env,
            token,
        )
        if self.logfile.is_file() and self.logfile.stat().st_size:
            result.lines += [LOG_BANNER, *file_lines(self.logfile)]
        if result.status != 0:
            run_log(self._pg_ctl("-D", self.data_dir(locale), "stop"), self.install_dir, env)
        else:
            self.running.add(locale)
        return result

    def stop(
        self,
        locale: str,
        env: Mapping[str, str] | None = None,
        token: CancelToken | None = None,
    ) -> CommandResult:
        """Stop the cluster, capturing the server log written during shutdown."""
        offset = self.logfile.stat().st_size if self.logfile.is_file() else 0
        result = run_log(
            self._pg_ctl("-D", self.data_dir(locale), "stop"),
            self.install_dir,
            env,
            token,
        )
        self.running.discard(locale)
        if self.logfile.is_file() and self.logfile.stat().st_size:
            result.lines += [LOG_BANNER, *file_lines(self.logfile, offset)]
        return result

    def restart(
        self,
        locale: str,
        env: Mapping[str, str] | None = None,
        token: CancelToken | None = None,
    ) -> CommandResult:
        """Stop then start, so the next check gets a fresh server log."""
        stopped = self.stop(locale, env, token)
        if stopped.status != 0:
            return stopped
        started = self.start(locale, env, token)
        started.lines[:0] = stopped.lines
        return started

    def stop_all(self, env: Mapping[str, str] | None = None) -> None:
        """Stop every cluster still running. Failures are logged, not raised."""
        for locale in sorted(self.running):
            if not (self.install_dir / self.data_dir(locale)).is_dir():
                self.running.discard(locale)
                continue
            try:
                result = self.stop(locale, env)
            except CommandError as e:
                logger.warning(f"Could not stop database ({locale}): {e}")
                continue
            if result.status != 0:
                logger.warning(f"Stopping database ({locale}) failed with status {result.status}")
