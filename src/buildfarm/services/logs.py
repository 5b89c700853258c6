"""Run log files.

Each executed step writes ``<label>.log`` into the branch's log directory.
Before a report is sent the logs are archived, oldest first, so the
collector can show them in the order they were produced.
"""

import tarfile
from collections.abc import Iterable
from pathlib import Path

from ..constants import ARCHIVE_FILE, TXN_FILE


def file_lines(path: Path, offset: int = 0) -> list[str]:
    """Read a text file as lines, starting at a byte offset.

    Undecodable bytes are replaced; a missing file yields no lines.
    """
    try:
        with open(path, "rb") as f:
            f.seek(offset)
            data = f.read()
    except FileNotFoundError:
        return []
    return data.decode("utf-8", errors="replace").splitlines(True)


def banner(path: Path) -> str:
    return f"\n\n================== {path} ==================\n"


def collect_side_files(paths: Iterable[Path]) -> list[str]:
    """Concatenate existing side files (diffs, server logs) with banners."""
    lines: list[str] = []
    for path in paths:
        if not path.is_file():
            continue
        lines.append(banner(path))
        lines.extend(file_lines(path))
    return lines


def glob_all(base: Path, patterns: Iterable[str]) -> list[Path]:
    """Expand glob patterns relative to base, preserving pattern order."""
    found: list[Path] = []
    for pattern in patterns:
        found.extend(sorted(base.glob(pattern)))
    return found


class RunLogs:
    """The log directory for one branch (``<animal>.lastrun-logs``)."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = log_dir

    @property
    def archive_path(self) -> Path:
        return self.log_dir / ARCHIVE_FILE

    @property
    def txn_path(self) -> Path:
        return self.log_dir / TXN_FILE

    def ensure(self) -> Path:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        return self.log_dir

    def clean(self) -> None:
        """Remove logs and archive left by a previous run."""
        self.ensure()
        for path in self.log_dir.glob("*.log"):
            path.unlink(missing_ok=True)
        self.archive_path.unlink(missing_ok=True)

    def write(self, label: str, lines: Iterable[str]) -> Path:
        self.ensure()
        path = self.log_dir / f"{label}.log"
        path.write_text("".join(lines), encoding="utf-8", errors="replace")
        return path

    def log_files(self) -> list[Path]:
        """Log files sorted by modification time, oldest first."""
        return sorted(self.log_dir.glob("*.log"), key=lambda p: (p.stat().st_mtime_ns, p.name))

    def archive(self) -> Path:
        """Write all log files into a gzipped tarball."""
        self.ensure()
        with tarfile.open(self.archive_path, "w:gz") as tar:
            for path in self.log_files():
                tar.add(path, arcname=path.name)
        return self.archive_path

    def remove_archive(self) -> None:
        self.archive_path.unlink(missing_ok=True)
