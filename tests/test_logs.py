"""Tests for run log files."""

import os
import tarfile
from pathlib import Path

from buildfarm.services.logs import RunLogs, collect_side_files, file_lines, glob_all


class TestFileLines:
    """Tests for file_lines."""

    def test_missing_file(self, tmp_path: Path) -> None:
        assert file_lines(tmp_path / "nope") == []

    def test_offset(self, tmp_path: Path) -> None:
        path = tmp_path / "log"
        path.write_text("first\nsecond\n")
        assert file_lines(path, offset=6) == ["second\n"]

    def test_undecodable_bytes(self, tmp_path: Path) -> None:
        path = tmp_path / "log"
        path.write_bytes(b"ok\n\xff\xfe\n")
        lines = file_lines(path)
        assert lines[0] == "ok\n"
        assert len(lines) == 2


class TestSideFiles:
    """Tests for side file collection."""

    def test_banners_and_missing(self, tmp_path: Path) -> None:
        diffs = tmp_path / "regression.diffs"
        diffs.write_text("- a\n+ b\n")
        lines = collect_side_files([diffs, tmp_path / "missing.log"])
        assert "regression.diffs" in lines[0]
        assert lines[1:] == ["- a\n", "+ b\n"]

    def test_glob_all_keeps_pattern_order(self, tmp_path: Path) -> None:
        (tmp_path / "b.diffs").write_text("")
        (tmp_path / "a.log").write_text("")
        found = glob_all(tmp_path, ["*.diffs", "*.log"])
        assert [p.name for p in found] == ["b.diffs", "a.log"]


class TestRunLogs:
    """Tests for the per-branch log directory."""

    def test_write_creates_dir(self, tmp_path: Path) -> None:
        logs = RunLogs(tmp_path / "crake.lastrun-logs")
        path = logs.write("configure", ["line\n"])
        assert path.read_text() == "line\n"

    def test_clean_removes_logs_and_archive(self, tmp_path: Path) -> None:
        logs = RunLogs(tmp_path / "logs")
        logs.write("make", ["x\n"])
        logs.archive()
        logs.txn_path.write_text("{}")
        logs.clean()
        assert logs.log_files() == []
        assert not logs.archive_path.exists()
        assert logs.txn_path.exists()

    def test_archive_oldest_first(self, tmp_path: Path) -> None:
        logs = RunLogs(tmp_path / "logs")
        newer = logs.write("make", ["b\n"])
        older = logs.write("configure", ["a\n"])
        os.utime(older, (1_000, 1_000))
        os.utime(newer, (2_000, 2_000))
        with tarfile.open(logs.archive()) as tar:
            assert tar.getnames() == ["configure.log", "make.log"]

    def test_remove_archive(self, tmp_path: Path) -> None:
        logs = RunLogs(tmp_path / "logs")
        logs.archive()
        logs.remove_archive()
        logs.remove_archive()
        assert not logs.archive_path.exists()
