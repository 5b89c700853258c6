"""External collaborators of a build run.

This package provides interfaces to external tools and services:
- commands: Subprocess execution with process-group cancellation
- scm: Source control (git)
- database: Test cluster control (initdb, pg_ctl)
- logs: Per-step log files and the log archive
- transport: Report delivery to the collector
"""

from .commands import (
    CancelToken,
    CommandError,
    CommandResult,
    check_make,
    run_log,
    terminate_process_group,
)
from .database import DatabaseService
from .logs import RunLogs, collect_side_files, file_lines, glob_all
from .scm import SCM, GitSCM, ScmError
from .transport import HttpTransport, Transport, TransportError, load_record

__all__ = [
    "SCM",
    "CancelToken",
    "CommandError",
    "CommandResult",
    "DatabaseService",
    "GitSCM",
    "HttpTransport",
    "RunLogs",
    "ScmError",
    "Transport",
    "TransportError",
    "check_make",
    "collect_side_files",
    "file_lines",
    "glob_all",
    "load_record",
    "run_log",
    "terminate_process_group",
]
