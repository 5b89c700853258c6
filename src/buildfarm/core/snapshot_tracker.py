"""Change detection against the snapshot facts of previous runs.

Three timestamp facts are kept per branch as ``<animal>.last.<kind>`` files:
when the branch last reported (``status``), the snapshot the last run saw
(``run.snap``) and the snapshot of the last fully successful run
(``success.snap``).
"""

import contextlib
import logging
import os
import re
import tempfile
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

from ..config import OptionalStepConfig
from ..constants import FORCE_FILE
from ..models import SnapshotHistory, SnapshotKind, TriggerDecision
from ..services.scm import SCM

logger = logging.getLogger(__name__)


def filter_changed(
    files: Iterable[str], include: str | None = None, exclude: str | None = None
) -> list[str]:
    """Apply trigger filters to a changed-file list.

    Files matching ``exclude`` are dropped first, then only files matching
    ``include`` are kept. Patterns are searched anywhere in the path.
    """
    result = list(files)
    if exclude:
        pattern = re.compile(exclude)
        result = [f for f in result if not pattern.search(f)]
    if include:
        pattern = re.compile(include)
        result = [f for f in result if pattern.search(f)]
    return result


def needs_run(
    last_status: int | None,
    force_every: float | None,
    force: bool,
    changed_files: list[str],
    module_signal: bool,
    now: int,
) -> bool:
    """Decide whether a build is warranted.

    Args:
        last_status: Last status time; None or 0 means no usable history
        force_every: Heartbeat interval in hours (None or 0 disables it)
        force: Explicit force request
        changed_files: Changed files remaining after trigger filtering
        module_signal: Whether any module asked for a run
        now: Current epoch seconds

    Returns:
        True if the run should proceed
    """
    if force or not last_status:
        return True
    if force_every and last_status + force_every * 3600 < now:
        return True
    return bool(changed_files) or module_signal


class SnapshotTracker:
    """Reads and writes the snapshot facts of one branch.

    With ``nostatus`` set the facts are still read, but none of the
    run-level operations (commit, success, rollback, optional step
    throttling) write anything.
    """

    def __init__(self, branch_root: Path, animal: str, nostatus: bool = False) -> None:
        self.branch_root = branch_root
        self.animal = animal
        self.nostatus = nostatus

    def fact_path(self, kind: SnapshotKind | str) -> Path:
        name = kind.value if isinstance(kind, SnapshotKind) else kind
        return self.branch_root / f"{self.animal}.last.{name}"

    @property
    def force_path(self) -> Path:
        return self.branch_root / f"{self.animal}.{FORCE_FILE}"

    def read_snapshot(self, kind: SnapshotKind | str) -> int | None:
        """Read a fact, or None if it was never recorded or is unreadable."""
        try:
            text = self.fact_path(kind).read_text().strip()
        except FileNotFoundError:
            return None
        try:
            return int(text)
        except ValueError:
            logger.warning(f"Ignoring malformed fact {self.fact_path(kind)}: {text!r}")
            return None

    def record_snapshot(self, kind: SnapshotKind | str, value: int) -> None:
        """Atomically write a fact."""
        path = self.fact_path(kind)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(f"{int(value)}\n")
            os.replace(tmp, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)
            raise

    def clear_snapshot(self, kind: SnapshotKind | str) -> None:
        self.fact_path(kind).unlink(missing_ok=True)

    def load_history(self) -> SnapshotHistory:
        return SnapshotHistory(
            last_status=self.read_snapshot(SnapshotKind.STATUS),
            last_run_snap=self.read_snapshot(SnapshotKind.RUN),
            last_success_snap=self.read_snapshot(SnapshotKind.SUCCESS),
        )

    def consume_force_file(self) -> bool:
        """Return True, removing the marker, if a one-shot forced run was requested."""
        try:
            self.force_path.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Forced run requested by {self.force_path.name}")
        return True

    def evaluate(
        self,
        scm: SCM,
        now: int,
        force_every: float | None = None,
        force: bool = False,
        include: str | None = None,
        exclude: str | None = None,
        module_signal: Callable[[], bool] | None = None,
    ) -> TriggerDecision:
        """Compare the checked-out tree against the recorded facts.

        Args:
            scm: Source control with the branch already checked out
            now: Current epoch seconds
            force_every: Heartbeat interval in hours
            force: Explicit force (command line or force file)
            include: Trigger include pattern
            exclude: Trigger exclude pattern
            module_signal: Asks the modules whether they need a run

        Returns:
            TriggerDecision with the effective last status (0 when forced)
        """
        history = self.load_history()
        forced = force or history.last_run_snap is None
        last_status = history.last_status or 0
        if forced:
            last_status = 0
        elif last_status and force_every and last_status + force_every * 3600 < now:
            logger.info(f"Heartbeat: no report for {force_every} hours, forcing a run")
            last_status = 0

        current, changed, changed_since_success = scm.find_changed(
            history.last_run_snap, history.last_success_snap
        )
        filtered = filter_changed(changed, include, exclude)
        modules_want = module_signal() if module_signal is not None else False

        return TriggerDecision(
            proceed=needs_run(
                history.last_status, force_every, forced, filtered, modules_want, now
            ),
            forced=last_status == 0,
            history=history,
            last_status=last_status,
            current_snap=current,
            changed_files=changed,
            changed_since_success=changed_since_success,
            filtered_files=filtered,
        )

    def commit_run(self, now: int, current_snap: int) -> None:
        """Record that a run is starting on this snapshot."""
        if self.nostatus:
            return
        self.record_snapshot(SnapshotKind.STATUS, now)
        self.record_snapshot(SnapshotKind.RUN, current_snap)

    def record_success(self, current_snap: int) -> None:
        """Advance success.snap; it never moves backwards."""
        if self.nostatus:
            return
        previous = self.read_snapshot(SnapshotKind.SUCCESS)
        self.record_snapshot(SnapshotKind.SUCCESS, max(current_snap, previous or 0))

    def rollback(self, history: SnapshotHistory) -> None:
        """Restore status and run.snap to the values read at the start of the run.

        A fact that did not exist then is removed. Restoring twice leaves the
        same state as restoring once.
        """
        if self.nostatus:
            return
        for kind, value in (
            (SnapshotKind.STATUS, history.last_status),
            (SnapshotKind.RUN, history.last_run_snap),
        ):
            if value is None:
                self.clear_snapshot(kind)
            else:
                self.record_snapshot(kind, value)

    def optional_step_due(
        self,
        step: str,
        conf: OptionalStepConfig | None,
        branch: str,
        now: datetime | None = None,
    ) -> bool:
        """Check the schedule of an optional step, recording the run if due.

        ``dow`` uses 0 for Sunday. ``min_hours_since`` is measured against the
        ``<animal>.last.<step>`` fact.
        """
        if conf is None:
            return False
        now = now or datetime.now()
        if conf.branches is not None and branch not in conf.branches:
            return False
        if conf.min_hour is not None and now.hour < conf.min_hour:
            return False
        if conf.max_hour is not None and now.hour > conf.max_hour:
            return False
        if (now.isoweekday() % 7) in conf.dow:
            return False

        stamp = int(now.timestamp())
        last = self.read_snapshot(step) or 0
        if conf.min_hours_since is not None and stamp < last + 3600 * conf.min_hours_since:
            return False
        if not self.nostatus:
            self.record_snapshot(step, stamp)
        return True
