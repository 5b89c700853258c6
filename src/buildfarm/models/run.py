"""Per-invocation run state."""

from datetime import datetime

from pydantic import BaseModel, Field

from .snapshot import SnapshotHistory


class BuildRun(BaseModel):
    """State of one build run, owned by the run controller.

    Attributes:
        branch: Branch being built.
        start_time: Epoch seconds when the run took its snapshot.
        lock_held: Whether this process holds the branch lock.
        steps_completed: Steps that ran and succeeded, in order.
        snapshot_current: Snapshot time of the checked-out tree.
        snapshot_last_run: run.snap as read at start, if any.
        snapshot_last_success: success.snap as read at start, if any.
        last_status: Effective last status time (0 when forced).
        changed_files: Files changed since the last run.
        changed_since_success: Files changed since the last success.
        history: The snapshot facts as read from disk, for rollback.
    """

    branch: str
    start_time: int = Field(default_factory=lambda: int(datetime.now().timestamp()))
    lock_held: bool = False
    steps_completed: list[str] = Field(default_factory=list)
    snapshot_current: int = 0
    snapshot_last_run: int | None = None
    snapshot_last_success: int | None = None
    last_status: int = 0
    changed_files: list[str] = Field(default_factory=list)
    changed_since_success: list[str] = Field(default_factory=list)
    history: SnapshotHistory = Field(default_factory=SnapshotHistory)
