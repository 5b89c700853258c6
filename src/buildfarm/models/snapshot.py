"""Snapshot facts and trigger decisions."""

from enum import Enum

from pydantic import BaseModel, Field


class SnapshotKind(str, Enum):
    """Named timestamp facts persisted per branch."""

    STATUS = "status"
    RUN = "run.snap"
    SUCCESS = "success.snap"


class SnapshotHistory(BaseModel):
    """The three facts as read from disk at the start of a run."""

    last_status: int | None = None
    last_run_snap: int | None = None
    last_success_snap: int | None = None


class TriggerDecision(BaseModel):
    """Outcome of change detection for one run.

    ``last_status`` is the effective value after forcing (0 means the run is
    treated as from scratch); ``history`` keeps the on-disk values so they can
    be restored if the report cannot be delivered.
    """

    proceed: bool
    forced: bool = False
    history: SnapshotHistory = Field(default_factory=SnapshotHistory)
    last_status: int = 0
    current_snap: int = 0
    changed_files: list[str] = Field(default_factory=list)
    changed_since_success: list[str] = Field(default_factory=list)
    filtered_files: list[str] = Field(default_factory=list)
