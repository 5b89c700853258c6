"""Report transaction payload.

The record is persisted to disk before transmission so that an interrupted
delivery can be inspected and resent.
"""

from typing import Literal

from pydantic import BaseModel, Field

REPORT_SCHEMA_VERSION = 1


class ReportRecord(BaseModel):
    """Versioned record describing the outcome of one run.

    Attributes:
        schema_version: Payload schema version.
        branch: Branch that was built.
        stage: "OK" on success, otherwise the failing stage.
        status: Exit status of the failing stage (0 for OK).
        log_data: Concatenated log text for the failing stage.
        changed_this_run: Changed files since the last run, "!"-joined.
        changed_since_success: Changed files since the last success, "!"-joined.
        animal: Name of the reporting machine.
        ts: Snapshot time of the run (epoch seconds).
        target: Collector URL.
        verbose: Verbosity level of the run.
        confsum: Human-readable configuration summary.
        steps_completed: Steps that ran and succeeded, in order.
        secret: Shared secret used to authenticate the report.
    """

    schema_version: Literal[1] = REPORT_SCHEMA_VERSION
    branch: str
    stage: str
    status: int = 0
    log_data: str = ""
    changed_this_run: str = ""
    changed_since_success: str = ""
    animal: str
    ts: int
    target: str = ""
    verbose: int = 0
    confsum: str = ""
    steps_completed: list[str] = Field(default_factory=list)
    secret: str = Field(default="", repr=False)

    @property
    def succeeded(self) -> bool:
        return self.stage == "OK"
