"""Lock model for per-branch run exclusion.

The lock itself is an OS advisory lock on the lock file; this record is
written into the file only so that operators can see who holds it.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class Lock(BaseModel):
    """Diagnostic record written to <branch>/builder.LCK.

    Attributes:
        pid: Process ID of the lock holder.
        branch: Branch being built.
        started_at: When the lock was acquired.
    """

    pid: int = Field(description="Process ID holding the lock")
    branch: str = Field(description="Branch being built")
    started_at: datetime = Field(default_factory=datetime.now)
