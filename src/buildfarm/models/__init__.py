"""Pydantic data models for buildfarm runs.

This package defines the data structures used throughout the client for:
- Lock diagnostics (Lock)
- Snapshot facts and trigger decisions (SnapshotKind, SnapshotHistory, TriggerDecision)
- Pipeline steps and their results (StepSpec, StepResult, FilterSet, PipelineOutcome)
- The report transaction payload (ReportRecord)
- Per-invocation run state (BuildRun)

Example:
    >>> from buildfarm.models import FilterSet
    >>> FilterSet.from_strings("", "configure build").wants("check")
    False
"""

from .lock import Lock
from .report import REPORT_SCHEMA_VERSION, ReportRecord
from .run import BuildRun
from .snapshot import SnapshotHistory, SnapshotKind, TriggerDecision
from .step import FilterSet, PipelineOutcome, StepResult, StepSpec

__all__ = [
    "REPORT_SCHEMA_VERSION",
    "BuildRun",
    "FilterSet",
    "Lock",
    "PipelineOutcome",
    "ReportRecord",
    "SnapshotHistory",
    "SnapshotKind",
    "StepResult",
    "StepSpec",
    "TriggerDecision",
]
