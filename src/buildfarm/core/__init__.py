"""Core run logic for the buildfarm client.

This package contains the components of a build run:
- lock_manager: Per-branch run exclusion
- snapshot_tracker: Change detection and the persisted snapshot facts
- timeout_supervisor: Wall-clock watchdogs for checkout and the whole run
- run_context: Run-scoped state and command environment
- modules: Lifecycle-hook modules
- pipeline: The build and test steps, in order
- step_scheduler: Fail-fast execution of the pipeline
- result_reporter: Report assembly, persistence and delivery
- run_controller: One run from configuration check to cleanup
"""

from .lock_manager import LockError, LockToken, acquire_lock, get_current_lock, release_lock
from .modules import MODULE_REGISTRY, BuildModule, CCacheModule, ModuleRegistry
from .pipeline import build_pipeline, get_pg_version
from .result_reporter import EXCLUSION_STAGES, BuildExit, ResultReporter
from .run_context import RunContext, masked_environment
from .run_controller import RunController, RunInterrupted
from .snapshot_tracker import SnapshotTracker, filter_changed, needs_run
from .step_scheduler import StepScheduler
from .timeout_supervisor import TimeoutHandle, TimeoutSupervisor

__all__ = [
    "EXCLUSION_STAGES",
    "MODULE_REGISTRY",
    "BuildExit",
    "BuildModule",
    "CCacheModule",
    "LockError",
    "LockToken",
    "ModuleRegistry",
    "ResultReporter",
    "RunContext",
    "RunController",
    "RunInterrupted",
    "SnapshotTracker",
    "StepScheduler",
    "TimeoutHandle",
    "TimeoutSupervisor",
    "acquire_lock",
    "build_pipeline",
    "filter_changed",
    "get_current_lock",
    "get_pg_version",
    "masked_environment",
    "needs_run",
    "release_lock",
]
