"""The result transaction: assemble, persist, transmit, and roll back on failure.

``ResultReporter.report`` always ends the run by raising ``BuildExit``; the
run controller turns it into the process exit code after cleanup.
"""

import json
import logging
import platform
import time
from typing import TYPE_CHECKING, Any, NoReturn

from .. import __version__
from ..models import ReportRecord
from ..output import OutputContext, get_output_context
from ..services.logs import file_lines
from ..services.transport import Transport
from .snapshot_tracker import SnapshotTracker

if TYPE_CHECKING:
    from .run_context import RunContext

logger = logging.getLogger(__name__)

# Stages reached before the pipeline started; no logs of this run exist yet
EXCLUSION_STAGES = frozenset({"checkout", "lock"})

SEPARATOR = "========================================================\n"


class BuildExit(Exception):
    """Carries the exit code of a finished run out of the reporter."""

    def __init__(self, code: int) -> None:
        super().__init__(f"build finished with exit code {code}")
        self.code = code


def script_config_dump(ctx: "RunContext") -> str:
    """The client configuration as reported, without the secret."""
    conf: dict[str, Any] = {
        **ctx.config.summary(),
        "client_version": __version__,
        "python_version": platform.python_version(),
        "invocation_args": ctx.options.invocation_args,
        "steps_completed": ctx.run.steps_completed,
        "orig_env": ctx.orig_env,
    }
    return "Script_Config = " + json.dumps(conf, indent=2, sort_keys=True, default=str) + "\n"


def config_log_excerpt(lines: list[str]) -> str:
    """The interesting part of configure's config.log.

    Starts at the "created by PostgreSQL configure" line and stops at
    "Core tests", dropping comments and unknown values.
    """
    out: list[str] = []
    started = False
    for line in lines:
        if not started and "created by PostgreSQL configure" in line:
            started = True
            line = line.replace("It was", "This file was")
        if not started:
            continue
        if "Core tests" in line:
            break
        if line.startswith("#") or "= unknown" in line or "= <unknown>" in line:
            continue
        out.append(line)
    return "".join(out)


def config_summary(ctx: "RunContext") -> str:
    """config.log excerpt followed by the script configuration."""
    summary = ""
    config_log = file_lines(ctx.build_dir / "config.log")
    if config_log:
        summary = config_log_excerpt(config_log) + "\n" + SEPARATOR
    return summary + script_config_dump(ctx)


class ResultReporter:
    """Builds the report record for a run and delivers it."""

    def __init__(
        self,
        ctx: "RunContext",
        tracker: SnapshotTracker,
        transport: Transport | None = None,
        output: OutputContext | None = None,
    ) -> None:
        self.ctx = ctx
        self.tracker = tracker
        self.transport = transport
        self.output = output or get_output_context()
        self.saved_config: str | None = None

    def save_config_summary(self) -> None:
        """Capture the summary while the build tree still exists."""
        self.saved_config = config_summary(self.ctx)

    def confsum_for(self, stage: str) -> str:
        if stage == "OK":
            return self.saved_config if self.saved_config is not None else config_summary(self.ctx)
        if stage in EXCLUSION_STAGES:
            return script_config_dump(self.ctx)
        return config_summary(self.ctx)

    def build_record(self, stage: str, status: int, log: list[str]) -> ReportRecord:
        ctx = self.ctx
        run = ctx.run
        if run.snapshot_current and not ctx.from_source:
            stamp = time.asctime(time.gmtime(run.snapshot_current))
            log = [f"Last file mtime in snapshot: {stamp} GMT\n", SEPARATOR, *log]
        return ReportRecord(
            branch=run.branch,
            stage=stage,
            status=status,
            log_data="".join(log),
            changed_this_run="!".join(run.changed_files),
            changed_since_success="" if stage == "OK" else "!".join(run.changed_since_success),
            animal=ctx.config.animal,
            ts=run.start_time,
            target=ctx.config.target,
            verbose=ctx.options.verbose,
            confsum=self.confsum_for(stage),
            steps_completed=list(run.steps_completed),
            secret=ctx.config.secret,
        )

    def persist(self, record: ReportRecord) -> None:
        self.ctx.logs.ensure()
        self.ctx.logs.txn_path.write_text(record.model_dump_json(indent=2, exclude={"secret"}))

    def report(self, stage: str, status: int = 0, log: list[str] | None = None) -> NoReturn:
        """Report the outcome and end the run.

        Raises:
            BuildExit: Always; code 0 for success, the transport's code when
                delivery failed, 1 for any failed stage
        """
        ctx = self.ctx
        record = self.build_record(stage, status, list(log or []))
        self.persist(record)

        if ctx.options.nosend or self.transport is None:
            if record.succeeded:
                self.output.outcome(record, "All stages succeeded")
                self.tracker.record_success(ctx.run.snapshot_current)
                raise BuildExit(0)
            self.output.outcome(record, f"Stage {stage} failed with status {status}")
            raise BuildExit(1)

        if stage in EXCLUSION_STAGES:
            # anything there is from an earlier run
            ctx.logs.remove_archive()
            archive = None
        else:
            archive = ctx.logs.archive()

        code = self.transport.send(record, archive)
        if code:
            logger.error(f"Web txn failed with status: {code}")
            self.tracker.rollback(ctx.run.history)
            raise BuildExit(code)

        if record.succeeded:
            self.output.outcome(record, "All stages succeeded", delivered=True)
            self.tracker.record_success(ctx.run.snapshot_current)
            raise BuildExit(0)

        if not ctx.options.quiet:
            self.output.outcome(
                record,
                f"Buildfarm member {ctx.config.animal} failed on {record.branch} stage {stage}",
                delivered=True,
            )
        raise BuildExit(1)
