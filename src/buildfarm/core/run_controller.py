"""One build run from configuration check to cleanup.

The controller owns every resource a run acquires (lock, watchdogs,
database clusters, work trees, temporary directory) and releases them in
``cleanup``, which runs on every exit path: success, nothing to do, step
failure, transport failure, and signals.
"""

import logging
import os
import shutil
import signal
import tempfile
import threading
import time
from pathlib import Path
from types import FrameType

from ..config import BuildFarmConfig, ConfigError, RunOptions, validate_environment
from ..constants import INSTALL_DIR
from ..models import BuildRun
from ..output import OutputContext, get_output_context
from ..services.commands import CancelToken, check_make
from ..services.logs import RunLogs
from ..services.scm import BUILD_DIR, SCM, GitSCM, ScmError
from ..services.transport import HttpTransport, Transport
from .lock_manager import LockToken, acquire_lock, release_lock
from .modules import ModuleRegistry
from .pipeline import build_pipeline, get_pg_version
from .result_reporter import BuildExit, ResultReporter
from .run_context import RunContext, masked_environment
from .snapshot_tracker import SnapshotTracker
from .step_scheduler import StepScheduler
from .timeout_supervisor import TimeoutSupervisor

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP, signal.SIGQUIT)


class RunInterrupted(Exception):
    """A termination signal arrived during the run."""

    def __init__(self, signum: int) -> None:
        self.signum = signum
        self.name = signal.Signals(signum).name
        super().__init__(f"Exiting on signal {self.name}")


class RunController:
    """Drives a single run for one branch."""

    def __init__(
        self,
        config: BuildFarmConfig,
        options: RunOptions,
        scm: SCM | None = None,
        transport: Transport | None = None,
        output: OutputContext | None = None,
    ) -> None:
        self.config = config
        self.options = options
        self.scm = scm
        self.transport = transport
        self.output = output or get_output_context()
        self.supervisor = TimeoutSupervisor()
        self.scheduler = StepScheduler()
        self.main_pid = os.getpid()
        self.ctx: RunContext | None = None
        self.lock: LockToken | None = None
        self._cleaned = False
        self._cleaning = False
        self._completed = False
        self._saved_handlers: dict[int, object] = {}

    # -- signals -------------------------------------------------------------

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        if self._cleaning:
            logger.warning(f"Ignoring signal {signal.Signals(signum).name} during cleanup")
            return
        raise RunInterrupted(signum)

    def install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in HANDLED_SIGNALS:
            self._saved_handlers[sig] = signal.signal(sig, self._on_signal)

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._saved_handlers.items():
            signal.signal(sig, handler)
        self._saved_handlers.clear()

    # -- run -----------------------------------------------------------------

    def execute(self) -> int:
        """Run the build and return the process exit code.

        Raises:
            ConfigError: For fatal configuration problems found before locking
            LockError: If the lock is busy in from-source mode
        """
        self.install_signal_handlers()
        try:
            try:
                return self._execute()
            except BuildExit as e:
                return e.code
            except RunInterrupted as e:
                logger.error(str(e))
                return 1
            finally:
                self.cleanup()
        finally:
            self.restore_signal_handlers()

    def prepare(self) -> RunContext:
        """Validate the environment and build the run context. Takes no lock."""
        config, options = self.config, self.options
        build_root = validate_environment(config)
        if not check_make(config.make):
            raise ConfigError(f"{config.make} is not GNU Make - please fix config file")
        modules = ModuleRegistry.from_names(config.modules)

        branch = options.branch
        branch_root = build_root / branch
        branch_root.mkdir(parents=True, exist_ok=True)
        if options.source_dir is not None and not options.explicit_branch:
            self.output.print(
                f"branch not specified, locks, logs, build artefacts etc will go in {branch}"
            )

        env = dict(os.environ)
        orig_env = masked_environment(env)
        env.update(config.build_env)
        env.setdefault("PGCTLTIMEOUT", "120")
        env["PGUSER"] = "buildfarm"
        port = config.build_port(branch)
        env["EXTRA_REGRESS_OPTS"] = f"--port={port}"

        source = options.source_dir
        if source is not None:
            build_dir = branch_root / BUILD_DIR if config.use_vpath else source
            source_dir = source
        else:
            if self.scm is None:
                self.scm = GitSCM(config.scm_url, branch_root, env)
            build_dir = self.scm.build_path(config.use_vpath)
            source_dir = self.scm.source_path() if config.use_vpath else build_dir

        tmpdir = Path(tempfile.mkdtemp(prefix="buildfarm-"))
        extra = config.extra_config_for(branch)
        if extra:
            extra_file = tmpdir / "bfextra.conf"
            extra_file.write_text("".join(f"{line}\n" for line in extra))
            env["TEMP_CONFIG"] = str(extra_file)

        ctx = RunContext(
            config=config,
            options=options,
            run=BuildRun(branch=branch),
            build_root=build_root,
            branch_root=branch_root,
            build_dir=build_dir,
            source_dir=source_dir,
            install_dir=branch_root / INSTALL_DIR,
            tmpdir=tmpdir,
            logs=RunLogs(branch_root / f"{config.animal}.{options.log_dir_name}"),
            env=env,
            filters=options.filters(),
            modules=modules,
            port=port,
            orig_env=orig_env,
        )
        self.ctx = ctx
        modules.notify("setup", ctx)
        return ctx

    def _execute(self) -> int:
        ctx = self.prepare()
        config, options, run = self.config, self.options, ctx.run
        logger.info(f"buildfarm run for {config.animal}:{run.branch} starting")

        self.lock = acquire_lock(ctx.branch_root, run.branch, strict=ctx.from_source)
        if self.lock is None:
            self.output.print(
                f"Another process holds the lock on {ctx.branch_root}/builder.LCK. Exiting."
            )
            return 0
        run.lock_held = True

        shutil.rmtree(ctx.install_dir, ignore_errors=True)
        if not (ctx.from_source and not config.use_vpath):
            shutil.rmtree(ctx.build_dir, ignore_errors=True)

        tracker = SnapshotTracker(ctx.branch_root, config.animal, options.nostatus)
        # rollback target for a transport failure, whatever stage fails
        run.history = tracker.load_history()
        force = tracker.consume_force_file() or options.force
        now = int(time.time())
        run.start_time = now

        self.supervisor.arm_wait_timeout(config.wait_timeout, ctx.token, self.main_pid)

        if self.transport is None and not options.nosend:
            self.transport = HttpTransport(config.target, config.secret)
        reporter = ResultReporter(ctx, tracker, self.transport, self.output)

        if ctx.from_source:
            ctx.logs.clean()
            if config.use_vpath:
                ctx.build_dir.mkdir(parents=True, exist_ok=True)
        elif not self._checkout_and_evaluate(ctx, tracker, reporter, force, now):
            shutil.rmtree(ctx.build_dir, ignore_errors=True)
            return 0

        ctx.modules.notify("setup_target", ctx)
        tracker.commit_run(now, run.snapshot_current)

        ctx.build_version = get_pg_version(ctx.source_dir)
        version = ".".join(str(v) for v in ctx.build_version) or "unknown"
        if ctx.from_source:
            logger.info(f"Found version {version} in {ctx.source_dir}")
        else:
            logger.info(f"Found version {version} building commit {self.scm.head_ref()[:7]}")

        outcome = self.scheduler.run(
            build_pipeline(ctx), ctx.filters, ctx, completed=run.steps_completed
        )
        if not outcome.succeeded:
            reporter.report(outcome.failed_stage, outcome.result.status, outcome.result.log)

        reporter.save_config_summary()
        shutil.rmtree(ctx.install_dir, ignore_errors=True)
        if not ctx.from_source:
            shutil.rmtree(ctx.build_dir, ignore_errors=True)
        logger.info("OK")
        self._completed = True
        reporter.report("OK")

    def _checkout_and_evaluate(
        self,
        ctx: RunContext,
        tracker: SnapshotTracker,
        reporter: ResultReporter,
        force: bool,
        now: int,
    ) -> bool:
        """Update the source and decide whether to build.

        Returns:
            False when no build is required
        """
        run, config = ctx.run, self.config
        logger.info("checking out source ...")
        checkout_token = CancelToken()
        handle = self.supervisor.arm_scm_timeout(config.scm_timeout_secs, checkout_token)
        try:
            scm_log = self.scm.checkout(run.branch, checkout_token)
        except ScmError as e:
            reporter.report("checkout", 1, e.log)
        finally:
            self.supervisor.disarm(handle)
        run.steps_completed.append("checkout")
        ctx.modules.notify("checkout", ctx, scm_log)

        logger.info("checking if build run needed ...")
        try:
            decision = tracker.evaluate(
                self.scm,
                now,
                force_every=config.force_every_for(run.branch),
                force=force,
                include=config.trigger_include,
                exclude=config.trigger_exclude,
                module_signal=lambda: ctx.modules.need_run(ctx),
            )
        except ScmError as e:
            reporter.report("checkout", 1, e.log)

        run.history = decision.history
        run.last_status = decision.last_status
        run.snapshot_current = decision.current_snap
        run.snapshot_last_run = decision.history.last_run_snap
        run.snapshot_last_success = decision.history.last_success_snap

        if not decision.proceed:
            last = time.asctime(time.gmtime(decision.last_status))
            current = time.asctime(time.gmtime(decision.current_snap))
            logger.info(
                f"No build required: last status = {last} GMT, current snapshot = {current} GMT,"
                f" changed files = {len(decision.filtered_files)}"
            )
            return False

        run.changed_files = self.scm.get_versions(decision.changed_files)
        run.changed_since_success = self.scm.get_versions(decision.changed_since_success)

        ctx.logs.clean()
        ctx.logs.write("SCM-checkout", scm_log)

        if config.use_vpath:
            logger.info(f"creating vpath build dir {ctx.build_dir} ...")
            ctx.build_dir.mkdir(parents=True, exist_ok=True)
        elif self.scm.copy_source_required():
            logger.info(f"copying source to {ctx.build_dir} ...")
            self.scm.copy_source()
        return True

    # -- cleanup -------------------------------------------------------------

    def cleanup(self) -> None:
        """Release everything the run acquired. Safe to call more than once.

        Only the process that started the run cleans up.
        """
        if self._cleaned or os.getpid() != self.main_pid:
            return
        self._cleaned = True
        self._cleaning = True
        try:
            self._cleanup()
        finally:
            self._cleaning = False

    def _cleanup(self) -> None:
        self.supervisor.disarm_all()
        ctx = self.ctx
        if ctx is None:
            return
        ctx.token.cancel("run finished")

        if self.lock is not None:
            self._cleanup_trees(ctx)

        if ctx.modules is not None:
            ctx.modules.cleanup(ctx)

        if self.lock is not None:
            if self.config.use_vpath and not ctx.from_source and self.scm is not None:
                self.scm.cleanup()
            release_lock(self.lock)
            ctx.run.lock_held = False

        shutil.rmtree(ctx.tmpdir, ignore_errors=True)

    def _cleanup_trees(self, ctx: RunContext) -> None:
        config = self.config
        in_place = ctx.from_source and not config.use_vpath
        if not ctx.build_dir.exists() or (in_place and self._completed):
            if config.rm_worktrees and not ctx.from_source and self.scm is not None:
                try:
                    self.scm.rm_worktree()
                except OSError as e:
                    logger.warning(f"Could not remove work tree: {e}")
            return

        ctx.build_failed = True
        ctx.database.stop_all(ctx.env)

        if config.keep_error_builds and not ctx.from_source:
            stamp = time.strftime("%Y-%m-%d_%H-%M-%S", time.localtime(ctx.run.start_time))
            logger.info("moving kept error trees")
            for path, prefix in ((ctx.build_dir, "pgsqlkeep"), (ctx.install_dir, "instkeep")):
                if not path.exists():
                    continue
                try:
                    path.rename(ctx.branch_root / f"{prefix}.{stamp}")
                except OSError as e:
                    logger.warning(f"error renaming {path} to {prefix}.{stamp}: {e}")
        elif not ctx.options.keepall:
            shutil.rmtree(ctx.install_dir, ignore_errors=True)
            if not ctx.from_source:
                shutil.rmtree(ctx.build_dir, ignore_errors=True)
