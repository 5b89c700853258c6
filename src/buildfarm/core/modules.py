"""Lifecycle-hook modules.

Modules are plain objects registered by name in ``MODULE_REGISTRY``. The
pipeline calls every enabled module at fixed lifecycle points; a module
only overrides the hooks it cares about.
"""

import logging
import shutil
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

from ..config import ConfigError
from ..models import StepResult

if TYPE_CHECKING:
    from .run_context import RunContext

logger = logging.getLogger(__name__)

# Hooks that run as pipeline steps, in pipeline order
STEP_HOOKS = ("configure", "build", "check", "install")


class BuildModule:
    """Base class with no-op hooks.

    Step hooks return a StepResult; a non-zero status fails the run at the
    ``<module>-<hook>`` stage.
    """

    name: ClassVar[str] = "module"

    def setup(self, ctx: "RunContext") -> None:
        """Called once after the run context is built, before the lock."""

    def checkout(self, ctx: "RunContext", log: list[str]) -> None:
        """Called after the source checkout with its log."""

    def need_run(self, ctx: "RunContext") -> bool:
        """Return True to force a build even without relevant changes."""
        return False

    def setup_target(self, ctx: "RunContext") -> None:
        """Called once the build directory is prepared."""

    def configure(self, ctx: "RunContext") -> StepResult:
        return StepResult(status=0)

    def build(self, ctx: "RunContext") -> StepResult:
        return StepResult(status=0)

    def check(self, ctx: "RunContext") -> StepResult:
        return StepResult(status=0)

    def install(self, ctx: "RunContext") -> StepResult:
        return StepResult(status=0)

    def installcheck(self, ctx: "RunContext", locale: str) -> StepResult:
        return StepResult(status=0)

    def locale_end(self, ctx: "RunContext", locale: str) -> None:
        """Called after the cluster for a locale has been stopped."""

    def cleanup(self, ctx: "RunContext") -> None:
        """Called from run cleanup on every exit path."""

    def implements(self, hook: str) -> bool:
        """Whether this module overrides a hook."""
        return getattr(type(self), hook) is not getattr(BuildModule, hook)


class CCacheModule(BuildModule):
    """Keeps a compiler cache per animal.

    Uses ``CCACHE_DIR`` from ``build_env`` or ``<build_root>/ccache-<animal>``.
    When ``ccache_failure_remove`` is set the cache is discarded after a
    failed build so a bad cache can't poison the next run.
    """

    name = "ccache"

    def __init__(self) -> None:
        self.cache_dir: Path | None = None

    def setup(self, ctx: "RunContext") -> None:
        configured = ctx.config.build_env.get("CCACHE_DIR")
        if configured:
            cache_dir = Path(configured)
        else:
            cache_dir = ctx.build_root / f"ccache-{ctx.config.animal}"
        cache_dir.mkdir(parents=True, exist_ok=True)
        self.cache_dir = cache_dir.resolve()
        ctx.env["CCACHE_DIR"] = str(self.cache_dir)
        logger.debug(f"Using ccache directory {self.cache_dir}")

    def cleanup(self, ctx: "RunContext") -> None:
        if ctx.build_failed and ctx.config.ccache_failure_remove and self.cache_dir:
            logger.info(f"Removing ccache directory {self.cache_dir} after failure")
            shutil.rmtree(self.cache_dir, ignore_errors=True)


MODULE_REGISTRY: dict[str, type[BuildModule]] = {
    CCacheModule.name: CCacheModule,
}


class ModuleRegistry:
    """The modules enabled for one run, in configuration order."""

    def __init__(self, modules: list[BuildModule] | None = None) -> None:
        self.modules = modules or []

    @classmethod
    def from_names(cls, names: list[str]) -> "ModuleRegistry":
        """Instantiate modules by registered name.

        Raises:
            ConfigError: If a name is not registered
        """
        modules = []
        for name in names:
            try:
                modules.append(MODULE_REGISTRY[name]())
            except KeyError:
                known = ", ".join(sorted(MODULE_REGISTRY))
                raise ConfigError(f"unknown module {name!r} (known: {known})") from None
        return cls(modules)

    def __iter__(self) -> Iterator[BuildModule]:
        return iter(self.modules)

    def __len__(self) -> int:
        return len(self.modules)

    def implementing(self, hook: str) -> list[BuildModule]:
        return [m for m in self.modules if m.implements(hook)]

    def notify(self, hook: str, ctx: "RunContext", *args: object) -> None:
        """Call a non-step hook on every module."""
        for module in self.modules:
            getattr(module, hook)(ctx, *args)

    def need_run(self, ctx: "RunContext") -> bool:
        # every module is asked, even after one says yes
        answers = [module.need_run(ctx) for module in self.modules]
        return any(answers)

    def cleanup(self, ctx: "RunContext") -> None:
        """Run every cleanup hook; one failing does not stop the others."""
        for module in self.modules:
            try:
                module.cleanup(ctx)
            except Exception:
                logger.exception(f"Module {module.name} cleanup failed")
