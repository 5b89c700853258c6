"""The fixed build pipeline.

``build_pipeline`` turns a run context into an ordered tuple of StepSpec
objects. Step names are the vocabulary accepted by --skip-steps and
--only-steps; labels (which add the locale for per-locale steps) name the
log files and the reported stage. Helper steps inside a group (cluster
setup, restarts, per-directory TAP runs) carry the group's name so they
always run together with it.
"""

import logging
import os
import re
import shutil
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from functools import partial
from pathlib import Path

from ..models import StepResult, StepSpec
from ..services.logs import collect_side_files, file_lines, glob_all
from .modules import STEP_HOOKS, BuildModule
from .run_context import RunContext, prepend_path
from .snapshot_tracker import SnapshotTracker

logger = logging.getLogger(__name__)

MISC_TAP_TESTS = ("recovery", "subscription", "authentication")

# Symbols objdump reports as typedefs that are really keywords or SQL types
BAD_TYPEDEFS = frozenset({"date", "interval", "timestamp", "ANY"})

_AC_INIT = re.compile(r"AC_INIT\(\[\S+\],\s*\[([\d.]+)(?:rc\d+|devel|beta\d+)?\],")
_PL_OPTION = re.compile(r"^--with-(perl|python|tcl)")
_C_COMMENT = re.compile(r"/\*.*?\*/", re.S)


def get_pg_version(source_dir: Path) -> tuple[int, ...]:
    """Read the version from AC_INIT in configure.ac (or configure.in).

    ``17devel`` reads as ``(17,)``. Returns an empty tuple when no version
    is found, which later checks treat as "current".
    """
    for name in ("configure.ac", "configure.in"):
        for line in file_lines(source_dir / name):
            match = _AC_INIT.search(line)
            if match:
                return tuple(int(p) for p in match.group(1).split(".") if p)
    logger.warning(f"Could not determine version from {source_dir}")
    return ()


def version_at_least(ctx: RunContext, version: tuple[int, ...]) -> bool:
    return not ctx.build_version or ctx.build_version >= version


def tap_tests_enabled(ctx: RunContext) -> bool:
    return "--enable-tap-tests" in ctx.config.config_opts


def pl_enabled(ctx: RunContext) -> bool:
    return any(_PL_OPTION.match(opt) for opt in ctx.config.config_opts)


def optional_step_wanted(step: str, ctx: RunContext) -> bool:
    """Whether an optional step's schedule allows it on this run."""
    tracker = SnapshotTracker(ctx.branch_root, ctx.config.animal, ctx.options.nostatus)
    return tracker.optional_step_due(step, ctx.config.optional_steps.get(step), ctx.branch)


def _result(status: int, lines: list[str], side_files: Iterable[Path] = ()) -> StepResult:
    result = StepResult(status=status, log=list(lines))
    result.extend(collect_side_files(side_files))
    return result


def _make_in(ctx: RunContext, subdir: str, *targets: str, parallel: bool = False) -> StepResult:
    return ctx.run_command(
        ctx.make_cmd(*targets, parallel=parallel), ctx.build_dir / subdir
    ).to_step_result()


# -- build steps -------------------------------------------------------------


def distclean(ctx: RunContext) -> StepResult:
    if not (ctx.build_dir / "GNUmakefile").exists():
        return StepResult(status=0, log=["nothing to clean\n"])
    return _make_in(ctx, ".", "distclean")


def accache_file(ctx: RunContext) -> Path:
    cache_dir = ctx.build_root / f"accache-{ctx.config.animal}"
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir.resolve() / f"config-{ctx.branch}.cache"


def accache_obsolete(ctx: RunContext, cache: Path) -> bool:
    """Decide whether the autoconf cache from an earlier run must be discarded."""
    cache_mtime = cache.stat().st_mtime
    if ctx.from_source:
        configure = ctx.source_dir / "configure"
        if configure.exists() and configure.stat().st_mtime > cache_mtime:
            return True
    else:
        if any(f == "configure" or f.startswith("configure ") for f in ctx.run.changed_files):
            return True
        if ctx.run.last_status == 0:
            return True
    if any(item.strip().startswith("config_opts") for item in ctx.options.config_set):
        return True
    config_path = ctx.options.config_path
    if config_path is None or not config_path.exists():
        return False
    return config_path.stat().st_mtime > cache_mtime


def configure(ctx: RunContext) -> StepResult:
    args: list[str] = [
        str(ctx.source_dir / "configure"),
        *ctx.config.config_opts,
        f"--prefix={ctx.install_dir}",
        f"--with-pgport={ctx.port}",
    ]
    if ctx.config.use_accache:
        cache = accache_file(ctx)
        if cache.exists() and accache_obsolete(ctx, cache):
            logger.info(f"Removing obsolete autoconf cache {cache}")
            cache.unlink()
        args.append(f"--cache-file={cache}")

    with ctx.overlay(**ctx.config.config_env):
        result = ctx.run_command(args).to_step_result()

    config_log = ctx.build_dir / "config.log"
    config_lines = file_lines(config_log)
    if config_lines:
        ctx.logs.write("config", config_lines)
    if not result.passed:
        result.extend(["\n\n================= config.log ================\n\n", *config_lines])
    return result


def build(ctx: RunContext) -> StepResult:
    return _make_in(ctx, ".", parallel=True)


def check(ctx: RunContext) -> StepResult:
    regress = ctx.build_dir / "src/test/regress"
    res = ctx.run_command(ctx.make_cmd("NO_LOCALE=1", "check"), regress)
    ctx.temp_installs += 1
    side = [regress / "regression.diffs"]
    side += glob_all(ctx.build_dir, ["src/test/regress/log/*.log", "tmp_install/log/*"])
    result = _result(res.status, res.lines, side)
    if result.passed and not ctx.options.keepall:
        shutil.rmtree(regress / "tmp_check", ignore_errors=True)
    return result


def contrib_build(ctx: RunContext) -> StepResult:
    return _make_in(ctx, "contrib", parallel=True)


def contrib_check(ctx: RunContext) -> StepResult:
    res = ctx.run_command(ctx.make_cmd("NO_LOCALE=1", "check"), ctx.build_dir / "contrib")
    side = glob_all(
        ctx.build_dir,
        [
            "contrib/*/regression.diffs",
            "contrib/*/*/regression.diffs",
            "contrib/*/log/*.log",
            "contrib/*/tmp_check/log/*",
            "tmp_install/log/*",
        ],
    )
    return _result(res.status, res.lines, side)


def pl_check(ctx: RunContext) -> StepResult:
    res = ctx.run_command(ctx.make_cmd("check"), ctx.build_dir / "src/pl")
    side = glob_all(ctx.build_dir, ["src/pl/*/regression.diffs", "src/pl/*/*/regression.diffs"])
    return _result(res.status, res.lines, side)


def cert_check(ctx: RunContext) -> StepResult:
    res = ctx.run_command(ctx.make_cmd("check"), ctx.build_dir / "src/test/certification")
    side = glob_all(
        ctx.build_dir,
        [
            "src/test/certification/tmp_check/log/regress_log_*",
            "src/test/certification/tmp_check/log/*.log",
            "src/test/certification/*/regression.diffs",
        ],
    )
    return _result(res.status, res.lines, side)


def testmodules(ctx: RunContext) -> StepResult:
    return _make_in(ctx, "src/test/modules", parallel=True)


def build_docs(ctx: RunContext) -> StepResult:
    return _make_in(ctx, "doc")


def install(ctx: RunContext) -> StepResult:
    result = _make_in(ctx, ".", "install")
    if result.passed:
        lib = str(ctx.install_dir / "lib")
        ctx.env["LD_LIBRARY_PATH"] = prepend_path(ctx.env.get("LD_LIBRARY_PATH"), lib)
        ctx.env["DYLD_LIBRARY_PATH"] = prepend_path(ctx.env.get("DYLD_LIBRARY_PATH"), lib)
        ctx.env["PATH"] = prepend_path(ctx.env.get("PATH"), str(ctx.install_dir / "bin"))
    return result


def _install_with_temp(ctx: RunContext, subdir: str) -> StepResult:
    """Install into the prefix and into the temporary install used by checks."""
    workdir = ctx.build_dir / subdir
    result = ctx.run_command(ctx.make_cmd("install"), workdir).to_step_result()
    if result.passed:
        tmp_inst = ctx.build_dir.resolve() / "tmp_install"
        second = ctx.run_command(ctx.make_cmd(f"DESTDIR={tmp_inst}", "install"), workdir)
        result = _result(second.status, [*result.log, *second.lines])
    ctx.temp_installs += 1
    return result


def contrib_install(ctx: RunContext) -> StepResult:
    return _install_with_temp(ctx, "contrib")


def testmodules_install(ctx: RunContext) -> StepResult:
    return _install_with_temp(ctx, "src/test/modules")


def module_hook(module: BuildModule, hook: str, ctx: RunContext) -> StepResult:
    return getattr(module, hook)(ctx)


def module_installcheck(module: BuildModule, locale: str, ctx: RunContext) -> StepResult:
    return module.installcheck(ctx, locale)


def run_tap_test(ctx: RunContext, test_dir: Path, target: str = "check") -> StepResult:
    """Run one directory's TAP suite and attach its tmp_check logs."""
    args = ["NO_LOCALE=1"]
    if "PROVE_FLAGS" in ctx.env:
        if ctx.env["PROVE_FLAGS"]:
            args.append(f"PROVE_FLAGS={ctx.env['PROVE_FLAGS']}")
    else:
        args.append("PROVE_FLAGS=--timer")
    args += ctx.temp_install_flags()
    res = ctx.run_command(ctx.make_cmd(*args, target), test_dir)
    return _result(res.status, res.lines, sorted(test_dir.glob("tmp_check/log/*")))


def ecpg_check(ctx: RunContext) -> StepResult:
    ecpg = ctx.build_dir / "src/interfaces/ecpg"
    res = ctx.run_command(
        ctx.make_cmd("NO_LOCALE=1", *ctx.temp_install_flags(), "check"), ecpg
    )
    side = [ecpg / "test/regression.diffs", *sorted(ecpg.glob("test/log/*.log"))]
    return _result(res.status, res.lines, side)


# -- per-locale steps --------------------------------------------------------


@contextmanager
def locale_scope(ctx: RunContext) -> Iterator[None]:
    with ctx.overlay(PGHOST=str(ctx.tmpdir)):
        yield


def initdb(locale: str, ctx: RunContext) -> StepResult:
    return ctx.database.initdb(
        locale,
        ctx.tmpdir,
        ctx.config.extra_config_for(ctx.branch),
        ctx.env,
        ctx.token,
    ).to_step_result()


def start_db(locale: str, ctx: RunContext) -> StepResult:
    return ctx.database.start(locale, ctx.env, ctx.token).to_step_result()


def restart_db(locale: str, ctx: RunContext) -> StepResult:
    return ctx.database.restart(locale, ctx.env, ctx.token).to_step_result()


def stop_db(locale: str, ctx: RunContext) -> StepResult:
    return ctx.database.stop(locale, ctx.env, ctx.token).to_step_result()


def _installcheck(
    ctx: RunContext, subdir: str, side_patterns: list[str], *make_args: str
) -> StepResult:
    res = ctx.run_command(ctx.make_cmd(*make_args, "installcheck"), ctx.build_dir / subdir)
    side = [*glob_all(ctx.build_dir, side_patterns), ctx.install_dir / "logfile"]
    return _result(res.status, res.lines, side)


def install_check(locale: str, ctx: RunContext) -> StepResult:
    return _installcheck(ctx, "src/test/regress", ["src/test/regress/regression.diffs"])


def isolation_check(locale: str, ctx: RunContext) -> StepResult:
    return _installcheck(
        ctx,
        "src/test/isolation",
        [
            "src/test/isolation/output_iso/regression.diffs",
            "src/test/isolation/regression.diffs",
            "src/test/isolation/log/*.log",
        ],
        "NO_LOCALE=1",
    )


def pl_install_check(locale: str, ctx: RunContext) -> StepResult:
    return _installcheck(
        ctx, "src/pl", ["src/pl/*/regression.diffs", "src/pl/*/*/regression.diffs"]
    )


def contrib_install_check(locale: str, ctx: RunContext) -> StepResult:
    return _installcheck(
        ctx,
        "contrib",
        ["contrib/*/regression.diffs", "contrib/*/*/regression.diffs"],
        "USE_MODULE_DB=1",
    )


def testmodules_install_check(locale: str, ctx: RunContext) -> StepResult:
    return _installcheck(
        ctx, "src/test/modules", ["src/test/modules/*/regression.diffs"], "USE_MODULE_DB=1"
    )


def locale_end(locale: str, ctx: RunContext) -> StepResult:
    if ctx.modules is not None:
        ctx.modules.notify("locale_end", ctx, locale)
    if not ctx.options.keepall:
        shutil.rmtree(ctx.install_dir / f"data-{locale}", ignore_errors=True)
    return StepResult(status=0)


# -- typedefs ----------------------------------------------------------------


def parse_typedefs(objdump_lines: list[str]) -> set[str]:
    """Collect typedef names from ``objdump -W`` output.

    The name is the last field of a DW_AT_name line within three lines of
    a DW_TAG_typedef entry.
    """
    names: set[str] = set()
    remaining = 0
    for line in objdump_lines:
        if "DW_TAG_typedef" in line:
            remaining = 3
            continue
        if remaining <= 0:
            continue
        remaining -= 1
        fields = line.split()
        if len(fields) < 2 or "DW_AT_name" not in (fields[0], fields[1]):
            continue
        if fields[-1].startswith("DW_FORM_str"):
            continue
        names.add(fields[-1])
    return names - BAD_TYPEDEFS


def source_words(root: Path) -> set[str]:
    """Identifiers used in C, header, lex and yacc sources, comments removed."""
    words: set[str] = set()
    for dirpath, _dirs, files in os.walk(root):
        for name in files:
            if not name.endswith((".c", ".h", ".l", ".y")):
                continue
            text = "".join(file_lines(Path(dirpath) / name))
            words.update(re.split(r"\W+", _C_COMMENT.sub("", text)))
    return words


def find_typedefs(ctx: RunContext) -> StepResult:
    binaries = [
        p
        for p in glob_all(ctx.install_dir, ["bin/*", "lib/*", "lib/postgresql/*"])
        if p.is_file() and not re.search(r"bin/(ipcclean|pltcl_)", str(p))
    ]
    symbols: set[str] = set()
    for binary in binaries:
        res = ctx.run_command(["objdump", "-W", str(binary)], ctx.install_dir)
        symbols |= parse_typedefs(res.lines)
    used = source_words(ctx.source_dir)
    found = sorted(s for s in symbols if s in used)
    return StepResult(status=0, log=[f"{s}\n" for s in found])


# -- assembly ----------------------------------------------------------------


def _module_steps(ctx: RunContext, hook: str) -> list[StepSpec]:
    if ctx.modules is None:
        return []
    return [
        StepSpec(name=f"{m.name}-{hook}", action=partial(module_hook, m, hook))
        for m in ctx.modules.implementing(hook)
    ]


def _tap_group(ctx: RunContext, name: str, test_dirs: list[Path]) -> StepSpec:
    children = tuple(
        StepSpec(name=name, label=f"{d.name}-check", action=partial(run_tap_test, test_dir=d))
        for d in test_dirs
    )
    return StepSpec(
        name=name,
        predicate=lambda c: (
            bool(children) and tap_tests_enabled(c) and version_at_least(c, (9, 4))
        ),
        children=children,
    )


def _tap_dirs(ctx: RunContext, patterns: list[str]) -> list[Path]:
    """Build-tree directories whose source counterpart has a TAP ``t`` directory."""
    dirs = []
    for pattern in patterns:
        for src in sorted(ctx.source_dir.glob(pattern)):
            if (src / "t").is_dir():
                dirs.append(ctx.build_dir / src.relative_to(ctx.source_dir))
    return dirs


def _restart_then(
    name: str,
    locale: str,
    start_no: int,
    action: Callable[[str, RunContext], StepResult],
    predicate: Callable[[RunContext], bool] | None = None,
) -> StepSpec:
    """A check preceded by a server restart, so its log starts fresh."""
    return StepSpec(
        name=name,
        predicate=predicate or (lambda c: True),
        children=(
            StepSpec(
                name=name,
                label=f"startdb-{locale}-{start_no}",
                action=partial(restart_db, locale),
                record=False,
            ),
            StepSpec(name=name, label=f"{name}-{locale}", action=partial(action, locale)),
        ),
    )


def locale_group(ctx: RunContext, locale: str) -> StepSpec:
    """Steps run against a freshly initialized cluster in one locale."""
    installcheck_hooks = []
    if ctx.modules is not None:
        installcheck_hooks = [
            StepSpec(
                name=f"{m.name}-installcheck",
                label=f"{m.name}-installcheck-{locale}",
                action=partial(module_installcheck, m, locale),
            )
            for m in ctx.modules.implementing("installcheck")
        ]
    children = [
        StepSpec(name="install", label=f"initdb-{locale}", action=partial(initdb, locale)),
        StepSpec(
            name="install",
            label=f"startdb-{locale}-1",
            action=partial(start_db, locale),
            record=False,
        ),
        StepSpec(
            name="install-check",
            label=f"install-check-{locale}",
            action=partial(install_check, locale),
        ),
        *installcheck_hooks,
    ]
    start_no = 2
    if locale == "C" and (ctx.source_dir / "src/test/isolation").is_dir():
        children.append(_restart_then("isolation-check", locale, start_no, isolation_check))
        start_no += 1
    if pl_enabled(ctx):
        children.append(_restart_then("pl-install-check", locale, start_no, pl_install_check))
        start_no += 1
    children.append(
        _restart_then("contrib-install-check", locale, start_no, contrib_install_check)
    )
    start_no += 1
    children.append(
        _restart_then(
            "testmodules-install-check",
            locale,
            start_no,
            testmodules_install_check,
            predicate=lambda c: version_at_least(c, (9, 5)),
        )
    )
    children += [
        StepSpec(
            name="install",
            label=f"stopdb-{locale}",
            action=partial(stop_db, locale),
            record=False,
        ),
        StepSpec(
            name="install",
            label=f"locale-end-{locale}",
            action=partial(locale_end, locale),
            record=False,
        ),
    ]
    return StepSpec(
        name="install",
        label=f"locale-{locale}",
        children=tuple(children),
        scope=locale_scope,
    )


def locales_for(ctx: RunContext) -> list[str]:
    """Configured locales with C always first."""
    locales = [loc for loc in ctx.config.locales if loc != "C"]
    return ["C", *locales]


def build_pipeline(ctx: RunContext) -> tuple[StepSpec, ...]:
    """The ordered steps for this run."""
    module_steps = {hook: _module_steps(ctx, hook) for hook in STEP_HOOKS}
    steps: list[StepSpec] = [
        StepSpec(
            name="distclean",
            action=distclean,
            predicate=lambda c: c.options.from_source_clean is not None,
        ),
        StepSpec(name="configure", action=configure),
        StepSpec(name="build", action=build),
        StepSpec(name="check", action=check),
        StepSpec(name="contrib-build", action=contrib_build, requires=("build",)),
        StepSpec(name="contrib-check", action=contrib_check, requires=("check",)),
        StepSpec(name="pl-check", action=pl_check, predicate=pl_enabled),
        StepSpec(
            name="cert-check",
            action=cert_check,
            predicate=lambda c: (
                tap_tests_enabled(c)
                and "--enable-svt5" in c.config.config_opts
                and (c.source_dir / "src/test/certification").is_dir()
            ),
        ),
        StepSpec(
            name="testmodules",
            action=testmodules,
            predicate=lambda c: version_at_least(c, (9, 5)),
        ),
        StepSpec(
            name="build-docs",
            action=build_docs,
            predicate=partial(optional_step_wanted, "build-docs"),
        ),
        StepSpec(name="install", action=install, requires=("build",)),
        StepSpec(
            name="contrib-install",
            action=contrib_install,
            requires=("build", "contrib-build", "install"),
        ),
        StepSpec(
            name="testmodules-install",
            action=testmodules_install,
            requires=("testmodules", "install"),
            predicate=lambda c: version_at_least(c, (9, 5)),
        ),
        *module_steps["configure"],
        *module_steps["build"],
        *module_steps["check"],
        *module_steps["install"],
        _tap_group(ctx, "bin-check", _tap_dirs(ctx, ["src/bin/*"])),
        _tap_group(ctx, "misc-check", _tap_dirs(ctx, [f"src/test/{t}" for t in MISC_TAP_TESTS])),
        *(locale_group(ctx, locale) for locale in locales_for(ctx)),
        StepSpec(
            name="ecpg-check",
            action=ecpg_check,
            predicate=lambda c: version_at_least(c, (8, 2)),
        ),
        StepSpec(
            name="find-typedefs",
            action=find_typedefs,
            predicate=lambda c: (
                c.options.find_typedefs or optional_step_wanted("find-typedefs", c)
            ),
        ),
    ]
    return tuple(steps)
