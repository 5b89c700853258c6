"""Tests for the build pipeline steps."""

import os
from pathlib import Path
from unittest import mock

import pytest

from buildfarm.core import pipeline
from buildfarm.core.modules import BuildModule, ModuleRegistry
from buildfarm.core.run_context import RunContext
from buildfarm.models import StepResult, StepSpec
from buildfarm.services.commands import CommandResult


def _ok(lines: list[str] | None = None) -> CommandResult:
    return CommandResult(status=0, lines=lines or ["ok\n"])


def _flatten(steps: tuple[StepSpec, ...]) -> list[StepSpec]:
    flat: list[StepSpec] = []
    for step in steps:
        flat.append(step)
        flat.extend(_flatten(step.children))
    return flat


class TestGetPgVersion:
    """Tests for get_pg_version."""

    @pytest.mark.parametrize(
        ("version", "expected"),
        [("17devel", (17,)), ("16.2", (16, 2)), ("9.6.24", (9, 6, 24)), ("15beta1", (15,))],
    )
    def test_versions(self, tmp_path: Path, version: str, expected: tuple[int, ...]) -> None:
        (tmp_path / "configure.ac").write_text(f"AC_INIT([PostgreSQL], [{version}], [bugs])\n")
        assert pipeline.get_pg_version(tmp_path) == expected

    def test_configure_in(self, tmp_path: Path) -> None:
        (tmp_path / "configure.in").write_text("AC_INIT([PostgreSQL], [8.4.1], [bugs])\n")
        assert pipeline.get_pg_version(tmp_path) == (8, 4, 1)

    def test_unknown(self, tmp_path: Path) -> None:
        assert pipeline.get_pg_version(tmp_path) == ()

    def test_unknown_counts_as_current(self, run_context: RunContext) -> None:
        assert pipeline.version_at_least(run_context, (99,))
        run_context.build_version = (9, 3)
        assert not pipeline.version_at_least(run_context, (9, 4))


class TestTypedefs:
    """Tests for typedef extraction."""

    def test_parse_typedefs(self) -> None:
        lines = [
            " <1><1d>: Abbrev Number: 3 (DW_TAG_base_type)\n",
            "    <1e>   DW_AT_name        : int\n",
            " <1><2d>: Abbrev Number: 2 (DW_TAG_typedef)\n",
            "    <2e>   DW_AT_name        : Oid\n",
            " <1><3d>: Abbrev Number: 2 (DW_TAG_typedef)\n",
            "    <3e>   DW_AT_name        : (indirect string, offset: 0x10): date\n",
        ]
        assert pipeline.parse_typedefs(lines) == {"Oid"}

    def test_source_words_skip_comments(self, tmp_path: Path) -> None:
        (tmp_path / "a.c").write_text("/* Relation */ Oid x;\n")
        (tmp_path / "notes.txt").write_text("Buffer\n")
        words = pipeline.source_words(tmp_path)
        assert "Oid" in words
        assert "Relation" not in words
        assert "Buffer" not in words

    def test_find_typedefs(self, run_context: RunContext) -> None:
        (run_context.install_dir / "bin").mkdir(parents=True)
        (run_context.install_dir / "bin" / "postgres").write_text("")
        (run_context.source_dir / "x.c").write_text("Oid a; Buffer b;\n")
        objdump = [
            "(DW_TAG_typedef)\n",
            "   DW_AT_name : Oid\n",
            "(DW_TAG_typedef)\n",
            "   DW_AT_name : Unused\n",
        ]
        with mock.patch.object(run_context, "run_command", return_value=_ok(objdump)):
            result = pipeline.find_typedefs(run_context)
        assert result.log == ["Oid\n"]


class TestConfigure:
    """Tests for the configure step and its autoconf cache."""

    def test_arguments(self, run_context: RunContext) -> None:
        run_context.config.config_opts = ["--enable-debug"]
        with mock.patch.object(run_context, "run_command", return_value=_ok()) as run:
            assert pipeline.configure(run_context).passed
        args = run.call_args[0][0]
        assert args[0].endswith("configure")
        assert "--enable-debug" in args
        assert f"--prefix={run_context.install_dir}" in args
        assert "--with-pgport=5999" in args
        assert any(a.startswith("--cache-file=") for a in args)

    def test_config_env_is_scoped(self, run_context: RunContext) -> None:
        run_context.config.config_env = {"CC": "clang"}
        seen = {}

        def capture(args, cwd=None):
            seen.update(run_context.env)
            return _ok()

        with mock.patch.object(run_context, "run_command", side_effect=capture):
            pipeline.configure(run_context)
        assert seen["CC"] == "clang"
        assert "CC" not in run_context.env

    def test_failure_appends_config_log(self, run_context: RunContext) -> None:
        (run_context.build_dir / "config.log").write_text("checking for cc... no\n")
        failed = CommandResult(status=1, lines=["configure: error\n"])
        with mock.patch.object(run_context, "run_command", return_value=failed):
            result = pipeline.configure(run_context)
        assert not result.passed
        assert result.log[-1] == "checking for cc... no\n"
        assert (run_context.logs.log_dir / "config.log").exists()

    def test_cache_obsolete_when_configure_changed(self, run_context: RunContext) -> None:
        cache = pipeline.accache_file(run_context)
        cache.write_text("")
        run_context.run.last_status = 100
        run_context.run.changed_files = ["configure 1a2b3c4"]
        assert pipeline.accache_obsolete(run_context, cache)

    def test_cache_obsolete_when_forced(self, run_context: RunContext) -> None:
        cache = pipeline.accache_file(run_context)
        cache.write_text("")
        run_context.run.last_status = 0
        assert pipeline.accache_obsolete(run_context, cache)

    def test_cache_obsolete_when_config_newer(
        self, run_context: RunContext, tmp_path: Path
    ) -> None:
        cache = pipeline.accache_file(run_context)
        cache.write_text("")
        os.utime(cache, (1_000, 1_000))
        config_file = tmp_path / "buildfarm.toml"
        config_file.write_text("")
        run_context.options.config_path = config_file
        run_context.run.last_status = 100
        assert pipeline.accache_obsolete(run_context, cache)

    def test_cache_kept(self, run_context: RunContext) -> None:
        cache = pipeline.accache_file(run_context)
        cache.write_text("")
        run_context.run.last_status = 100
        run_context.run.changed_files = ["src/backend/main.c 1a2b3c4"]
        assert not pipeline.accache_obsolete(run_context, cache)


class TestSteps:
    """Tests for individual build steps."""

    def test_install_extends_paths(self, run_context: RunContext) -> None:
        with mock.patch.object(run_context, "run_command", return_value=_ok()):
            pipeline.install(run_context)
        assert run_context.env["PATH"].startswith(str(run_context.install_dir / "bin"))
        assert run_context.env["LD_LIBRARY_PATH"] == str(run_context.install_dir / "lib")

    def test_failed_install_leaves_paths(self, run_context: RunContext) -> None:
        failed = CommandResult(status=2, lines=[])
        with mock.patch.object(run_context, "run_command", return_value=failed):
            pipeline.install(run_context)
        assert run_context.env["PATH"] == "/usr/bin:/bin"

    def test_check_attaches_diffs(self, run_context: RunContext) -> None:
        regress = run_context.build_dir / "src/test/regress"
        regress.mkdir(parents=True)
        (regress / "regression.diffs").write_text("-expected\n+actual\n")
        failed = CommandResult(status=2, lines=["FAILED\n"])
        with mock.patch.object(run_context, "run_command", return_value=failed):
            result = pipeline.check(run_context)
        assert result.log[0] == "FAILED\n"
        assert "+actual\n" in result.log
        assert run_context.temp_installs == 1

    def test_tap_test_default_prove_flags(self, run_context: RunContext, tmp_path: Path) -> None:
        with mock.patch.object(run_context, "run_command", return_value=_ok()) as run:
            pipeline.run_tap_test(run_context, tmp_path)
        args = run.call_args[0][0]
        assert "PROVE_FLAGS=--timer" in args
        assert "NO_TEMP_INSTALL=yes" not in args

    def test_tap_test_empty_prove_flags(self, run_context: RunContext, tmp_path: Path) -> None:
        run_context.env["PROVE_FLAGS"] = ""
        run_context.temp_installs = 3
        with mock.patch.object(run_context, "run_command", return_value=_ok()) as run:
            pipeline.run_tap_test(run_context, tmp_path)
        args = run.call_args[0][0]
        assert not any(a.startswith("PROVE_FLAGS") for a in args)
        assert "NO_TEMP_INSTALL=yes" in args

    def test_locale_scope(self, run_context: RunContext) -> None:
        with pipeline.locale_scope(run_context):
            assert run_context.env["PGHOST"] == str(run_context.tmpdir)
        assert "PGHOST" not in run_context.env

    def test_locale_end_removes_data(self, run_context: RunContext) -> None:
        data = run_context.install_dir / "data-C"
        data.mkdir(parents=True)
        assert pipeline.locale_end("C", run_context).passed
        assert not data.exists()

    def test_distclean_without_makefile(self, run_context: RunContext) -> None:
        assert pipeline.distclean(run_context).log == ["nothing to clean\n"]


class TestBuildPipeline:
    """Tests for pipeline assembly."""

    def test_top_level_order(self, run_context: RunContext) -> None:
        names = [s.stage for s in pipeline.build_pipeline(run_context)]
        assert names == [
            "distclean",
            "configure",
            "build",
            "check",
            "contrib-build",
            "contrib-check",
            "pl-check",
            "cert-check",
            "testmodules",
            "build-docs",
            "install",
            "contrib-install",
            "testmodules-install",
            "bin-check",
            "misc-check",
            "locale-C",
            "ecpg-check",
            "find-typedefs",
        ]

    def test_c_locale_first(self, run_context: RunContext) -> None:
        run_context.config.locales = ["en_US.utf8", "C"]
        stages = [s.stage for s in pipeline.build_pipeline(run_context)]
        assert stages.index("locale-C") < stages.index("locale-en_US.utf8")

    def test_locale_group_labels(self, run_context: RunContext) -> None:
        run_context.config.config_opts = ["--with-perl"]
        (run_context.source_dir / "src/test/isolation").mkdir(parents=True)
        group = pipeline.locale_group(run_context, "C")
        labels = [s.stage for s in _flatten(group.children)]
        assert labels == [
            "initdb-C",
            "startdb-C-1",
            "install-check-C",
            "isolation-check",
            "startdb-C-2",
            "isolation-check-C",
            "pl-install-check",
            "startdb-C-3",
            "pl-install-check-C",
            "contrib-install-check",
            "startdb-C-4",
            "contrib-install-check-C",
            "testmodules-install-check",
            "startdb-C-5",
            "testmodules-install-check-C",
            "stopdb-C",
            "locale-end-C",
        ]

    def test_tap_dirs(self, run_context: RunContext) -> None:
        (run_context.source_dir / "src/bin/pg_dump/t").mkdir(parents=True)
        (run_context.source_dir / "src/bin/psql").mkdir(parents=True)
        run_context.config.config_opts = ["--enable-tap-tests"]
        bin_check = pipeline.build_pipeline(run_context)[13]
        assert bin_check.name == "bin-check"
        assert [c.stage for c in bin_check.children] == ["pg_dump-check"]
        assert all(c.name == "bin-check" for c in bin_check.children)
        assert bin_check.predicate(run_context)

    def test_module_steps(self, run_context: RunContext) -> None:
        class Checker(BuildModule):
            name = "checker"

            def check(self, ctx: RunContext) -> StepResult:
                return StepResult(status=0)

        run_context.modules = ModuleRegistry([Checker()])
        names = [s.name for s in pipeline.build_pipeline(run_context)]
        assert names.index("checker-check") > names.index("testmodules-install")
        assert names.index("checker-check") < names.index("bin-check")

    def test_optional_step_not_configured(self, run_context: RunContext) -> None:
        assert not pipeline.optional_step_wanted("build-docs", run_context)
