"""Tests for the run context."""

from buildfarm.core.run_context import RunContext, masked_environment, prepend_path


def test_masked_environment():
    masked = masked_environment(
        {"PATH": "/bin", "PGPORT": "5432", "PGPASSWORD": "pw", "AWS_SECRET": "x", "CC": "gcc"}
    )
    assert masked["PATH"] == "/bin"
    assert masked["PGPORT"] == "5432"
    assert masked["CC"] == "gcc"
    assert masked["PGPASSWORD"] == "xxxxxx"
    assert masked["AWS_SECRET"] == "xxxxxx"


def test_masking_matches_name_prefix_only():
    masked = masked_environment(
        {"AWS_SECRET_ACCESS_KEY": "k", "OLDPWD_TOKEN": "t", "LDFLAGS": "-L/x", "CFLAGS": "-O2"}
    )
    assert masked["AWS_SECRET_ACCESS_KEY"] == "xxxxxx"
    assert masked["OLDPWD_TOKEN"] == "xxxxxx"
    assert masked["LDFLAGS"] == "-L/x"
    assert masked["CFLAGS"] == "-O2"


def test_prepend_path():
    assert prepend_path(None, "/a") == "/a"
    assert prepend_path("/b", "/a") == "/a:/b"


class TestOverlay:
    """Tests for scoped environment changes."""

    def test_restores_on_exit(self, run_context: RunContext) -> None:
        with run_context.overlay(PGHOST="/tmp/x"):
            assert run_context.env["PGHOST"] == "/tmp/x"
            run_context.env["LEAK"] = "1"
        assert "PGHOST" not in run_context.env
        assert "LEAK" not in run_context.env

    def test_restores_on_error(self, run_context: RunContext) -> None:
        try:
            with run_context.overlay(PATH="/nowhere"):
                raise RuntimeError
        except RuntimeError:
            pass
        assert run_context.env["PATH"] == "/usr/bin:/bin"


class TestCommands:
    """Tests for command helpers."""

    def test_make_cmd_parallel(self, run_context: RunContext) -> None:
        run_context.config.make_jobs = 4
        assert run_context.make_cmd("install") == ["make", "install"]
        assert run_context.make_cmd(parallel=True) == ["make", "-j", "4"]

    def test_temp_install_flags(self, run_context: RunContext) -> None:
        assert run_context.temp_install_flags() == []
        run_context.temp_installs = 3
        assert run_context.temp_install_flags() == ["NO_TEMP_INSTALL=yes"]

    def test_run_command_uses_env(self, run_context: RunContext) -> None:
        run_context.env["BF_TEST"] = "here"
        result = run_context.run_command(["sh", "-c", "echo $BF_TEST"])
        assert result.lines == ["here\n"]

    def test_properties(self, run_context: RunContext) -> None:
        assert run_context.branch == "HEAD"
        assert not run_context.from_source
        assert run_context.database.install_dir == run_context.install_dir
