"""Run command implementation."""

import sys
from pathlib import Path

import typer

from ..config import DEFAULT_CONFIG_FILE, ConfigError, load_config, parse_run_options
from ..core import LockError, RunController
from ..output import get_output_context


def run(
    typer_ctx: typer.Context,
    branch: str | None = typer.Argument(None, help="Branch to build (default HEAD)"),
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILE),
        "--config",
        "-c",
        help="Configuration file",
    ),
    nosend: bool = typer.Option(False, "--nosend", help="Don't send the results"),
    nostatus: bool = typer.Option(
        False, "--nostatus", help="Don't read or write the snapshot facts"
    ),
    force: bool = typer.Option(False, "--force", help="Build even without changes"),
    from_source: Path | None = typer.Option(
        None, "--from-source", help="Build an existing source tree"
    ),
    from_source_clean: Path | None = typer.Option(
        None,
        "--from-source-clean",
        help="Build an existing source tree after cleaning it",
    ),
    find_typedefs: bool = typer.Option(
        False, "--find-typedefs", help="Extract typedef names after the build"
    ),
    keepall: bool = typer.Option(
        False, "--keepall", help="Keep build and install trees on failure"
    ),
    test: bool = typer.Option(
        False, "--test", help="Shorthand for --force --nostatus --nosend -v"
    ),
    skip_steps: str = typer.Option(
        "", "--skip-steps", help="Space separated list of steps to skip"
    ),
    only_steps: str = typer.Option(
        "", "--only-steps", help="Space separated list of the only steps to run"
    ),
    config_set: list[str] | None = typer.Option(
        None,
        "--config-set",
        help="Override a configuration value, key=value (repeatable)",
    ),
) -> None:
    """Build and test one branch and report the result."""
    ctx = get_output_context()
    flags = typer_ctx.obj or {}

    try:
        options = parse_run_options(
            branch=branch or "HEAD",
            explicit_branch=branch is not None,
            nosend=nosend,
            nostatus=nostatus,
            force=force,
            from_source=from_source,
            from_source_clean=from_source_clean,
            find_typedefs=find_typedefs,
            keepall=keepall,
            verbose=flags.get("verbose", 0),
            quiet=flags.get("quiet", False),
            test=test,
            skip_steps=skip_steps,
            only_steps=only_steps,
            config_path=config,
            config_set=config_set or [],
            invocation_args=sys.argv[1:],
        )
        conf = load_config(config, options.config_set)
        code = RunController(conf, options, output=ctx).execute()
    except (ConfigError, LockError) as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None

    raise typer.Exit(code)
