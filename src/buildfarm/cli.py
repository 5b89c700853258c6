"""Buildfarm CLI: build, test and report one branch."""

import typer

from buildfarm import __version__

from .commands import init, resend, run, status
from .logging import configure_logging
from .output import OutputContext, set_output_context


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"buildfarm {__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="buildfarm",
    help="Buildfarm client: build and test a branch and report to the server",
    no_args_is_help=True,
)


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v, -vv)",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Suppress non-error output",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output in JSON format for automation",
    ),
    no_color: bool = typer.Option(
        False,
        "--no-color",
        help="Disable colored output",
    ),
) -> None:
    """Buildfarm client - build, test and report one branch."""
    console = configure_logging(
        verbosity=verbose,
        quiet=quiet,
        no_color=no_color,
    )
    set_output_context(OutputContext(console=console, json_mode=json_output, quiet=quiet))
    ctx.obj = {"verbose": verbose, "quiet": quiet}


app.command()(init)
app.command()(run)
app.command()(status)
app.command()(resend)


if __name__ == "__main__":
    app()
