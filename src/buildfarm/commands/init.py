"""Init command implementation."""

import subprocess
from pathlib import Path

import typer

from ..config import DEFAULT_CONFIG_FILE, write_config_template
from ..constants import INIT_TOOL_CHECK_TIMEOUT
from ..output import get_output_context
from ..services import check_make


def init(
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILE),
        "--config",
        "-c",
        help="Configuration file to create",
    ),
    animal: str = typer.Option(
        "your-animal",
        "--animal",
        help="Name this machine reports as",
    ),
) -> None:
    """Write a configuration template and check the toolchain."""
    ctx = get_output_context()

    if not config.exists():
        write_config_template(config, animal)
        ctx.console.print(f"[green]Created config template:[/green] {config}")
    else:
        ctx.console.print(f"[yellow]Config already exists:[/yellow] {config}")

    all_ok = True
    try:
        result = subprocess.run(
            ["git", "--version"], capture_output=True, text=True, timeout=INIT_TOOL_CHECK_TIMEOUT
        )
        if result.returncode == 0:
            ctx.console.print("[green]✓[/green] git")
        else:
            ctx.console.print(f"[red]✗[/red] git: {result.stderr.strip()[:50]}")
            all_ok = False
    except FileNotFoundError:
        ctx.console.print("[red]✗[/red] git: not found in PATH")
        all_ok = False
    except subprocess.TimeoutExpired:
        ctx.console.print("[yellow]?[/yellow] git: timed out")

    if check_make("make"):
        ctx.console.print("[green]✓[/green] make")
    else:
        ctx.console.print("[red]✗[/red] make: GNU Make not found (set 'make' in the config)")
        all_ok = False

    if not all_ok:
        ctx.console.print("\n[yellow]Warning: Some tools are missing or not configured[/yellow]")
        raise typer.Exit(2)

    ctx.console.print("\n[bold green]Buildfarm client initialized successfully![/bold green]")
