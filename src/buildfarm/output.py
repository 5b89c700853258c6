"""Output formatting for the buildfarm CLI."""

import json
from dataclasses import dataclass
from typing import Any

from rich.console import Console

from .models import ReportRecord


@dataclass
class OutputContext:
    """Context for user-facing output.

    Status lines ("Branch: HEAD", "All stages succeeded") are printed through
    this context so that ``--json`` can turn them into machine-readable
    records for cron wrappers.
    """

    console: Console
    json_mode: bool = False
    quiet: bool = False

    def print(self, message: str, style: str | None = None) -> None:
        """Print message respecting output mode."""
        if not self.json_mode and not self.quiet:
            self.console.print(message, style=style, highlight=False)

    def print_json(self, data: dict[str, Any]) -> None:
        """Print JSON data."""
        if self.json_mode:
            print(json.dumps(data, indent=2, default=str))

    def outcome(self, record: ReportRecord, message: str, delivered: bool | None = None) -> None:
        """Print the final status line of a run.

        Failures are shown even in quiet mode. In JSON mode the record's
        branch, stage and status are emitted instead of the message.
        """
        if self.json_mode:
            data: dict[str, Any] = {
                "branch": record.branch,
                "stage": record.stage,
                "status": record.status,
            }
            if delivered is not None:
                data["delivered"] = delivered
            self.print_json(data)
        elif not (self.quiet and record.succeeded):
            self.console.print(f"Branch: {record.branch}", highlight=False)
            self.console.print(message, highlight=False)

    def error(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Print error in appropriate format. Errors ignore quiet mode."""
        if self.json_mode:
            self.print_json({"error": message, **(data or {})})
        else:
            self.console.print(f"[red]Error: {message}[/red]")

    def success(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Print success message in appropriate format."""
        if self.json_mode:
            self.print_json({"success": message, **(data or {})})
        elif not self.quiet:
            self.console.print(f"[green]{message}[/green]")


# Set by the cli.py main callback
_ctx: OutputContext | None = None


def get_output_context() -> OutputContext:
    """Get the current output context, or a stderr default outside the CLI."""
    if _ctx is None:
        return OutputContext(Console(stderr=True))
    return _ctx


def set_output_context(ctx: OutputContext | None) -> None:
    global _ctx
    _ctx = ctx
