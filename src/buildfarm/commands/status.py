"""Status command for a branch overview."""

import time
from pathlib import Path

import typer

from ..config import DEFAULT_CONFIG_FILE, ConfigError, load_config
from ..constants import LOG_DIR
from ..core import SnapshotTracker, get_current_lock
from ..models import SnapshotKind
from ..output import get_output_context
from ..services import RunLogs, TransportError, load_record


def _when(value: int | None) -> str:
    if value is None:
        return "never"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(value)) + " GMT"


def status(
    branch: str = typer.Argument("HEAD", help="Branch to show"),
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILE),
        "--config",
        "-c",
        help="Configuration file",
    ),
) -> None:
    """Show the snapshot facts, lock holder and last report of a branch."""
    ctx = get_output_context()

    try:
        conf = load_config(config)
    except ConfigError as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None

    branch_root = conf.build_root / branch
    tracker = SnapshotTracker(branch_root, conf.animal, nostatus=True)
    history = tracker.load_history()
    lock = get_current_lock(branch_root)
    logs = RunLogs(branch_root / f"{conf.animal}.{LOG_DIR}")

    last_report = None
    try:
        record = load_record(logs.txn_path)
        last_report = {"stage": record.stage, "status": record.status, "ts": record.ts}
    except TransportError:
        pass

    data = {
        "animal": conf.animal,
        "branch": branch,
        SnapshotKind.STATUS.value: history.last_status,
        SnapshotKind.RUN.value: history.last_run_snap,
        SnapshotKind.SUCCESS.value: history.last_success_snap,
        "force_pending": tracker.force_path.exists(),
        "lock": lock.model_dump(mode="json") if lock else None,
        "last_report": last_report,
    }
    if ctx.json_mode:
        ctx.print_json(data)
        return

    ctx.console.print(f"\n[bold]Animal:[/bold] {conf.animal}")
    ctx.console.print(f"[bold]Branch:[/bold] {branch}")
    ctx.console.print(f"[bold]Last status:[/bold] {_when(history.last_status)}")
    ctx.console.print(f"[bold]Last run snapshot:[/bold] {_when(history.last_run_snap)}")
    ctx.console.print(f"[bold]Last success snapshot:[/bold] {_when(history.last_success_snap)}")
    if data["force_pending"]:
        ctx.console.print("[yellow]Forced run pending[/yellow]")
    if lock:
        ctx.console.print(
            f"[yellow]Locked by PID {lock.pid} since "
            f"{lock.started_at.strftime('%Y-%m-%d %H:%M')}[/yellow]"
        )
    if last_report:
        ctx.console.print(
            f"[bold]Last report:[/bold] stage {last_report['stage']}"
            f" (status {last_report['status']})"
        )
