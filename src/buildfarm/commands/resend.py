"""Resend command: deliver the saved report of the last run again."""

from pathlib import Path

import typer

from ..config import DEFAULT_CONFIG_FILE, ConfigError, load_config
from ..constants import LOG_DIR
from ..core import EXCLUSION_STAGES
from ..output import get_output_context
from ..services import HttpTransport, RunLogs, TransportError, load_record


def resend(
    branch: str = typer.Argument("HEAD", help="Branch whose last report to resend"),
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILE),
        "--config",
        "-c",
        help="Configuration file",
    ),
) -> None:
    """Deliver the last saved report after a transport failure.

    The snapshot facts are not touched; the next scheduled run evaluates
    them as usual.
    """
    ctx = get_output_context()

    try:
        conf = load_config(config)
    except ConfigError as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None

    logs = RunLogs(conf.build_root / branch / f"{conf.animal}.{LOG_DIR}")
    try:
        record = load_record(logs.txn_path)
    except TransportError as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None

    archive = None
    if record.stage not in EXCLUSION_STAGES and logs.archive_path.is_file():
        archive = logs.archive_path

    code = HttpTransport(conf.target, conf.secret).send(record, archive)
    result = {"branch": record.branch, "stage": record.stage, "delivered": code == 0}
    if code:
        ctx.error(f"Web txn failed with status: {code}", result)
        raise typer.Exit(code)
    ctx.success(f"Report for {record.branch} stage {record.stage} delivered", result)
