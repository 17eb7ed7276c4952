"""Command line entry points for notesync."""

from pathlib import Path
from typing import Optional

import typer
from typer import Typer

from .common import CliContext
from .config import config_app
from .queue import queue_app
from .regions import regions_app
from .sync import sync_app
from .verify import verify_app


cli = Typer(help="notesync command line tools")
cli.add_typer(sync_app, name="sync")
cli.add_typer(verify_app, name="verify")
cli.add_typer(regions_app, name="regions")
cli.add_typer(queue_app, name="queue")
cli.add_typer(config_app, name="config")


@cli.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace directory"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level"),
) -> None:
    ctx.obj = CliContext(config_path=config, workspace=workspace, log_level=log_level)


__all__ = ["cli", "sync_app", "verify_app", "regions_app", "queue_app", "config_app"]
