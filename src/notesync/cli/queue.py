"""``notesync queue``: inspect the shared ticket queues."""

from __future__ import annotations

import json

import typer
from rich.table import Table

from ..sync.runtime import SyncRuntime
from .common import console, format_duration

queue_app = typer.Typer(help="Inspect rate-limited resource queues")


@queue_app.command("status")
def status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Show issued, serving, and waiting tickets per resource."""
    config = ctx.obj.load_config()
    runtime = SyncRuntime(config)
    try:
        snapshots = [queue.status() for queue in runtime.all_ticket_queues()]
    finally:
        runtime.close()

    if as_json:
        typer.echo(json.dumps(snapshots, indent=2))
        return
    table = Table(title="Ticket queues")
    for column in ("Resource", "Last issued", "Now serving", "Waiting", "Serving for", "Expired"):
        table.add_column(column)
    for snapshot in snapshots:
        table.add_row(
            snapshot["resource"],
            str(snapshot["last_issued"]),
            str(snapshot["now_serving"]),
            str(snapshot["waiting"]),
            format_duration(snapshot["serving_for_seconds"]),
            str(snapshot["by_status"].get("expired", 0)),
        )
    console.print(table)


__all__ = ["queue_app"]
