"""``notesync sync``: run, daemonize, inspect, and stop synchronization."""

from __future__ import annotations

import json
import threading

import typer
from rich.table import Table

from ..errors import ExitCode, NoteSyncError
from ..sync.crash_recovery import FailedExecutionMarker
from ..sync.daemon import NotRunningError, SyncDaemon, read_daemon_status, stop_daemon
from ..sync.runtime import SyncRuntime
from .common import console, exit_for_error, format_duration, format_timestamp

sync_app = typer.Typer(help="Synchronize notes from the API feed and bulk dumps")


@sync_app.command("run-once")
def run_once(ctx: typer.Context) -> None:
    """Run a single sync cycle and exit with an outcome-specific code."""
    config = ctx.obj.load_config()
    runtime = SyncRuntime(config)
    try:
        recovery = runtime.crash_recovery()
        recovery.recover_if_needed()
        recovery.tracker.mark_running()
        result = runtime.controller().run_cycle()
        recovery.tracker.clear()
    finally:
        runtime.close()

    if result.failed:
        console.print(
            f"[red]Cycle {result.outcome.value}[/red] ({result.failure_class.value if result.failure_class else 'unknown'}): {result.error}"
        )
    else:
        console.print(
            f"{result.outcome.value}: {result.items} notes in {format_duration(result.duration_seconds)}"
        )
    raise typer.Exit(code=int(result.exit_code))


@sync_app.command("daemon")
def daemon(ctx: typer.Context) -> None:
    """Run sync cycles until SIGTERM/SIGINT."""
    manager = ctx.obj.manager
    config = ctx.obj.load_config()
    shutdown = threading.Event()
    runtime = SyncRuntime(config, shutdown_event=shutdown)
    try:
        sync_daemon = SyncDaemon(
            controller=runtime.controller(),
            config_manager=manager,
            workspace_dir=config.workspace.path,
            recovery=runtime.crash_recovery(),
            shutdown_event=shutdown,
            on_reload=runtime.apply_config,
        )
        code = sync_daemon.run()
    except NoteSyncError as exc:
        raise exit_for_error(exc)
    finally:
        runtime.close()
    raise typer.Exit(code=int(code))


@sync_app.command("status")
def status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Show daemon state, watermark, and the last cycle outcome."""
    config = ctx.obj.load_config()
    payload = read_daemon_status(config.workspace.path)
    marker = FailedExecutionMarker(config.workspace.path).read()
    payload["failed_execution"] = marker
    if as_json:
        typer.echo(json.dumps(payload, indent=2, default=str))
        return

    last = payload.get("last_status") or {}
    table = Table(title="Sync daemon")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Running", "yes" if payload["running"] else "no")
    table.add_row("PID", str(payload.get("pid") or "-"))
    table.add_row("Cycles", str(last.get("cycles", "-")))
    table.add_row("Consecutive failures", str(last.get("consecutive_failures", "-")))
    table.add_row("Last outcome", str(last.get("last_outcome") or "-"))
    table.add_row("Last error class", str(last.get("last_error_class") or "-"))
    table.add_row("Watermark", str(last.get("watermark") or "-"))
    table.add_row("Updated", format_timestamp(last.get("updated_at")))
    console.print(table)
    if marker:
        console.print(
            "[red]A previous execution failed.[/red] Run `notesync sync clear-failure` after fixing it."
        )


@sync_app.command("stop")
def stop(
    ctx: typer.Context,
    timeout: float = typer.Option(30.0, "--timeout", help="Seconds before SIGKILL"),
) -> None:
    """Stop the running daemon."""
    config = ctx.obj.load_config()
    try:
        graceful = stop_daemon(config.workspace.path, timeout=timeout)
    except NotRunningError as exc:
        console.print(str(exc))
        raise typer.Exit(code=int(ExitCode.NO_WORK))
    if graceful:
        console.print("Daemon stopped")
    else:
        console.print("[yellow]Daemon did not stop in time and was killed[/yellow]")


@sync_app.command("clear-failure")
def clear_failure(ctx: typer.Context) -> None:
    """Remove the failed-execution marker after operator review."""
    config = ctx.obj.load_config()
    marker = FailedExecutionMarker(config.workspace.path)
    info = marker.read()
    if not marker.clear():
        console.print("No failed-execution marker present")
        return
    error = (info or {}).get("error") or {}
    console.print(f"Cleared failure marker ({error.get('code', 'unknown')}: {error.get('message', '')})")


__all__ = ["sync_app"]
