"""``notesync verify``: chunked region verification and assignment."""

from __future__ import annotations

import json
from typing import Optional

import typer
from rich.table import Table

from ..errors import ExitCode, NoteSyncError
from ..spatial.verification import ASSIGN_PASS, VERIFY_PASS, PassResult
from ..sync.runtime import SyncRuntime
from .common import console, exit_for_error, format_duration

verify_app = typer.Typer(help="Verify and assign note regions")


def _print_result(result: Optional[PassResult]) -> ExitCode:
    if result is None:
        return ExitCode.NO_WORK
    console.print(
        f"{result.pass_id}: cursor {result.started_from} -> {result.completed_up_to}, "
        f"{result.chunks_done} chunks, {result.checked} notes checked, {result.changed} changed "
        f"in {format_duration(result.duration_seconds)}"
    )
    for chunk in result.failed_chunks:
        console.print(f"[red]failed chunk[/red] {chunk.chunk_start_id}-{chunk.chunk_end_id}")
    if result.failed_chunks or result.interrupted:
        return ExitCode.TRANSIENT_FAILURE
    if result.chunks_done == 0:
        return ExitCode.NO_WORK
    return ExitCode.SUCCESS


def _run(ctx: typer.Context, pass_id: str, resume_from: Optional[int], restart: bool) -> None:
    config = ctx.obj.load_config()
    runtime = SyncRuntime(config)
    try:
        if restart:
            runtime.store.reset_chunk_cursor(pass_id)
        engine = runtime.verification_engine()
        if pass_id == VERIFY_PASS:
            invalidated = engine.reverify_updated_regions(runtime.catalog)
            if invalidated:
                console.print(f"{invalidated} notes invalidated around updated regions")
            engine.run_verification(resume_from)
        else:
            engine.run_assignment(resume_from)
        result = engine.last_result
        if result is not None:
            runtime.telemetry.record(
                pass_id,
                "ok" if result.ok else "incomplete",
                result.duration_seconds,
                items=result.checked,
                metadata={"changed": result.changed, "completed_up_to": result.completed_up_to},
            )
    except NoteSyncError as exc:
        raise exit_for_error(exc)
    finally:
        runtime.close()
    raise typer.Exit(code=int(_print_result(result)))


@verify_app.command("run")
def run(
    ctx: typer.Context,
    resume_from: Optional[int] = typer.Option(None, "--resume-from", help="Override the stored cursor"),
    restart: bool = typer.Option(False, "--restart", help="Start a new pass from the first id"),
) -> None:
    """Re-check assigned regions; mismatches become Unknown."""
    _run(ctx, VERIFY_PASS, resume_from, restart)


@verify_app.command("assign")
def assign(
    ctx: typer.Context,
    resume_from: Optional[int] = typer.Option(None, "--resume-from", help="Override the stored cursor"),
    restart: bool = typer.Option(False, "--restart", help="Start a new pass from the first id"),
) -> None:
    """Assign regions to notes whose region is Unknown."""
    _run(ctx, ASSIGN_PASS, resume_from, restart)


@verify_app.command("report")
def report(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
    top: int = typer.Option(10, "--top", help="Regions to list by note count"),
) -> None:
    """Counts of notes per assignment state."""
    config = ctx.obj.load_config()
    runtime = SyncRuntime(config)
    try:
        payload = runtime.verification_engine().report()
        payload["top_regions"] = runtime.store.count_by_region(limit=top)
        payload["quarantine"] = runtime.quarantine.statistics()
    finally:
        runtime.close()

    if as_json:
        typer.echo(json.dumps(payload, indent=2, default=str))
        return
    table = Table(title=f"Region assignment ({payload['notes']} notes, {payload['regions']} regions)")
    table.add_column("State")
    table.add_column("Notes", justify="right")
    for state, count in payload["by_state"].items():
        table.add_row(state, str(count))
    console.print(table)
    console.print(
        f"Cursors: verify={payload['cursors'][VERIFY_PASS]} assign={payload['cursors'][ASSIGN_PASS]} "
        f"(max note id {payload['max_note_id']})"
    )
    if payload["top_regions"]:
        regions = Table(title="Top regions")
        regions.add_column("Region", justify="right")
        regions.add_column("Notes", justify="right")
        for region_id, count in payload["top_regions"]:
            regions.add_row(str(region_id), str(count))
        console.print(regions)


__all__ = ["verify_app"]
