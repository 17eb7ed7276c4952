"""``notesync regions``: load and refresh region boundaries."""

from __future__ import annotations

from pathlib import Path
from typing import List

import typer

from ..errors import NoteSyncError
from ..sync.runtime import SyncRuntime
from .common import console, exit_for_error

regions_app = typer.Typer(help="Manage region boundaries")


@regions_app.command("load")
def load(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="GeoJSON FeatureCollection"),
) -> None:
    """Upsert regions from a GeoJSON file and flag them for re-verification."""
    config = ctx.obj.load_config()
    runtime = SyncRuntime(config)
    try:
        loaded = runtime.catalog.load_geojson(path)
    except NoteSyncError as exc:
        raise exit_for_error(exc)
    finally:
        runtime.close()
    console.print(f"Loaded {loaded} regions from {path}")


@regions_app.command("refresh")
def refresh(
    ctx: typer.Context,
    relation_ids: List[int] = typer.Argument(..., help="Boundary relation ids"),
) -> None:
    """Download boundaries from Overpass through the shared ticket queue."""
    config = ctx.obj.load_config()
    runtime = SyncRuntime(config)
    try:
        regions = runtime.boundary_fetcher().refresh(runtime.catalog, relation_ids)
    except NoteSyncError as exc:
        raise exit_for_error(exc)
    finally:
        runtime.close()
    for region in regions:
        console.print(f"Refreshed {region.region_id} ({region.name})")


__all__ = ["regions_app"]
