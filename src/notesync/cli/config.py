"""``notesync config``: show and validate configuration."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
import yaml

from ..errors import ExitCode

config_app = typer.Typer(help="Manage notesync configuration")


@config_app.command("validate")
def validate_config(
    ctx: typer.Context,
    path: Optional[Path] = typer.Argument(None, help="File to validate (defaults to the active one)"),
) -> None:
    """Validate a configuration file without loading it."""
    manager = ctx.obj.manager
    target = path or manager.config_path
    errors = manager.validate(target)
    if not errors:
        typer.echo(f"Configuration is valid: {target}")
        return
    typer.echo(f"Configuration validation failed: {target}")
    for error in errors:
        typer.echo(f"  - {error}")
    raise typer.Exit(code=int(ExitCode.FATAL_CONFIGURATION))


@config_app.command("show")
def show_config(
    ctx: typer.Context,
    section: Optional[str] = typer.Option(None, "--section", help="Show one section"),
    format: str = typer.Option("yaml", "--format", help="Output format (yaml or json)"),
) -> None:
    """Display the effective configuration, environment overrides included."""
    config = ctx.obj.load_config()
    data = config.model_dump(mode="json")
    if section:
        if section not in data:
            typer.echo(f"Unknown section: {section}")
            typer.echo(f"Available sections: {', '.join(data.keys())}")
            raise typer.Exit(code=int(ExitCode.FATAL_CONFIGURATION))
        data = {section: data[section]}

    if format == "json":
        typer.echo(json.dumps(data, indent=2, default=str))
    else:
        typer.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


__all__ = ["config_app"]
