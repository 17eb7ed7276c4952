"""Helpers shared by the CLI command groups."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from ..config import ConfigurationManager, NoteSyncConfig
from ..errors import ConfigurationError, ExitCode, NoteSyncError

console = Console()
logger = logging.getLogger("notesync.cli")


@dataclass
class CliContext:
    config_path: Optional[Path]
    workspace: Optional[Path]
    log_level: Optional[str]
    _manager: Optional[ConfigurationManager] = None

    @property
    def manager(self) -> ConfigurationManager:
        if self._manager is None:
            path = self.config_path
            if path is None and self.workspace is not None:
                path = self.workspace / "config.yaml"
            self._manager = ConfigurationManager(config_path=path)
        return self._manager

    def load_config(self) -> NoteSyncConfig:
        """Effective configuration; exits with FATAL_CONFIGURATION when invalid."""
        try:
            config = self.manager.load()
        except ConfigurationError as exc:
            console.print(f"[red]Configuration error:[/red] {exc}")
            raise typer.Exit(code=int(exc.exit_code))
        if self.workspace is not None:
            config.workspace.path = self.workspace.expanduser()
        setup_logging(self.log_level or config.workspace.log_level)
        return config


def setup_logging(level: str) -> None:
    root = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False))
    root.setLevel(level.upper())


def exit_for_error(exc: NoteSyncError) -> typer.Exit:
    console.print(f"[red]{exc.code}:[/red] {exc.message}")
    if exc.details:
        for key, value in exc.details.items():
            console.print(f"  {key}: {value}")
    return typer.Exit(code=int(exc.exit_code))


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    else:
        return f"{seconds / 3600:.1f}h"


def format_timestamp(timestamp_str: Optional[str]) -> str:
    """ISO timestamp rendered relative to now."""
    if not timestamp_str:
        return "never"
    try:
        dt = datetime.fromisoformat(timestamp_str.replace("Z", "+00:00"))
    except ValueError:
        return timestamp_str
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return f"{format_duration((datetime.now(timezone.utc) - dt).total_seconds())} ago"


__all__ = [
    "CliContext",
    "ExitCode",
    "console",
    "exit_for_error",
    "format_duration",
    "format_timestamp",
    "setup_logging",
]
