"""Sync daemon: loop, PID file, signals, and status.

The daemon runs sync cycles until shutdown, sleeping an adaptive interval
between them. Only one daemon may run per workspace (an exclusive
``filelock`` held for the daemon's lifetime). Signals:

- SIGTERM / SIGINT: finish the current wait and exit cleanly
- SIGHUP: reload configuration before the next cycle
- SIGUSR1: log a status snapshot
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from filelock import FileLock, Timeout

from ..config import ConfigurationManager, DaemonConfig
from ..errors import (
    ConfigurationError,
    ConsistencyError,
    DaemonFatalError,
    ExitCode,
    LockContentionError,
)
from ..models import utcnow
from .controller import CycleOutcome, CycleResult, SyncController
from .crash_recovery import CrashRecoveryManager

logger = logging.getLogger(__name__)

PID_FILE = "daemon.pid"
STATUS_FILE = "daemon_status.json"
DAEMON_LOCK = "daemon.lock"


class DaemonError(Exception):
    """Base exception for daemon management errors."""


class NotRunningError(DaemonError):
    """Raised when attempting to stop a daemon that isn't running."""


@dataclass
class DaemonStatus:
    running: bool
    pid: Optional[int] = None
    stale_pid_file: bool = False

    def __str__(self) -> str:
        if self.running:
            return f"Running (PID: {self.pid})"
        elif self.stale_pid_file:
            return "Not running (stale PID file detected)"
        else:
            return "Not running"


class PIDFileManager:
    """PID file coordinating the daemon with ``notesync sync stop``."""

    def __init__(self, pid_file_path: Path) -> None:
        self._path = pid_file_path
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, pid: Optional[int] = None) -> None:
        self._path.write_text(str(pid or os.getpid()), encoding="utf-8")

    def read(self) -> Optional[int]:
        if not self._path.exists():
            return None
        try:
            return int(self._path.read_text(encoding="utf-8").strip())
        except (ValueError, OSError):
            return None

    def remove(self) -> None:
        if self._path.exists():
            self._path.unlink()

    def status(self) -> DaemonStatus:
        pid = self.read()
        if pid is None:
            return DaemonStatus(running=False)
        if is_process_running(pid):
            return DaemonStatus(running=True, pid=pid)
        return DaemonStatus(running=False, pid=pid, stale_pid_file=True)


def is_process_running(pid: int) -> bool:
    try:
        # Signal 0 only checks that the process exists
        os.kill(pid, 0)
        return True
    except OSError:
        return False


class AdaptiveSleep:
    """Idle interval that halves after substantial work and doubles when idle."""

    def __init__(self, config: DaemonConfig) -> None:
        self.configure(config)
        self.current = min(max(config.initial_sleep_seconds, self.minimum), self.maximum)

    def configure(self, config: DaemonConfig) -> None:
        self.minimum = config.min_sleep_seconds
        self.maximum = config.max_sleep_seconds
        self.busy_threshold = config.busy_threshold
        if hasattr(self, "current"):
            self.current = min(max(self.current, self.minimum), self.maximum)

    def next(self, items: int) -> float:
        if items >= self.busy_threshold:
            self.current = max(self.minimum, self.current / 2)
        else:
            self.current = min(self.maximum, max(self.current * 2, self.minimum))
        return self.current


class SyncDaemon:
    """Long-running sync loop."""

    def __init__(
        self,
        *,
        controller: SyncController,
        config_manager: ConfigurationManager,
        workspace_dir: Path,
        recovery: Optional[CrashRecoveryManager] = None,
        shutdown_event: Optional[threading.Event] = None,
        on_reload: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self.controller = controller
        self.config_manager = config_manager
        self.workspace_dir = workspace_dir
        self.recovery = recovery
        self.shutdown = shutdown_event or threading.Event()
        self._on_reload = on_reload
        self._reload_requested = threading.Event()
        self._daemon_config = config_manager.config.daemon
        self.sleep = AdaptiveSleep(self._daemon_config)
        self.pid_file = PIDFileManager(workspace_dir / PID_FILE)
        self.status_path = workspace_dir / STATUS_FILE
        self._lock = FileLock(str(workspace_dir / "locks" / DAEMON_LOCK), timeout=0)

        self.started_at = utcnow()
        self.cycles = 0
        self.consecutive_failures = 0
        self.last_result: Optional[CycleResult] = None
        self._last_watermark = None
        self._previous_handlers: Dict[int, Any] = {}

    def run(self, *, install_signals: bool = True, max_cycles: Optional[int] = None) -> ExitCode:
        """Loop until shutdown, a fatal error, or ``max_cycles``.

        Raises:
            LockContentionError: Another daemon owns this workspace
            DaemonFatalError: Too many consecutive failed cycles
            ConsistencyError: A cycle hit a consistency failure
        """
        (self.workspace_dir / "locks").mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire()
        except Timeout as exc:
            raise LockContentionError(
                "Another sync daemon is running for this workspace",
                details={"pid": self.pid_file.read()},
            ) from exc

        try:
            self.pid_file.write()
            if install_signals:
                self._install_signal_handlers()
            if self.recovery is not None:
                self.recovery.recover_if_needed()
                self.recovery.tracker.mark_running()
            logger.info("Sync daemon started", extra={"pid": os.getpid()})
            self._loop(max_cycles)
            logger.info("Sync daemon stopped", extra={"cycles": self.cycles})
            return ExitCode.SUCCESS
        finally:
            if install_signals:
                self._restore_signal_handlers()
            if self.recovery is not None:
                self.recovery.tracker.clear()
            self.pid_file.remove()
            self._lock.release()

    def _loop(self, max_cycles: Optional[int]) -> None:
        while not self.shutdown.is_set():
            if self._reload_requested.is_set():
                self._reload()

            result = self.controller.run_cycle()
            self.cycles += 1
            self.last_result = result
            if result.watermark is not None:
                self._last_watermark = result.watermark
            if result.outcome == CycleOutcome.INTERRUPTED:
                self._write_status(0.0)
                break

            if result.failed:
                self.consecutive_failures += 1
                logger.warning(
                    "Cycle failed",
                    extra={
                        "consecutive_failures": self.consecutive_failures,
                        "max_consecutive_failures": self._daemon_config.max_consecutive_failures,
                        "failure_class": result.failure_class.value if result.failure_class else None,
                    },
                )
            else:
                self.consecutive_failures = 0

            delay = self.sleep.next(result.items)
            self._write_status(delay)

            if isinstance(result.error, ConsistencyError):
                raise result.error
            if self.consecutive_failures >= self._daemon_config.max_consecutive_failures:
                logger.critical(
                    "Too many consecutive failed cycles; stopping",
                    extra={"consecutive_failures": self.consecutive_failures},
                )
                raise DaemonFatalError(
                    details={
                        "consecutive_failures": self.consecutive_failures,
                        "last_error": str(result.error),
                    }
                )
            if max_cycles is not None and self.cycles >= max_cycles:
                break
            self.shutdown.wait(delay)

    def _reload(self) -> None:
        self._reload_requested.clear()
        try:
            config = self.config_manager.reload()
        except ConfigurationError as exc:
            logger.error("Keeping previous configuration", extra={"error": str(exc)})
            return
        self._daemon_config = config.daemon
        self.sleep.configure(config.daemon)
        self.controller.threshold = config.api.max_notes
        if self._on_reload is not None:
            self._on_reload(config)
        logger.info("Configuration reloaded")

    def request_reload(self) -> None:
        self._reload_requested.set()

    def snapshot(self, current_sleep: Optional[float] = None) -> Dict[str, Any]:
        # Runs inside the SIGUSR1 handler, so it must not touch the store.
        last = self.last_result
        watermark = self._last_watermark
        return {
            "pid": os.getpid(),
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": (utcnow() - self.started_at).total_seconds(),
            "cycles": self.cycles,
            "consecutive_failures": self.consecutive_failures,
            "last_outcome": last.outcome.value if last else None,
            "last_error_class": last.failure_class.value if last and last.failure_class else None,
            "last_error": str(last.error) if last and last.error else None,
            "current_sleep_seconds": self.sleep.current if current_sleep is None else current_sleep,
            "watermark": watermark.last_processed_marker.isoformat() if watermark else None,
            "updated_at": utcnow().isoformat(),
        }

    def _write_status(self, current_sleep: float) -> None:
        payload = self.snapshot(current_sleep)
        tmp_path = self.status_path.with_name(self.status_path.name + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2))
        os.replace(tmp_path, self.status_path)

    def _install_signal_handlers(self) -> None:
        handlers = {
            signal.SIGTERM: self._handle_shutdown,
            signal.SIGINT: self._handle_shutdown,
            signal.SIGHUP: lambda signum, frame: self.request_reload(),
            signal.SIGUSR1: lambda signum, frame: logger.info("Daemon status", extra=self.snapshot()),
        }
        for signum, handler in handlers.items():
            self._previous_handlers[signum] = signal.signal(signum, handler)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_shutdown(self, signum, frame) -> None:
        logger.info("Shutdown requested", extra={"signal": signal.Signals(signum).name})
        self.shutdown.set()


def read_daemon_status(workspace_dir: Path) -> Dict[str, Any]:
    """Process state plus the last status the daemon wrote."""
    status = PIDFileManager(workspace_dir / PID_FILE).status()
    payload: Dict[str, Any] = {
        "running": status.running,
        "pid": status.pid,
        "stale_pid_file": status.stale_pid_file,
    }
    status_path = workspace_dir / STATUS_FILE
    if status_path.exists():
        try:
            payload["last_status"] = json.loads(status_path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            payload["last_status_error"] = str(exc)
    return payload


def stop_daemon(workspace_dir: Path, *, timeout: float = 30.0) -> bool:
    """Send SIGTERM and wait; SIGKILL after ``timeout``.

    Returns:
        True if the daemon exited gracefully

    Raises:
        NotRunningError: No daemon is running
    """
    pid_file = PIDFileManager(workspace_dir / PID_FILE)
    status = pid_file.status()
    if not status.running:
        if status.stale_pid_file:
            pid_file.remove()
            raise NotRunningError("Daemon is not running (cleaned up stale PID file)")
        raise NotRunningError("Daemon is not running")

    pid = status.pid
    _kill_process(pid, signal.SIGTERM)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_running(pid):
            pid_file.remove()
            return True
        time.sleep(0.5)

    logger.warning("Graceful shutdown timed out; sending SIGKILL", extra={"pid": pid})
    _kill_process(pid, signal.SIGKILL)
    time.sleep(0.5)
    pid_file.remove()
    return False


def _kill_process(pid: int, sig: signal.Signals) -> None:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        pass
    except OSError as e:
        raise DaemonError(f"Failed to send signal {sig} to PID {pid}: {e}") from e


__all__ = [
    "AdaptiveSleep",
    "DaemonError",
    "DaemonStatus",
    "NotRunningError",
    "PIDFileManager",
    "SyncDaemon",
    "read_daemon_status",
    "stop_daemon",
]
