"""Crash detection, recovery, and the failed-execution marker.

Two marker files live in the workspace:

- ``.notesync_running``: written when a run starts and removed on clean
  exit. Finding it at startup means the previous run died.
- ``failed_execution.json``: written when a run hits a consistency failure.
  While it exists every run refuses to start until an operator clears it.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..errors import NoteSyncError, PreviousExecutionFailedError
from ..models import utcnow
from ..scheduling.ticket_queue import TicketQueue
from ..store.note_store import NoteStore

logger = logging.getLogger(__name__)

RUNNING_MARKER = ".notesync_running"
FAILED_MARKER = "failed_execution.json"


@dataclass
class CrashRecoveryReport:
    recovered_at: datetime
    crashed_pid: Optional[int]
    partitions_failed: int
    tickets_expired: int
    recovery_duration_seconds: float
    errors: List[str] = field(default_factory=list)

    def was_successful(self) -> bool:
        return not self.errors


class RecoveryStateTracker:
    """Running marker used to detect unclean exits."""

    def __init__(self, workspace_dir: Path) -> None:
        self._marker = workspace_dir / RUNNING_MARKER

    def mark_running(self) -> None:
        self._marker.parent.mkdir(parents=True, exist_ok=True)
        self._marker.write_text(
            json.dumps({"started_at": utcnow().isoformat(), "pid": os.getpid()})
        )

    def is_recovering_from_crash(self) -> bool:
        return self._marker.exists()

    def get_crash_info(self) -> Optional[Dict[str, Any]]:
        if not self._marker.exists():
            return None
        try:
            return json.loads(self._marker.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to read running marker", extra={"error": str(exc)})
            return None

    def clear(self) -> None:
        if self._marker.exists():
            self._marker.unlink()


class FailedExecutionMarker:
    """Persistent record of a run that stopped on a consistency failure."""

    def __init__(self, workspace_dir: Path) -> None:
        self.path = workspace_dir / FAILED_MARKER

    def write(self, error: NoteSyncError, *, context: Optional[Dict[str, Any]] = None) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "failed_at": utcnow().isoformat(),
            "pid": os.getpid(),
            "error": error.to_dict(),
            "context": context or {},
        }
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, default=str))
        os.replace(tmp_path, self.path)
        logger.error(
            "Wrote failed-execution marker",
            extra={"marker": str(self.path), "code": error.code},
        )

    def read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError):
            return {"error": {"message": "unreadable failure marker"}}

    def check(self) -> None:
        """Raise if a previous run left a failure marker.

        Raises:
            PreviousExecutionFailedError: The marker exists
        """
        info = self.read()
        if info is not None:
            raise PreviousExecutionFailedError(
                details={"marker": str(self.path), "previous": info.get("error")}
            )

    def clear(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        logger.info("Cleared failed-execution marker", extra={"marker": str(self.path)})
        return True


class CrashRecoveryManager:
    """Repairs state left behind by a run that died mid-cycle.

    Partitions stuck in ``processing`` become ``failed`` (retryable), and
    tickets held by dead processes are expired so the queues move again.
    """

    def __init__(
        self,
        *,
        store: NoteStore,
        ticket_queues: Iterable[TicketQueue],
        workspace_dir: Path,
    ) -> None:
        self._store = store
        self._queues = list(ticket_queues)
        self._tracker = RecoveryStateTracker(workspace_dir)

    @property
    def tracker(self) -> RecoveryStateTracker:
        return self._tracker

    def recover_if_needed(self) -> Optional[CrashRecoveryReport]:
        if not self._tracker.is_recovering_from_crash():
            return None
        return self.recover_from_crash()

    def recover_from_crash(self) -> CrashRecoveryReport:
        start_time = time.perf_counter()
        crash_info = self._tracker.get_crash_info() or {}
        logger.warning("Recovering from unclean exit", extra={"crash_info": crash_info})

        errors: List[str] = []
        partitions_failed = 0
        tickets_expired = 0
        try:
            partitions_failed = self._store.fail_stuck_partitions()
        except Exception as exc:
            errors.append(f"partition reset failed: {exc}")
            logger.exception("Failed to reset stuck partitions")
        for queue in self._queues:
            try:
                tickets_expired += queue.expire_dead_holders()
            except Exception as exc:
                errors.append(f"ticket expiry failed for {queue.resource}: {exc}")
                logger.exception("Failed to expire dead tickets", extra={"resource": queue.resource})

        report = CrashRecoveryReport(
            recovered_at=utcnow(),
            crashed_pid=crash_info.get("pid"),
            partitions_failed=partitions_failed,
            tickets_expired=tickets_expired,
            recovery_duration_seconds=time.perf_counter() - start_time,
            errors=errors,
        )
        if report.was_successful():
            self._tracker.clear()
        logger.info(
            "Crash recovery finished",
            extra={
                "partitions_failed": partitions_failed,
                "tickets_expired": tickets_expired,
                "errors": len(errors),
            },
        )
        return report


__all__ = [
    "CrashRecoveryManager",
    "CrashRecoveryReport",
    "FailedExecutionMarker",
    "RecoveryStateTracker",
]
