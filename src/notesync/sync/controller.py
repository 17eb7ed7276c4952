"""Incremental sync controller.

One cycle fetches the notes changed since the watermark and picks a path:

- fewer than ``threshold`` notes: apply them directly in one transaction
- ``threshold`` or more: the feed was truncated, so re-synchronize from the
  bulk dump through the split / convert / consolidate pipeline

The watermark is written only after the records it covers have committed.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Protocol

from ..errors import (
    ConsistencyError,
    ExitCode,
    FailureClass,
    NoteSyncError,
    PartitionBatchError,
    PreviousExecutionFailedError,
    ShutdownRequested,
    TransientIOError,
)
from ..ingestion.consolidator import CONSOLIDATE_LOCK, ConsolidationResult, Consolidator
from ..ingestion.feed import BulkDumpSource, FeedBatch
from ..ingestion.splitter import PartitionSplitter
from ..ingestion.worker_pool import PartitionWorkerPool
from ..models import Partition, SyncWatermark
from ..scheduling.retry import classify_failure
from ..spatial.regions import RegionResolver
from ..store.note_store import NoteStore
from ..telemetry import TelemetryRecorder
from .crash_recovery import FailedExecutionMarker
from .state_machine import SyncState, SyncStateMachine

logger = logging.getLogger(__name__)

DEFAULT_BULK_THRESHOLD = 10000


class FeedSource(Protocol):
    def fetch_since(self, watermark: Optional[SyncWatermark]) -> FeedBatch:
        ...


class CycleOutcome(str, Enum):
    APPLIED_DIRECT = "applied_direct"
    APPLIED_BULK = "applied_bulk"
    APPLIED_PARTIAL = "applied_partial"
    NO_WORK = "no_work"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


_EXIT_BY_CLASS = {
    FailureClass.STRUCTURAL: ExitCode.DATA_VALIDATION,
    FailureClass.CONSISTENCY: ExitCode.CONSISTENCY,
    FailureClass.CONCURRENCY: ExitCode.TRANSIENT_FAILURE,
    FailureClass.PERMANENT: ExitCode.FATAL_CONFIGURATION,
    FailureClass.CONFIGURATION: ExitCode.FATAL_CONFIGURATION,
}


@dataclass
class CycleResult:
    outcome: CycleOutcome
    items: int = 0
    duration_seconds: float = 0.0
    watermark: Optional[SyncWatermark] = None
    error: Optional[BaseException] = None
    failure_class: Optional[FailureClass] = None
    states: List[SyncState] = field(default_factory=list)

    @property
    def exit_code(self) -> ExitCode:
        if self.outcome in (CycleOutcome.APPLIED_DIRECT, CycleOutcome.APPLIED_BULK):
            return ExitCode.SUCCESS
        if self.outcome == CycleOutcome.NO_WORK:
            return ExitCode.NO_WORK
        if isinstance(self.error, NoteSyncError):
            return self.error.exit_code
        return _EXIT_BY_CLASS.get(self.failure_class, ExitCode.TRANSIENT_FAILURE)

    @property
    def failed(self) -> bool:
        """True for failed cycles and for bulk cycles that left partitions unmerged."""
        return self.outcome in (CycleOutcome.FAILED, CycleOutcome.APPLIED_PARTIAL)


def decide_path(size: int, threshold: int = DEFAULT_BULK_THRESHOLD) -> SyncState:
    """Pick the sync path for a fetched batch of ``size`` notes."""
    if size >= threshold:
        return SyncState.TRIGGER_BULK_SYNC
    return SyncState.DIRECT_APPLY


class BulkSyncPipeline:
    """Download, split, convert, and consolidate the bulk dump."""

    def __init__(
        self,
        *,
        source: BulkDumpSource,
        splitter: PartitionSplitter,
        pool: PartitionWorkerPool,
        consolidator: Consolidator,
        work_dir: Path,
        partition_count: int = 8,
    ) -> None:
        self.source = source
        self.splitter = splitter
        self.pool = pool
        self.consolidator = consolidator
        self.work_dir = work_dir
        self.partition_count = partition_count

    def prepare(self, batch_id: Optional[str] = None) -> List[Partition]:
        """Download the dump and convert all partitions.

        Partitions that fail in best-effort mode get one more run; those
        still failed are returned with the rest and left out of the merge.
        """
        batch_id = batch_id or uuid.uuid4().hex[:12]
        dump_path = self.source.download(self.work_dir / f"{batch_id}.xml")
        try:
            partitions = self.splitter.split(dump_path, self.partition_count, batch_id=batch_id)
        finally:
            dump_path.unlink(missing_ok=True)
        batch = self.pool.run(partitions)
        if batch.failed:
            logger.info("Retrying failed partitions", extra={"batch_id": batch_id, "failed": batch.failed_ids})
            batch = self.pool.retry_failed(batch)
        return batch.done + batch.failed

    def commit(self, partitions: List[Partition]) -> ConsolidationResult:
        result = self.consolidator.consolidate(partitions)
        if not result.committed:
            raise TransientIOError(
                f"Bulk consolidation aborted: {result.error}",
                details={"partitions": [p.partition_id for p in partitions]},
            ) from result.error
        return result


class SyncController:
    """Runs sync cycles against the canonical store."""

    def __init__(
        self,
        *,
        store: NoteStore,
        feed: FeedSource,
        bulk: BulkSyncPipeline,
        failure_marker: FailedExecutionMarker,
        threshold: int = DEFAULT_BULK_THRESHOLD,
        telemetry: Optional[TelemetryRecorder] = None,
        shutdown_event: Optional[threading.Event] = None,
        lock_timeout: Optional[float] = None,
        regions: Optional[RegionResolver] = None,
    ) -> None:
        self.store = store
        self.feed = feed
        self.bulk = bulk
        self.failure_marker = failure_marker
        self.threshold = threshold
        self.telemetry = telemetry
        self.regions = regions
        self.machine = SyncStateMachine()
        self._shutdown = shutdown_event or threading.Event()
        self._lock_timeout = lock_timeout

    def run_cycle(self) -> CycleResult:
        """Run one cycle; never raises for cycle-level failures."""
        started = time.monotonic()
        try:
            self.failure_marker.check()
        except PreviousExecutionFailedError as exc:
            logger.error("Refusing to run: previous execution failed", extra=exc.details)
            return CycleResult(CycleOutcome.FAILED, error=exc, failure_class=exc.failure_class)

        try:
            result = self._run_cycle()
        except ShutdownRequested as exc:
            self.machine.reset()
            logger.info("Cycle interrupted by shutdown")
            result = CycleResult(CycleOutcome.INTERRUPTED, error=exc)
        except NoteSyncError as exc:
            result = self._fail(exc, exc.failure_class)
        except Exception as exc:
            logger.exception("Unexpected error in sync cycle")
            result = self._fail(exc, classify_failure(exc))

        result.duration_seconds = time.monotonic() - started
        result.states = self.machine.path()
        if self.telemetry is not None:
            self.telemetry.record(
                "cycle",
                result.outcome.value,
                result.duration_seconds,
                items=result.items,
                metadata={"failure_class": result.failure_class.value} if result.failure_class else None,
            )
        return result

    def _run_cycle(self) -> CycleResult:
        machine = self.machine
        machine.transition(SyncState.FETCHING)
        watermark = self.store.read_watermark()
        batch = self.feed.fetch_since(watermark)

        machine.transition(SyncState.DECIDING, items=batch.size)
        if batch.size == 0:
            machine.transition(SyncState.IDLE, reason="no new notes")
            logger.info("No new notes since watermark")
            return CycleResult(CycleOutcome.NO_WORK, watermark=watermark)

        path = decide_path(batch.size, self.threshold)
        machine.transition(path, items=batch.size, threshold=self.threshold)
        if path == SyncState.TRIGGER_BULK_SYNC:
            logger.warning(
                "Feed batch reached bulk threshold; re-synchronizing from dump",
                extra={"items": batch.size, "threshold": self.threshold},
            )
            partitions = self.bulk.prepare()
            machine.transition(SyncState.COMMITTING)
            consolidation = self.bulk.commit(partitions)
            if self.regions is not None:
                self.regions.resolve_unknown()
            machine.transition(SyncState.IDLE)
            if consolidation.partial:
                error = PartitionBatchError(
                    f"{len(consolidation.pending)} of {len(partitions)} partitions were not merged",
                    failed_ids=consolidation.pending,
                )
                logger.warning(
                    "Bulk cycle applied partially; watermark held back",
                    extra={"pending": consolidation.pending, "notes": consolidation.notes},
                )
                return CycleResult(
                    CycleOutcome.APPLIED_PARTIAL,
                    items=consolidation.notes,
                    watermark=consolidation.watermark,
                    error=error,
                    failure_class=error.failure_class,
                )
            return CycleResult(
                CycleOutcome.APPLIED_BULK,
                items=consolidation.notes,
                watermark=consolidation.watermark,
            )

        machine.transition(SyncState.COMMITTING)
        new_watermark = self.store.with_lock(
            CONSOLIDATE_LOCK,
            lambda: self._apply_direct(batch),
            timeout=self._lock_timeout,
        )
        machine.transition(SyncState.IDLE)
        return CycleResult(CycleOutcome.APPLIED_DIRECT, items=batch.size, watermark=new_watermark)

    def _apply_direct(self, batch: FeedBatch) -> Optional[SyncWatermark]:
        notes, comments = self.store.merge_records(batch.result)
        resolved = self.regions.resolve(batch.result.notes) if self.regions is not None else 0
        marker = batch.result.high_marker
        logger.info("Applied feed batch", extra={"notes": notes, "comments": comments, "resolved": resolved})
        current = self.store.read_watermark()
        if marker is None or (current is not None and SyncWatermark(marker) <= current):
            return current
        watermark = SyncWatermark(marker)
        self.store.write_watermark(watermark)
        return watermark

    def _fail(self, exc: BaseException, failure_class: FailureClass) -> CycleResult:
        if self.machine.state != SyncState.IDLE:
            self.machine.transition(SyncState.FAILED, reason=str(exc))
            self.machine.transition(SyncState.IDLE, reason="recovered from failure")
        logger.error(
            "Sync cycle failed",
            extra={"failure_class": failure_class.value, "error": str(exc)},
        )
        if isinstance(exc, ConsistencyError):
            self.failure_marker.write(exc, context={"state_path": [s.value for s in self.machine.path()]})
        return CycleResult(CycleOutcome.FAILED, error=exc, failure_class=failure_class)


__all__ = [
    "BulkSyncPipeline",
    "CycleOutcome",
    "CycleResult",
    "DEFAULT_BULK_THRESHOLD",
    "FeedSource",
    "SyncController",
    "decide_path",
]
