"""Merges converted partitions into the canonical store.

The merge is one SQLite transaction under the ``consolidate`` lock, fed one
partition artifact at a time, so an aborted run leaves the store untouched
and can simply be re-run. Upserts are keyed by note id and
``(note_id, sequence)``, which makes a repeated merge of the same partitions
a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional

from ..models import ConversionResult, Partition, PartitionState, SyncWatermark
from ..store.note_store import NoteStore
from .artifacts import read_partition_output

logger = logging.getLogger(__name__)

CONSOLIDATE_LOCK = "consolidate"


class ConsolidationOutcome(str, Enum):
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass
class ConsolidationResult:
    outcome: ConsolidationOutcome
    notes: int = 0
    comments: int = 0
    watermark: Optional[SyncWatermark] = None
    error: Optional[BaseException] = None
    pending: List[int] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.outcome == ConsolidationOutcome.COMMITTED

    @property
    def partial(self) -> bool:
        """Committed, but some partitions were not merged."""
        return self.committed and bool(self.pending)


class Consolidator:
    def __init__(self, store: NoteStore, *, lock_timeout: Optional[float] = None) -> None:
        self.store = store
        self._lock_timeout = lock_timeout

    def consolidate(
        self,
        partitions: List[Partition],
        watermark: Optional[SyncWatermark] = None,
    ) -> ConsolidationResult:
        """Merge every ``done`` partition, then advance the watermark.

        The watermark moves to the newer of the stored value and ``watermark``
        (or the newest event in the merged records when ``watermark`` is
        None). It is written only after the merge has committed.

        Raises:
            LockContentionError: Another process is consolidating
        """
        return self.store.with_lock(
            CONSOLIDATE_LOCK,
            lambda: self._consolidate_locked(partitions, watermark),
            timeout=self._lock_timeout,
        )

    def _consolidate_locked(
        self,
        partitions: List[Partition],
        watermark: Optional[SyncWatermark],
    ) -> ConsolidationResult:
        done = sorted(
            (p for p in partitions if p.state == PartitionState.DONE),
            key=lambda p: p.partition_id,
        )
        markers: List[datetime] = []

        def results() -> Iterator[ConversionResult]:
            for partition in done:
                result = read_partition_output(partition.output_path)
                if result.high_marker is not None:
                    markers.append(result.high_marker)
                yield result

        try:
            notes, comments = self.store.merge_many(results())
        except Exception as exc:
            logger.error(
                "Consolidation aborted; store unchanged",
                extra={"partitions": [p.partition_id for p in done], "error": str(exc)},
            )
            return ConsolidationResult(ConsolidationOutcome.ABORTED, error=exc)

        candidate = watermark
        if candidate is None and markers:
            candidate = SyncWatermark(max(markers))
        if len(done) < len(partitions):
            # Failed partitions are still uncommitted; the watermark must not pass them.
            logger.warning(
                "Partial consolidation; watermark not advanced",
                extra={"done": len(done), "total": len(partitions)},
            )
            candidate = None
        new_watermark = self._advance_watermark(candidate)

        for partition in done:
            _discard(partition.input_path)
            _discard(partition.output_path)
        batch_ids = {p.batch_id for p in done}
        if len(done) == len(partitions):
            for batch_id in batch_ids:
                self.store.forget_batch(batch_id)

        logger.info(
            "Consolidation committed",
            extra={
                "partitions": len(done),
                "notes": notes,
                "comments": comments,
                "watermark": new_watermark.last_processed_marker.isoformat() if new_watermark else None,
            },
        )
        return ConsolidationResult(
            ConsolidationOutcome.COMMITTED,
            notes=notes,
            comments=comments,
            watermark=new_watermark,
            pending=[p.partition_id for p in partitions if p.state != PartitionState.DONE],
        )

    def _advance_watermark(self, candidate: Optional[SyncWatermark]) -> Optional[SyncWatermark]:
        current = self.store.read_watermark()
        if candidate is None or (current is not None and candidate <= current):
            return current
        self.store.write_watermark(candidate)
        return candidate


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


__all__ = ["CONSOLIDATE_LOCK", "ConsolidationOutcome", "ConsolidationResult", "Consolidator"]
