"""Resumable chunked verification and assignment of note regions.

The id space is cut into fixed-size chunks ``[k*size + 1, (k+1)*size]``.
Chunks run concurrently and may finish in any order, but the persisted
cursor only moves over a contiguous prefix of finished chunks, and never
past the highest note id seen when the pass started. A crash therefore
loses at most the work above the cursor, and a restart resumes at
``cursor + 1``.

Verification re-checks Assigned and KnownUnassigned notes and moves every
mismatch to Unknown. It never writes a new region: Unknown notes are only
resolved by the assignment pass, which also sweeps the chunks below its
cursor that hold Unknown notes again (invalidated or moved since).
"""

from __future__ import annotations

import concurrent.futures as cf
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..errors import FailureClass, ShutdownRequested
from ..models import ChunkStatus, NoteRecord, RegionAssignment, RegionState, VerificationChunk, chunk_bounds
from ..scheduling.retry import RetryExecutor
from ..store.note_store import NoteStore
from ..store.quarantine import QuarantineKind, QuarantineStore
from .regions import RegionCatalog, RegionIndex

logger = logging.getLogger(__name__)

VERIFY_PASS = "verify"
ASSIGN_PASS = "assign"
REGION_BATCH_SIZE = 5000


@dataclass
class PassResult:
    """Summary of one verification or assignment run."""

    pass_id: str
    started_from: int
    completed_up_to: int
    chunks_done: int = 0
    failed_chunks: List[VerificationChunk] = field(default_factory=list)
    checked: int = 0
    changed: int = 0
    interrupted: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failed_chunks and not self.interrupted


class VerificationEngine:
    """Runs chunked passes over the note id space."""

    def __init__(
        self,
        store: NoteStore,
        index: RegionIndex,
        *,
        chunk_size: int = 100000,
        max_workers: int = 4,
        chunk_max_attempts: int = 3,
        retry: Optional[RetryExecutor] = None,
        quarantine: Optional[QuarantineStore] = None,
        shutdown_event: Optional[threading.Event] = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.store = store
        self.index = index
        self.chunk_size = chunk_size
        self.max_workers = max_workers
        self.chunk_max_attempts = chunk_max_attempts
        self._shutdown = shutdown_event or threading.Event()
        self.retry = retry or RetryExecutor(shutdown_event=self._shutdown)
        self.quarantine = quarantine
        self.last_result: Optional[PassResult] = None

    def chunks_after(self, cursor: int, max_id: int) -> List[VerificationChunk]:
        """Chunks covering ``(cursor, max_id]`` on the fixed chunk grid."""
        chunks = []
        start = cursor + 1
        while start <= max_id:
            _, end = chunk_bounds((start - 1) // self.chunk_size, self.chunk_size)
            chunks.append(VerificationChunk(start, end))
            start = end + 1
        return chunks

    def backlog_chunks(self, cursor: int) -> List[VerificationChunk]:
        """Chunks at or below ``cursor`` that hold Unknown notes."""
        chunks = []
        for index in self.store.unknown_chunk_indexes(cursor, self.chunk_size):
            start, end = chunk_bounds(index, self.chunk_size)
            chunks.append(VerificationChunk(start, min(end, cursor)))
        return chunks

    def run_verification(self, resume_from: Optional[int] = None) -> int:
        """Re-check assigned regions above the cursor.

        Returns:
            The cursor after the run; every id at or below it is verified
        """
        return self._run_pass(VERIFY_PASS, resume_from, self.verify_chunk).completed_up_to

    def run_assignment(self, resume_from: Optional[int] = None) -> int:
        """Assign regions to Unknown notes above the cursor and below it."""
        return self._run_pass(ASSIGN_PASS, resume_from, self.assign_chunk).completed_up_to

    def verify_chunk(self, chunk: VerificationChunk) -> tuple:
        """Invalidate mismatches in one chunk; returns ``(checked, invalidated)``."""
        notes = [
            note
            for note in self.store.notes_in_range(chunk.chunk_start_id, chunk.chunk_end_id)
            if not note.region.is_unknown
        ]
        mismatched = []
        for note in notes:
            outcome = self.index.locate(note.longitude, note.latitude, current=note.region)
            if outcome != note.region:
                mismatched.append(note.note_id)
        invalidated = 0
        for i in range(0, len(mismatched), REGION_BATCH_SIZE):
            invalidated += self.store.invalidate_regions(mismatched[i:i + REGION_BATCH_SIZE])
        return len(notes), invalidated

    def assign_chunk(self, chunk: VerificationChunk) -> tuple:
        """Resolve Unknown notes in one chunk; returns ``(checked, assigned)``."""
        notes = self.store.notes_in_range(
            chunk.chunk_start_id, chunk.chunk_end_id, state=RegionState.UNKNOWN
        )
        return len(notes), self._assign(notes)

    def _assign(self, notes: List[NoteRecord]) -> int:
        outcomes: Dict[int, RegionAssignment] = {
            note.note_id: self.index.locate(note.longitude, note.latitude) for note in notes
        }
        assigned = 0
        ids = list(outcomes)
        for i in range(0, len(ids), REGION_BATCH_SIZE):
            assigned += self.store.set_regions({k: outcomes[k] for k in ids[i:i + REGION_BATCH_SIZE]})
        return assigned

    def reverify_updated_regions(self, catalog: RegionCatalog) -> int:
        """Re-check notes around regions whose boundary changed.

        Notes inside the region's bounding box or assigned to it are verified
        against the current index. Mismatches are invalidated and then
        located again, so a note that left a shrunk region lands in its new
        region (or KnownUnassigned). The region's updated flag is cleared
        afterwards.

        Returns:
            Number of notes invalidated
        """
        invalidated = 0
        for region in catalog.updated_regions():
            mismatched = [
                note
                for note in self.store.notes_near_region(region.region_id, region.bounds)
                if not note.region.is_unknown
                and self.index.locate(note.longitude, note.latitude, current=note.region) != note.region
            ]
            changed = self.store.invalidate_regions([note.note_id for note in mismatched])
            reassigned = self._assign(mismatched)
            invalidated += changed
            catalog.clear_updated([region.region_id])
            logger.info(
                "Re-verified notes around updated region",
                extra={
                    "region_id": region.region_id,
                    "name": region.name,
                    "invalidated": changed,
                    "reassigned": reassigned,
                },
            )
        return invalidated

    def report(self) -> Dict[str, object]:
        """Counts per assignment state and pass cursors."""
        return {
            "notes": self.store.count_notes(),
            "max_note_id": self.store.max_note_id(),
            "by_state": self.store.count_by_region_state(),
            "cursors": {
                VERIFY_PASS: self.store.read_chunk_cursor(VERIFY_PASS),
                ASSIGN_PASS: self.store.read_chunk_cursor(ASSIGN_PASS),
            },
            "regions": len(self.index),
        }

    def _run_pass(
        self,
        pass_id: str,
        resume_from: Optional[int],
        work: Callable[[VerificationChunk], tuple],
    ) -> PassResult:
        started = time.monotonic()
        stored = self.store.read_chunk_cursor(pass_id)
        cursor = stored if resume_from is None else resume_from
        max_id = self.store.max_note_id()
        chunks = self.chunks_after(cursor, max_id)
        backlog = self.backlog_chunks(cursor) if pass_id == ASSIGN_PASS else []
        result = PassResult(pass_id=pass_id, started_from=cursor, completed_up_to=cursor)
        if not chunks and not backlog:
            logger.info("Nothing to do above cursor", extra={"pass_id": pass_id, "cursor": cursor})
            self.last_result = result
            return result

        logger.info(
            "Starting chunked pass",
            extra={
                "pass_id": pass_id,
                "cursor": cursor,
                "max_note_id": max_id,
                "chunks": len(chunks),
                "backlog_chunks": len(backlog),
            },
        )
        frontier = 0
        with cf.ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=pass_id) as ex:
            futures = {ex.submit(self._run_chunk, pass_id, chunk, work): chunk for chunk in backlog + chunks}
            for future in cf.as_completed(futures):
                chunk = futures[future]
                try:
                    checked, changed = future.result()
                except cf.CancelledError:
                    continue
                except ShutdownRequested:
                    result.interrupted = True
                    for pending in futures:
                        pending.cancel()
                    continue
                except Exception as exc:
                    chunk.status = ChunkStatus.FAILED
                    result.failed_chunks.append(chunk)
                    logger.error(
                        "Chunk failed; cursor will not pass it",
                        extra={
                            "pass_id": pass_id,
                            "chunk_start_id": chunk.chunk_start_id,
                            "chunk_end_id": chunk.chunk_end_id,
                            "error": str(exc),
                        },
                    )
                    continue

                chunk.status = ChunkStatus.DONE
                result.chunks_done += 1
                result.checked += checked
                result.changed += changed
                while frontier < len(chunks) and chunks[frontier].status == ChunkStatus.DONE:
                    frontier += 1
                if frontier and min(chunks[frontier - 1].chunk_end_id, max_id) > result.completed_up_to:
                    result.completed_up_to = min(chunks[frontier - 1].chunk_end_id, max_id)
                    if result.completed_up_to > stored:
                        self.store.write_chunk_cursor(result.completed_up_to, pass_id)

        result.duration_seconds = time.monotonic() - started
        self.last_result = result
        log = logger.info if result.ok else logger.warning
        log(
            "Chunked pass finished",
            extra={
                "pass_id": pass_id,
                "completed_up_to": result.completed_up_to,
                "chunks_done": result.chunks_done,
                "failed_chunks": len(result.failed_chunks),
                "checked": result.checked,
                "changed": result.changed,
                "interrupted": result.interrupted,
            },
        )
        return result

    def _run_chunk(
        self,
        pass_id: str,
        chunk: VerificationChunk,
        work: Callable[[VerificationChunk], tuple],
    ) -> tuple:
        if self._shutdown.is_set():
            raise ShutdownRequested(f"Shutdown before chunk {chunk.chunk_start_id}")
        outcome = self.retry.execute(
            lambda: work(chunk),
            max_attempts=self.chunk_max_attempts,
            description=f"{pass_id} chunk {chunk.chunk_start_id}-{chunk.chunk_end_id}",
        )
        if not outcome.ok and outcome.failure_class == FailureClass.STRUCTURAL and self.quarantine:
            self.quarantine.quarantine(
                item_id=f"{pass_id}/{chunk.chunk_start_id}-{chunk.chunk_end_id}",
                kind=QuarantineKind.CHUNK,
                failure_class=FailureClass.STRUCTURAL,
                error_message=str(outcome.last_error),
                attempts=outcome.attempts,
            )
        return outcome.unwrap()


__all__ = ["ASSIGN_PASS", "VERIFY_PASS", "PassResult", "VerificationEngine"]
