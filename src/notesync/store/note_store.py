"""SQLite-backed canonical store for notes, comments, and progress markers.

The store is the only correctness-critical state of the system. It holds:

- ``notes`` / ``note_comments``: upserted idempotently by note id and
  ``(note_id, sequence)``
- ``properties``: the sync watermark and per-pass verification cursors, both
  forward-only
- ``partition_status``: bulk partition bookkeeping used by crash recovery

Each method acquires the same connection-level lock to guarantee thread
safety and writes inside a single SQLite transaction. Cross-process mutual
exclusion for multi-step work (consolidation, verification passes) goes
through :meth:`NoteStore.with_lock`.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from filelock import FileLock, Timeout

from ..errors import CursorRegressionError, LockContentionError, WatermarkRegressionError
from ..models import (
    ConversionResult,
    NoteComment,
    NoteRecord,
    NoteStatus,
    Partition,
    PartitionState,
    RegionAssignment,
    RegionState,
    SyncWatermark,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

WATERMARK_KEY = "sync_watermark"
CURSOR_KEY_PREFIX = "chunk_cursor:"

SCHEMA = """
CREATE TABLE IF NOT EXISTS notes (
    note_id INTEGER PRIMARY KEY,
    longitude REAL NOT NULL,
    latitude REAL NOT NULL,
    created_at TEXT NOT NULL,
    status TEXT NOT NULL,
    closed_at TEXT,
    region_state TEXT NOT NULL DEFAULT 'unknown',
    region_id INTEGER
);

CREATE INDEX IF NOT EXISTS idx_notes_region_state ON notes(region_state);
CREATE INDEX IF NOT EXISTS idx_notes_region_id ON notes(region_id);

CREATE TABLE IF NOT EXISTS note_comments (
    note_id INTEGER NOT NULL,
    sequence INTEGER NOT NULL,
    action TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    user_id INTEGER,
    username TEXT,
    body TEXT,
    PRIMARY KEY (note_id, sequence)
);

CREATE TABLE IF NOT EXISTS properties (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS partition_status (
    batch_id TEXT NOT NULL,
    partition_id INTEGER NOT NULL,
    state TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    input_path TEXT NOT NULL,
    output_path TEXT NOT NULL,
    range_start INTEGER NOT NULL,
    range_end INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (batch_id, partition_id)
);
"""

# Coordinates decide whether an existing assignment survives an upsert: an
# unmoved note keeps its region state, a moved one becomes unknown.
_UPSERT_NOTE = """
INSERT INTO notes(note_id, longitude, latitude, created_at, status, closed_at, region_state, region_id)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(note_id) DO UPDATE SET
    status = excluded.status,
    closed_at = excluded.closed_at,
    region_state = CASE
        WHEN notes.longitude = excluded.longitude AND notes.latitude = excluded.latitude
        THEN notes.region_state ELSE 'unknown' END,
    region_id = CASE
        WHEN notes.longitude = excluded.longitude AND notes.latitude = excluded.latitude
        THEN notes.region_id ELSE NULL END,
    longitude = excluded.longitude,
    latitude = excluded.latitude
"""

_UPSERT_COMMENT = """
INSERT INTO note_comments(note_id, sequence, action, timestamp, user_id, username, body)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(note_id, sequence) DO UPDATE SET
    action = excluded.action,
    timestamp = excluded.timestamp,
    user_id = excluded.user_id,
    username = excluded.username,
    body = excluded.body
"""

_NOTE_COLUMNS = "note_id, longitude, latitude, created_at, status, closed_at, region_state, region_id"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class NoteStore:
    """Persistent canonical store.

    Attributes:
        path: SQLite database file
        lock_dir: Directory holding the named advisory lock files
    """

    def __init__(self, path: Path, *, lock_dir: Optional[Path] = None, lock_timeout: float = 0.0) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_dir = lock_dir or self.path.parent / "locks"
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self._lock_timeout = lock_timeout
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def with_lock(self, name: str, fn: Callable[[], T], *, timeout: Optional[float] = None) -> T:
        """Run ``fn`` while holding the named cross-process lock.

        Raises:
            LockContentionError: Lock not obtained within ``timeout``
        """
        lock_path = self.lock_dir / f"{name}.lock"
        lock = FileLock(str(lock_path), timeout=self._lock_timeout if timeout is None else timeout)
        try:
            lock.acquire()
        except Timeout as exc:
            raise LockContentionError(
                f"Lock {name!r} is held by another process",
                details={"lock": str(lock_path)},
            ) from exc
        try:
            return fn()
        finally:
            lock.release()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def upsert_notes(self, notes: Iterable[NoteRecord]) -> int:
        """Insert or update notes keyed by id. Re-applying is a no-op."""
        rows = [self._note_row(note) for note in notes]
        with self._lock:
            with self._conn:
                self._conn.executemany(_UPSERT_NOTE, rows)
        return len(rows)

    def merge_records(self, result: ConversionResult) -> Tuple[int, int]:
        """Upsert notes and comments in one transaction.

        Returns:
            ``(notes, comments)`` applied
        """
        note_rows = [self._note_row(note) for note in result.notes]
        comment_rows = [self._comment_row(comment) for comment in result.comments]
        with self._lock:
            with self._conn:
                self._conn.executemany(_UPSERT_NOTE, note_rows)
                self._conn.executemany(_UPSERT_COMMENT, comment_rows)
        return len(note_rows), len(comment_rows)

    def merge_many(self, results: Iterable[ConversionResult]) -> Tuple[int, int]:
        """Upsert several results in one transaction, consuming them lazily.

        An exception raised by ``results`` or by a write rolls back every
        result merged so far.

        Returns:
            ``(notes, comments)`` applied
        """
        notes = comments = 0
        with self._lock:
            with self._conn:
                for result in results:
                    self._conn.executemany(_UPSERT_NOTE, [self._note_row(n) for n in result.notes])
                    self._conn.executemany(_UPSERT_COMMENT, [self._comment_row(c) for c in result.comments])
                    notes += len(result.notes)
                    comments += len(result.comments)
        return notes, comments

    def get_note(self, note_id: int) -> Optional[NoteRecord]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_NOTE_COLUMNS} FROM notes WHERE note_id = ?", (note_id,)
            ).fetchone()
        return self._row_to_note(row) if row else None

    def comments_for(self, note_id: int) -> List[NoteComment]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT note_id, sequence, action, timestamp, user_id, username, body
                FROM note_comments WHERE note_id = ? ORDER BY sequence
                """,
                (note_id,),
            ).fetchall()
        return [
            NoteComment(
                note_id=row[0],
                sequence=row[1],
                action=row[2],
                timestamp=datetime.fromisoformat(row[3]),
                user_id=row[4],
                username=row[5],
                text=row[6],
            )
            for row in rows
        ]

    def notes_in_range(
        self,
        start_id: int,
        end_id: int,
        *,
        state: Optional[RegionState] = None,
    ) -> List[NoteRecord]:
        """Notes with ``start_id <= note_id <= end_id`` ordered by id."""
        query = f"SELECT {_NOTE_COLUMNS} FROM notes WHERE note_id BETWEEN ? AND ?"
        params: List[object] = [start_id, end_id]
        if state is not None:
            query += " AND region_state = ?"
            params.append(state.value)
        query += " ORDER BY note_id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_note(row) for row in rows]

    def notes_near_region(
        self,
        region_id: int,
        bounds: Tuple[float, float, float, float],
    ) -> List[NoteRecord]:
        """Notes inside ``bounds`` or currently assigned to ``region_id``."""
        min_x, min_y, max_x, max_y = bounds
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_NOTE_COLUMNS} FROM notes
                WHERE (longitude BETWEEN ? AND ? AND latitude BETWEEN ? AND ?)
                   OR (region_state = 'assigned' AND region_id = ?)
                ORDER BY note_id
                """,
                (min_x, max_x, min_y, max_y, region_id),
            ).fetchall()
        return [self._row_to_note(row) for row in rows]

    def unknown_notes(self, after_id: int = 0, limit: int = 5000) -> List[NoteRecord]:
        """Up to ``limit`` Unknown notes with ids above ``after_id``, ordered by id."""
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_NOTE_COLUMNS} FROM notes
                WHERE region_state = 'unknown' AND note_id > ?
                ORDER BY note_id LIMIT ?
                """,
                (after_id, limit),
            ).fetchall()
        return [self._row_to_note(row) for row in rows]

    def unknown_chunk_indexes(self, upto: int, chunk_size: int) -> List[int]:
        """Grid indexes of chunks holding Unknown notes with ids at or below ``upto``."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT DISTINCT (note_id - 1) / ? FROM notes
                WHERE region_state = 'unknown' AND note_id <= ?
                ORDER BY 1
                """,
                (chunk_size, upto),
            ).fetchall()
        return [row[0] for row in rows]

    def max_note_id(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT MAX(note_id) FROM notes").fetchone()
        return row[0] or 0

    def count_notes(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0]

    def count_by_region_state(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in RegionState}
        with self._lock:
            rows = self._conn.execute(
                "SELECT region_state, COUNT(*) FROM notes GROUP BY region_state"
            ).fetchall()
        counts.update({state: count for state, count in rows})
        return counts

    def count_by_region(self, limit: Optional[int] = None) -> List[Tuple[int, int]]:
        """``(region_id, notes)`` pairs, largest first."""
        query = """
            SELECT region_id, COUNT(*) AS n FROM notes
            WHERE region_state = 'assigned'
            GROUP BY region_id ORDER BY n DESC, region_id
        """
        params: List[object] = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            return [(row[0], row[1]) for row in self._conn.execute(query, params).fetchall()]

    # ------------------------------------------------------------------
    # Region assignment
    # ------------------------------------------------------------------

    def invalidate_region(self, note_id: int) -> bool:
        """Move a note's assignment to Unknown.

        Returns:
            True if the note changed; invalidating an Unknown note is a no-op
        """
        return self.invalidate_regions([note_id]) == 1

    def invalidate_regions(self, note_ids: Sequence[int]) -> int:
        """Invalidate several notes in one transaction."""
        if not note_ids:
            return 0
        with self._lock:
            with self._conn:
                cur = self._conn.executemany(
                    """
                    UPDATE notes SET region_state = 'unknown', region_id = NULL
                    WHERE note_id = ? AND region_state != 'unknown'
                    """,
                    [(note_id,) for note_id in note_ids],
                )
                return cur.rowcount

    def set_regions(self, assignments: Mapping[int, RegionAssignment]) -> int:
        """Record search outcomes for notes that are currently Unknown.

        Only Unknown notes are written, so an assignment made by a concurrent
        verification is never overwritten.
        """
        rows = []
        for note_id, assignment in assignments.items():
            if assignment.is_unknown:
                raise ValueError(f"Cannot record an Unknown outcome for note {note_id}")
            rows.append((assignment.state.value, assignment.region_id, note_id))
        if not rows:
            return 0
        with self._lock:
            with self._conn:
                cur = self._conn.executemany(
                    """
                    UPDATE notes SET region_state = ?, region_id = ?
                    WHERE note_id = ? AND region_state = 'unknown'
                    """,
                    rows,
                )
                return cur.rowcount

    # ------------------------------------------------------------------
    # Progress markers
    # ------------------------------------------------------------------

    def read_watermark(self) -> Optional[SyncWatermark]:
        value = self._get_property(WATERMARK_KEY)
        if value is None:
            return None
        return SyncWatermark(datetime.fromisoformat(value))

    def write_watermark(self, watermark: SyncWatermark) -> None:
        """Persist the watermark.

        Raises:
            WatermarkRegressionError: ``watermark`` is older than the stored one
        """
        with self._lock:
            with self._conn:
                row = self._conn.execute(
                    "SELECT value FROM properties WHERE key = ?", (WATERMARK_KEY,)
                ).fetchone()
                if row is not None:
                    current = SyncWatermark(datetime.fromisoformat(row[0]))
                    if watermark < current:
                        logger.error(
                            "Refusing to move watermark backwards",
                            extra={
                                "current": row[0],
                                "requested": watermark.last_processed_marker.isoformat(),
                            },
                        )
                        raise WatermarkRegressionError(
                            details={
                                "current": row[0],
                                "requested": watermark.last_processed_marker.isoformat(),
                            }
                        )
                self._put_property(WATERMARK_KEY, watermark.last_processed_marker.isoformat())
        logger.info(
            "Watermark advanced",
            extra={"watermark": watermark.last_processed_marker.isoformat()},
        )

    def read_chunk_cursor(self, pass_id: str = "verify") -> int:
        """Highest id such that every chunk at or below it is complete."""
        value = self._get_property(CURSOR_KEY_PREFIX + pass_id)
        return int(value) if value is not None else 0

    def write_chunk_cursor(self, value: int, pass_id: str = "verify") -> None:
        """Persist the contiguous cursor.

        Raises:
            CursorRegressionError: ``value`` is below the stored cursor
        """
        key = CURSOR_KEY_PREFIX + pass_id
        with self._lock:
            with self._conn:
                row = self._conn.execute(
                    "SELECT value FROM properties WHERE key = ?", (key,)
                ).fetchone()
                if row is not None and value < int(row[0]):
                    raise CursorRegressionError(
                        details={"pass_id": pass_id, "current": int(row[0]), "requested": value}
                    )
                self._put_property(key, str(value))

    def reset_chunk_cursor(self, pass_id: str = "verify") -> None:
        """Start the next pass over the whole id space."""
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "DELETE FROM properties WHERE key = ?", (CURSOR_KEY_PREFIX + pass_id,)
                )
        logger.info("Chunk cursor reset", extra={"pass_id": pass_id})

    # ------------------------------------------------------------------
    # Partition bookkeeping
    # ------------------------------------------------------------------

    def record_partition(self, partition: Partition) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO partition_status(
                        batch_id, partition_id, state, attempts, error,
                        input_path, output_path, range_start, range_end, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(batch_id, partition_id) DO UPDATE SET
                        state = excluded.state,
                        attempts = excluded.attempts,
                        error = excluded.error,
                        updated_at = excluded.updated_at
                    """,
                    (
                        partition.batch_id,
                        partition.partition_id,
                        partition.state.value,
                        partition.attempts,
                        partition.error,
                        str(partition.input_path),
                        str(partition.output_path),
                        partition.source_range[0],
                        partition.source_range[1],
                        utcnow().isoformat(),
                    ),
                )

    def partitions(
        self,
        *,
        batch_id: Optional[str] = None,
        state: Optional[PartitionState] = None,
    ) -> List[Partition]:
        query = """
            SELECT batch_id, partition_id, state, attempts, error,
                   input_path, output_path, range_start, range_end
            FROM partition_status
        """
        clauses: List[str] = []
        params: List[object] = []
        if batch_id is not None:
            clauses.append("batch_id = ?")
            params.append(batch_id)
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY batch_id, partition_id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            Partition(
                batch_id=row[0],
                partition_id=row[1],
                state=PartitionState(row[2]),
                attempts=row[3],
                error=row[4],
                input_path=Path(row[5]),
                output_path=Path(row[6]),
                source_range=(row[7], row[8]),
            )
            for row in rows
        ]

    def fail_stuck_partitions(self) -> int:
        """Mark partitions left in ``processing`` by a crashed run as failed."""
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    """
                    UPDATE partition_status
                    SET state = 'failed', error = 'interrupted by crash', updated_at = ?
                    WHERE state = 'processing'
                    """,
                    (utcnow().isoformat(),),
                )
                return cur.rowcount

    def forget_batch(self, batch_id: str) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM partition_status WHERE batch_id = ?", (batch_id,))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_property(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM properties WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def _put_property(self, key: str, value: str) -> None:
        # Caller holds the lock and the transaction.
        self._conn.execute(
            """
            INSERT INTO properties(key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, utcnow().isoformat()),
        )

    @staticmethod
    def _note_row(note: NoteRecord) -> tuple:
        return (
            note.note_id,
            note.longitude,
            note.latitude,
            _iso(note.created_at),
            note.status.value,
            _iso(note.closed_at),
            note.region.state.value,
            note.region.region_id,
        )

    @staticmethod
    def _comment_row(comment: NoteComment) -> tuple:
        return (
            comment.note_id,
            comment.sequence,
            comment.action,
            _iso(comment.timestamp),
            comment.user_id,
            comment.username,
            comment.text,
        )

    @staticmethod
    def _row_to_note(row: tuple) -> NoteRecord:
        note_id, longitude, latitude, created_at, status, closed_at, region_state, region_id = row
        return NoteRecord(
            note_id=note_id,
            longitude=longitude,
            latitude=latitude,
            created_at=datetime.fromisoformat(created_at),
            status=NoteStatus(status),
            closed_at=_parse(closed_at),
            region=RegionAssignment(RegionState(region_state), region_id),
        )


__all__ = ["NoteStore"]
