"""Quarantine for work items that keep failing on structural errors.

Partitions, feed batches, and verification chunks that exhaust their retry
budget on payloads the converter rejects are recorded here for operator
review instead of being retried forever.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import FailureClass
from ..models import utcnow


class QuarantineKind(str, Enum):
    PARTITION = "partition"
    FEED_BATCH = "feed_batch"
    CHUNK = "chunk"


@dataclass
class QuarantinedItem:
    item_id: str
    kind: QuarantineKind
    failure_class: FailureClass
    error_message: str
    attempts: int = 0
    quarantined_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)


QUARANTINE_SCHEMA = """
CREATE TABLE IF NOT EXISTS quarantined_items (
    item_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    failure_class TEXT NOT NULL,
    error_message TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    quarantined_at TEXT NOT NULL,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_quarantine_kind ON quarantined_items(kind);
"""


class QuarantineStore:
    """SQLite-backed record of quarantined work items."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(QUARANTINE_SCHEMA)
        self._lock = threading.Lock()

    def close(self) -> None:
        self._conn.close()

    def quarantine(
        self,
        *,
        item_id: str,
        kind: QuarantineKind,
        failure_class: FailureClass,
        error_message: str,
        attempts: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> QuarantinedItem:
        """Record (or refresh) a quarantined item."""
        now = utcnow()
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO quarantined_items(
                        item_id, kind, failure_class, error_message, attempts, quarantined_at, metadata
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(item_id) DO UPDATE SET
                        failure_class = excluded.failure_class,
                        error_message = excluded.error_message,
                        attempts = quarantined_items.attempts + excluded.attempts,
                        quarantined_at = excluded.quarantined_at,
                        metadata = excluded.metadata
                    """,
                    (
                        item_id,
                        kind.value,
                        failure_class.value,
                        error_message,
                        attempts,
                        now.isoformat(),
                        json.dumps(metadata or {}),
                    ),
                )
        return QuarantinedItem(
            item_id=item_id,
            kind=kind,
            failure_class=failure_class,
            error_message=error_message,
            attempts=attempts,
            quarantined_at=now,
            metadata=metadata or {},
        )

    def list(self, *, kind: Optional[QuarantineKind] = None, limit: Optional[int] = None) -> List[QuarantinedItem]:
        """Quarantined items, newest first."""
        query = """
            SELECT item_id, kind, failure_class, error_message, attempts, quarantined_at, metadata
            FROM quarantined_items
        """
        params: List[Any] = []
        if kind is not None:
            query += " WHERE kind = ?"
            params.append(kind.value)
        query += " ORDER BY quarantined_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_item(row) for row in rows]

    def get(self, item_id: str) -> Optional[QuarantinedItem]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT item_id, kind, failure_class, error_message, attempts, quarantined_at, metadata
                FROM quarantined_items WHERE item_id = ?
                """,
                (item_id,),
            ).fetchone()
        return self._row_to_item(row) if row else None

    def remove(self, item_id: str) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM quarantined_items WHERE item_id = ?", (item_id,))

    def purge_old(self, days: int = 30) -> int:
        cutoff = (utcnow() - timedelta(days=days)).isoformat()
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    "DELETE FROM quarantined_items WHERE quarantined_at < ?", (cutoff,)
                )
                return cur.rowcount

    def statistics(self) -> Dict[str, Any]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT COUNT(*) FROM quarantined_items")
            total = cur.fetchone()[0]
            cur.execute("SELECT kind, COUNT(*) FROM quarantined_items GROUP BY kind")
            by_kind = {row[0]: row[1] for row in cur.fetchall()}
        return {"total_quarantined": total, "by_kind": by_kind}

    @staticmethod
    def _row_to_item(row: tuple) -> QuarantinedItem:
        item_id, kind, failure_class, error_message, attempts, quarantined_at, metadata = row
        return QuarantinedItem(
            item_id=item_id,
            kind=QuarantineKind(kind),
            failure_class=FailureClass(failure_class),
            error_message=error_message,
            attempts=attempts,
            quarantined_at=datetime.fromisoformat(quarantined_at),
            metadata=json.loads(metadata) if metadata else {},
        )


__all__ = ["QuarantineKind", "QuarantinedItem", "QuarantineStore"]
