"""Cross-process fair scheduler for rate-limited remote resources.

Callers take a numbered ticket, wait until the shared "now serving" cursor
reaches it and the capacity probe reports a free slot, use the resource, and
release the ticket. Counter and cursor live in SQLite behind an exclusive
``filelock`` so separate processes share one queue per resource.

Tickets are served strictly in issue order and the cursor only moves forward.
A ticket that stays current longer than the lease without a release or
heartbeat is force-expired and logged as an anomaly, so one crashed holder
cannot stall the queue.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from filelock import FileLock, Timeout

from ..errors import (
    LockContentionError,
    ShutdownRequested,
    TicketExpiredError,
    TicketTimeoutError,
)
from ..models import Ticket
from .capacity import CapacityProbe, StaticCapacity

logger = logging.getLogger(__name__)


class TicketStatus(str, Enum):
    WAITING = "waiting"
    GRANTED = "granted"
    RELEASED = "released"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = {TicketStatus.RELEASED, TicketStatus.CANCELLED, TicketStatus.EXPIRED}


class TurnOutcome(str, Enum):
    GRANTED = "granted"
    TIMED_OUT = "timed_out"
    EXPIRED = "expired"


SCHEMA = """
CREATE TABLE IF NOT EXISTS queue_state (
    resource TEXT PRIMARY KEY,
    last_issued INTEGER NOT NULL,
    now_serving INTEGER NOT NULL,
    serving_since REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS tickets (
    resource TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    status TEXT NOT NULL,
    holder_pid INTEGER NOT NULL,
    issued_at REAL NOT NULL,
    last_seen REAL NOT NULL,
    granted_at REAL,
    finished_at REAL,
    PRIMARY KEY (resource, sequence)
);
"""


class TicketQueue:
    """FIFO, capacity-aware turn-taking for one named resource."""

    def __init__(
        self,
        path: Path,
        *,
        resource: str,
        capacity: Optional[CapacityProbe] = None,
        lease_seconds: float = 600.0,
        poll_interval: float = 1.0,
        default_timeout: float = 1800.0,
        lock_timeout: float = 30.0,
        shutdown_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.resource = resource
        self._capacity = capacity or StaticCapacity()
        self._lease = lease_seconds
        self._poll_interval = poll_interval
        self._default_timeout = default_timeout
        self._shutdown = shutdown_event or threading.Event()
        self._clock = clock

        self._conn = sqlite3.connect(self._path, check_same_thread=False, isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()
        self._file_lock = FileLock(str(self._path) + ".lock", timeout=lock_timeout)

    def close(self) -> None:
        self._conn.close()

    def configure(self, *, lease_seconds: float, poll_interval: float, default_timeout: float) -> None:
        """Apply reloaded timing settings; queued tickets are unaffected."""
        self._lease = lease_seconds
        self._poll_interval = poll_interval
        self._default_timeout = default_timeout

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._file_lock:
                    self._conn.execute("BEGIN IMMEDIATE")
                    try:
                        yield self._conn
                    except BaseException:
                        self._conn.execute("ROLLBACK")
                        raise
                    self._conn.execute("COMMIT")
            except Timeout as exc:
                raise LockContentionError(
                    f"Ticket queue lock busy: {self._file_lock.lock_file}"
                ) from exc

    def _state(self, conn: sqlite3.Connection, now: float) -> sqlite3.Row:
        row = conn.execute(
            "SELECT last_issued, now_serving, serving_since FROM queue_state WHERE resource = ?",
            (self.resource,),
        ).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO queue_state(resource, last_issued, now_serving, serving_since) VALUES (?, 0, 1, ?)",
                (self.resource, now),
            )
            return (0, 1, now)
        return row

    def _ticket_row(self, conn: sqlite3.Connection, sequence: int):
        return conn.execute(
            """
            SELECT status, holder_pid, issued_at, last_seen, granted_at
            FROM tickets WHERE resource = ? AND sequence = ?
            """,
            (self.resource, sequence),
        ).fetchone()

    def acquire(self) -> Ticket:
        """Issue the next ticket.

        Raises:
            ShutdownRequested: No tickets are issued once shutdown is requested
        """
        if self._shutdown.is_set():
            raise ShutdownRequested("Ticket issuance stopped for shutdown")
        now = self._clock()
        with self._transaction() as conn:
            last_issued, now_serving, _ = self._state(conn, now)
            sequence = last_issued + 1
            conn.execute(
                "UPDATE queue_state SET last_issued = ? WHERE resource = ?",
                (sequence, self.resource),
            )
            if sequence == now_serving:
                # Queue was idle; the lease of the new head starts now.
                conn.execute(
                    "UPDATE queue_state SET serving_since = ? WHERE resource = ?",
                    (now, self.resource),
                )
            conn.execute(
                """
                INSERT INTO tickets(resource, sequence, status, holder_pid, issued_at, last_seen)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (self.resource, sequence, TicketStatus.WAITING.value, os.getpid(), now, now),
            )
        logger.debug("Ticket issued", extra={"resource": self.resource, "ticket": sequence})
        return Ticket(
            resource=self.resource,
            sequence=sequence,
            issued_at=datetime.fromtimestamp(now, tz=timezone.utc),
        )

    def wait_turn(self, ticket: Ticket, timeout: Optional[float] = None) -> TurnOutcome:
        """Block until ``ticket`` is served or ``timeout`` elapses.

        Capacity is re-checked on every poll. A timed-out ticket is cancelled
        so it never blocks its successors.

        Raises:
            ShutdownRequested: Shutdown interrupted the wait (ticket cancelled)
        """
        self._check_resource(ticket)
        bound = self._default_timeout if timeout is None else timeout
        deadline = self._clock() + bound
        waited_polls = 0

        while True:
            now = self._clock()
            with self._transaction() as conn:
                self._expire_stale(conn, now)
                row = self._ticket_row(conn, ticket.sequence)
                if row is None:
                    raise TicketExpiredError(f"Unknown ticket {ticket.sequence}")
                status = TicketStatus(row[0])
                if status in TERMINAL_STATUSES:
                    return TurnOutcome.EXPIRED
                if status == TicketStatus.GRANTED:
                    logger.warning(
                        "Ticket already granted; refusing to serve twice",
                        extra={"resource": self.resource, "ticket": ticket.sequence},
                    )
                    return TurnOutcome.EXPIRED
                conn.execute(
                    "UPDATE tickets SET last_seen = ? WHERE resource = ? AND sequence = ?",
                    (now, self.resource, ticket.sequence),
                )
                _, now_serving, _ = self._state(conn, now)
                is_current = now_serving == ticket.sequence

            if is_current and self._capacity.check_available_capacity() > 0:
                if self._grant(ticket):
                    logger.debug(
                        "Turn granted",
                        extra={
                            "resource": self.resource,
                            "ticket": ticket.sequence,
                            "polls": waited_polls,
                        },
                    )
                    return TurnOutcome.GRANTED
                continue
            elif is_current:
                logger.debug(
                    "Ticket is current but remote has no capacity",
                    extra={"resource": self.resource, "ticket": ticket.sequence},
                )

            if self._clock() >= deadline:
                self._finish(ticket, TicketStatus.CANCELLED)
                logger.warning(
                    "Timed out waiting for turn",
                    extra={
                        "resource": self.resource,
                        "ticket": ticket.sequence,
                        "timeout_seconds": bound,
                    },
                )
                return TurnOutcome.TIMED_OUT

            waited_polls += 1
            if self._shutdown.wait(self._poll_interval):
                self._finish(ticket, TicketStatus.CANCELLED)
                raise ShutdownRequested(f"Shutdown while waiting with ticket {ticket.sequence}")

    def heartbeat(self, ticket: Ticket) -> None:
        """Extend the lease of a granted ticket during long work."""
        self._check_resource(ticket)
        now = self._clock()
        with self._transaction() as conn:
            conn.execute(
                "UPDATE tickets SET last_seen = ? WHERE resource = ? AND sequence = ? AND status = ?",
                (now, self.resource, ticket.sequence, TicketStatus.GRANTED.value),
            )

    def release(self, ticket: Ticket) -> None:
        """Release a ticket and move the cursor past it."""
        self._check_resource(ticket)
        self._finish(ticket, TicketStatus.RELEASED)

    @contextmanager
    def turn(self, timeout: Optional[float] = None) -> Iterator[Ticket]:
        """Acquire, wait for, and release a ticket around a block.

        Raises:
            TicketTimeoutError: The turn did not arrive within ``timeout``
            TicketExpiredError: The ticket was force-expired while waiting
        """
        ticket = self.acquire()
        outcome = self.wait_turn(ticket, timeout)
        if outcome == TurnOutcome.TIMED_OUT:
            raise TicketTimeoutError(
                f"Ticket {ticket.sequence} for {self.resource} timed out",
                details={"resource": self.resource, "ticket": ticket.sequence},
            )
        if outcome == TurnOutcome.EXPIRED:
            raise TicketExpiredError(
                f"Ticket {ticket.sequence} for {self.resource} expired",
                details={"resource": self.resource, "ticket": ticket.sequence},
            )
        try:
            yield ticket
        finally:
            self.release(ticket)

    def expire_dead_holders(self) -> int:
        """Expire tickets whose holder process no longer exists.

        Used by crash recovery; only meaningful for holders on this host.
        """
        now = self._clock()
        expired = 0
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT sequence, holder_pid, status FROM tickets WHERE resource = ? AND status IN (?, ?)",
                (self.resource, TicketStatus.WAITING.value, TicketStatus.GRANTED.value),
            ).fetchall()
            for sequence, holder_pid, status in rows:
                if _pid_alive(holder_pid):
                    continue
                conn.execute(
                    "UPDATE tickets SET status = ?, finished_at = ? WHERE resource = ? AND sequence = ?",
                    (TicketStatus.EXPIRED.value, now, self.resource, sequence),
                )
                expired += 1
                logger.warning(
                    "Expired ticket of dead holder",
                    extra={
                        "resource": self.resource,
                        "ticket": sequence,
                        "holder_pid": holder_pid,
                        "previous_status": status,
                        "anomaly": True,
                    },
                )
            self._advance(conn, now)
        return expired

    def status(self) -> Dict[str, object]:
        now = self._clock()
        with self._transaction() as conn:
            last_issued, now_serving, serving_since = self._state(conn, now)
            counts = dict(
                conn.execute(
                    "SELECT status, COUNT(*) FROM tickets WHERE resource = ? GROUP BY status",
                    (self.resource,),
                ).fetchall()
            )
        return {
            "resource": self.resource,
            "last_issued": last_issued,
            "now_serving": now_serving,
            "waiting": max(0, last_issued - now_serving + 1),
            "serving_for_seconds": max(0.0, now - serving_since),
            "by_status": counts,
        }

    def served_order(self) -> List[int]:
        """Sequences in the order they were granted."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT sequence FROM tickets
                WHERE resource = ? AND granted_at IS NOT NULL
                ORDER BY granted_at, sequence
                """,
                (self.resource,),
            ).fetchall()
        return [row[0] for row in rows]

    def _grant(self, ticket: Ticket) -> bool:
        now = self._clock()
        with self._transaction() as conn:
            _, now_serving, _ = self._state(conn, now)
            row = self._ticket_row(conn, ticket.sequence)
            if now_serving != ticket.sequence or row is None or row[0] != TicketStatus.WAITING.value:
                return False
            conn.execute(
                """
                UPDATE tickets SET status = ?, granted_at = ?, last_seen = ?
                WHERE resource = ? AND sequence = ?
                """,
                (TicketStatus.GRANTED.value, now, now, self.resource, ticket.sequence),
            )
        return True

    def _finish(self, ticket: Ticket, status: TicketStatus) -> None:
        now = self._clock()
        with self._transaction() as conn:
            row = self._ticket_row(conn, ticket.sequence)
            if row is None:
                return
            current = TicketStatus(row[0])
            if current == TicketStatus.EXPIRED:
                logger.warning(
                    "Ticket finished after it was force-expired",
                    extra={
                        "resource": self.resource,
                        "ticket": ticket.sequence,
                        "requested_status": status.value,
                        "anomaly": True,
                    },
                )
                return
            if current in TERMINAL_STATUSES:
                return
            if status == TicketStatus.RELEASED and current == TicketStatus.WAITING:
                status = TicketStatus.CANCELLED
            conn.execute(
                "UPDATE tickets SET status = ?, finished_at = ? WHERE resource = ? AND sequence = ?",
                (status.value, now, self.resource, ticket.sequence),
            )
            self._advance(conn, now)

    def _expire_stale(self, conn: sqlite3.Connection, now: float) -> None:
        last_issued, now_serving, serving_since = self._state(conn, now)
        if now_serving > last_issued:
            return
        row = self._ticket_row(conn, now_serving)
        if row is None:
            return
        status, holder_pid, issued_at, last_seen, granted_at = row
        status = TicketStatus(status)
        if status == TicketStatus.GRANTED:
            idle_since = max(granted_at or 0.0, last_seen or 0.0)
        elif status == TicketStatus.WAITING:
            idle_since = max(serving_since, last_seen or issued_at)
        else:
            self._advance(conn, now)
            return
        if now - idle_since <= self._lease:
            return

        conn.execute(
            "UPDATE tickets SET status = ?, finished_at = ? WHERE resource = ? AND sequence = ?",
            (TicketStatus.EXPIRED.value, now, self.resource, now_serving),
        )
        logger.warning(
            "Force-expired abandoned ticket",
            extra={
                "resource": self.resource,
                "ticket": now_serving,
                "holder_pid": holder_pid,
                "previous_status": status.value,
                "idle_seconds": now - idle_since,
                "lease_seconds": self._lease,
                "anomaly": True,
            },
        )
        self._advance(conn, now)

    def _advance(self, conn: sqlite3.Connection, now: float) -> None:
        last_issued, now_serving, _ = self._state(conn, now)
        cursor = now_serving
        while cursor <= last_issued:
            row = self._ticket_row(conn, cursor)
            if row is not None and TicketStatus(row[0]) not in TERMINAL_STATUSES:
                break
            cursor += 1
        if cursor != now_serving:
            conn.execute(
                "UPDATE queue_state SET now_serving = ?, serving_since = ? WHERE resource = ?",
                (cursor, now, self.resource),
            )

    def _check_resource(self, ticket: Ticket) -> None:
        if ticket.resource != self.resource:
            raise ValueError(
                f"Ticket for {ticket.resource!r} used on queue {self.resource!r}"
            )


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


__all__ = [
    "TicketQueue",
    "TicketStatus",
    "TurnOutcome",
]
