"""Domain models shared across the sync core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NoteStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    HIDDEN = "hidden"


class RegionState(str, Enum):
    ASSIGNED = "assigned"
    KNOWN_UNASSIGNED = "known_unassigned"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class RegionAssignment:
    """Tagged region outcome: ``Assigned(region) | KnownUnassigned | Unknown``.

    ``KnownUnassigned`` means a full spatial search ran and no region contains
    the point (international waters). ``Unknown`` means nobody has looked yet,
    or a previous assignment was invalidated.
    """

    state: RegionState
    region_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.state == RegionState.ASSIGNED and self.region_id is None:
            raise ValueError("Assigned outcome requires a region_id")
        if self.state != RegionState.ASSIGNED and self.region_id is not None:
            raise ValueError(f"{self.state.value} outcome cannot carry a region_id")

    @classmethod
    def assigned(cls, region_id: int) -> "RegionAssignment":
        return cls(RegionState.ASSIGNED, region_id)

    @classmethod
    def known_unassigned(cls) -> "RegionAssignment":
        return cls(RegionState.KNOWN_UNASSIGNED)

    @classmethod
    def unknown(cls) -> "RegionAssignment":
        return cls(RegionState.UNKNOWN)

    @property
    def is_assigned(self) -> bool:
        return self.state == RegionState.ASSIGNED

    @property
    def is_unknown(self) -> bool:
        return self.state == RegionState.UNKNOWN

    def __str__(self) -> str:
        if self.is_assigned:
            return f"Assigned({self.region_id})"
        return "KnownUnassigned" if self.state == RegionState.KNOWN_UNASSIGNED else "Unknown"


@dataclass(slots=True)
class NoteRecord:
    """A geographic note as stored in the canonical store."""

    note_id: int
    longitude: float
    latitude: float
    created_at: datetime
    status: NoteStatus = NoteStatus.OPEN
    closed_at: Optional[datetime] = None
    region: RegionAssignment = field(default_factory=RegionAssignment.unknown)

    @property
    def point(self) -> Tuple[float, float]:
        return (self.longitude, self.latitude)


@dataclass(slots=True)
class NoteComment:
    """One event in a note's history (open, comment, close, reopen, hide)."""

    note_id: int
    sequence: int
    action: str
    timestamp: datetime
    user_id: Optional[int] = None
    username: Optional[str] = None
    text: Optional[str] = None


@dataclass(slots=True)
class ConversionResult:
    """Records produced by a format converter, in source order."""

    notes: List[NoteRecord] = field(default_factory=list)
    comments: List[NoteComment] = field(default_factory=list)

    def extend(self, other: "ConversionResult") -> None:
        self.notes.extend(other.notes)
        self.comments.extend(other.comments)

    @property
    def high_marker(self) -> Optional[datetime]:
        """Newest event time carried by the records."""
        stamps = [c.timestamp for c in self.comments]
        for note in self.notes:
            stamps.append(note.created_at)
            if note.closed_at is not None:
                stamps.append(note.closed_at)
        return max(stamps) if stamps else None

    def __len__(self) -> int:
        return len(self.notes)


@dataclass(frozen=True, slots=True)
class Ticket:
    """Admission token for a rate-limited resource."""

    resource: str
    sequence: int
    issued_at: datetime


@dataclass(frozen=True, slots=True)
class SyncWatermark:
    """Last durably processed point of the notes feed."""

    last_processed_marker: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "last_processed_marker", ensure_utc(self.last_processed_marker))

    def __lt__(self, other: "SyncWatermark") -> bool:
        return self.last_processed_marker < other.last_processed_marker

    def __le__(self, other: "SyncWatermark") -> bool:
        return self.last_processed_marker <= other.last_processed_marker


class PartitionState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class Partition:
    """A bounded, independently processable slice of a bulk unit.

    ``source_range`` is the half-open byte range ``[start, end)`` of the
    source the partition was cut from.
    """

    batch_id: str
    partition_id: int
    source_range: Tuple[int, int]
    input_path: Path
    output_path: Path
    state: PartitionState = PartitionState.PENDING
    attempts: int = 0
    error: Optional[str] = None


class ChunkStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class VerificationChunk:
    """Inclusive id range ``[chunk_start_id, chunk_end_id]``."""

    chunk_start_id: int
    chunk_end_id: int
    status: ChunkStatus = ChunkStatus.PENDING

    def __contains__(self, note_id: int) -> bool:
        return self.chunk_start_id <= note_id <= self.chunk_end_id


def chunk_bounds(index: int, chunk_size: int) -> Tuple[int, int]:
    """Bounds of chunk ``index``: ``[index*size + 1, (index+1)*size]``."""
    start = index * chunk_size + 1
    return start, start + chunk_size - 1


__all__ = [
    "utcnow",
    "ensure_utc",
    "NoteStatus",
    "RegionState",
    "RegionAssignment",
    "NoteRecord",
    "NoteComment",
    "ConversionResult",
    "Ticket",
    "SyncWatermark",
    "PartitionState",
    "Partition",
    "ChunkStatus",
    "VerificationChunk",
    "chunk_bounds",
]
