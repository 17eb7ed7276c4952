"""Shared fixtures for notesync tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List

import pytest

from notesync.models import NoteComment, NoteRecord, NoteStatus
from notesync.store.note_store import NoteStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCapacity:
    """Capacity probe whose answer tests can flip."""

    def __init__(self, slots: int = 1) -> None:
        self.slots = slots
        self.calls = 0

    def check_available_capacity(self) -> int:
        self.calls += 1
        return self.slots


def make_note(
    note_id: int,
    longitude: float = 0.5,
    latitude: float = 0.5,
    *,
    minutes: int = 0,
    status: NoteStatus = NoteStatus.OPEN,
) -> NoteRecord:
    return NoteRecord(
        note_id=note_id,
        longitude=longitude,
        latitude=latitude,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        status=status,
    )


def make_comment(note_id: int, sequence: int = 0, *, minutes: int = 0, text: str = "hello") -> NoteComment:
    return NoteComment(
        note_id=note_id,
        sequence=sequence,
        action="opened" if sequence == 0 else "commented",
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        user_id=42,
        username="mapper",
        text=text,
    )


def note_range(ids: Iterable[int], longitude: float = 0.5, latitude: float = 0.5) -> List[NoteRecord]:
    return [make_note(i, longitude, latitude) for i in ids]


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def store(workspace: Path):
    note_store = NoteStore(workspace / "notes.db", lock_dir=workspace / "locks")
    yield note_store
    note_store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
