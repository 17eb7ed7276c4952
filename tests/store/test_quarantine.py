"""Tests for the quarantine store."""

from pathlib import Path

import pytest

from notesync.errors import FailureClass
from notesync.store.quarantine import QuarantineKind, QuarantineStore


@pytest.fixture
def quarantine(tmp_path: Path):
    q = QuarantineStore(tmp_path / "quarantine.db")
    yield q
    q.close()


def test_quarantine_and_get(quarantine: QuarantineStore) -> None:
    quarantine.quarantine(
        item_id="b1:3",
        kind=QuarantineKind.PARTITION,
        failure_class=FailureClass.STRUCTURAL,
        error_message="mismatched tag",
        attempts=3,
        metadata={"input_path": "/tmp/part_0003.xml"},
    )

    item = quarantine.get("b1:3")

    assert item is not None
    assert item.kind == QuarantineKind.PARTITION
    assert item.failure_class == FailureClass.STRUCTURAL
    assert item.metadata["input_path"] == "/tmp/part_0003.xml"


def test_requarantine_accumulates_attempts(quarantine: QuarantineStore) -> None:
    for _ in range(2):
        quarantine.quarantine(
            item_id="chunk:1",
            kind=QuarantineKind.CHUNK,
            failure_class=FailureClass.STRUCTURAL,
            error_message="bad",
            attempts=3,
        )

    assert quarantine.get("chunk:1").attempts == 6
    assert quarantine.statistics() == {"total_quarantined": 1, "by_kind": {"chunk": 1}}


def test_list_filters_by_kind(quarantine: QuarantineStore) -> None:
    quarantine.quarantine(item_id="a", kind=QuarantineKind.CHUNK, failure_class=FailureClass.STRUCTURAL, error_message="x")
    quarantine.quarantine(item_id="b", kind=QuarantineKind.PARTITION, failure_class=FailureClass.STRUCTURAL, error_message="y")

    assert [i.item_id for i in quarantine.list(kind=QuarantineKind.PARTITION)] == ["b"]


def test_remove_and_purge(quarantine: QuarantineStore) -> None:
    quarantine.quarantine(item_id="a", kind=QuarantineKind.CHUNK, failure_class=FailureClass.STRUCTURAL, error_message="x")
    quarantine.remove("a")
    assert quarantine.get("a") is None

    quarantine.quarantine(item_id="b", kind=QuarantineKind.CHUNK, failure_class=FailureClass.STRUCTURAL, error_message="x")
    assert quarantine.purge_old(days=30) == 0
    assert quarantine.purge_old(days=-1) == 1
