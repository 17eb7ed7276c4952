"""Tests for partition splitting."""

from pathlib import Path

import pytest

from notesync.ingestion.converter import OsmNotesXmlConverter
from notesync.ingestion.splitter import PartitionSplitter

FIXTURES = Path(__file__).resolve().parents[1] / "fixtures"


@pytest.fixture
def splitter(tmp_path: Path) -> PartitionSplitter:
    return PartitionSplitter(tmp_path / "partitions")


def test_partitions_are_dense_and_complete(splitter: PartitionSplitter) -> None:
    partitions = splitter.split(FIXTURES / "planet_notes.xml", 3, batch_id="b1")

    assert [p.partition_id for p in partitions] == [1, 2, 3]
    converter = OsmNotesXmlConverter()
    seen = []
    comments = 0
    for partition in partitions:
        result = converter.convert(partition.input_path.read_bytes())
        assert result.notes, "every partition holds at least one note"
        seen.extend(n.note_id for n in result.notes)
        comments += len(result.comments)

    assert seen == [1, 2, 3, 4, 5]
    assert comments == 8


def test_ranges_are_contiguous(splitter: PartitionSplitter) -> None:
    partitions = splitter.split(FIXTURES / "planet_notes.xml", 2, batch_id="b1")
    assert partitions[0].source_range[1] == partitions[1].source_range[0]


def test_fewer_notes_than_partitions(splitter: PartitionSplitter) -> None:
    partitions = splitter.split(FIXTURES / "planet_notes.xml", 16, batch_id="b1")
    assert [p.partition_id for p in partitions] == [1, 2, 3, 4, 5]


def test_single_partition(splitter: PartitionSplitter) -> None:
    partitions = splitter.split(FIXTURES / "planet_notes.xml", 1, batch_id="b1")
    result = OsmNotesXmlConverter().convert(partitions[0].input_path.read_bytes())
    assert len(result) == 5


def test_empty_source(splitter: PartitionSplitter, tmp_path: Path) -> None:
    source = tmp_path / "empty.xml"
    source.write_bytes(b"<osm-notes></osm-notes>")
    assert splitter.split(source, 4, batch_id="b1") == []


def test_outputs_are_per_partition(splitter: PartitionSplitter) -> None:
    partitions = splitter.split(FIXTURES / "planet_notes.xml", 3, batch_id="b1")
    outputs = {p.output_path for p in partitions}
    assert len(outputs) == 3
    assert all(p.output_path.parent == p.input_path.parent for p in partitions)


def test_invalid_count(splitter: PartitionSplitter) -> None:
    with pytest.raises(ValueError):
        splitter.split(FIXTURES / "planet_notes.xml", 0, batch_id="b1")


def test_source_is_memory_mapped_not_read(splitter: PartitionSplitter, monkeypatch) -> None:
    def refuse(self):
        raise AssertionError("source read whole")

    monkeypatch.setattr(Path, "read_bytes", refuse)
    partitions = splitter.split(FIXTURES / "planet_notes.xml", 3, batch_id="b1")
    monkeypatch.undo()

    assert [p.partition_id for p in partitions] == [1, 2, 3]
    assert partitions[0].input_path.read_bytes().count(b"<note ") == 2


def test_zero_byte_source(splitter: PartitionSplitter, tmp_path: Path) -> None:
    source = tmp_path / "zero.xml"
    source.write_bytes(b"")
    assert splitter.split(source, 4, batch_id="b1") == []


def test_partitions_balanced_by_bytes(splitter: PartitionSplitter, tmp_path: Path) -> None:
    body = b"".join(
        b'<note id="%d" lat="1" lon="1" created_at="2013-04-24T08:07:02Z">%s</note>\n' % (i, b"x" * 200)
        for i in range(1, 41)
    )
    source = tmp_path / "even.xml"
    source.write_bytes(b"<osm-notes>\n" + body + b"</osm-notes>\n")

    partitions = splitter.split(source, 4, batch_id="b1")

    sizes = [end - start for start, end in (p.source_range for p in partitions)]
    assert len(partitions) == 4
    assert max(sizes) - min(sizes) <= len(body) // 40
    assert all(b.source_range[0] == a.source_range[1] for a, b in zip(partitions, partitions[1:]))
