"""Tests for the OSM notes XML converter."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from notesync.errors import DataValidationError
from notesync.ingestion.converter import OsmNotesXmlConverter, parse_timestamp
from notesync.models import NoteStatus

FIXTURES = Path(__file__).resolve().parents[1] / "fixtures"


@pytest.fixture
def converter() -> OsmNotesXmlConverter:
    return OsmNotesXmlConverter()


class TestParseTimestamp:
    def test_api_format(self) -> None:
        assert parse_timestamp("2024-01-02 10:00:00 UTC") == datetime(2024, 1, 2, 10, tzinfo=timezone.utc)

    def test_planet_format(self) -> None:
        assert parse_timestamp("2013-04-24T08:07:02Z") == datetime(2013, 4, 24, 8, 7, 2, tzinfo=timezone.utc)

    def test_garbage(self) -> None:
        with pytest.raises(DataValidationError):
            parse_timestamp("yesterday")


class TestApiFormat:
    def test_notes_and_comments(self, converter: OsmNotesXmlConverter) -> None:
        result = converter.convert((FIXTURES / "api_notes.xml").read_bytes())

        assert [n.note_id for n in result.notes] == [101, 102]
        first = result.notes[0]
        assert first.point == (2.3522, 48.8566)
        assert first.status == NoteStatus.CLOSED
        assert first.closed_at == datetime(2024, 1, 3, 11, tzinfo=timezone.utc)
        assert result.notes[1].status == NoteStatus.OPEN

        comments = [c for c in result.comments if c.note_id == 101]
        assert [c.action for c in comments] == ["opened", "closed"]
        assert comments[0].username == "alice"
        assert comments[0].user_id == 7
        assert comments[0].text == "Bakery is missing"

    def test_anonymous_comment(self, converter: OsmNotesXmlConverter) -> None:
        result = converter.convert((FIXTURES / "api_notes.xml").read_bytes())
        anonymous = [c for c in result.comments if c.note_id == 102][0]
        assert anonymous.user_id is None
        assert anonymous.username is None

    def test_high_marker(self, converter: OsmNotesXmlConverter) -> None:
        result = converter.convert((FIXTURES / "api_notes.xml").read_bytes())
        assert result.high_marker == datetime(2024, 1, 4, 9, 30, tzinfo=timezone.utc)
        assert len(result) == 2


class TestPlanetFormat:
    def test_notes(self, converter: OsmNotesXmlConverter) -> None:
        result = converter.convert((FIXTURES / "planet_notes.xml").read_bytes())

        assert [n.note_id for n in result.notes] == [1, 2, 3, 4, 5]
        statuses = {n.note_id: n.status for n in result.notes}
        assert statuses[1] == NoteStatus.CLOSED
        assert statuses[2] == NoteStatus.OPEN
        assert statuses[3] == NoteStatus.HIDDEN

    def test_comment_text_unescaped(self, converter: OsmNotesXmlConverter) -> None:
        result = converter.convert((FIXTURES / "planet_notes.xml").read_bytes())
        assert result.comments[0].text == "Road name wrong <note>"
        assert [c.sequence for c in result.comments if c.note_id == 4] == [1, 2]

    def test_entity_offsets_ignore_escaped_text(self, converter: OsmNotesXmlConverter) -> None:
        data = (FIXTURES / "planet_notes.xml").read_bytes()
        offsets = converter.entity_offsets(data)
        assert len(offsets) == 5
        assert all(data[o:o + 5] == b"<note" for o in offsets)

    def test_next_entity_and_count(self, converter: OsmNotesXmlConverter) -> None:
        data = (FIXTURES / "planet_notes.xml").read_bytes()
        offsets = converter.entity_offsets(data)

        assert converter.count_entities(data) == 5
        assert converter.next_entity(data, 0) == offsets[0]
        assert converter.next_entity(data, offsets[1] + 1) == offsets[2]
        assert converter.next_entity(data, offsets[4] + 1) == -1


class TestValidation:
    def test_missing_coordinates(self, converter: OsmNotesXmlConverter) -> None:
        with pytest.raises(DataValidationError):
            converter.convert(b'<osm-notes><note id="1" created_at="2013-04-24T08:07:02Z"/></osm-notes>')

    def test_out_of_range(self, converter: OsmNotesXmlConverter) -> None:
        with pytest.raises(DataValidationError):
            converter.convert(
                b'<osm-notes><note id="1" lat="95" lon="0" created_at="2013-04-24T08:07:02Z"/></osm-notes>'
            )

    def test_unknown_status(self, converter: OsmNotesXmlConverter) -> None:
        payload = (
            b'<osm><note lon="1" lat="1"><id>1</id>'
            b"<date_created>2024-01-01 00:00:00 UTC</date_created>"
            b"<status>archived</status></note></osm>"
        )
        with pytest.raises(DataValidationError):
            converter.convert(payload)

    def test_malformed_xml_raises_parse_error(self, converter: OsmNotesXmlConverter) -> None:
        import xml.etree.ElementTree as ET

        with pytest.raises(ET.ParseError):
            converter.convert(b"<osm-notes><note id='1'></osm-notes>")
