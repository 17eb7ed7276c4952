"""Raw note payloads to normalized records.

Two XML shapes are understood:

API (``/notes/search.xml``)::

    <osm><note lon=".." lat="..">
      <id>1</id><date_created>2013-04-24 08:07:02 UTC</date_created>
      <status>open</status>
      <comments><comment><date>..</date><uid>..</uid><user>..</user>
        <action>opened</action><text>..</text></comment></comments>
    </note></osm>

Planet dump::

    <osm-notes><note id="1" lat=".." lon=".." created_at="2013-04-24T08:07:02Z" closed_at="..">
      <comment action="opened" timestamp=".." uid=".." user="..">text</comment>
    </note></osm-notes>
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import List, Optional, Protocol

from ..errors import DataValidationError
from ..models import ConversionResult, NoteComment, NoteRecord, NoteStatus, ensure_utc

_NOTE_START = re.compile(rb"<note[\s>]")
_NOTE_END = b"</note>"


class Converter(Protocol):
    def convert(self, data: bytes) -> ConversionResult:
        ...

    def entity_offsets(self, data: bytes) -> List[int]:
        ...

    def next_entity(self, data: bytes, start: int) -> int:
        ...

    def count_entities(self, data: bytes) -> int:
        ...

    def entity_end(self, data: bytes) -> int:
        ...


def parse_timestamp(value: str) -> datetime:
    """Parse ``2013-04-24 08:07:02 UTC`` or ``2013-04-24T08:07:02Z``."""
    text = value.strip()
    if text.endswith(" UTC"):
        text = text[:-4] + "+00:00"
    elif text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise DataValidationError(f"Unparseable timestamp {value!r}") from exc


def _child_text(element: ET.Element, tag: str) -> Optional[str]:
    child = element.find(tag)
    if child is None or child.text is None:
        return None
    return child.text.strip() or None


class OsmNotesXmlConverter:
    """Converts API and planet note XML into :class:`ConversionResult`."""

    def entity_offsets(self, data: bytes) -> List[int]:
        """Byte offsets where each ``<note`` element starts, in order."""
        return [match.start() for match in _NOTE_START.finditer(data)]

    def next_entity(self, data: bytes, start: int) -> int:
        """Offset of the first ``<note`` at or after ``start``, or -1."""
        match = _NOTE_START.search(data, start)
        return match.start() if match else -1

    def count_entities(self, data: bytes) -> int:
        return sum(1 for _ in _NOTE_START.finditer(data))

    def entity_end(self, data: bytes) -> int:
        """Offset just past the last ``</note>``."""
        index = data.rfind(_NOTE_END)
        return index + len(_NOTE_END) if index >= 0 else 0

    def convert(self, data: bytes) -> ConversionResult:
        """Parse a document of ``<note>`` elements.

        Raises:
            DataValidationError: A note lacks its id, coordinates, or dates
            xml.etree.ElementTree.ParseError: The payload is not well-formed
        """
        root = ET.fromstring(data)
        result = ConversionResult()
        for element in root.iter("note"):
            note, comments = self._convert_note(element)
            result.notes.append(note)
            result.comments.extend(comments)
        return result

    def _convert_note(self, element: ET.Element):
        raw_id = element.get("id") or _child_text(element, "id")
        raw_lon = element.get("lon")
        raw_lat = element.get("lat")
        if raw_id is None or raw_lon is None or raw_lat is None:
            raise DataValidationError(
                "Note without id or coordinates",
                details={"id": raw_id, "lon": raw_lon, "lat": raw_lat},
            )
        try:
            note_id = int(raw_id)
            longitude = float(raw_lon)
            latitude = float(raw_lat)
        except ValueError as exc:
            raise DataValidationError(f"Malformed note {raw_id!r}") from exc
        if not (-180.0 <= longitude <= 180.0 and -90.0 <= latitude <= 90.0):
            raise DataValidationError(
                f"Note {note_id} has out-of-range coordinates",
                details={"lon": longitude, "lat": latitude},
            )

        raw_created = element.get("created_at") or _child_text(element, "date_created")
        if raw_created is None:
            raise DataValidationError(f"Note {note_id} has no creation date")
        raw_closed = element.get("closed_at") or _child_text(element, "date_closed")

        comments = self._convert_comments(note_id, element)
        status = self._status(element, raw_closed, comments)
        note = NoteRecord(
            note_id=note_id,
            longitude=longitude,
            latitude=latitude,
            created_at=parse_timestamp(raw_created),
            status=status,
            closed_at=parse_timestamp(raw_closed) if raw_closed else None,
        )
        return note, comments

    def _convert_comments(self, note_id: int, element: ET.Element) -> List[NoteComment]:
        container = element.find("comments")
        nodes = list(container.iter("comment")) if container is not None else element.findall("comment")
        comments = []
        for sequence, node in enumerate(nodes, start=1):
            action = node.get("action") or _child_text(node, "action")
            stamp = node.get("timestamp") or _child_text(node, "date")
            if action is None or stamp is None:
                raise DataValidationError(
                    f"Comment {sequence} of note {note_id} lacks action or timestamp"
                )
            uid = node.get("uid") or _child_text(node, "uid")
            text = _child_text(node, "text")
            if text is None and node.text is not None:
                text = node.text.strip() or None
            comments.append(
                NoteComment(
                    note_id=note_id,
                    sequence=sequence,
                    action=action,
                    timestamp=parse_timestamp(stamp),
                    user_id=int(uid) if uid else None,
                    username=node.get("user") or _child_text(node, "user"),
                    text=text,
                )
            )
        return comments

    @staticmethod
    def _status(element: ET.Element, raw_closed: Optional[str], comments: List[NoteComment]) -> NoteStatus:
        explicit = _child_text(element, "status")
        if explicit is not None:
            try:
                return NoteStatus(explicit)
            except ValueError as exc:
                raise DataValidationError(f"Unknown note status {explicit!r}") from exc
        if comments and comments[-1].action == "hidden":
            return NoteStatus.HIDDEN
        return NoteStatus.CLOSED if raw_closed else NoteStatus.OPEN


__all__ = ["Converter", "OsmNotesXmlConverter", "parse_timestamp"]
