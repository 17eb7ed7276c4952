"""Partition output artifacts.

A worker writes its converted records as JSON lines to ``<output>.tmp`` and
renames the file into place, so a present output file is always complete.
"""

from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path

from ..errors import DataValidationError
from ..models import ConversionResult, NoteComment, NoteRecord, NoteStatus


def _iso(value):
    return value.isoformat() if value is not None else None


def write_partition_output(path: Path, result: ConversionResult) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        for note in result.notes:
            f.write(
                json.dumps(
                    {
                        "type": "note",
                        "id": note.note_id,
                        "lon": note.longitude,
                        "lat": note.latitude,
                        "created_at": _iso(note.created_at),
                        "status": note.status.value,
                        "closed_at": _iso(note.closed_at),
                    }
                )
                + "\n"
            )
        for comment in result.comments:
            f.write(
                json.dumps(
                    {
                        "type": "comment",
                        "note_id": comment.note_id,
                        "sequence": comment.sequence,
                        "action": comment.action,
                        "timestamp": _iso(comment.timestamp),
                        "uid": comment.user_id,
                        "user": comment.username,
                        "text": comment.text,
                    }
                )
                + "\n"
            )
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def read_partition_output(path: Path) -> ConversionResult:
    """Load an artifact written by :func:`write_partition_output`.

    Raises:
        DataValidationError: A line is not a known record
    """
    result = ConversionResult()
    with open(path, encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                item = json.loads(line)
                kind = item["type"]
                if kind == "note":
                    result.notes.append(
                        NoteRecord(
                            note_id=item["id"],
                            longitude=item["lon"],
                            latitude=item["lat"],
                            created_at=datetime.fromisoformat(item["created_at"]),
                            status=NoteStatus(item["status"]),
                            closed_at=datetime.fromisoformat(item["closed_at"]) if item["closed_at"] else None,
                        )
                    )
                elif kind == "comment":
                    result.comments.append(
                        NoteComment(
                            note_id=item["note_id"],
                            sequence=item["sequence"],
                            action=item["action"],
                            timestamp=datetime.fromisoformat(item["timestamp"]),
                            user_id=item["uid"],
                            username=item["user"],
                            text=item["text"],
                        )
                    )
                else:
                    raise ValueError(f"unknown record type {kind!r}")
            except (ValueError, KeyError) as exc:
                raise DataValidationError(
                    f"Corrupt partition artifact {path.name} at line {line_number}: {exc}"
                ) from exc
    return result


__all__ = ["write_partition_output", "read_partition_output"]
