"""Cuts a bulk ingestion unit into dense, independently processable partitions."""

from __future__ import annotations

import logging
import mmap
from pathlib import Path
from typing import BinaryIO, List, Optional

from ..models import Partition
from .converter import Converter, OsmNotesXmlConverter

logger = logging.getLogger(__name__)

PARTITION_HEADER = b'<?xml version="1.0" encoding="UTF-8"?>\n<osm-notes>\n'
PARTITION_FOOTER = b"\n</osm-notes>\n"
COPY_BLOCK_SIZE = 8 * 1024 * 1024


class PartitionSplitter:
    """Splits a note document at note boundaries.

    Partitions are balanced by byte size, so a note and all of its comments
    always land in the same partition. Ids are dense ``1..N``; ``N`` is
    smaller than the requested count when the source holds fewer notes, or
    when one note is larger than a whole byte share.

    The source is memory-mapped and each cut point is found by searching
    forward from an even byte target, so the dump is never loaded whole.
    """

    def __init__(self, work_dir: Path, converter: Optional[Converter] = None) -> None:
        self.work_dir = work_dir
        self.converter = converter or OsmNotesXmlConverter()

    def split(self, source: Path, partition_count: int, *, batch_id: str) -> List[Partition]:
        if partition_count < 1:
            raise ValueError("partition_count must be >= 1")
        if source.stat().st_size == 0:
            logger.info("Source holds no notes", extra={"source": str(source)})
            return []
        with open(source, "rb") as f, mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ) as data:
            ranges = self._ranges(data, partition_count)
            if not ranges:
                logger.info("Source holds no notes", extra={"source": str(source)})
                return []
            partitions = self._write(data, ranges, batch_id)

        logger.info(
            "Split source into partitions",
            extra={
                "source": str(source),
                "batch_id": batch_id,
                "bytes": ranges[-1][1] - ranges[0][0],
                "partitions": len(partitions),
            },
        )
        return partitions

    def _ranges(self, data, partition_count: int) -> List[tuple]:
        """Byte ranges of at most ``partition_count`` groups of whole notes."""
        notes = self.converter.count_entities(data)
        if notes == 0:
            return []
        end = self.converter.entity_end(data)
        if notes <= partition_count:
            offsets = self.converter.entity_offsets(data)
            return list(zip(offsets, offsets[1:] + [end]))
        first = self.converter.next_entity(data, 0)
        cuts = [first]
        step = (end - first) / partition_count
        for k in range(1, partition_count):
            target = max(first + int(k * step), cuts[-1] + 1)
            cut = self.converter.next_entity(data, target)
            if cut < 0 or cut >= end:
                break
            cuts.append(cut)
        return list(zip(cuts, cuts[1:] + [end]))

    def _write(self, data, ranges: List[tuple], batch_id: str) -> List[Partition]:
        batch_dir = self.work_dir / batch_id
        batch_dir.mkdir(parents=True, exist_ok=True)
        partitions: List[Partition] = []
        for partition_id, (start, end) in enumerate(ranges, start=1):
            input_path = batch_dir / f"part_{partition_id:04d}.xml"
            tmp_path = input_path.with_name(input_path.name + ".tmp")
            with open(tmp_path, "wb") as out:
                out.write(PARTITION_HEADER)
                _copy_range(data, start, end, out)
                out.write(PARTITION_FOOTER)
            tmp_path.replace(input_path)
            partitions.append(
                Partition(
                    batch_id=batch_id,
                    partition_id=partition_id,
                    source_range=(start, end),
                    input_path=input_path,
                    output_path=batch_dir / f"part_{partition_id:04d}.jsonl",
                )
            )
        return partitions


def _copy_range(data, start: int, end: int, out: BinaryIO) -> None:
    for offset in range(start, end, COPY_BLOCK_SIZE):
        out.write(data[offset:min(offset + COPY_BLOCK_SIZE, end)])


__all__ = ["PartitionSplitter", "PARTITION_HEADER", "PARTITION_FOOTER"]
