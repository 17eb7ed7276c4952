"""Feed clients, partitioning, conversion, and consolidation."""

from .consolidator import ConsolidationOutcome, ConsolidationResult, Consolidator
from .converter import Converter, OsmNotesXmlConverter, parse_timestamp
from .feed import BulkDumpSource, FeedBatch, NotesApiClient
from .splitter import PartitionSplitter
from .worker_pool import BatchResult, PartitionWorkerPool

__all__ = [
    "ConsolidationOutcome",
    "ConsolidationResult",
    "Consolidator",
    "Converter",
    "OsmNotesXmlConverter",
    "parse_timestamp",
    "BulkDumpSource",
    "FeedBatch",
    "NotesApiClient",
    "PartitionSplitter",
    "BatchResult",
    "PartitionWorkerPool",
]
