"""Parallel conversion of partitions.

Each worker reads only its own partition input and writes only its own
tagged output artifact, so workers never contend with each other. The
supervisor runs them on a bounded thread pool and waits for all of them.
"""

from __future__ import annotations

import concurrent.futures as cf
import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from ..errors import FailureClass, PartitionBatchError, ShutdownRequested
from ..models import Partition, PartitionState
from ..scheduling.retry import RetryExecutor
from ..store.note_store import NoteStore
from ..store.quarantine import QuarantineKind, QuarantineStore
from .artifacts import write_partition_output
from .converter import Converter, OsmNotesXmlConverter

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    batch_id: str
    done: List[Partition] = field(default_factory=list)
    failed: List[Partition] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed_ids(self) -> List[int]:
        return [p.partition_id for p in self.failed]


class PartitionWorkerPool:
    """Converts partitions concurrently up to ``max_workers``.

    With ``best_effort`` off, any failed partition fails the batch with
    :class:`PartitionBatchError`. With it on, failed partitions are recorded
    as ``failed`` and can be re-run with :meth:`retry_failed`.
    """

    def __init__(
        self,
        *,
        converter: Optional[Converter] = None,
        retry: Optional[RetryExecutor] = None,
        store: Optional[NoteStore] = None,
        quarantine: Optional[QuarantineStore] = None,
        max_workers: int = 4,
        best_effort: bool = False,
        shutdown_event: Optional[threading.Event] = None,
    ) -> None:
        self.converter = converter or OsmNotesXmlConverter()
        self.retry = retry or RetryExecutor(shutdown_event=shutdown_event)
        self.store = store
        self.quarantine = quarantine
        self.max_workers = max_workers
        self.best_effort = best_effort
        self._shutdown = shutdown_event or threading.Event()

    def process_partition(self, partition: Partition) -> Partition:
        """Convert one partition and write its output artifact."""
        if self._shutdown.is_set():
            raise ShutdownRequested(f"Shutdown before partition {partition.partition_id}")
        partition.state = PartitionState.PROCESSING
        self._record(partition)

        def convert_once() -> int:
            partition.attempts += 1
            result = self.converter.convert(partition.input_path.read_bytes())
            write_partition_output(partition.output_path, result)
            return len(result)

        outcome = self.retry.execute(
            convert_once,
            artifact=partition.output_path,
            description=f"partition {partition.batch_id}/{partition.partition_id}",
        )
        if outcome.ok:
            partition.state = PartitionState.DONE
            partition.error = None
            logger.debug(
                "Partition converted",
                extra={
                    "batch_id": partition.batch_id,
                    "partition_id": partition.partition_id,
                    "notes": outcome.value,
                    "attempts": partition.attempts,
                },
            )
        else:
            partition.state = PartitionState.FAILED
            partition.error = str(outcome.last_error)
            if outcome.failure_class == FailureClass.STRUCTURAL and self.quarantine is not None:
                self.quarantine.quarantine(
                    item_id=f"{partition.batch_id}/{partition.partition_id}",
                    kind=QuarantineKind.PARTITION,
                    failure_class=FailureClass.STRUCTURAL,
                    error_message=partition.error,
                    attempts=outcome.attempts,
                    metadata={"input_path": str(partition.input_path)},
                )
        self._record(partition)
        if isinstance(outcome.last_error, ShutdownRequested):
            raise outcome.last_error
        return partition

    def run(self, partitions: List[Partition]) -> BatchResult:
        """Process all partitions and wait for every worker.

        Raises:
            PartitionBatchError: A partition failed and ``best_effort`` is off
            ShutdownRequested: Shutdown interrupted the batch
        """
        batch_id = partitions[0].batch_id if partitions else ""
        result = BatchResult(batch_id=batch_id)
        if not partitions:
            return result

        interrupted: Optional[ShutdownRequested] = None
        with cf.ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="partition") as ex:
            futures = {ex.submit(self.process_partition, p): p for p in partitions}
            for future in cf.as_completed(futures):
                partition = futures[future]
                try:
                    future.result()
                except ShutdownRequested as exc:
                    interrupted = exc
                    continue
                except Exception as exc:
                    logger.exception(
                        "Partition worker crashed",
                        extra={"batch_id": batch_id, "partition_id": partition.partition_id},
                    )
                    partition.state = PartitionState.FAILED
                    partition.error = str(exc)
                    self._record(partition)

        for partition in sorted(partitions, key=lambda p: p.partition_id):
            if partition.state == PartitionState.DONE:
                result.done.append(partition)
            else:
                result.failed.append(partition)

        if interrupted is not None:
            raise interrupted

        if result.failed:
            logger.warning(
                "Partitions failed",
                extra={
                    "batch_id": batch_id,
                    "failed": result.failed_ids,
                    "done": len(result.done),
                    "best_effort": self.best_effort,
                },
            )
            if not self.best_effort:
                structural = all(
                    p.partition_id in self._quarantined_ids(batch_id) for p in result.failed
                )
                raise PartitionBatchError(
                    f"{len(result.failed)} of {len(partitions)} partitions failed",
                    failed_ids=result.failed_ids,
                    failure_class=FailureClass.STRUCTURAL if structural else FailureClass.TRANSIENT,
                )
        return result

    def retry_failed(self, batch: BatchResult) -> BatchResult:
        """Re-run only the failed partitions of a best-effort batch."""
        for partition in batch.failed:
            partition.state = PartitionState.PENDING
            partition.attempts = 0
        retried = self.run(list(batch.failed))
        merged = BatchResult(batch_id=batch.batch_id)
        merged.done = sorted(batch.done + retried.done, key=lambda p: p.partition_id)
        merged.failed = retried.failed
        return merged

    def _quarantined_ids(self, batch_id: str) -> set:
        if self.quarantine is None:
            return set()
        prefix = f"{batch_id}/"
        return {
            int(item.item_id[len(prefix):])
            for item in self.quarantine.list(kind=QuarantineKind.PARTITION)
            if item.item_id.startswith(prefix)
        }

    def _record(self, partition: Partition) -> None:
        if self.store is not None:
            self.store.record_partition(partition)


__all__ = ["BatchResult", "PartitionWorkerPool"]
