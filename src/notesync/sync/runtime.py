"""Assembles the sync components for one workspace from configuration."""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from ..config import NoteSyncConfig
from ..ingestion.consolidator import Consolidator
from ..ingestion.converter import OsmNotesXmlConverter
from ..ingestion.feed import API_RESOURCE, DUMP_RESOURCE, BulkDumpSource, NotesApiClient
from ..ingestion.splitter import PartitionSplitter
from ..ingestion.worker_pool import PartitionWorkerPool
from ..scheduling.capacity import OverpassCapacityProbe, StaticCapacity
from ..scheduling.retry import RetryExecutor, RetryPolicy
from ..scheduling.ticket_queue import TicketQueue
from ..spatial.regions import OVERPASS_RESOURCE, BoundaryFetcher, RegionCatalog, RegionResolver
from ..spatial.verification import VerificationEngine
from ..store.note_store import NoteStore
from ..store.quarantine import QuarantineStore
from ..telemetry import TelemetryRecorder
from .controller import BulkSyncPipeline, SyncController
from .crash_recovery import CrashRecoveryManager, FailedExecutionMarker

logger = logging.getLogger(__name__)


class SyncRuntime:
    """Owns the stores, queues, and clients built from a configuration.

    Components are created lazily so read-only commands (status, report)
    never open network clients.
    """

    def __init__(self, config: NoteSyncConfig, *, shutdown_event: Optional[threading.Event] = None) -> None:
        self.config = config
        self.shutdown = shutdown_event or threading.Event()
        workspace = config.workspace
        workspace.path.mkdir(parents=True, exist_ok=True)

        self.store = NoteStore(workspace.store_path, lock_dir=workspace.lock_dir)
        self.quarantine = QuarantineStore(workspace.path / "quarantine.db")
        self.catalog = RegionCatalog(workspace.store_path)
        self.telemetry = TelemetryRecorder(workspace.telemetry_dir)
        self.failure_marker = FailedExecutionMarker(workspace.path)
        self.retry = RetryExecutor(_retry_policy(config), shutdown_event=self.shutdown)
        self.feed: Optional[NotesApiClient] = None
        self.pipeline: Optional[BulkSyncPipeline] = None
        self._controller: Optional[SyncController] = None
        self._queues: dict = {}
        self._closeables: List[object] = []

    def ticket_queue(self, resource: str) -> TicketQueue:
        if resource not in self._queues:
            tickets = self.config.tickets
            if resource == OVERPASS_RESOURCE:
                probe = OverpassCapacityProbe(
                    self.config.overpass.status_url,
                    timeout=min(self.config.overpass.timeout_seconds, 30.0),
                )
                self._closeables.append(probe)
            else:
                probe = StaticCapacity()
            self._queues[resource] = TicketQueue(
                self.config.workspace.queue_path,
                resource=resource,
                capacity=probe,
                lease_seconds=tickets.lease_seconds,
                poll_interval=tickets.poll_interval_seconds,
                default_timeout=tickets.wait_timeout_seconds,
                shutdown_event=self.shutdown,
            )
        return self._queues[resource]

    def all_ticket_queues(self) -> List[TicketQueue]:
        return [self.ticket_queue(r) for r in (API_RESOURCE, DUMP_RESOURCE, OVERPASS_RESOURCE)]

    def controller(self) -> SyncController:
        api = self.config.api
        bulk = self.config.bulk
        converter = OsmNotesXmlConverter()
        feed = NotesApiClient(
            api.base_url,
            tickets=self.ticket_queue(API_RESOURCE),
            retry=self.retry,
            converter=converter,
            max_notes=api.max_notes,
            timeout=api.timeout_seconds,
            user_agent=api.user_agent,
        )
        source = BulkDumpSource(
            bulk.dump_url,
            tickets=self.ticket_queue(DUMP_RESOURCE),
            retry=self.retry,
            timeout=bulk.timeout_seconds,
        )
        self._closeables.extend([feed, source])
        work_dir = self.config.workspace.partitions_dir
        pipeline = BulkSyncPipeline(
            source=source,
            splitter=PartitionSplitter(work_dir, converter),
            pool=PartitionWorkerPool(
                converter=converter,
                retry=self.retry,
                store=self.store,
                quarantine=self.quarantine,
                max_workers=bulk.max_workers,
                best_effort=bulk.best_effort,
                shutdown_event=self.shutdown,
            ),
            consolidator=Consolidator(self.store),
            work_dir=work_dir,
            partition_count=bulk.partition_count,
        )
        self.feed = feed
        self.pipeline = pipeline
        self._controller = SyncController(
            store=self.store,
            feed=feed,
            bulk=pipeline,
            failure_marker=self.failure_marker,
            threshold=api.max_notes,
            telemetry=self.telemetry,
            shutdown_event=self.shutdown,
            regions=RegionResolver(self.store, self.catalog),
        )
        return self._controller

    def apply_config(self, config: NoteSyncConfig) -> None:
        """Push a reloaded configuration into the live components.

        Workspace paths and endpoint URLs are fixed for the process lifetime.
        """
        self.config = config
        self.retry.policy = _retry_policy(config)
        tickets = config.tickets
        for queue in self._queues.values():
            queue.configure(
                lease_seconds=tickets.lease_seconds,
                poll_interval=tickets.poll_interval_seconds,
                default_timeout=tickets.wait_timeout_seconds,
            )
        if self.feed is not None:
            self.feed.max_notes = config.api.max_notes
        if self._controller is not None:
            self._controller.threshold = config.api.max_notes
        if self.pipeline is not None:
            self.pipeline.partition_count = config.bulk.partition_count
            self.pipeline.pool.max_workers = config.bulk.max_workers
            self.pipeline.pool.best_effort = config.bulk.best_effort
        logger.info(
            "Applied reloaded configuration",
            extra={"max_notes": config.api.max_notes, "max_attempts": config.retry.max_attempts},
        )

    def verification_engine(self) -> VerificationEngine:
        verification = self.config.verification
        return VerificationEngine(
            self.store,
            self.catalog.index(),
            chunk_size=verification.chunk_size,
            max_workers=verification.max_workers,
            chunk_max_attempts=verification.chunk_max_attempts,
            retry=self.retry,
            quarantine=self.quarantine,
            shutdown_event=self.shutdown,
        )

    def boundary_fetcher(self) -> BoundaryFetcher:
        fetcher = BoundaryFetcher(
            self.config.overpass.interpreter_url,
            tickets=self.ticket_queue(OVERPASS_RESOURCE),
            retry=self.retry,
            timeout=self.config.overpass.timeout_seconds,
        )
        self._closeables.append(fetcher)
        return fetcher

    def crash_recovery(self) -> CrashRecoveryManager:
        return CrashRecoveryManager(
            store=self.store,
            ticket_queues=self.all_ticket_queues(),
            workspace_dir=self.config.workspace.path,
        )

    def close(self) -> None:
        for item in self._closeables:
            item.close()
        for queue in self._queues.values():
            queue.close()
        self.catalog.close()
        self.quarantine.close()
        self.store.close()


def _retry_policy(config: NoteSyncConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry.max_attempts,
        base_delay_seconds=config.retry.base_delay_seconds,
        max_delay_seconds=config.retry.max_delay_seconds,
        jitter_factor=config.retry.jitter_factor,
    )


__all__ = ["SyncRuntime"]
