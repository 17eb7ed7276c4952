"""Tests for crash detection, recovery, and the failed-execution marker."""

import json
import os
from pathlib import Path

import pytest

from conftest import FakeCapacity
from notesync.errors import PreviousExecutionFailedError, WatermarkRegressionError
from notesync.models import Partition, PartitionState
from notesync.scheduling.ticket_queue import TicketQueue
from notesync.sync.crash_recovery import (
    FAILED_MARKER,
    RUNNING_MARKER,
    CrashRecoveryManager,
    FailedExecutionMarker,
    RecoveryStateTracker,
)


def make_partition(workspace: Path, partition_id: int, state: PartitionState) -> Partition:
    return Partition(
        batch_id="b1",
        partition_id=partition_id,
        source_range=(partition_id * 10, partition_id * 10 + 9),
        input_path=workspace / f"in-{partition_id}.xml",
        output_path=workspace / f"out-{partition_id}.json",
        state=state,
    )


class TestRecoveryStateTracker:
    def test_lifecycle(self, workspace: Path) -> None:
        tracker = RecoveryStateTracker(workspace)
        assert not tracker.is_recovering_from_crash()

        tracker.mark_running()
        assert tracker.is_recovering_from_crash()
        assert tracker.get_crash_info()["pid"] == os.getpid()

        tracker.clear()
        assert not (workspace / RUNNING_MARKER).exists()
        assert tracker.get_crash_info() is None

    def test_unreadable_marker(self, workspace: Path) -> None:
        (workspace / RUNNING_MARKER).write_text("{not json")
        tracker = RecoveryStateTracker(workspace)

        assert tracker.is_recovering_from_crash()
        assert tracker.get_crash_info() is None


class TestFailedExecutionMarker:
    def test_check_passes_without_marker(self, workspace: Path) -> None:
        FailedExecutionMarker(workspace).check()

    def test_marker_blocks_until_cleared(self, workspace: Path) -> None:
        marker = FailedExecutionMarker(workspace)
        marker.write(WatermarkRegressionError(details={"stored": "b", "candidate": "a"}), context={"step": 1})

        with pytest.raises(PreviousExecutionFailedError) as exc_info:
            marker.check()
        assert exc_info.value.details["previous"]["code"] == "WATERMARK_REGRESSION"

        payload = json.loads((workspace / FAILED_MARKER).read_text())
        assert payload["context"] == {"step": 1}

        assert marker.clear() is True
        assert marker.clear() is False
        marker.check()

    def test_unreadable_marker_still_blocks(self, workspace: Path) -> None:
        (workspace / FAILED_MARKER).write_text("garbage")
        with pytest.raises(PreviousExecutionFailedError):
            FailedExecutionMarker(workspace).check()


class TestCrashRecoveryManager:
    def test_no_marker_means_no_recovery(self, store, workspace: Path) -> None:
        manager = CrashRecoveryManager(store=store, ticket_queues=[], workspace_dir=workspace)
        assert manager.recover_if_needed() is None

    def test_recovers_stuck_partitions_and_dead_tickets(self, store, workspace: Path) -> None:
        store.record_partition(make_partition(workspace, 0, PartitionState.DONE))
        store.record_partition(make_partition(workspace, 1, PartitionState.PROCESSING))
        queue = TicketQueue(workspace / "queue.db", resource="overpass", capacity=FakeCapacity(), poll_interval=0.01)
        ticket = queue.acquire()
        queue._conn.execute(
            "UPDATE tickets SET holder_pid = ? WHERE sequence = ?", (2**22 + 4321, ticket.sequence)
        )
        manager = CrashRecoveryManager(store=store, ticket_queues=[queue], workspace_dir=workspace)
        manager.tracker.mark_running()

        report = manager.recover_if_needed()

        assert report is not None
        assert report.was_successful()
        assert report.partitions_failed == 1
        assert report.tickets_expired == 1
        assert report.crashed_pid == os.getpid()
        assert [p.partition_id for p in store.partitions(state=PartitionState.FAILED)] == [1]
        assert not manager.tracker.is_recovering_from_crash()
        queue.close()

    def test_recovery_is_idempotent(self, store, workspace: Path) -> None:
        store.record_partition(make_partition(workspace, 0, PartitionState.PROCESSING))
        manager = CrashRecoveryManager(store=store, ticket_queues=[], workspace_dir=workspace)

        first = manager.recover_from_crash()
        second = manager.recover_from_crash()

        assert first.partitions_failed == 1
        assert second.partitions_failed == 0
