"""Tests for the sync daemon loop and process management."""

import json
import os
from pathlib import Path
from typing import List

import pytest
from filelock import FileLock

from notesync.config import ConfigurationManager, DaemonConfig, NoteSyncConfig
from notesync.errors import (
    DaemonFatalError,
    FailureClass,
    LockContentionError,
    ShutdownRequested,
    TransientIOError,
    WatermarkRegressionError,
)
from notesync.ingestion.feed import API_RESOURCE
from notesync.sync.controller import CycleOutcome, CycleResult
from notesync.sync.crash_recovery import CrashRecoveryManager
from notesync.sync.daemon import (
    DAEMON_LOCK,
    PID_FILE,
    STATUS_FILE,
    AdaptiveSleep,
    NotRunningError,
    PIDFileManager,
    SyncDaemon,
    read_daemon_status,
    stop_daemon,
)
from notesync.sync.runtime import SyncRuntime

FAST = DaemonConfig(
    min_sleep_seconds=0.0,
    max_sleep_seconds=0.01,
    initial_sleep_seconds=0.0,
    max_consecutive_failures=3,
)


class ScriptedController:
    """Stands in for SyncController; replays canned cycle results."""

    def __init__(self, results: List[CycleResult]) -> None:
        self.results = list(results)
        self.threshold = 10000
        self.calls = 0

    def run_cycle(self) -> CycleResult:
        self.calls += 1
        if self.results:
            return self.results.pop(0)
        return CycleResult(CycleOutcome.NO_WORK)


def ok(items: int = 5) -> CycleResult:
    return CycleResult(CycleOutcome.APPLIED_DIRECT, items=items)


def failed(error=None) -> CycleResult:
    error = error or TransientIOError("reset")
    return CycleResult(CycleOutcome.FAILED, error=error, failure_class=error.failure_class)


def make_manager(workspace: Path, daemon: DaemonConfig = FAST) -> ConfigurationManager:
    manager = ConfigurationManager(workspace / "config.yaml", environ={})
    manager.save(NoteSyncConfig(daemon=daemon))
    return manager


def make_daemon(workspace: Path, controller, **kwargs) -> SyncDaemon:
    return SyncDaemon(
        controller=controller,
        config_manager=make_manager(workspace),
        workspace_dir=workspace,
        **kwargs,
    )


class TestAdaptiveSleep:
    def test_halves_when_busy(self) -> None:
        sleep = AdaptiveSleep(DaemonConfig(min_sleep_seconds=5, max_sleep_seconds=300, initial_sleep_seconds=60))
        assert sleep.next(10) == 30
        assert sleep.next(10) == 15

    def test_doubles_when_idle(self) -> None:
        sleep = AdaptiveSleep(DaemonConfig(min_sleep_seconds=5, max_sleep_seconds=300, initial_sleep_seconds=60))
        assert sleep.next(0) == 120
        assert sleep.next(0) == 240

    def test_stays_within_bounds(self) -> None:
        sleep = AdaptiveSleep(DaemonConfig(min_sleep_seconds=5, max_sleep_seconds=300, initial_sleep_seconds=60))
        for _ in range(10):
            sleep.next(0)
        assert sleep.current == 300
        for _ in range(20):
            sleep.next(100)
        assert sleep.current == 5

    def test_busy_threshold(self) -> None:
        sleep = AdaptiveSleep(DaemonConfig(initial_sleep_seconds=60, busy_threshold=100))
        assert sleep.next(99) == 120

    def test_reconfigure_clamps_current(self) -> None:
        sleep = AdaptiveSleep(DaemonConfig(initial_sleep_seconds=200))
        sleep.configure(DaemonConfig(max_sleep_seconds=100))
        assert sleep.current == 100


class TestSyncDaemon:
    def test_runs_until_max_cycles(self, workspace: Path) -> None:
        controller = ScriptedController([ok(), ok(0)])
        daemon = make_daemon(workspace, controller)

        daemon.run(install_signals=False, max_cycles=3)

        assert controller.calls == 3
        assert daemon.cycles == 3
        assert not (workspace / PID_FILE).exists()

    def test_writes_status_file(self, workspace: Path) -> None:
        daemon = make_daemon(workspace, ScriptedController([ok(7)]))

        daemon.run(install_signals=False, max_cycles=1)

        status = json.loads((workspace / STATUS_FILE).read_text())
        assert status["cycles"] == 1
        assert status["last_outcome"] == "applied_direct"
        assert status["pid"] == os.getpid()

    def test_failure_streak_resets_on_success(self, workspace: Path) -> None:
        controller = ScriptedController([failed(), failed(), ok(), failed(), failed()])
        daemon = make_daemon(workspace, controller)

        daemon.run(install_signals=False, max_cycles=5)

        assert daemon.consecutive_failures == 2

    def test_stops_after_consecutive_failures(self, workspace: Path) -> None:
        controller = ScriptedController([failed(), failed(), failed(), ok()])
        daemon = make_daemon(workspace, controller)

        with pytest.raises(DaemonFatalError):
            daemon.run(install_signals=False, max_cycles=10)
        assert controller.calls == 3
        assert not (workspace / PID_FILE).exists()

    def test_consistency_failure_stops_daemon(self, workspace: Path) -> None:
        controller = ScriptedController([failed(WatermarkRegressionError())])
        daemon = make_daemon(workspace, controller)

        with pytest.raises(WatermarkRegressionError):
            daemon.run(install_signals=False, max_cycles=10)
        assert controller.calls == 1

    def test_interrupted_cycle_ends_loop(self, workspace: Path) -> None:
        controller = ScriptedController([CycleResult(CycleOutcome.INTERRUPTED, error=ShutdownRequested())])
        daemon = make_daemon(workspace, controller)

        daemon.run(install_signals=False, max_cycles=10)

        assert controller.calls == 1

    def test_shutdown_before_start_runs_nothing(self, workspace: Path) -> None:
        controller = ScriptedController([])
        daemon = make_daemon(workspace, controller)
        daemon.shutdown.set()

        daemon.run(install_signals=False)

        assert controller.calls == 0

    def test_second_daemon_is_rejected(self, workspace: Path) -> None:
        (workspace / "locks").mkdir()
        holder = FileLock(str(workspace / "locks" / DAEMON_LOCK))
        daemon = make_daemon(workspace, ScriptedController([]))

        with holder:
            with pytest.raises(LockContentionError):
                daemon.run(install_signals=False, max_cycles=1)

    def test_reload_updates_threshold_and_sleep(self, workspace: Path) -> None:
        controller = ScriptedController([])
        daemon = make_daemon(workspace, controller)
        daemon.config_manager.save(
            NoteSyncConfig(
                api={"max_notes": 500},
                daemon=FAST.model_copy(update={"max_consecutive_failures": 7}),
            )
        )

        daemon.request_reload()
        daemon.run(install_signals=False, max_cycles=1)

        assert controller.threshold == 500
        assert daemon._daemon_config.max_consecutive_failures == 7

    def test_reload_reaches_feed_retry_tickets_and_bulk(self, workspace: Path) -> None:
        runtime = SyncRuntime(NoteSyncConfig(workspace={"path": workspace / "runtime"}))
        try:
            sync_controller = runtime.controller()
            daemon = make_daemon(workspace, ScriptedController([]), on_reload=runtime.apply_config)
            daemon.config_manager.save(
                NoteSyncConfig(
                    api={"max_notes": 500},
                    retry={"max_attempts": 2},
                    tickets={"lease_seconds": 30.0, "poll_interval_seconds": 0.5},
                    bulk={"max_workers": 2, "partition_count": 3, "best_effort": True},
                    daemon=FAST,
                )
            )

            daemon.request_reload()
            daemon.run(install_signals=False, max_cycles=1)

            assert runtime.feed.max_notes == 500
            assert sync_controller.threshold == 500
            assert runtime.retry.policy.max_attempts == 2
            queue = runtime.ticket_queue(API_RESOURCE)
            assert queue._lease == 30.0
            assert queue._poll_interval == 0.5
            assert runtime.pipeline.partition_count == 3
            assert runtime.pipeline.pool.max_workers == 2
            assert runtime.pipeline.pool.best_effort
        finally:
            runtime.close()

    def test_invalid_reload_keeps_previous_config(self, workspace: Path) -> None:
        controller = ScriptedController([])
        daemon = make_daemon(workspace, controller)
        (workspace / "config.yaml").write_text("daemon:\n  busy_threshold: 0\n")

        daemon.request_reload()
        daemon.run(install_signals=False, max_cycles=1)

        assert controller.threshold == 10000
        assert daemon.config_manager.config.daemon.busy_threshold == 1

    def test_crash_marker_cleared_on_clean_exit(self, store, workspace: Path) -> None:
        recovery = CrashRecoveryManager(store=store, ticket_queues=[], workspace_dir=workspace)
        recovery.tracker.mark_running()
        daemon = make_daemon(workspace, ScriptedController([]), recovery=recovery)

        daemon.run(install_signals=False, max_cycles=1)

        assert not recovery.tracker.is_recovering_from_crash()

    def test_snapshot(self, workspace: Path) -> None:
        daemon = make_daemon(workspace, ScriptedController([failed()]))
        daemon.run(install_signals=False, max_cycles=1)

        snapshot = daemon.snapshot()

        assert snapshot["consecutive_failures"] == 1
        assert snapshot["last_error_class"] == FailureClass.TRANSIENT.value
        assert snapshot["watermark"] is None


class TestDaemonProcessManagement:
    def test_status_not_running(self, workspace: Path) -> None:
        status = read_daemon_status(workspace)
        assert status["running"] is False
        assert "last_status" not in status

    def test_status_reports_live_pid(self, workspace: Path) -> None:
        PIDFileManager(workspace / PID_FILE).write()
        status = read_daemon_status(workspace)
        assert status["running"] is True
        assert status["pid"] == os.getpid()

    def test_stale_pid_file(self, workspace: Path) -> None:
        PIDFileManager(workspace / PID_FILE).write(2**22 + 999)

        assert read_daemon_status(workspace)["stale_pid_file"] is True
        with pytest.raises(NotRunningError, match="stale"):
            stop_daemon(workspace)
        assert not (workspace / PID_FILE).exists()

    def test_stop_without_daemon(self, workspace: Path) -> None:
        with pytest.raises(NotRunningError):
            stop_daemon(workspace)

    def test_status_includes_last_written_status(self, workspace: Path) -> None:
        make_daemon(workspace, ScriptedController([ok()])).run(install_signals=False, max_cycles=1)
        assert read_daemon_status(workspace)["last_status"]["cycles"] == 1
