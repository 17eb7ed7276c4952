"""Sync controller, daemon, and crash recovery."""

from .controller import BulkSyncPipeline, CycleOutcome, CycleResult, SyncController, decide_path
from .crash_recovery import (
    CrashRecoveryManager,
    CrashRecoveryReport,
    FailedExecutionMarker,
    RecoveryStateTracker,
)
from .daemon import AdaptiveSleep, SyncDaemon, read_daemon_status, stop_daemon
from .state_machine import (
    VALID_TRANSITIONS,
    InvalidStateTransitionError,
    StateTransition,
    SyncState,
    SyncStateMachine,
)

__all__ = [
    "BulkSyncPipeline",
    "CycleOutcome",
    "CycleResult",
    "SyncController",
    "decide_path",
    "CrashRecoveryManager",
    "CrashRecoveryReport",
    "FailedExecutionMarker",
    "RecoveryStateTracker",
    "AdaptiveSleep",
    "SyncDaemon",
    "read_daemon_status",
    "stop_daemon",
    "VALID_TRANSITIONS",
    "InvalidStateTransitionError",
    "StateTransition",
    "SyncState",
    "SyncStateMachine",
]
