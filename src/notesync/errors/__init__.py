"""Centralized error definitions for notesync.

Every error raised by the sync core belongs to one failure class of the
taxonomy below. The class decides whether the retry executor tries again,
whether the daemon counts the cycle as failed, and which exit code a one-shot
run reports.

Usage:
    from notesync.errors import NoteSyncError, ExitCode

    try:
        controller.run_cycle()
    except NoteSyncError as e:
        raise SystemExit(e.exit_code)
"""

from __future__ import annotations

from enum import Enum, IntEnum


class FailureClass(str, Enum):
    """Failure taxonomy used for retry and escalation decisions."""

    TRANSIENT = "transient"  # Timeouts, rate limits, connection resets
    STRUCTURAL = "structural"  # Payload failed schema/element validation
    PERMANENT = "permanent"  # Auth failures, bad requests
    CONCURRENCY = "concurrency"  # Lock held, ticket timed out
    CONSISTENCY = "consistency"  # Watermark/cursor regression
    CAPACITY = "capacity"  # Remote reports no free slots
    CONFIGURATION = "configuration"  # Invalid or missing configuration


class ExitCode(IntEnum):
    """Process exit codes for one-shot runs."""

    SUCCESS = 0
    NO_WORK = 10
    DATA_VALIDATION = 65
    CONSISTENCY = 70
    LOCK_CONTENTION = 73
    TRANSIENT_FAILURE = 75
    FATAL_CONFIGURATION = 78


# =============================================================================
# Base Error
# =============================================================================


class NoteSyncError(Exception):
    """Base exception for all notesync errors.

    Attributes:
        code: Error code for categorization
        failure_class: Taxonomy class driving retry/escalation
        exit_code: Exit code reported by one-shot runs
        recoverable: Whether re-running later may succeed
        details: Additional error details for debugging
    """

    code: str = "NOTESYNC_ERROR"
    default_message: str = "An unexpected error occurred"
    failure_class: FailureClass = FailureClass.TRANSIENT
    exit_code: ExitCode = ExitCode.TRANSIENT_FAILURE
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "failure_class": self.failure_class.value,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Transient / Capacity Errors
# =============================================================================


class TransientIOError(NoteSyncError):
    """Network or disk hiccup worth retrying with backoff."""

    code = "TRANSIENT_IO"
    default_message = "Transient I/O failure"


class RateLimitedError(TransientIOError):
    """Remote answered with a rate-limit response."""

    code = "RATE_LIMITED"
    default_message = "Remote resource rate limited the request"


class CapacityUnavailableError(NoteSyncError):
    """Remote resource reports zero free slots."""

    code = "CAPACITY_UNAVAILABLE"
    default_message = "Remote resource has no spare capacity"
    failure_class = FailureClass.CAPACITY


# =============================================================================
# Data Errors
# =============================================================================


class DataValidationError(NoteSyncError):
    """Payload failed schema or element validation."""

    code = "DATA_VALIDATION"
    default_message = "Payload failed validation"
    failure_class = FailureClass.STRUCTURAL
    exit_code = ExitCode.DATA_VALIDATION


class PermanentRemoteError(NoteSyncError):
    """Remote rejected the request in a way retrying cannot fix."""

    code = "PERMANENT_REMOTE"
    default_message = "Remote rejected the request"
    failure_class = FailureClass.PERMANENT
    exit_code = ExitCode.FATAL_CONFIGURATION
    recoverable = False


class RetryExhaustedError(NoteSyncError):
    """Operation kept failing until the retry budget ran out."""

    code = "RETRY_EXHAUSTED"
    default_message = "Retry budget exhausted"

    def __init__(
        self,
        message: str | None = None,
        *,
        last_error: BaseException | None = None,
        failure_class: FailureClass = FailureClass.TRANSIENT,
        attempts: int = 0,
    ) -> None:
        self.last_error = last_error
        self.failure_class = failure_class
        self.attempts = attempts
        if failure_class == FailureClass.STRUCTURAL:
            self.exit_code = ExitCode.DATA_VALIDATION
        elif failure_class == FailureClass.PERMANENT:
            self.exit_code = ExitCode.FATAL_CONFIGURATION
            self.recoverable = False
        super().__init__(
            message,
            details={
                "attempts": attempts,
                "failure_class": failure_class.value,
                "last_error": repr(last_error) if last_error else None,
            },
        )


# =============================================================================
# Concurrency Errors
# =============================================================================


class ConcurrencyError(NoteSyncError):
    """Lock held elsewhere or queue turn not obtained."""

    code = "CONCURRENCY_ERROR"
    default_message = "Concurrent access conflict"
    failure_class = FailureClass.CONCURRENCY


class LockContentionError(ConcurrencyError):
    """Another instance already holds the lock."""

    code = "LOCK_CONTENTION"
    default_message = "Another instance already holds the lock"
    exit_code = ExitCode.LOCK_CONTENTION


class TicketTimeoutError(ConcurrencyError):
    """Waiting for a queue turn exceeded the caller's bound."""

    code = "TICKET_TIMEOUT"
    default_message = "Timed out waiting for queue turn"


class TicketExpiredError(ConcurrencyError):
    """The ticket was force-expired before its holder was served."""

    code = "TICKET_EXPIRED"
    default_message = "Ticket was force-expired"


class PartitionBatchError(NoteSyncError):
    """One or more partitions of a batch failed."""

    code = "PARTITION_BATCH_FAILED"
    default_message = "Partition batch failed"

    def __init__(self, message: str | None = None, *, failed_ids: list[int] | None = None,
                 failure_class: FailureClass = FailureClass.TRANSIENT) -> None:
        self.failed_ids = failed_ids or []
        self.failure_class = failure_class
        if failure_class == FailureClass.STRUCTURAL:
            self.exit_code = ExitCode.DATA_VALIDATION
        super().__init__(message, details={"failed_partitions": self.failed_ids})


# =============================================================================
# Consistency Errors
# =============================================================================


class ConsistencyError(NoteSyncError):
    """Persisted progress marker regressed; needs operator intervention."""

    code = "CONSISTENCY_ERROR"
    default_message = "Persisted progress marker is inconsistent"
    failure_class = FailureClass.CONSISTENCY
    exit_code = ExitCode.CONSISTENCY
    recoverable = False


class WatermarkRegressionError(ConsistencyError):
    """Sync watermark would move backwards."""

    code = "WATERMARK_REGRESSION"
    default_message = "Sync watermark regressed"


class CursorRegressionError(ConsistencyError):
    """Verification chunk cursor would move backwards."""

    code = "CURSOR_REGRESSION"
    default_message = "Verification cursor regressed"


class PreviousExecutionFailedError(ConsistencyError):
    """A failed-execution marker from an earlier run is still present."""

    code = "PREVIOUS_EXECUTION_FAILED"
    default_message = "A previous execution failed; clear the failure marker first"


# =============================================================================
# Configuration / Lifecycle Errors
# =============================================================================


class ConfigurationError(NoteSyncError):
    """Configuration is invalid or cannot be loaded."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"
    failure_class = FailureClass.CONFIGURATION
    exit_code = ExitCode.FATAL_CONFIGURATION
    recoverable = False


class ShutdownRequested(NoteSyncError):
    """Raised from interruptible waits once shutdown has been requested."""

    code = "SHUTDOWN_REQUESTED"
    default_message = "Shutdown requested"


class DaemonFatalError(NoteSyncError):
    """Daemon stopped after too many consecutive failed cycles."""

    code = "DAEMON_FATAL"
    default_message = "Too many consecutive failed cycles"
    recoverable = False


__all__ = [
    "FailureClass",
    "ExitCode",
    "NoteSyncError",
    "TransientIOError",
    "RateLimitedError",
    "CapacityUnavailableError",
    "DataValidationError",
    "PermanentRemoteError",
    "RetryExhaustedError",
    "ConcurrencyError",
    "LockContentionError",
    "TicketTimeoutError",
    "TicketExpiredError",
    "PartitionBatchError",
    "ConsistencyError",
    "WatermarkRegressionError",
    "CursorRegressionError",
    "PreviousExecutionFailedError",
    "ConfigurationError",
    "ShutdownRequested",
    "DaemonFatalError",
]
