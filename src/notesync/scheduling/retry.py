"""Bounded exponential-backoff retries with failure classification.

Any fallible operation (a remote download, a partition conversion, a
verification chunk) runs through :class:`RetryExecutor`. Failures are
classified into the taxonomy of :mod:`notesync.errors`:

- TRANSIENT / CAPACITY: retried with backoff
- STRUCTURAL: retried within the same bound, logged distinctly
- PERMANENT: fail fast

Before every retry the executor deletes the operation's partial output
artifact so a half-written file is never mistaken for a complete one.
"""

from __future__ import annotations

import logging
import random
import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Generic, List, Optional, TypeVar

import httpx
from pydantic import BaseModel, Field

from ..errors import (
    FailureClass,
    NoteSyncError,
    RetryExhaustedError,
    ShutdownRequested,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PERMANENT_HTTP_STATUSES = {400, 401, 403, 404, 405, 410, 413, 414, 422}


class RetryPolicy(BaseModel):
    """Backoff parameters.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay_seconds: Delay after the first failure
        max_delay_seconds: Ceiling for any single delay
        backoff_multiplier: Growth factor per attempt
        jitter_factor: Random +/- fraction applied to each delay
    """

    max_attempts: int = Field(default=5, ge=1, le=20)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=60.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    jitter_factor: float = Field(default=0.0, ge=0.0, le=1.0)

    def calculate_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (0-indexed)."""
        delay = self.base_delay_seconds * (self.backoff_multiplier**attempt)
        delay = min(delay, self.max_delay_seconds)
        if self.jitter_factor > 0 and delay > 0:
            jitter_amount = delay * self.jitter_factor
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay


def classify_failure(exc: BaseException) -> FailureClass:
    """Map an exception to a failure class.

    Unrecognized exceptions are treated as transient so they get a bounded
    number of retries rather than none.
    """
    if isinstance(exc, NoteSyncError):
        return exc.failure_class
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return FailureClass.TRANSIENT
        if status in PERMANENT_HTTP_STATUSES:
            return FailureClass.PERMANENT
        return FailureClass.TRANSIENT
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return FailureClass.TRANSIENT
    if isinstance(exc, (ET.ParseError, UnicodeDecodeError)):
        return FailureClass.STRUCTURAL
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return FailureClass.TRANSIENT
    if isinstance(exc, (ValueError, KeyError)):
        return FailureClass.STRUCTURAL
    return FailureClass.TRANSIENT


@dataclass
class RetryOutcome(Generic[T]):
    """Result of :meth:`RetryExecutor.execute`.

    A failed outcome must be surfaced by the caller, typically via
    :meth:`unwrap`.
    """

    ok: bool
    value: Optional[T] = None
    attempts: int = 0
    failure_class: Optional[FailureClass] = None
    last_error: Optional[BaseException] = None
    delays: List[float] = field(default_factory=list)

    def unwrap(self) -> T:
        if self.ok:
            return self.value  # type: ignore[return-value]
        if isinstance(self.last_error, ShutdownRequested):
            raise self.last_error
        raise RetryExhaustedError(
            f"Operation failed after {self.attempts} attempt(s): {self.last_error}",
            last_error=self.last_error,
            failure_class=self.failure_class or FailureClass.TRANSIENT,
            attempts=self.attempts,
        ) from self.last_error


class RetryExecutor:
    """Runs operations with bounded exponential backoff.

    Sleeps wait on ``shutdown_event`` so a shutdown request interrupts a long
    backoff immediately.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        shutdown_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._shutdown = shutdown_event or threading.Event()
        self._sleep = sleep

    def execute(
        self,
        operation: Callable[[], T],
        *,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        artifact: Optional[Path] = None,
        description: str = "operation",
    ) -> RetryOutcome[T]:
        """Run ``operation`` until it succeeds or the budget is exhausted.

        Args:
            operation: Zero-argument callable
            max_attempts: Overrides the policy's attempt bound
            base_delay: Overrides the policy's base delay
            artifact: Output file the operation writes; removed before retry
            description: Label used in log records
        """
        policy = self.policy
        if max_attempts is not None or base_delay is not None:
            policy = policy.model_copy(
                update={
                    k: v
                    for k, v in (
                        ("max_attempts", max_attempts),
                        ("base_delay_seconds", base_delay),
                    )
                    if v is not None
                }
            )

        outcome: RetryOutcome[T] = RetryOutcome(ok=False)
        for attempt in range(policy.max_attempts):
            if self._shutdown.is_set():
                outcome.last_error = ShutdownRequested(f"Shutdown before {description}")
                return outcome

            outcome.attempts = attempt + 1
            try:
                outcome.value = operation()
                outcome.ok = True
                outcome.failure_class = None
                outcome.last_error = None
                return outcome
            except ShutdownRequested as exc:
                self._discard_artifact(artifact)
                outcome.last_error = exc
                return outcome
            except Exception as exc:  # classified below
                failure_class = classify_failure(exc)
                outcome.failure_class = failure_class
                outcome.last_error = exc
                self._discard_artifact(artifact)

                if failure_class == FailureClass.PERMANENT:
                    logger.error(
                        "Permanent failure, not retrying",
                        extra={"operation": description, "attempt": attempt + 1, "error": str(exc)},
                    )
                    return outcome

                if attempt + 1 >= policy.max_attempts:
                    break

                delay = policy.calculate_delay(attempt)
                outcome.delays.append(delay)
                if failure_class == FailureClass.STRUCTURAL:
                    logger.warning(
                        "Structural failure, payload rejected; retrying",
                        extra={
                            "operation": description,
                            "attempt": attempt + 1,
                            "delay_seconds": delay,
                            "error": str(exc),
                        },
                    )
                else:
                    logger.info(
                        "Transient failure; retrying",
                        extra={
                            "operation": description,
                            "attempt": attempt + 1,
                            "failure_class": failure_class.value,
                            "delay_seconds": delay,
                            "error": str(exc),
                        },
                    )
                if not self._wait(delay):
                    outcome.last_error = ShutdownRequested(
                        f"Shutdown during backoff of {description}"
                    )
                    return outcome

        logger.error(
            "Retry budget exhausted",
            extra={
                "operation": description,
                "attempts": outcome.attempts,
                "failure_class": outcome.failure_class.value if outcome.failure_class else None,
                "error": str(outcome.last_error),
            },
        )
        return outcome

    def _wait(self, delay: float) -> bool:
        """Sleep ``delay`` seconds; False if shutdown interrupted the sleep."""
        if self._sleep is not None:
            self._sleep(delay)
            return not self._shutdown.is_set()
        if delay <= 0:
            return not self._shutdown.is_set()
        return not self._shutdown.wait(delay)

    @staticmethod
    def _discard_artifact(artifact: Optional[Path]) -> None:
        if artifact is None:
            return
        for path in (artifact, artifact.with_name(artifact.name + ".tmp")):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            logger.debug("Discarded partial artifact", extra={"artifact": str(path)})


__all__ = [
    "RetryPolicy",
    "RetryOutcome",
    "RetryExecutor",
    "classify_failure",
]
