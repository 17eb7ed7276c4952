"""Tests for the retry executor and failure classification."""

import threading
import xml.etree.ElementTree as ET
from pathlib import Path

import httpx
import pytest

from notesync.errors import (
    DataValidationError,
    FailureClass,
    PermanentRemoteError,
    RetryExhaustedError,
    ShutdownRequested,
    TransientIOError,
)
from notesync.scheduling.retry import RetryExecutor, RetryPolicy, classify_failure


def status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.invalid/notes")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


class Flaky:
    """Fails ``failures`` times with ``error`` then returns ``value``."""

    def __init__(self, failures: int, error: Exception, value: str = "ok") -> None:
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def executor(sleeps) -> RetryExecutor:
    policy = RetryPolicy(max_attempts=5, base_delay_seconds=1.0, max_delay_seconds=60.0)
    return RetryExecutor(policy, sleep=sleeps.append)


class TestRetryPolicy:
    def test_delays_double(self) -> None:
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=60.0)
        assert [policy.calculate_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_capped(self) -> None:
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0)
        assert policy.calculate_delay(10) == 5.0

    def test_jitter_stays_within_bounds(self) -> None:
        policy = RetryPolicy(base_delay_seconds=10.0, jitter_factor=0.2)
        for _ in range(20):
            assert 8.0 <= policy.calculate_delay(0) <= 12.0


class TestRetryExecutor:
    def test_succeeds_first_try(self, executor: RetryExecutor, sleeps) -> None:
        outcome = executor.execute(lambda: 42)
        assert outcome.ok
        assert outcome.value == 42
        assert outcome.attempts == 1
        assert sleeps == []

    def test_transient_retried_with_backoff(self, executor: RetryExecutor, sleeps) -> None:
        operation = Flaky(3, TransientIOError("reset"))

        outcome = executor.execute(operation)

        assert outcome.ok
        assert outcome.attempts == 4
        assert sleeps == [1.0, 2.0, 4.0]

    def test_exhausts_after_bound(self, executor: RetryExecutor, sleeps) -> None:
        operation = Flaky(10, TransientIOError("reset"))

        outcome = executor.execute(operation)

        assert not outcome.ok
        assert operation.calls == 5
        assert sleeps == [1.0, 2.0, 4.0, 8.0]
        assert outcome.failure_class == FailureClass.TRANSIENT
        with pytest.raises(RetryExhaustedError) as excinfo:
            outcome.unwrap()
        assert excinfo.value.attempts == 5

    def test_permanent_fails_fast(self, executor: RetryExecutor, sleeps) -> None:
        operation = Flaky(10, PermanentRemoteError("gone"))

        outcome = executor.execute(operation)

        assert not outcome.ok
        assert operation.calls == 1
        assert sleeps == []
        assert outcome.failure_class == FailureClass.PERMANENT

    def test_structural_retried_within_bound(self, executor: RetryExecutor) -> None:
        operation = Flaky(10, DataValidationError("bad xml"))

        outcome = executor.execute(operation, max_attempts=2)

        assert operation.calls == 2
        assert outcome.failure_class == FailureClass.STRUCTURAL

    def test_overrides_base_delay(self, executor: RetryExecutor, sleeps) -> None:
        executor.execute(Flaky(2, TransientIOError("x")), base_delay=0.5)
        assert sleeps == [0.5, 1.0]

    def test_partial_artifact_removed_before_retry(self, executor: RetryExecutor, tmp_path: Path) -> None:
        artifact = tmp_path / "part_0001.jsonl"
        seen = []

        def operation() -> str:
            seen.append(artifact.exists())
            artifact.write_text("partial")
            if len(seen) < 3:
                raise TransientIOError("disk hiccup")
            return "done"

        outcome = executor.execute(operation, artifact=artifact)

        assert outcome.ok
        assert seen == [False, False, False]

    def test_tmp_artifact_also_removed(self, executor: RetryExecutor, tmp_path: Path) -> None:
        artifact = tmp_path / "dump.osn"
        tmp = tmp_path / "dump.osn.tmp"

        def operation() -> None:
            tmp.write_text("half")
            raise PermanentRemoteError("404")

        executor.execute(operation, artifact=artifact)

        assert not tmp.exists()

    def test_shutdown_during_backoff(self) -> None:
        event = threading.Event()
        executor = RetryExecutor(RetryPolicy(max_attempts=5), shutdown_event=event, sleep=lambda _: event.set())

        outcome = executor.execute(Flaky(10, TransientIOError("x")))

        assert not outcome.ok
        assert outcome.attempts == 1
        with pytest.raises(ShutdownRequested):
            outcome.unwrap()

    def test_shutdown_requested_by_operation_not_retried(self, executor: RetryExecutor) -> None:
        operation = Flaky(10, ShutdownRequested("stop"))
        outcome = executor.execute(operation)
        assert operation.calls == 1
        assert isinstance(outcome.last_error, ShutdownRequested)


class TestClassifyFailure:
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (status_error(429), FailureClass.TRANSIENT),
            (status_error(503), FailureClass.TRANSIENT),
            (status_error(404), FailureClass.PERMANENT),
            (status_error(400), FailureClass.PERMANENT),
            (httpx.ConnectError("refused"), FailureClass.TRANSIENT),
            (httpx.ReadTimeout("slow"), FailureClass.TRANSIENT),
            (ET.ParseError("bad"), FailureClass.STRUCTURAL),
            (ConnectionResetError(), FailureClass.TRANSIENT),
            (KeyError("id"), FailureClass.STRUCTURAL),
            (DataValidationError("x"), FailureClass.STRUCTURAL),
            (RuntimeError("mystery"), FailureClass.TRANSIENT),
        ],
    )
    def test_classification(self, exc: BaseException, expected: FailureClass) -> None:
        assert classify_failure(exc) == expected
