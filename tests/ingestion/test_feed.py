"""Tests for the API feed client and bulk dump download."""

import bz2
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from notesync.errors import PermanentRemoteError, RateLimitedError, RetryExhaustedError, TransientIOError
from notesync.ingestion.feed import BulkDumpSource, NotesApiClient, raise_for_status
from notesync.models import SyncWatermark
from notesync.scheduling.retry import RetryExecutor, RetryPolicy
from notesync.scheduling.ticket_queue import TicketQueue

FIXTURES = Path(__file__).resolve().parents[1] / "fixtures"


@pytest.fixture
def tickets(tmp_path: Path):
    queue = TicketQueue(tmp_path / "queue.db", resource="osm-api", poll_interval=0.01)
    yield queue
    queue.close()


@pytest.fixture
def retry() -> RetryExecutor:
    return RetryExecutor(RetryPolicy(max_attempts=3, base_delay_seconds=0.0), sleep=lambda _: None)


def response(code: int) -> httpx.Response:
    return httpx.Response(code, request=httpx.Request("GET", "https://api.test/notes"))


class TestRaiseForStatus:
    def test_success(self) -> None:
        raise_for_status(response(200))

    def test_rate_limited(self) -> None:
        with pytest.raises(RateLimitedError):
            raise_for_status(response(429))

    def test_permanent(self) -> None:
        with pytest.raises(PermanentRemoteError):
            raise_for_status(response(404))

    def test_server_error(self) -> None:
        with pytest.raises(TransientIOError):
            raise_for_status(response(502))


class TestNotesApiClient:
    def make_client(self, handler, tickets, retry, max_notes: int = 10000) -> NotesApiClient:
        return NotesApiClient(
            "https://api.test/api/0.6",
            tickets=tickets,
            retry=retry,
            client=httpx.Client(transport=httpx.MockTransport(handler)),
            max_notes=max_notes,
        )

    def test_fetch_since_watermark(self, tickets, retry) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url)
            return httpx.Response(200, content=(FIXTURES / "api_notes.xml").read_bytes())

        client = self.make_client(handler, tickets, retry)
        watermark = SyncWatermark(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))

        batch = client.fetch_since(watermark)

        assert batch.size == 2
        assert not batch.truncated
        assert seen[0].path == "/api/0.6/notes/search.xml"
        assert seen[0].params["from"] == "2024-01-01T12:00:01Z"
        assert seen[0].params["sort"] == "updated_at"
        assert seen[0].params["limit"] == "10000"
        assert tickets.status()["by_status"]["released"] == 1

    def test_first_fetch_has_no_lower_bound(self, tickets, retry) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url)
            return httpx.Response(200, content=b"<osm></osm>")

        batch = self.make_client(handler, tickets, retry).fetch_since(None)

        assert batch.size == 0
        assert "from" not in seen[0].params

    def test_truncated_at_limit(self, tickets, retry) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=(FIXTURES / "api_notes.xml").read_bytes())

        batch = self.make_client(handler, tickets, retry, max_notes=2).fetch_since(None)

        assert batch.truncated

    def test_transient_errors_retried(self, tickets, retry) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, content=b"<osm></osm>")

        self.make_client(handler, tickets, retry).fetch_since(None)

        assert len(calls) == 3
        assert tickets.served_order() == [1, 2, 3]

    def test_permanent_error_surfaces(self, tickets, retry) -> None:
        client = self.make_client(lambda request: httpx.Response(403), tickets, retry)

        with pytest.raises(RetryExhaustedError) as excinfo:
            client.fetch_since(None)

        assert excinfo.value.attempts == 1
        assert isinstance(excinfo.value.last_error, PermanentRemoteError)


class TestBulkDumpSource:
    def make_source(self, handler, tmp_path, retry) -> BulkDumpSource:
        queue = TicketQueue(tmp_path / "queue.db", resource="planet", poll_interval=0.01)
        return BulkDumpSource(
            "https://planet.test/notes.osn.bz2",
            tickets=queue,
            retry=retry,
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

    def test_download_decompresses(self, tmp_path: Path, retry) -> None:
        payload = (FIXTURES / "planet_notes.xml").read_bytes()
        compressed = bz2.compress(payload)
        source = self.make_source(lambda request: httpx.Response(200, content=compressed), tmp_path, retry)

        path = source.download(tmp_path / "dump" / "notes.osn")

        assert path.read_bytes() == payload
        source.tickets.close()

    def test_multistream_archive(self, tmp_path: Path, retry) -> None:
        payload = (FIXTURES / "planet_notes.xml").read_bytes()
        half = len(payload) // 2
        compressed = bz2.compress(payload[:half]) + bz2.compress(payload[half:])
        source = self.make_source(lambda request: httpx.Response(200, content=compressed), tmp_path, retry)

        path = source.download(tmp_path / "notes.osn")

        assert path.read_bytes() == payload
        source.tickets.close()

    def test_truncated_stream_leaves_no_file(self, tmp_path: Path, retry) -> None:
        compressed = bz2.compress((FIXTURES / "planet_notes.xml").read_bytes())
        source = self.make_source(
            lambda request: httpx.Response(200, content=compressed[: len(compressed) // 2]), tmp_path, retry
        )
        destination = tmp_path / "notes.osn"

        with pytest.raises(RetryExhaustedError):
            source.download(destination)

        assert not destination.exists()
        assert not (tmp_path / "notes.osn.tmp").exists()
        source.tickets.close()
