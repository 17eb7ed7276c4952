"""Remote note sources: the near-real-time API feed and the bulk dump.

Every request takes a turn on the resource's ticket queue and runs through
the retry executor, so concurrent processes share the remote fairly and
transient failures are absorbed up to the retry bound.
"""

from __future__ import annotations

import bz2
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

import httpx

from ..errors import PermanentRemoteError, RateLimitedError, TransientIOError
from ..models import ConversionResult, SyncWatermark
from ..scheduling.retry import PERMANENT_HTTP_STATUSES, RetryExecutor
from ..scheduling.ticket_queue import TicketQueue
from .converter import Converter, OsmNotesXmlConverter

logger = logging.getLogger(__name__)

API_RESOURCE = "osm-api"
DUMP_RESOURCE = "planet"
_CHUNK_BYTES = 1 << 20


def raise_for_status(response: httpx.Response) -> None:
    """Translate HTTP failures into the error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    if status == 429:
        raise RateLimitedError(
            f"{response.request.url} answered 429",
            details={"retry_after": response.headers.get("Retry-After")},
        )
    if status in PERMANENT_HTTP_STATUSES:
        raise PermanentRemoteError(
            f"{response.request.url} answered {status}",
            details={"status": status},
        )
    raise TransientIOError(f"{response.request.url} answered {status}", details={"status": status})


@dataclass
class FeedBatch:
    """One fetch from the API feed.

    ``truncated`` is set when the response hit the request limit, meaning
    more changes exist than were returned.
    """

    result: ConversionResult
    requested_since: Optional[SyncWatermark]
    limit: int

    @property
    def size(self) -> int:
        return len(self.result)

    @property
    def truncated(self) -> bool:
        return self.size >= self.limit


class NotesApiClient:
    """Fetches notes updated since the watermark from ``/notes/search.xml``."""

    def __init__(
        self,
        base_url: str,
        *,
        tickets: TicketQueue,
        retry: RetryExecutor,
        converter: Optional[Converter] = None,
        client: Optional[httpx.Client] = None,
        max_notes: int = 10000,
        timeout: float = 60.0,
        user_agent: str = "notesync",
        turn_timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.tickets = tickets
        self.retry = retry
        self.converter = converter or OsmNotesXmlConverter()
        self.max_notes = max_notes
        self._turn_timeout = turn_timeout
        self._client = client or httpx.Client(timeout=timeout, headers={"User-Agent": user_agent})

    def close(self) -> None:
        self._client.close()

    def fetch_since(self, watermark: Optional[SyncWatermark]) -> FeedBatch:
        """Fetch one batch of notes updated after ``watermark``.

        The feed has one-second resolution, so the query starts one second
        past the watermark to avoid re-reading the last committed change.
        """
        params = {
            "limit": str(self.max_notes),
            "closed": "-1",
            "sort": "updated_at",
            "order": "oldest",
        }
        if watermark is not None:
            start = watermark.last_processed_marker + timedelta(seconds=1)
            params["from"] = start.strftime("%Y-%m-%dT%H:%M:%SZ")

        def fetch_once() -> ConversionResult:
            with self.tickets.turn(self._turn_timeout):
                response = self._client.get(f"{self.base_url}/notes/search.xml", params=params)
            raise_for_status(response)
            return self.converter.convert(response.content)

        outcome = self.retry.execute(fetch_once, description="notes api fetch")
        result = outcome.unwrap()
        logger.info(
            "Fetched notes from API",
            extra={
                "notes": len(result),
                "since": params.get("from"),
                "attempts": outcome.attempts,
            },
        )
        return FeedBatch(result=result, requested_since=watermark, limit=self.max_notes)


class BulkDumpSource:
    """Downloads and decompresses the bz2 planet notes dump."""

    def __init__(
        self,
        dump_url: str,
        *,
        tickets: TicketQueue,
        retry: RetryExecutor,
        client: Optional[httpx.Client] = None,
        timeout: float = 600.0,
        turn_timeout: Optional[float] = None,
    ) -> None:
        self.dump_url = dump_url
        self.tickets = tickets
        self.retry = retry
        self._turn_timeout = turn_timeout
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def close(self) -> None:
        self._client.close()

    def download(self, destination: Path) -> Path:
        """Stream the dump to ``destination``, decompressing on the fly.

        A partial file from a failed attempt is removed before the retry.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)

        def download_once() -> int:
            tmp_path = destination.with_name(destination.name + ".tmp")
            written = 0
            with self.tickets.turn(self._turn_timeout) as ticket:
                with self._client.stream("GET", self.dump_url) as response:
                    raise_for_status(response)
                    decompressor = bz2.BZ2Decompressor()
                    with open(tmp_path, "wb") as f:
                        for chunk in response.iter_bytes(_CHUNK_BYTES):
                            written += len(chunk)
                            # Parallel bzip2 writes several concatenated streams.
                            while chunk:
                                if decompressor.eof:
                                    decompressor = bz2.BZ2Decompressor()
                                f.write(decompressor.decompress(chunk))
                                chunk = decompressor.unused_data if decompressor.eof else b""
                            self.tickets.heartbeat(ticket)
                        f.flush()
                        os.fsync(f.fileno())
            if not decompressor.eof:
                raise TransientIOError(f"Dump {self.dump_url} ended before the bz2 stream did")
            os.replace(tmp_path, destination)
            return written

        outcome = self.retry.execute(
            download_once,
            artifact=destination,
            description="bulk dump download",
        )
        compressed = outcome.unwrap()
        logger.info(
            "Downloaded bulk dump",
            extra={
                "url": self.dump_url,
                "compressed_bytes": compressed,
                "bytes": destination.stat().st_size,
                "attempts": outcome.attempts,
            },
        )
        return destination


__all__ = [
    "API_RESOURCE",
    "DUMP_RESOURCE",
    "BulkDumpSource",
    "FeedBatch",
    "NotesApiClient",
    "raise_for_status",
]
