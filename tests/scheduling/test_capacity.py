"""Tests for capacity probes."""

import httpx
import pytest

from notesync.scheduling.capacity import OverpassCapacityProbe, StaticCapacity, parse_overpass_status

IDLE_STATUS = """Connected as: 1234567
Current time: 2024-01-01T00:00:00Z
Announced endpoint: none
Rate limit: 2
2 slots available now.
Currently running queries (pid, space limit, time limit, start time):
"""

BUSY_STATUS = """Connected as: 1234567
Current time: 2024-01-01T00:00:00Z
Rate limit: 2
Slot available after: 2024-01-01T00:00:12Z, in 12 seconds.
Slot available after: 2024-01-01T00:00:40Z, in 40 seconds.
Currently running queries (pid, space limit, time limit, start time):
"""


def test_parse_slots_available() -> None:
    assert parse_overpass_status(IDLE_STATUS) == 2


def test_parse_busy_status() -> None:
    assert parse_overpass_status(BUSY_STATUS) == 0


def test_static_capacity() -> None:
    assert StaticCapacity().check_available_capacity() == 1
    with pytest.raises(ValueError):
        StaticCapacity(-1)


def test_probe_reads_status_endpoint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/status"
        return httpx.Response(200, text=IDLE_STATUS)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    probe = OverpassCapacityProbe("https://overpass.test/api/status", client=client)

    assert probe.check_available_capacity() == 2
    probe.close()


def test_probe_reports_zero_on_error() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(504)))
    probe = OverpassCapacityProbe("https://overpass.test/api/status", client=client)

    assert probe.check_available_capacity() == 0
    probe.close()
