"""Capacity collaborators polled by the ticket queue."""

from __future__ import annotations

import logging
import re
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

_SLOTS_AVAILABLE = re.compile(r"^(\d+)\s+slots?\s+available\s+now", re.MULTILINE)


class CapacityProbe(Protocol):
    def check_available_capacity(self) -> int:
        """Number of free slots on the remote resource (>= 0)."""


class StaticCapacity:
    """Capacity probe for resources without a status endpoint."""

    def __init__(self, slots: int = 1) -> None:
        if slots < 0:
            raise ValueError("slots must be >= 0")
        self.slots = slots

    def check_available_capacity(self) -> int:
        return self.slots


def parse_overpass_status(text: str) -> int:
    """Extract free slots from an Overpass ``/api/status`` body.

    The body lists either ``"<n> slots available now."`` or one
    ``"Slot available after: ..."`` line per busy slot.
    """
    match = _SLOTS_AVAILABLE.search(text)
    if match:
        return int(match.group(1))
    return 0


class OverpassCapacityProbe:
    """Reads free slots from the Overpass status endpoint.

    A failed status request reports zero capacity; the ticket queue treats
    that as a wait, not a failure.
    """

    def __init__(
        self,
        status_url: str,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ) -> None:
        self._status_url = status_url
        self._client = client or httpx.Client(timeout=timeout)

    def check_available_capacity(self) -> int:
        try:
            response = self._client.get(self._status_url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Overpass status check failed",
                extra={"status_url": self._status_url, "error": str(exc)},
            )
            return 0
        slots = parse_overpass_status(response.text)
        logger.debug("Overpass capacity", extra={"slots": slots})
        return slots

    def close(self) -> None:
        self._client.close()


__all__ = [
    "CapacityProbe",
    "StaticCapacity",
    "OverpassCapacityProbe",
    "parse_overpass_status",
]
