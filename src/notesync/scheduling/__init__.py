"""Fair access to rate-limited resources and retry handling."""

from .capacity import CapacityProbe, OverpassCapacityProbe, StaticCapacity, parse_overpass_status
from .retry import RetryExecutor, RetryOutcome, RetryPolicy, classify_failure
from .ticket_queue import TicketQueue, TicketStatus, TurnOutcome

__all__ = [
    "CapacityProbe",
    "OverpassCapacityProbe",
    "StaticCapacity",
    "parse_overpass_status",
    "RetryExecutor",
    "RetryOutcome",
    "RetryPolicy",
    "classify_failure",
    "TicketQueue",
    "TicketStatus",
    "TurnOutcome",
]
