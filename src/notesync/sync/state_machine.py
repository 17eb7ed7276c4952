"""Sync cycle state machine.

A cycle walks::

    IDLE -> FETCHING -> DECIDING -> DIRECT_APPLY      -> COMMITTING -> IDLE
                                 -> TRIGGER_BULK_SYNC -> COMMITTING -> IDLE

Any working state may drop to FAILED, and FAILED only returns to IDLE.
DECIDING may also return straight to IDLE when the feed had nothing new.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..models import utcnow

logger = logging.getLogger(__name__)


class InvalidStateTransitionError(ValueError):
    """Raised when a cycle attempts a transition outside VALID_TRANSITIONS."""


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DECIDING = "deciding"
    DIRECT_APPLY = "direct_apply"
    TRIGGER_BULK_SYNC = "trigger_bulk_sync"
    COMMITTING = "committing"
    FAILED = "failed"


VALID_TRANSITIONS: Dict[SyncState, Set[SyncState]] = {
    SyncState.IDLE: {SyncState.FETCHING},
    SyncState.FETCHING: {SyncState.DECIDING, SyncState.FAILED},
    SyncState.DECIDING: {
        SyncState.DIRECT_APPLY,
        SyncState.TRIGGER_BULK_SYNC,
        SyncState.IDLE,  # Nothing new
        SyncState.FAILED,
    },
    SyncState.DIRECT_APPLY: {SyncState.COMMITTING, SyncState.FAILED},
    SyncState.TRIGGER_BULK_SYNC: {SyncState.COMMITTING, SyncState.FAILED},
    SyncState.COMMITTING: {SyncState.IDLE, SyncState.FAILED},
    SyncState.FAILED: {SyncState.IDLE},
}


@dataclass
class StateTransition:
    from_state: SyncState
    to_state: SyncState
    timestamp: datetime
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_valid(self) -> bool:
        return self.to_state in VALID_TRANSITIONS.get(self.from_state, set())


class SyncStateMachine:
    """Tracks the current state of one controller and validates every move."""

    def __init__(self) -> None:
        self.state = SyncState.IDLE
        self.history: List[StateTransition] = []

    def transition(self, to_state: SyncState, *, reason: Optional[str] = None, **metadata: Any) -> StateTransition:
        """Move to ``to_state``.

        Raises:
            InvalidStateTransitionError: The move is not allowed from the current state
        """
        transition = StateTransition(
            from_state=self.state,
            to_state=to_state,
            timestamp=utcnow(),
            reason=reason,
            metadata=metadata,
        )
        if not transition.is_valid():
            logger.error(
                "Invalid sync state transition",
                extra={"from_state": self.state.value, "to_state": to_state.value},
            )
            raise InvalidStateTransitionError(
                f"Invalid transition {self.state.value} -> {to_state.value}"
            )
        logger.debug(
            "Sync state transition",
            extra={"from_state": self.state.value, "to_state": to_state.value, "reason": reason},
        )
        self.history.append(transition)
        self.state = to_state
        return transition

    def reset(self) -> None:
        """Return to IDLE from FAILED (or stay in IDLE)."""
        if self.state == SyncState.FAILED:
            self.transition(SyncState.IDLE, reason="reset after failure")
        elif self.state != SyncState.IDLE:
            self.transition(SyncState.FAILED, reason="abandoned cycle")
            self.transition(SyncState.IDLE, reason="reset after failure")

    def path(self) -> List[SyncState]:
        """States visited since the last IDLE, including it."""
        states = [SyncState.IDLE]
        for transition in self.history:
            if transition.from_state == SyncState.IDLE:
                states = [SyncState.IDLE]
            states.append(transition.to_state)
        return states


__all__ = [
    "InvalidStateTransitionError",
    "SyncState",
    "StateTransition",
    "SyncStateMachine",
    "VALID_TRANSITIONS",
]
