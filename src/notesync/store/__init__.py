"""Persistent note storage and quarantine."""

from .note_store import NoteStore
from .quarantine import QuarantinedItem, QuarantineKind, QuarantineStore

__all__ = ["NoteStore", "QuarantinedItem", "QuarantineKind", "QuarantineStore"]
