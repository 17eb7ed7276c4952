"""notesync: incremental and bulk synchronization of OpenStreetMap notes."""

__version__ = "0.1.0"

__all__ = ["__version__"]
