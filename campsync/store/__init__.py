"""Client-side persistence for synchronized records."""

from .local_store import ImportResult, LocalRecordStore

__all__ = ["ImportResult", "LocalRecordStore"]
