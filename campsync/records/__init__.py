"""Record model and the synchronized record types."""

from .base import (
    PayloadField,
    RecordType,
    RecordValidationError,
    StoredRecord,
    SyncRecord,
    SyncStatus,
    check_text,
)
from .types import DEFAULT_PROJECT_ID, JOURNAL, PROJECT, RECORD_TYPES, TODO, get_record_type

__all__ = [
    "DEFAULT_PROJECT_ID",
    "JOURNAL",
    "PROJECT",
    "RECORD_TYPES",
    "TODO",
    "PayloadField",
    "RecordType",
    "RecordValidationError",
    "StoredRecord",
    "SyncRecord",
    "SyncStatus",
    "check_text",
    "get_record_type",
]
