"""Generic record model shared by every synchronized record type.

A record is an opaque payload plus a small set of sync metadata fields.
Each concrete type (journal entry, project, todo) is described by a
RecordType instance instead of its own class, so the push/pull/import
logic is written once.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from ..checksum import checksum
from ..timeutil import format_timestamp, parse_optional_timestamp, parse_timestamp


class RecordValidationError(ValueError):
    """Raised when a record or payload is malformed."""


def check_text(name: str, value: str) -> str:
    """Reject strings that cannot be stored or hashed as UTF-8."""
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise RecordValidationError(f"{name} must be valid UTF-8 text") from None
    return value


class SyncStatus(Enum):
    """Local sync state of a stored record."""

    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"


@dataclass
class SyncRecord:
    """A synchronizable record as exchanged on the wire."""

    id: str
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    is_deleted: bool = False
    checksum: str = ""
    owner_user_id: str | None = None
    device_id: str | None = None  # last writer


@dataclass
class StoredRecord(SyncRecord):
    """A record as held in the local store, with its sync status."""

    sync_status: SyncStatus = SyncStatus.PENDING


# Payload field kinds and the SQL column type used to store them
FIELD_SQL_TYPES = {
    "str": "TEXT",
    "int": "INTEGER",
    "bool": "INTEGER",
    "list": "TEXT",
    "timestamp": "TEXT",
}


@dataclass(frozen=True)
class PayloadField:
    """Declaration of one type-specific payload field."""

    name: str  # wire name (camelCase)
    column: str  # SQL column name
    kind: str  # one of FIELD_SQL_TYPES
    default: Any = None
    required: bool = False
    checksummed: bool = True
    validator: Callable[[Any], Any] | None = None

    @property
    def sql_type(self) -> str:
        return FIELD_SQL_TYPES[self.kind]

    def coerce(self, value: Any) -> Any:
        """Check a wire value against this field's kind.

        Returns:
            The normalized value.

        Raises:
            RecordValidationError: If the value has the wrong kind.
        """
        if value is None:
            if self.kind == "timestamp":
                return None
            raise RecordValidationError(f"{self.name} must not be null")

        if self.kind == "str":
            if not isinstance(value, str):
                raise RecordValidationError(f"{self.name} must be a string")
            check_text(self.name, value)
        elif self.kind == "bool":
            if not isinstance(value, bool):
                raise RecordValidationError(f"{self.name} must be a boolean")
        elif self.kind == "int":
            if isinstance(value, bool) or not isinstance(value, int):
                raise RecordValidationError(f"{self.name} must be an integer")
        elif self.kind == "list":
            if not isinstance(value, list) or not all(
                isinstance(item, dict) for item in value
            ):
                raise RecordValidationError(f"{self.name} must be a list of objects")
        elif self.kind == "timestamp":
            try:
                value = format_timestamp(parse_timestamp(value))
            except ValueError as e:
                raise RecordValidationError(f"{self.name}: {e}") from e

        if self.validator is not None:
            value = self.validator(value)
        return value

    def to_column(self, value: Any) -> Any:
        """Convert a payload value to its SQL column value."""
        if value is None:
            return None
        if self.kind == "bool":
            return 1 if value else 0
        if self.kind == "list":
            return json.dumps(value)
        return value

    def from_column(self, value: Any) -> Any:
        """Convert a SQL column value back to a payload value."""
        if value is None:
            return self.fresh_default()
        if self.kind == "bool":
            return bool(value)
        if self.kind == "list":
            return json.loads(value)
        return value

    def fresh_default(self) -> Any:
        if self.kind == "list":
            return [dict(item) for item in self.default or ()]
        return self.default


@dataclass(frozen=True)
class RecordType:
    """Describes one synchronized record type.

    The name doubles as the URL segment of its sync endpoint, and the
    table name is used both locally and on the server.
    """

    name: str
    table: str
    fields: tuple[PayloadField, ...]
    local_indexes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def columns(self) -> list[str]:
        return [f.column for f in self.fields]

    def column_definitions(self) -> str:
        """SQL column definitions for the payload fields."""
        return ",\n    ".join(f"{f.column} {f.sql_type}" for f in self.fields)

    # ==================== Payload ====================

    def build_payload(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate and normalize the payload fields found in data.

        Unknown keys are ignored; missing optional fields take their
        defaults.

        Raises:
            RecordValidationError: On a missing required field or bad value.
        """
        payload = {}
        for f in self.fields:
            if f.name in data:
                payload[f.name] = f.coerce(data[f.name])
            elif f.required:
                raise RecordValidationError(f"{self.name}: {f.name} is required")
            else:
                payload[f.name] = f.fresh_default()
        return payload

    def compute_checksum(self, payload: dict[str, Any]) -> str:
        """Checksum over the checksummed payload fields of this type."""
        return checksum(
            {f.name: payload.get(f.name) for f in self.fields if f.checksummed}
        )

    def same_content(self, a: SyncRecord, b: SyncRecord) -> bool:
        """Whether two versions of a record carry the same content.

        Tombstoning does not change the payload, so the deleted flag is
        compared alongside the checksum.
        """
        return a.checksum == b.checksum and a.is_deleted == b.is_deleted

    # ==================== Wire format ====================

    def parse_record(self, data: Any) -> SyncRecord:
        """Build a SyncRecord from its wire (camelCase JSON) form.

        The checksum is always recomputed from the payload.

        Raises:
            RecordValidationError: If the record is malformed.
        """
        if not isinstance(data, dict):
            raise RecordValidationError(f"{self.name}: record must be an object")

        record_id = data.get("id")
        if not isinstance(record_id, str) or not record_id.strip():
            raise RecordValidationError(f"{self.name}: id is required")
        check_text(f"{self.name}: id", record_id)

        payload = self.build_payload(data)

        if data.get("updatedAt") in (None, ""):
            raise RecordValidationError(f"{self.name}: updatedAt is required")
        try:
            updated_at = parse_timestamp(data["updatedAt"])
            created_at = parse_optional_timestamp(data.get("createdAt")) or updated_at
        except ValueError as e:
            raise RecordValidationError(f"{self.name}: {e}") from e

        owner_user_id = data.get("userId")
        device_id = data.get("deviceId")
        for key, value in (("userId", owner_user_id), ("deviceId", device_id)):
            if value is not None:
                if not isinstance(value, str):
                    raise RecordValidationError(f"{self.name}: {key} must be a string")
                check_text(f"{self.name}: {key}", value)

        is_deleted = data.get("isDeleted", False)
        if is_deleted is None:
            is_deleted = False
        if not isinstance(is_deleted, bool):
            raise RecordValidationError(f"{self.name}: isDeleted must be a boolean")

        return SyncRecord(
            id=record_id,
            payload=payload,
            created_at=created_at,
            updated_at=updated_at,
            is_deleted=is_deleted,
            checksum=self.compute_checksum(payload),
            owner_user_id=owner_user_id,
            device_id=device_id,
        )

    def to_wire(self, record: SyncRecord) -> dict[str, Any]:
        """Serialize a record to its wire form."""
        data: dict[str, Any] = {"id": record.id}
        if record.owner_user_id is not None:
            data["userId"] = record.owner_user_id
        if record.device_id is not None:
            data["deviceId"] = record.device_id
        for f in self.fields:
            data[f.name] = record.payload.get(f.name, f.fresh_default())
        data["createdAt"] = format_timestamp(record.created_at)
        data["updatedAt"] = format_timestamp(record.updated_at)
        data["isDeleted"] = record.is_deleted
        data["checksum"] = record.checksum
        return data
