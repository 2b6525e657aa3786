"""Server-side persistence for synchronized records.

The sync protocol talks to a ServerRecordStore, never to a database
directly, so the SQLite implementation here can be swapped for a shared
database in a horizontally scaled deployment. Writes are optimistic:
inserts fail if the id already exists and updates are compare-and-set
on the updated_at the caller read, so concurrent writers never
overwrite each other blindly.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Iterable

from ..records import RECORD_TYPES, RecordType, SyncRecord
from ..timeutil import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

SERVER_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    {payload_columns},
    checksum TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_{table}_user_updated ON {table}(user_id, updated_at);
"""


class ServerRecordStore(ABC):
    """Storage interface used by the sync protocol."""

    @abstractmethod
    def get(
        self, record_type: RecordType, user_id: str, record_id: str
    ) -> SyncRecord | None:
        """Get a record by (id, user_id)."""

    @abstractmethod
    def insert(
        self, record_type: RecordType, user_id: str, device_id: str, record: SyncRecord
    ) -> bool:
        """Insert a new record.

        Returns:
            False if a record with this id already exists (for any user).
        """

    @abstractmethod
    def update(
        self,
        record_type: RecordType,
        user_id: str,
        device_id: str,
        record: SyncRecord,
        expected_updated_at: datetime,
    ) -> bool:
        """Overwrite a record if it still carries expected_updated_at.

        Returns:
            False if the stored record changed since it was read.
        """

    @abstractmethod
    def list_since(
        self, record_type: RecordType, user_id: str, since: datetime | None
    ) -> list[SyncRecord]:
        """Get a user's records with updated_at strictly after since.

        Returns:
            Records ordered by updated_at, newest first.
        """

    def connect(self) -> None:
        """Open underlying resources."""

    def close(self) -> None:
        """Release underlying resources."""


class SQLiteServerStore(ServerRecordStore):
    """ServerRecordStore backed by one SQLite table per record type."""

    def __init__(
        self,
        db_path: str | Path,
        record_types: Iterable[RecordType] | None = None,
    ):
        """Initialize the server store.

        Args:
            db_path: Path to SQLite database file.
            record_types: Record types to create tables for (default: all).
        """
        self.db_path = Path(db_path).expanduser()
        self.record_types = list(record_types or RECORD_TYPES.values())
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        for rt in self.record_types:
            self._conn.executescript(
                SERVER_SCHEMA.format(
                    table=rt.table, payload_columns=rt.column_definitions()
                )
            )
        self._conn.commit()

        logger.info(f"SQLiteServerStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _row_to_record(self, record_type: RecordType, row: sqlite3.Row) -> SyncRecord:
        return SyncRecord(
            id=row["id"],
            payload={f.name: f.from_column(row[f.column]) for f in record_type.fields},
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            is_deleted=bool(row["is_deleted"]),
            checksum=row["checksum"],
            owner_user_id=row["user_id"],
            device_id=row["device_id"],
        )

    def _payload_values(self, record_type: RecordType, record: SyncRecord) -> list:
        return [f.to_column(record.payload.get(f.name)) for f in record_type.fields]

    def get(
        self, record_type: RecordType, user_id: str, record_id: str
    ) -> SyncRecord | None:
        conn = self._ensure_connected()
        row = conn.execute(
            f"SELECT * FROM {record_type.table} WHERE id = ? AND user_id = ?",
            (record_id, user_id),
        ).fetchone()
        return self._row_to_record(record_type, row) if row else None

    def insert(
        self, record_type: RecordType, user_id: str, device_id: str, record: SyncRecord
    ) -> bool:
        conn = self._ensure_connected()
        columns = [
            "id",
            "user_id",
            "device_id",
            *record_type.columns,
            "checksum",
            "created_at",
            "updated_at",
            "is_deleted",
        ]
        values = [
            record.id,
            user_id,
            device_id,
            *self._payload_values(record_type, record),
            record.checksum,
            format_timestamp(record.created_at),
            format_timestamp(record.updated_at),
            1 if record.is_deleted else 0,
        ]
        cursor = conn.execute(
            f"INSERT INTO {record_type.table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' * len(columns))}) "
            "ON CONFLICT(id) DO NOTHING",
            values,
        )
        conn.commit()
        return cursor.rowcount > 0

    def update(
        self,
        record_type: RecordType,
        user_id: str,
        device_id: str,
        record: SyncRecord,
        expected_updated_at: datetime,
    ) -> bool:
        conn = self._ensure_connected()
        assignments = ", ".join(f"{column} = ?" for column in record_type.columns)
        cursor = conn.execute(
            f"""
            UPDATE {record_type.table}
            SET {assignments},
                checksum = ?,
                updated_at = ?,
                is_deleted = ?,
                device_id = ?
            WHERE id = ? AND user_id = ? AND updated_at = ?
            """,
            (
                *self._payload_values(record_type, record),
                record.checksum,
                format_timestamp(record.updated_at),
                1 if record.is_deleted else 0,
                device_id,
                record.id,
                user_id,
                format_timestamp(expected_updated_at),
            ),
        )
        conn.commit()
        return cursor.rowcount > 0

    def list_since(
        self, record_type: RecordType, user_id: str, since: datetime | None
    ) -> list[SyncRecord]:
        conn = self._ensure_connected()
        if since is None:
            cursor = conn.execute(
                f"SELECT * FROM {record_type.table} "
                "WHERE user_id = ? ORDER BY updated_at DESC",
                (user_id,),
            )
        else:
            cursor = conn.execute(
                f"SELECT * FROM {record_type.table} "
                "WHERE user_id = ? AND updated_at > ? ORDER BY updated_at DESC",
                (user_id, format_timestamp(since)),
            )
        return [self._row_to_record(record_type, row) for row in cursor]

    def count(self, record_type: RecordType, user_id: str | None = None) -> int:
        """Count stored records, optionally for one user."""
        conn = self._ensure_connected()
        if user_id is None:
            row = conn.execute(f"SELECT COUNT(*) FROM {record_type.table}").fetchone()
        else:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {record_type.table} WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return row[0]
