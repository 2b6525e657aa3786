"""Local SQLite storage for synchronized records.

One LocalRecordStore handles one record type. Every local mutation marks
the record pending and refreshes its checksum and updated_at; records
arriving from the server go through import_records() instead, which
applies the pull-side merge policy.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from ..device import METADATA_SCHEMA, get_or_create_device_id
from ..records import RecordType, StoredRecord, SyncRecord, SyncStatus, check_text
from ..timeutil import TICK, format_timestamp, parse_optional_timestamp, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

# Per-record-type table; payload columns are filled in from the RecordType
RECORD_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    owner_user_id TEXT,
    {payload_columns},
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    checksum TEXT NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    device_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_{table}_sync_status ON {table}(sync_status);
CREATE INDEX IF NOT EXISTS idx_{table}_updated_at ON {table}(updated_at);
"""

INDEX_SCHEMA = "CREATE INDEX IF NOT EXISTS idx_{table}_{column} ON {table}({column});\n"


@dataclass
class ImportResult:
    """Outcome of merging pulled records into the local store."""

    imported: int = 0  # new locally
    overwritten: int = 0  # replaced a synced/conflict copy or an older pending edit
    kept_local: int = 0  # newer pending local edit kept
    failed: int = 0  # local storage error

    @property
    def applied(self) -> int:
        return self.imported + self.overwritten


class LocalRecordStore:
    """SQLite-backed keyed storage for one record type on this device."""

    def __init__(
        self,
        db_path: str | Path,
        record_type: RecordType,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file.
            record_type: Record type stored in this table.
            clock: Source of the current time (UTC).
        """
        self.db_path = Path(db_path).expanduser()
        self.record_type = record_type
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._device_id: str | None = None

    def connect(self) -> None:
        """Initialize database connection, schema and device identity."""
        if self._conn is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(self._schema())
        self._conn.commit()

        self._device_id = get_or_create_device_id(self._conn)

        logger.info(
            f"LocalRecordStore[{self.record_type.name}] connected to {self.db_path}"
        )

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

    def _schema(self) -> str:
        rt = self.record_type
        schema = METADATA_SCHEMA + RECORD_SCHEMA.format(
            table=rt.table,
            payload_columns=rt.column_definitions(),
        )
        for column in rt.local_indexes:
            schema += INDEX_SCHEMA.format(table=rt.table, column=column)
        return schema

    @property
    def device_id(self) -> str:
        """Persisted identifier of this installation."""
        self._ensure_connected()
        return self._device_id

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Run a block as one write transaction."""
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()

    # ==================== Row mapping ====================

    def _row_to_record(self, row: sqlite3.Row) -> StoredRecord:
        payload = {
            f.name: f.from_column(row[f.column]) for f in self.record_type.fields
        }
        return StoredRecord(
            id=row["id"],
            payload=payload,
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            is_deleted=bool(row["is_deleted"]),
            checksum=row["checksum"],
            owner_user_id=row["owner_user_id"],
            device_id=row["device_id"],
            sync_status=SyncStatus(row["sync_status"]),
        )

    def _fetch(self, conn: sqlite3.Connection, record_id: str) -> StoredRecord | None:
        row = conn.execute(
            f"SELECT * FROM {self.record_type.table} WHERE id = ?", (record_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def _write(self, conn: sqlite3.Connection, record: StoredRecord) -> None:
        """Upsert a full record row by id."""
        rt = self.record_type
        columns = [
            "id",
            "owner_user_id",
            *rt.columns,
            "created_at",
            "updated_at",
            "is_deleted",
            "checksum",
            "sync_status",
            "device_id",
        ]
        values = [
            record.id,
            record.owner_user_id,
            *(f.to_column(record.payload.get(f.name)) for f in rt.fields),
            format_timestamp(record.created_at),
            format_timestamp(record.updated_at),
            1 if record.is_deleted else 0,
            record.checksum,
            record.sync_status.value,
            record.device_id,
        ]
        placeholders = ", ".join("?" * len(columns))
        conn.execute(
            f"INSERT OR REPLACE INTO {rt.table} ({', '.join(columns)}) "
            f"VALUES ({placeholders})",
            values,
        )

    # ==================== Local mutations ====================

    def save(self, record: SyncRecord) -> StoredRecord | None:
        """Insert or overwrite a record after a local edit.

        Always marks the record pending and recomputes its checksum and
        updated_at, even if the payload did not change.

        Args:
            record: Record carrying the edited payload.

        Returns:
            The stored record, or None if local storage failed.

        Raises:
            RecordValidationError: If the id or payload is malformed.
        """
        rt = self.record_type
        payload = rt.build_payload(record.payload)
        check_text("id", record.id)

        try:
            conn = self._ensure_connected()
            with self._transaction(conn):
                existing = self._fetch(conn, record.id)

                updated_at = self._clock()
                if existing and existing.updated_at >= updated_at:
                    updated_at = existing.updated_at + TICK

                stored = StoredRecord(
                    id=record.id,
                    payload=payload,
                    created_at=existing.created_at if existing else record.created_at,
                    updated_at=updated_at,
                    is_deleted=record.is_deleted,
                    checksum=rt.compute_checksum(payload),
                    owner_user_id=(
                        record.owner_user_id
                        or (existing.owner_user_id if existing else None)
                    ),
                    device_id=self._device_id,
                    sync_status=SyncStatus.PENDING,
                )
                self._write(conn, stored)
        except sqlite3.Error as e:
            logger.error(f"Failed to save {rt.name} {record.id}: {e}")
            return None

        logger.debug(f"Saved {rt.name} {stored.id} at {format_timestamp(updated_at)}")
        return stored

    def create(
        self, payload: dict[str, Any], owner_user_id: str | None = None
    ) -> StoredRecord | None:
        """Create a new record with a fresh globally unique id.

        Args:
            payload: Type-specific payload fields.
            owner_user_id: Owning user, or None for a device-local record.

        Returns:
            The stored record, or None if local storage failed.
        """
        now = self._clock()
        return self.save(
            SyncRecord(
                id=str(uuid.uuid4()),
                payload=payload,
                created_at=now,
                updated_at=now,
                owner_user_id=owner_user_id,
            )
        )

    def soft_delete(self, record_id: str) -> StoredRecord | None:
        """Tombstone a record; it follows the normal push lifecycle.

        Returns:
            The tombstoned record, or None if absent or storage failed.
        """
        record = self.get(record_id)
        if record is None:
            return None

        record.is_deleted = True
        return self.save(record)

    def permanently_delete(self, record_ids: str | Iterable[str]) -> bool:
        """Physically remove records from the local store.

        This is a local-only operation; the sync path never calls it.

        Args:
            record_ids: A single id or several ids.

        Returns:
            True on success, False if local storage failed.
        """
        if isinstance(record_ids, str):
            record_ids = [record_ids]
        record_ids = list(record_ids)
        if not record_ids:
            return True

        placeholders = ",".join("?" * len(record_ids))
        try:
            conn = self._ensure_connected()
            conn.execute(
                f"DELETE FROM {self.record_type.table} WHERE id IN ({placeholders})",
                record_ids,
            )
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to permanently delete {self.record_type.name}: {e}")
            return False

        return True

    def purge_synced_tombstones(self) -> int:
        """Permanently delete tombstones the server has already confirmed.

        Returns:
            Number of records removed (0 on storage failure).
        """
        try:
            conn = self._ensure_connected()
            cursor = conn.execute(
                f"DELETE FROM {self.record_type.table} "
                "WHERE is_deleted = 1 AND sync_status = ?",
                (SyncStatus.SYNCED.value,),
            )
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to purge {self.record_type.name} tombstones: {e}")
            return 0

        purged = cursor.rowcount
        if purged > 0:
            logger.info(f"Purged {purged} synced {self.record_type.name} tombstones")
        return purged

    # ==================== Queries ====================

    def get(self, record_id: str) -> StoredRecord | None:
        """Get a record by id, tombstoned or not."""
        try:
            return self._fetch(self._ensure_connected(), record_id)
        except sqlite3.Error as e:
            logger.error(f"Failed to read {self.record_type.name} {record_id}: {e}")
            return None

    def get_all(self) -> list[StoredRecord]:
        """Get all live (not tombstoned) records, newest first."""
        return self._query(
            "WHERE is_deleted = 0 ORDER BY updated_at DESC", ()
        )

    def get_unsynced(self, limit: int | None = None) -> list[StoredRecord]:
        """Get records with local edits not yet accepted by the server.

        Args:
            limit: Maximum records to return (oldest edits first).
        """
        sql = "WHERE sync_status = ? ORDER BY updated_at ASC"
        params: tuple = (SyncStatus.PENDING.value,)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        return self._query(sql, params)

    def get_by(self, field_name: str, value: Any) -> list[StoredRecord]:
        """Get live records whose payload field equals value, newest first.

        Used for lookups such as todos of one project or open todos.

        Raises:
            KeyError: If the record type has no such payload field.
        """
        for f in self.record_type.fields:
            if f.name == field_name:
                break
        else:
            raise KeyError(f"{self.record_type.name} has no field {field_name}")

        return self._query(
            f"WHERE is_deleted = 0 AND {f.column} = ? ORDER BY updated_at DESC",
            (f.to_column(value),),
        )

    def _query(self, where: str, params: tuple) -> list[StoredRecord]:
        try:
            conn = self._ensure_connected()
            cursor = conn.execute(
                f"SELECT * FROM {self.record_type.table} {where}", params
            )
            return [self._row_to_record(row) for row in cursor]
        except sqlite3.Error as e:
            logger.error(f"Failed to query {self.record_type.name}: {e}")
            return []

    # ==================== Sync bookkeeping ====================

    def mark_synced(self, record_id: str, updated_at: datetime | None = None) -> bool:
        """Mark a record as accepted by the server.

        Args:
            record_id: Record to mark.
            updated_at: If given, only mark the row if it still carries
                this updated_at (an edit made while the push was in
                flight stays pending).

        Returns:
            True if a row was updated.
        """
        return self._set_status(record_id, SyncStatus.SYNCED, updated_at)

    def mark_conflict(self, record_id: str, updated_at: datetime | None = None) -> bool:
        """Mark a record as rejected by the server (server copy is newer)."""
        return self._set_status(record_id, SyncStatus.CONFLICT, updated_at)

    def _set_status(
        self, record_id: str, status: SyncStatus, updated_at: datetime | None
    ) -> bool:
        sql = f"UPDATE {self.record_type.table} SET sync_status = ? WHERE id = ?"
        params: tuple = (status.value, record_id)
        if updated_at is not None:
            sql += " AND updated_at = ?"
            params += (format_timestamp(updated_at),)

        try:
            conn = self._ensure_connected()
            cursor = conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as e:
            logger.error(
                f"Failed to mark {self.record_type.name} {record_id} {status.value}: {e}"
            )
            return False

        return cursor.rowcount > 0

    def import_records(self, records: Iterable[SyncRecord]) -> ImportResult:
        """Merge records pulled from the server.

        Per record, atomically:
        - absent locally: insert as synced
        - local synced or conflict: overwrite, server is authoritative
        - local pending and strictly newer: keep local, still pending
        - local pending and older or equal: overwrite and mark synced

        The batch as a whole is not atomic; records are independently
        keyed by id so a partial import is a valid resumable state.

        Args:
            records: Records from a pull response.

        Returns:
            ImportResult with per-outcome counts.
        """
        result = ImportResult()
        rt = self.record_type

        try:
            conn = self._ensure_connected()
        except sqlite3.Error as e:
            logger.error(f"Failed to open store for {rt.name} import: {e}")
            result.failed = len(list(records))
            return result

        for incoming in records:
            try:
                with self._transaction(conn):
                    local = self._fetch(conn, incoming.id)

                    if (
                        local is not None
                        and local.sync_status == SyncStatus.PENDING
                        and local.updated_at > incoming.updated_at
                    ):
                        result.kept_local += 1
                        continue

                    self._write(
                        conn,
                        StoredRecord(
                            id=incoming.id,
                            payload=incoming.payload,
                            created_at=incoming.created_at,
                            updated_at=incoming.updated_at,
                            is_deleted=incoming.is_deleted,
                            checksum=rt.compute_checksum(incoming.payload),
                            owner_user_id=incoming.owner_user_id,
                            device_id=incoming.device_id,
                            sync_status=SyncStatus.SYNCED,
                        ),
                    )
                    if local is None:
                        result.imported += 1
                    else:
                        result.overwritten += 1
            except sqlite3.Error as e:
                logger.error(f"Failed to import {rt.name} {incoming.id}: {e}")
                result.failed += 1

        logger.info(
            f"Imported {rt.name}: {result.imported} new, "
            f"{result.overwritten} overwritten, {result.kept_local} kept local"
        )
        return result

    def _last_sync_key(self) -> str:
        return f"last_sync_time:{self.record_type.name}"

    def get_last_sync_time(self) -> datetime | None:
        """Get the client-clock time of the last successful pull."""
        try:
            conn = self._ensure_connected()
            row = conn.execute(
                "SELECT value FROM sync_metadata WHERE key = ?",
                (self._last_sync_key(),),
            ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to read last sync time: {e}")
            return None

        return parse_optional_timestamp(row[0]) if row else None

    def set_last_sync_time(self, when: datetime) -> bool:
        """Remember the time of the last successful pull."""
        try:
            conn = self._ensure_connected()
            conn.execute(
                "INSERT OR REPLACE INTO sync_metadata (key, value) VALUES (?, ?)",
                (self._last_sync_key(), format_timestamp(when)),
            )
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to store last sync time: {e}")
            return False

        return True

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with record counts by sync status.
        """
        stats: dict[str, Any] = {
            "record_type": self.record_type.name,
            "device_id": self.device_id,
        }

        try:
            conn = self._ensure_connected()
            table = self.record_type.table

            stats["total_records"] = conn.execute(
                f"SELECT COUNT(*) FROM {table}"
            ).fetchone()[0]
            stats["deleted_records"] = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE is_deleted = 1"
            ).fetchone()[0]

            by_status = {status.value: 0 for status in SyncStatus}
            cursor = conn.execute(
                f"SELECT sync_status, COUNT(*) FROM {table} GROUP BY sync_status"
            )
            by_status.update({row[0]: row[1] for row in cursor})
            stats["records_by_status"] = by_status
        except sqlite3.Error as e:
            logger.error(f"Failed to read {self.record_type.name} stats: {e}")
            stats["error"] = str(e)

        last_sync = self.get_last_sync_time()
        stats["last_sync_time"] = format_timestamp(last_sync) if last_sync else None
        return stats
