"""Server side of the sync protocol, written once for every record type.

Conflict policy is last-writer-wins on updated_at with a strict
comparison: an incoming record only replaces the stored copy if it is
strictly newer, so ties go to the server. Resending an unchanged record
is a no-op that still counts as pushed.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable

from ..records import RecordType, SyncRecord
from ..timeutil import format_timestamp, utc_now
from .backend import ServerRecordStore

logger = logging.getLogger(__name__)

# Re-reads allowed after losing an optimistic write race
MAX_WRITE_ATTEMPTS = 3


@dataclass
class PushResult:
    """Outcome of a push batch."""

    pushed: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "pushed": self.pushed,
            "conflicts": self.conflicts,
            "message": f"Pushed {self.pushed} records, {len(self.conflicts)} conflicts",
        }


@dataclass
class PullResult:
    """Records changed since the client's last sync."""

    records: list[dict[str, Any]]
    sync_time: datetime

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "records": self.records,
            "count": len(self.records),
            "syncTime": format_timestamp(self.sync_time),
        }


@dataclass
class DeleteResult:
    """Outcome of a server-side soft delete."""

    deleted: bool
    conflicts: list[dict[str, Any]] = field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {"success": True, "deleted": self.deleted}
        if self.conflicts:
            response["conflicts"] = self.conflicts
        return response


class SyncProtocol:
    """Push/pull/delete handling for one record type.

    Holds no per-request state; the store is injected and shared.
    """

    def __init__(
        self,
        record_type: RecordType,
        store: ServerRecordStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.record_type = record_type
        self.store = store
        self._clock = clock

    def push(
        self, user_id: str, device_id: str, records: list[SyncRecord]
    ) -> PushResult:
        """Apply a batch of records pushed by a device.

        Args:
            user_id: Owner of the records.
            device_id: Device that sent them (recorded as last writer).
            records: Validated incoming records.

        Returns:
            PushResult with the pushed count and conflicts.
        """
        result = PushResult()
        for record in records:
            conflict = self._apply(user_id, device_id, record)
            if conflict is None:
                result.pushed += 1
            else:
                result.conflicts.append(conflict)

        logger.info(
            f"[{user_id}] push {self.record_type.name} from {device_id}: "
            f"{result.pushed} pushed, {len(result.conflicts)} conflicts"
        )
        return result

    def _apply(
        self, user_id: str, device_id: str, incoming: SyncRecord
    ) -> dict[str, Any] | None:
        """Apply one record under the LWW rule.

        Returns:
            None if the record counts as pushed, else a conflict entry.
        """
        rt = self.record_type
        existing = None

        for attempt in range(MAX_WRITE_ATTEMPTS):
            existing = self.store.get(rt, user_id, incoming.id)

            if existing is None:
                if self.store.insert(rt, user_id, device_id, incoming):
                    return None
                # Lost an insert race, or the id is taken by another user
                logger.info(
                    f"Insert of {rt.name} {incoming.id} collided, "
                    f"retrying as update ({attempt + 1}/{MAX_WRITE_ATTEMPTS})"
                )
                continue

            if rt.same_content(existing, incoming):
                return None

            if incoming.updated_at <= existing.updated_at:
                return self._conflict(incoming, existing)

            if self.store.update(
                rt, user_id, device_id, incoming, expected_updated_at=existing.updated_at
            ):
                return None

            logger.info(
                f"Update of {rt.name} {incoming.id} raced another writer "
                f"({attempt + 1}/{MAX_WRITE_ATTEMPTS})"
            )

        logger.warning(f"Giving up on {rt.name} {incoming.id} after {MAX_WRITE_ATTEMPTS} attempts")
        return self._conflict(incoming, existing)

    def _conflict(
        self, incoming: SyncRecord, existing: SyncRecord | None
    ) -> dict[str, Any]:
        return {
            "id": incoming.id,
            "serverUpdatedAt": (
                format_timestamp(existing.updated_at) if existing else None
            ),
            "localUpdatedAt": format_timestamp(incoming.updated_at),
        }

    def pull(self, user_id: str, last_sync_time: datetime | None) -> PullResult:
        """Get a user's records changed after last_sync_time.

        Args:
            user_id: Owner of the records.
            last_sync_time: Client's last successful sync, or None for all.

        Returns:
            PullResult with wire records, newest first.
        """
        sync_time = self._clock()
        records = self.store.list_since(self.record_type, user_id, last_sync_time)

        logger.info(
            f"[{user_id}] pull {self.record_type.name} since "
            f"{format_timestamp(last_sync_time) if last_sync_time else 'beginning'}: "
            f"{len(records)} records"
        )
        return PullResult(
            records=[self.record_type.to_wire(r) for r in records],
            sync_time=sync_time,
        )

    def delete(self, user_id: str, device_id: str, record_id: str) -> DeleteResult:
        """Soft-delete a record on the server.

        The tombstone gets a server-side updated_at and goes through the
        same conflict rule as a pushed record.
        """
        existing = self.store.get(self.record_type, user_id, record_id)
        if existing is None:
            logger.info(f"[{user_id}] delete {self.record_type.name} {record_id}: not found")
            return DeleteResult(deleted=False)

        tombstone = replace(
            existing,
            is_deleted=True,
            updated_at=self._clock(),
            device_id=device_id,
        )
        conflict = self._apply(user_id, device_id, tombstone)
        if conflict is not None:
            return DeleteResult(deleted=False, conflicts=[conflict])

        logger.info(f"[{user_id}] deleted {self.record_type.name} {record_id}")
        return DeleteResult(deleted=True)
