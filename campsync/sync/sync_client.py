"""Sync client for reconciling local records with the sync server.

Runs push-then-pull cycles for each configured record type, with retry
logic and batching. A failed cycle leaves local state untouched apart
from batches the server already acknowledged, so it is safe to retry in
full.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Sequence

import httpx

from ..store import LocalRecordStore
from ..timeutil import TICK, format_timestamp, parse_optional_timestamp, utc_now

logger = logging.getLogger(__name__)


class SyncOutcome(Enum):
    """Outcome of a sync operation."""

    SUCCESS = "success"
    FAILED = "failed"  # Malformed response or local storage failure
    OFFLINE = "offline"  # Remote unreachable after retries
    UNAVAILABLE = "unavailable"  # Server has no backing store configured
    REJECTED = "rejected"  # Request refused as invalid, do not resend as-is
    SKIPPED = "skipped"  # Another cycle already in flight


class SyncPhase(Enum):
    """Where the client is within a sync cycle."""

    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"


@dataclass
class SyncFailure:
    """Why a request to the sync server did not succeed."""

    outcome: SyncOutcome
    message: str


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncOutcome
    records_pushed: int = 0
    records_pulled: int = 0
    kept_local: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    timestamp: datetime | None = None


def _chunks(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _conflict_cutoff(conflicts: list[dict[str, Any]]) -> datetime | None:
    """Just before the earliest server copy that beat a pushed record."""
    times = []
    for conflict in conflicts:
        try:
            server_time = parse_optional_timestamp(conflict.get("serverUpdatedAt"))
        except ValueError:
            logger.warning(f"Ignoring unparseable serverUpdatedAt in conflict {conflict}")
            continue
        if server_time is not None:
            times.append(server_time)
    if not times:
        return None
    try:
        return min(times) - TICK
    except OverflowError:
        return min(times)


class SyncClient:
    """Client for synchronizing local record stores with the server.

    Supports:
    - Push: send pending local records, mark accepted ones synced
    - Pull: fetch records changed since the last sync and import them
    - Full sync: push then pull for every record type

    Only one cycle runs at a time; a cycle requested while another is in
    flight is a no-op.
    """

    def __init__(
        self,
        stores: Sequence[LocalRecordStore],
        user_id: str,
        remote_url: str | None = None,
        device_id: str | None = None,
        batch_size: int = 100,
        max_retries: int = 3,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the sync client.

        Args:
            stores: Local stores to sync, one per record type.
            user_id: Logical user that owns the synced records.
            remote_url: Base URL of the sync server (e.g., "http://host:8000").
            device_id: Device identity; defaults to the one persisted by
                the first store.
            batch_size: Maximum records per push request.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used to talk to an
                in-process server).
            clock: Source of the current time (UTC).
        """
        if not stores:
            raise ValueError("At least one store is required")

        self.stores = {store.record_type.name: store for store in stores}
        self.user_id = user_id
        self.remote_url = remote_url
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._device_id = device_id
        self._backoff_seconds = 1.0
        self._phase = SyncPhase.IDLE
        self._last_sync: datetime | None = None
        self._last_error: str | None = None
        self._consecutive_failures = 0

    @property
    def device_id(self) -> str:
        if self._device_id is None:
            self._device_id = next(iter(self.stores.values())).device_id
        return self._device_id

    async def _request_with_retry(
        self,
        path: str,
        json_data: Any,
    ) -> tuple[Any, SyncFailure | None]:
        """POST to the server with exponential backoff retry.

        Connection errors, timeouts and 5xx responses are retried. A 503
        means the server has no backing store and is reported at once;
        other 4xx responses are not retried either.

        Args:
            path: URL path to append to remote_url.
            json_data: JSON body.

        Returns:
            Tuple of (response_data, failure).
        """
        if not self.remote_url:
            return None, SyncFailure(SyncOutcome.FAILED, "No remote URL configured")

        url = f"{self.remote_url.rstrip('/')}{path}"
        backoff = self._backoff_seconds

        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.post(url, json=json_data)

                    if response.status_code == 200:
                        data = response.json()
                        if not isinstance(data, dict):
                            return None, SyncFailure(
                                SyncOutcome.FAILED,
                                f"Invalid response: expected a JSON object, got {type(data).__name__}",
                            )
                        return data, None

                    elif response.status_code == 503:
                        return None, SyncFailure(
                            SyncOutcome.UNAVAILABLE,
                            f"Sync unavailable: {response.text}",
                        )

                    elif response.status_code >= 500:
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        return None, SyncFailure(
                            SyncOutcome.REJECTED,
                            f"HTTP {response.status_code}: {response.text}",
                        )

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TransportError as e:
                    logger.warning(
                        f"Transport error {e}, attempt {attempt + 1}/{self.max_retries}"
                    )
                except ValueError as e:
                    logger.error(f"Invalid response from {url}: {e}")
                    return None, SyncFailure(SyncOutcome.FAILED, f"Invalid response: {e}")

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        return None, SyncFailure(
            SyncOutcome.OFFLINE, f"Max retries ({self.max_retries}) exceeded"
        )

    def _endpoint(self, store: LocalRecordStore) -> str:
        return f"/api/sync/{store.record_type.name}"

    async def push(self, store: LocalRecordStore) -> SyncResult:
        """Push pending local records of one type.

        Records the server accepts are marked synced; records it reports
        as conflicts are marked conflict and wait for the server copy to
        arrive on pull.

        Returns:
            SyncResult with push statistics and reported conflicts.
        """
        rt = store.record_type
        pending = [
            record
            for record in store.get_unsynced()
            if record.owner_user_id in (None, self.user_id)
        ]
        if not pending:
            return SyncResult(status=SyncOutcome.SUCCESS, timestamp=self._clock())

        pushed = 0
        conflicts: list[dict[str, Any]] = []

        for batch in _chunks(pending, self.batch_size):
            payload = {
                "action": "push",
                "userId": self.user_id,
                "deviceId": self.device_id,
                "records": [
                    rt.to_wire(replace(record, owner_user_id=self.user_id))
                    for record in batch
                ],
            }

            data, failure = await self._request_with_retry(self._endpoint(store), payload)
            if failure:
                return SyncResult(
                    status=failure.outcome,
                    records_pushed=pushed,
                    conflicts=conflicts,
                    error=failure.message,
                )

            batch_conflicts = data.get("conflicts") or []
            if not isinstance(batch_conflicts, list) or not all(
                isinstance(c, dict) for c in batch_conflicts
            ):
                return SyncResult(
                    status=SyncOutcome.FAILED,
                    records_pushed=pushed,
                    conflicts=conflicts,
                    error="Invalid response: conflicts must be a list of objects",
                )

            conflict_ids = {c.get("id") for c in batch_conflicts}
            for record in batch:
                if record.id in conflict_ids:
                    store.mark_conflict(record.id, record.updated_at)
                elif store.mark_synced(record.id, record.updated_at):
                    pushed += 1
            conflicts.extend(batch_conflicts)

        if conflicts:
            logger.info(f"Push {rt.name}: {len(conflicts)} conflicts, server copy wins")

        return SyncResult(
            status=SyncOutcome.SUCCESS,
            records_pushed=pushed,
            conflicts=conflicts,
            timestamp=self._clock(),
        )

    async def pull(
        self, store: LocalRecordStore, since: datetime | None = None
    ) -> SyncResult:
        """Pull records changed on the server and import them.

        Args:
            store: Store to import into.
            since: Optional earlier cut-off; the pull uses whichever of
                this and the remembered last sync time is earlier.

        Returns:
            SyncResult with pull statistics.
        """
        rt = store.record_type
        last_sync_time = store.get_last_sync_time()
        if last_sync_time is not None and since is not None:
            last_sync_time = min(last_sync_time, since)

        # Remembered from the client clock, never from the server, so
        # clock skew leads to re-pulling rather than missed updates
        started_at = self._clock()

        payload: dict[str, Any] = {
            "action": "pull",
            "userId": self.user_id,
            "deviceId": self.device_id,
        }
        if last_sync_time is not None:
            payload["lastSyncTime"] = format_timestamp(last_sync_time)

        data, failure = await self._request_with_retry(self._endpoint(store), payload)
        if failure:
            return SyncResult(status=failure.outcome, error=failure.message)

        raw_records = data.get("records") or []
        if not isinstance(raw_records, list):
            return SyncResult(
                status=SyncOutcome.FAILED,
                error="Invalid response: records must be a list",
            )

        try:
            records = [rt.parse_record(r) for r in raw_records]
        except ValueError as e:
            logger.error(f"Server sent malformed {rt.name} record: {e}")
            return SyncResult(status=SyncOutcome.FAILED, error=str(e))

        logger.debug(f"Pulled {len(records)} {rt.name} records, server time {data.get('syncTime')}")

        imported = store.import_records(records)
        if imported.failed:
            return SyncResult(
                status=SyncOutcome.FAILED,
                records_pulled=imported.applied,
                kept_local=imported.kept_local,
                error=f"Local storage failed for {imported.failed} {rt.name} records",
            )

        store.set_last_sync_time(started_at)

        return SyncResult(
            status=SyncOutcome.SUCCESS,
            records_pulled=imported.applied,
            kept_local=imported.kept_local,
            timestamp=started_at,
        )

    async def full_sync(self) -> SyncResult:
        """Run one sync cycle: push then pull, for every record type.

        Returns:
            Combined SyncResult; SKIPPED if a cycle is already running.
        """
        if self._phase != SyncPhase.IDLE:
            logger.debug("Sync already in flight, skipping")
            return SyncResult(status=SyncOutcome.SKIPPED)

        self._phase = SyncPhase.PUSHING
        total = SyncResult(status=SyncOutcome.SUCCESS)

        try:
            for name, store in self.stores.items():
                self._phase = SyncPhase.PUSHING
                push_result = await self.push(store)
                total.records_pushed += push_result.records_pushed
                total.conflicts.extend(push_result.conflicts)
                if push_result.status != SyncOutcome.SUCCESS:
                    return self._fail(total, push_result, name)

                # Re-pull far enough back to fetch the winning server copies
                since = _conflict_cutoff(push_result.conflicts)

                self._phase = SyncPhase.PULLING
                pull_result = await self.pull(store, since=since)
                total.records_pulled += pull_result.records_pulled
                total.kept_local += pull_result.kept_local
                if pull_result.status != SyncOutcome.SUCCESS:
                    return self._fail(total, pull_result, name)
        finally:
            self._phase = SyncPhase.IDLE

        self._last_sync = self._clock()
        self._last_error = None
        self._consecutive_failures = 0
        total.timestamp = self._last_sync
        return total

    def _fail(self, total: SyncResult, failed: SyncResult, name: str) -> SyncResult:
        self._consecutive_failures += 1
        self._last_error = f"{name}: {failed.error}"
        logger.warning(f"Sync {failed.status.value} for {name}: {failed.error}")
        total.status = failed.status
        total.error = self._last_error
        return total

    async def sync_loop(
        self,
        interval_seconds: int = 60,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.full_sync()
                logger.info(
                    f"Sync: {result.status.value}, "
                    f"pushed={result.records_pushed}, "
                    f"pulled={result.records_pulled}, "
                    f"conflicts={len(result.conflicts)}"
                )
            except Exception as e:
                self._consecutive_failures += 1
                self._last_error = str(e)
                logger.exception(f"Sync loop error: {e}")

            # Adaptive interval: back off if consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,  # Max 1 hour
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    @property
    def is_syncing(self) -> bool:
        return self._phase != SyncPhase.IDLE

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status for display.

        Returns:
            Dictionary with sync state and pending counts per record type.
        """
        return {
            "remote_url": self.remote_url,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "last_sync": format_timestamp(self._last_sync) if self._last_sync else None,
            "syncing": self.is_syncing,
            "phase": self._phase.value,
            "last_error": self._last_error,
            "consecutive_failures": self._consecutive_failures,
            "pending_records": {
                name: len(store.get_unsynced()) for name, store in self.stores.items()
            },
        }
