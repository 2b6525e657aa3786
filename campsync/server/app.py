"""FastAPI application exposing one sync endpoint per record type."""

import logging
from datetime import datetime
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..config import Config
from ..records import RECORD_TYPES, RecordType, RecordValidationError
from ..timeutil import format_timestamp, parse_timestamp, utc_now
from .backend import ServerRecordStore
from .models import SyncRequest
from .protocol import SyncProtocol

logger = logging.getLogger(__name__)


def _error(status_code: int, **body: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body)


def _describe(error: ValidationError) -> str:
    """Flatten a pydantic error into one message."""
    missing = [
        str(err["loc"][0]) for err in error.errors()
        if err["type"] == "missing" and err["loc"]
    ]
    if missing:
        return f"{' and '.join(missing)} {'is' if len(missing) == 1 else 'are'} required"

    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
        for err in error.errors()
    )


def create_app(
    config: Config,
    store: ServerRecordStore | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """Create the sync server application.

    Args:
        config: Application configuration.
        store: Connected backing store, or None if not configured (every
            sync request is then answered with 503).
        clock: Source of the current time (UTC).

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="campsync",
        description="Offline-first sync server for journal entries, projects and todos",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["POST", "GET", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # Store references for route handlers
    app.state.config = config
    app.state.store = store
    app.state.protocols = (
        {name: SyncProtocol(rt, store, clock) for name, rt in RECORD_TYPES.items()}
        if store is not None
        else {}
    )

    def handle(protocol: SyncProtocol, req: SyncRequest) -> JSONResponse | dict[str, Any]:
        rt: RecordType = protocol.record_type

        if req.action == "push":
            if req.records is None:
                return _error(400, error="records array is required for push")
            if len(req.records) > config.server.max_batch_size:
                return _error(
                    400,
                    error=(
                        f"Too many records in one push: {len(req.records)} "
                        f"(max {config.server.max_batch_size})"
                    ),
                )
            records = [rt.parse_record(r) for r in req.records]
            return protocol.push(req.userId, req.deviceId, records).to_response()

        if req.action == "pull":
            last_sync_time = None
            if req.lastSyncTime:
                try:
                    last_sync_time = parse_timestamp(req.lastSyncTime)
                except (ValueError, OverflowError) as e:
                    return _error(400, error=f"Invalid lastSyncTime: {e}")
            return protocol.pull(req.userId, last_sync_time).to_response()

        # delete
        if not req.recordId:
            return _error(400, error="recordId is required for delete")
        return protocol.delete(req.userId, req.deviceId, req.recordId).to_response()

    # ==================== API Routes (JSON) ====================

    @app.post("/api/sync/{record_type}")
    async def api_sync(record_type: str, request: Request):
        """Push, pull or delete records of one type."""
        if record_type not in RECORD_TYPES:
            return _error(
                404,
                error=f"Unknown record type: {record_type}",
            )

        if store is None:
            return _error(
                503,
                error="Database not configured",
                message="Set server.db_path in the config file or CAMPSYNC_SERVER_DB_PATH",
            )

        try:
            body = await request.json()
        except ValueError:
            return _error(400, error="Request body must be a JSON object")

        try:
            req = SyncRequest.model_validate(body)
        except ValidationError as e:
            return _error(400, error=_describe(e))

        try:
            return handle(app.state.protocols[record_type], req)
        except RecordValidationError as e:
            return _error(400, error=str(e))
        except Exception as e:
            logger.exception(f"Sync error on {record_type} {req.action}")
            return _error(500, error="Sync failed", details=str(e))

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK; "database" tells whether sync can work.
        """
        return {
            "status": "ok" if store is not None else "degraded",
            "timestamp": format_timestamp(clock()),
            "database": store is not None,
            "record_types": list(RECORD_TYPES),
        }

    return app
