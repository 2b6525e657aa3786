"""CLI entry point for campsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .records import get_record_type
from .store import LocalRecordStore


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def open_stores(config: Config) -> list[LocalRecordStore]:
    """Open one local store per configured record type."""
    stores = []
    for name in config.client.record_types:
        store = LocalRecordStore(config.client.db_path, get_record_type(name))
        store.connect()
        stores.append(store)
    return stores


def close_stores(stores: list[LocalRecordStore]) -> None:
    for store in stores:
        store.close()


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the sync server."""
    config: Config = args.settings

    import uvicorn

    from .server import SQLiteServerStore, create_app

    store = None
    if config.server.db_path:
        store = SQLiteServerStore(config.server.db_path)
        store.connect()
    else:
        print(
            "Warning: server.db_path not set, sync requests will get 503",
            file=sys.stderr,
        )

    host = args.host or config.server.host
    port = args.port or config.server.port

    print("Starting campsync server")
    print(f"Database: {config.server.db_path or '(not configured)'}")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, store=store)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        if store:
            store.close()

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run a sync cycle (or the sync loop) for the configured user."""
    config: Config = args.settings

    if not config.client.user_id:
        print("Error: client.user_id is not configured", file=sys.stderr)
        return 1
    if not config.client.server_url:
        print("Error: client.server_url is not configured", file=sys.stderr)
        return 1

    from .sync import SyncClient, SyncOutcome

    stores = open_stores(config)
    client = SyncClient(
        stores,
        user_id=config.client.user_id,
        remote_url=config.client.server_url,
        batch_size=config.client.batch_size,
        max_retries=config.client.retry_max_attempts,
        timeout=config.client.timeout_seconds,
    )

    try:
        if args.loop:
            try:
                await client.sync_loop(config.client.sync_interval_seconds)
            except KeyboardInterrupt:
                print("\nShutting down...")
            return 0

        result = await client.full_sync()
    finally:
        close_stores(stores)

    print(f"Sync: {result.status.value}")
    print(f"  Pushed: {result.records_pushed}")
    print(f"  Pulled: {result.records_pulled}")
    if result.kept_local:
        print(f"  Kept local (newer): {result.kept_local}")
    if result.conflicts:
        print(f"  Conflicts (server wins): {len(result.conflicts)}")
    if result.error:
        print(f"  Error: {result.error}", file=sys.stderr)

    return 0 if result.status == SyncOutcome.SUCCESS else 1


def cmd_status(args: argparse.Namespace) -> int:
    """Show local sync state."""
    config: Config = args.settings
    stores = open_stores(config)

    try:
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "user_id": config.client.user_id or None,
            "server_url": config.client.server_url or None,
            "db_path": str(Path(config.client.db_path).expanduser()),
            "device_id": stores[0].device_id if stores else None,
            "record_types": {store.record_type.name: store.get_stats() for store in stores},
        }
    finally:
        close_stores(stores)

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("campsync Status")
    print("===============")
    print(f"User: {status_data['user_id'] or '(not configured)'}")
    print(f"Server: {status_data['server_url'] or '(not configured)'}")
    print(f"Device: {status_data['device_id']}")
    print(f"Database: {status_data['db_path']}")
    print()

    for name, stats in status_data["record_types"].items():
        by_status = stats.get("records_by_status", {})
        print(f"{name}:")
        print(f"  Records: {stats.get('total_records', 0)} ({stats.get('deleted_records', 0)} deleted)")
        print(
            f"  Pending: {by_status.get('pending', 0)}, "
            f"conflict: {by_status.get('conflict', 0)}, "
            f"synced: {by_status.get('synced', 0)}"
        )
        print(f"  Last sync: {stats.get('last_sync_time') or 'never'}")

    return 0


def cmd_device_id(args: argparse.Namespace) -> int:
    """Print the persisted device identifier."""
    config: Config = args.settings
    stores = open_stores(config)
    try:
        print(stores[0].device_id)
    finally:
        close_stores(stores)
    return 0


def cmd_purge(args: argparse.Namespace) -> int:
    """Permanently delete local tombstones already confirmed by the server."""
    config: Config = args.settings
    stores = open_stores(config)
    try:
        for store in stores:
            purged = store.purge_synced_tombstones()
            print(f"{store.record_type.name}: purged {purged}")
    finally:
        close_stores(stores)
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="campsync",
        description="Offline-first sync for journal entries, projects and todos",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the sync server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: server.port from config)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host from config)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Sync local records with the server")
    sync_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep syncing on the configured interval",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show local sync state")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Device id command
    device_parser = subparsers.add_parser("device-id", help="Print this device's id")
    device_parser.set_defaults(func=cmd_device_id)

    # Purge command
    purge_parser = subparsers.add_parser(
        "purge", help="Permanently delete synced tombstones"
    )
    purge_parser.set_defaults(func=cmd_purge)

    args = parser.parse_args()

    config = load_config(args.config)
    args.settings = config
    setup_logging(
        args.verbose,
        args.log_level or (None if args.verbose else config.logging.level),
        args.json_logs or config.logging.json,
    )

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    else:
        return func(args)


if __name__ == "__main__":
    sys.exit(main())
