"""Sync server: per-record-type push/pull/delete endpoints.

Provides the generic sync protocol, its storage interface and the
FastAPI application that exposes it over HTTP.
"""

from .app import create_app
from .backend import ServerRecordStore, SQLiteServerStore
from .protocol import SyncProtocol

__all__ = ["SQLiteServerStore", "ServerRecordStore", "SyncProtocol", "create_app"]
