"""Stable per-installation device identity.

The device id labels writes so the server can record the last writer of
each record. It is generated once, persisted in the local database and
never rotated. It is not used for authorization.
"""

import logging
import sqlite3
import uuid

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device_id"

METADATA_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def generate_device_id() -> str:
    """Generate a new random device identifier."""
    return f"device_{uuid.uuid4().hex}"


def get_or_create_device_id(conn: sqlite3.Connection) -> str:
    """Return the persisted device id, creating it on first use.

    INSERT OR IGNORE makes concurrent first calls converge on a single
    stored value.

    Args:
        conn: Connection to the local database.

    Returns:
        The device identifier.
    """
    conn.executescript(METADATA_SCHEMA)
    conn.execute(
        "INSERT OR IGNORE INTO sync_metadata (key, value) VALUES (?, ?)",
        (DEVICE_ID_KEY, generate_device_id()),
    )
    conn.commit()

    row = conn.execute(
        "SELECT value FROM sync_metadata WHERE key = ?", (DEVICE_ID_KEY,)
    ).fetchone()
    device_id = row[0]
    logger.debug(f"Device id: {device_id}")
    return device_id
