"""Client side of the offline-first sync protocol.

Pushes locally pending records to the sync server and pulls changes made
on other devices of the same user back into the local stores.
"""

from .sync_client import SyncClient, SyncOutcome, SyncPhase, SyncResult

__all__ = ["SyncClient", "SyncOutcome", "SyncPhase", "SyncResult"]
