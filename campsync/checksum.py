"""Content fingerprint used to detect no-op pushes."""

import hashlib
import json
from typing import Any

CHECKSUM_LENGTH = 16


def checksum(payload_fields: dict[str, Any]) -> str:
    """Compute a deterministic digest over payload fields.

    Keys are sorted before hashing, so two payloads with the same fields
    and values produce the same checksum regardless of insertion order,
    device, or time. Callers must pass payload fields only; timestamps
    and sync metadata never belong here.

    Args:
        payload_fields: Mapping of wire field name to JSON-compatible value.

    Returns:
        First 16 hex characters of the SHA-256 of the canonical JSON.
    """
    canonical = json.dumps(
        payload_fields,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return digest[:CHECKSUM_LENGTH]
