"""Canonical content checksums for artifact versions.

The checksum covers (version label, data, metadata) serialized as JSON with
sorted keys and fixed separators, so two payloads that are equal as values
hash identically regardless of the order their fields were populated in.
"""

import hashlib
import json
from typing import Any, Dict, Optional


def canonical_json(payload: Any) -> str:
    """Serialize ``payload`` deterministically (key-order independent)."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def compute_checksum(
    version: str,
    data: Dict[str, Any],
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """SHA-256 hex digest over the canonical form of a version payload."""
    body = canonical_json({"version": version, "data": data, "metadata": metadata})
    return hashlib.sha256(body.encode("utf-8")).hexdigest()
