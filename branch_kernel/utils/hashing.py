"""
Deterministic hashing utilities.

Content commit ids are SHA-256 digests of a canonical JSON rendering of the
commit, so the same parent, changes, and author always yield the same id.
"""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted, whitespace is removed, and UUID/datetime/Enum values are
    rendered consistently.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_commit(
    ref: str,
    sequence: int,
    parent_commit: str | None,
    changes: list[dict],
    author_id: UUID,
    message: str,
) -> str:
    """
    Compute the commit id for one content commit.

    Changes are hashed in the order given; callers pass them sorted by path.
    """
    return hash_payload(
        {
            "ref": ref,
            "sequence": sequence,
            "parent": parent_commit or "ROOT",
            "changes": changes,
            "author": author_id,
            "message": message,
        }
    )
