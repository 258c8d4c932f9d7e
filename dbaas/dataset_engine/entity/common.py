"""
Shared primitives for dataset entities.

Invariants:
    - Every timestamp is an int of milliseconds since the epoch
    - JSON blobs keep unknown keys in an ``extra`` mapping so they
      round-trip unchanged
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

# Storage sentinel for "not archived". Entities use None instead.
MAX_VERSION_NUM = 2**63 - 1


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class Provider(Enum):
    """Storage providers for item payloads and import files."""

    RDS = "rds"  # inline in the item row
    S3 = "s3"
    ABASE = "abase"
    LOCAL = "local"


def split_known(data: dict[str, Any] | None, known: set[str]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a JSON object into known and unknown keys."""
    data = data or {}
    picked = {k: v for k, v in data.items() if k in known}
    extra = {k: v for k, v in data.items() if k not in known}
    return picked, extra


def with_extra(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    """Merge unknown keys back into a serialized JSON object."""
    if not extra:
        return base
    merged = dict(extra)
    merged.update(base)
    return merged


def drop_empty(data: dict[str, Any]) -> dict[str, Any]:
    """Drop None values, mirroring omitempty JSON encoding."""
    return {k: v for k, v in data.items() if v is not None}
