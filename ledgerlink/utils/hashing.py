"""Deterministic content hashing for ledger memos."""
from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``value``.

    Key order does not matter, so the same logical content always yields the
    same memo regardless of how it was built.
    """
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


__all__ = ["canonical_json", "content_hash"]
