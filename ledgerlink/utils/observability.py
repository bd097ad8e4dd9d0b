"""Observability helpers (correlation IDs)."""
from __future__ import annotations

import uuid
from typing import Any, Mapping

REQUEST_ID_HEADER = "X-Request-ID"


def ensure_request_id(headers: Mapping[str, str]) -> str:
    return headers.get(REQUEST_ID_HEADER, None) or str(uuid.uuid4())


def request_id_for(request: Any) -> str:
    """Request id for log lines.

    Prefers the id the middleware stamped on ``request.state``; falls back to
    the inbound header and finally 'unknown'.
    """
    state_id = getattr(request.state, "request_id", None)
    if state_id:
        return state_id
    return request.headers.get(REQUEST_ID_HEADER, "unknown")


__all__ = ["ensure_request_id", "request_id_for", "REQUEST_ID_HEADER"]
