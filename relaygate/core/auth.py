"""Shared bearer token check for HTTP and WebSocket entry points."""

from __future__ import annotations

import hmac

from relaygate.config.settings import settings


def extract_bearer(authorization: str | None) -> str:
    value = (authorization or "").strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return ""


def verify_bearer(authorization: str | None, query_token: str | None = None) -> bool:
    """True when auth is disabled or the header (or query token) matches RELAY_API_KEY."""
    expected = settings.api_key
    if not expected:
        return True
    presented = extract_bearer(authorization) or (query_token or "").strip()
    if not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
