"""
Session keys: opaque, balance-bearing bearer credentials.

A session key carries no claims. Holding it is the authorization; the
balance lives in the ledger and is found by exact key match.
"""

from __future__ import annotations

import secrets
from typing import Any, Mapping, Optional

SESSION_KEY_PREFIX = "sk_"
SESSION_HEADER = "X-Session-Key"
SESSION_QUERY_PARAM = "session_key"


def generate_session_key() -> str:
    """Return a new random session key: 'sk_' + 64 hex chars."""
    return SESSION_KEY_PREFIX + secrets.token_hex(32)


def new_id() -> str:
    """Opaque URL-safe identifier for ledger rows."""
    return secrets.token_urlsafe(15)


def extract_session_key(headers: Mapping[str, Any], query_params: Mapping[str, Any]) -> Optional[str]:
    """
    Find a session key on a request.

    The X-Session-Key header wins over the session_key query parameter.
    Blank values count as absent.
    """
    value = headers.get(SESSION_HEADER.lower()) or headers.get(SESSION_HEADER)
    if not value:
        value = query_params.get(SESSION_QUERY_PARAM)
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    return value or None
