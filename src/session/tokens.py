# src/session/tokens.py - v1
"""Client-side JWT inspection helpers.

These read the payload without verifying the signature. They exist so a
caller can sign out proactively before a request fails; they are never an
authorization check, the server stays the sole authority.
"""

from __future__ import annotations

import base64
import json
import logging
import time

logger = logging.getLogger(__name__)

# Seconds subtracted from exp to absorb clock skew.
CLOCK_SKEW_S = 30


def validate_token_format(token: str | None) -> bool:
    """Whether ``token`` has the header.payload.signature shape."""
    if not token or not isinstance(token, str):
        return False
    parts = token.split(".")
    if len(parts) != 3:
        return False
    return all(parts)


def get_token_expiration(token: str | None) -> int | None:
    """Return the ``exp`` claim (epoch seconds) or None if unreadable."""
    if not validate_token_format(token):
        return None
    payload = token.split(".")[1]  # type: ignore[union-attr]
    padded = payload + "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded))
    except (ValueError, TypeError) as e:
        logger.debug("Failed to parse token payload: %s", e)
        return None
    if not isinstance(claims, dict):
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        return int(exp)
    return None


def is_token_expired(token: str | None, now: float | None = None) -> bool:
    """True if the token is expired, about to expire, or unreadable."""
    exp = get_token_expiration(token)
    if exp is None:
        return True
    current = int(time.time() if now is None else now) + CLOCK_SKEW_S
    return current >= exp
