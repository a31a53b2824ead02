# src/session/token_session.py - v1
"""In-memory session holding a single bearer token."""

from __future__ import annotations

import logging
from typing import Callable

from annoreview.session.base_session import BaseSession
from annoreview.session.tokens import is_token_expired, validate_token_format

logger = logging.getLogger(__name__)


class TokenSession(BaseSession):
    """Session that keeps the token in process memory only.

    ``check_expiry`` makes ``current_token`` sign out as soon as the token's
    ``exp`` claim has passed instead of waiting for the server to reject it.
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        check_expiry: bool = False,
        on_sign_out: Callable[[], None] | None = None,
    ) -> None:
        self._token = token
        self._check_expiry = check_expiry
        self._on_sign_out = on_sign_out
        self.sign_out_count = 0

    def set_token(self, token: str) -> None:
        if not validate_token_format(token):
            logger.warning("Token does not look like a JWT; using it anyway")
        self._token = token

    def current_token(self) -> str | None:
        if self._token is None:
            return None
        if self._check_expiry and is_token_expired(self._token):
            logger.info("Stored token is expired, signing out")
            self.sign_out()
            return None
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return self.current_token() is not None

    def sign_out(self) -> None:
        self._token = None
        self.sign_out_count += 1
        if self._on_sign_out is not None:
            self._on_sign_out()
