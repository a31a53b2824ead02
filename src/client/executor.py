# src/client/executor.py - v1
"""Request executor: the only component that talks HTTP.

Injects the bearer token, classifies every failure into an ``ApiError``,
retries idempotent reads and never retries writes.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from annoreview.client.errors import (
    ApiError,
    ErrorKind,
    classify_response,
    classify_transport_error,
)
from annoreview.client.retry import DEFAULT_READ_RETRY, RetryConfig, with_retry
from annoreview.session.base_session import BaseSession

logger = logging.getLogger(__name__)

_READ_METHODS = frozenset({"GET", "HEAD"})


class RequestExecutor:
    """Async JSON client for the review backend."""

    def __init__(
        self,
        base_url: str,
        session: BaseSession | None = None,
        timeout_s: float = 10.0,
        read_retry: RetryConfig = DEFAULT_READ_RETRY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session = session
        self._read_retry = read_retry
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_s,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._unauthorized_callbacks: list[Callable[[], None]] = []
        self._signed_out_token: str | None = None
        self._signed_out = False

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        session: BaseSession | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> RequestExecutor:
        return cls(
            base_url=settings.api_base_url,
            session=session,
            timeout_s=settings.request_timeout_s,
            read_retry=RetryConfig(
                max_retries=settings.read_retry_attempts,
                delay_s=settings.read_retry_delay_s,
            ),
            transport=transport,
        )

    # --- Session hooks ---

    def on_unauthorized(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a sign-out callback; returns an unregister function."""
        self._unauthorized_callbacks.append(callback)

        def _unregister() -> None:
            if callback in self._unauthorized_callbacks:
                self._unauthorized_callbacks.remove(callback)

        return _unregister

    def current_token(self) -> str | None:
        return self._session.current_token() if self._session else None

    # --- Requests ---

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Any = None, *, auth: bool = True) -> Any:
        return await self.request("POST", path, body=body, auth=auth)

    async def patch(self, path: str, body: Any = None) -> Any:
        return await self.request("PATCH", path, body=body)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: Any = None,
        auth: bool = True,
    ) -> Any:
        """Send one logical request and return the decoded JSON body.

        Reads go through the retry policy; writes are attempted once.

        Raises:
            ApiError: Classified failure.
        """
        method = method.upper()
        if method in _READ_METHODS:
            return await with_retry(
                self._send, method, path, params, body, auth,
                config=self._read_retry, label=f"{method} {path}",
            )
        return await self._send(method, path, params, body, auth)

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        body: Any,
        auth: bool,
    ) -> Any:
        is_write = method not in _READ_METHODS
        headers: dict[str, str] = {}
        token = self.current_token() if auth else None
        if token:
            headers["Authorization"] = f"Bearer {token}"

        logger.debug("%s %s params=%s", method, path, params)
        try:
            response = await self._client.request(
                method, path, params=params, json=body, headers=headers,
            )
        except httpx.HTTPError as e:
            error = classify_transport_error(
                e, method=method, path=path, is_write=is_write,
            )
            logger.warning("%s %s failed: %s", method, path, error.kind.value)
            raise error from e

        if response.is_error:
            error = classify_response(response, is_write=is_write)
            logger.warning(
                "%s %s -> %d (%s): %s",
                method, path, response.status_code, error.kind.value, error.message,
            )
            if error.kind is ErrorKind.UNAUTHORIZED and auth:
                self._signal_unauthorized(token)
            raise error

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(
                ErrorKind.UNKNOWN,
                "Malformed JSON in response",
                status_code=response.status_code,
                method=method,
                path=path,
                is_write=is_write,
            ) from e

    def _signal_unauthorized(self, token: str | None) -> None:
        """Fire the sign-out callbacks once per rejected token."""
        # A tokenless request after sign-out belongs to the same burst
        if self._signed_out and token in (self._signed_out_token, None):
            return
        self._signed_out = True
        self._signed_out_token = token
        logger.info("Server rejected credentials, requesting sign-out")
        for callback in list(self._unauthorized_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Unauthorized callback failed")

    # --- Lifecycle ---

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RequestExecutor:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
