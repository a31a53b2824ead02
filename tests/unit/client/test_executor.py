# tests/unit/client/test_executor.py - v1
"""Tests for client/executor.py - auth headers, retries and sign-out."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from annoreview.client.errors import ApiError, ErrorKind
from annoreview.client.executor import RequestExecutor
from annoreview.client.retry import RetryConfig
from annoreview.session.token_session import TokenSession

BASE = "http://testserver/api/v1"


class Recorder:
    """MockTransport handler returning queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def _executor(handler, token: str | None = "tok", retries: int = 2) -> RequestExecutor:
    return RequestExecutor(
        BASE,
        session=TokenSession(token),
        read_retry=RetryConfig(max_retries=retries, delay_s=0),
        transport=httpx.MockTransport(handler),
    )


class TestRequests:
    @pytest.mark.asyncio
    async def test_bearer_header_injected(self):
        rec = Recorder(httpx.Response(200, json={"principles": []}))
        async with _executor(rec) as ex:
            assert await ex.get("/principles") == {"principles": []}
        assert rec.requests[0].headers["Authorization"] == "Bearer tok"
        assert rec.requests[0].url.path == "/api/v1/principles"

    @pytest.mark.asyncio
    async def test_no_header_without_token(self):
        rec = Recorder(httpx.Response(200, json={}))
        async with _executor(rec, token=None) as ex:
            await ex.get("/principles")
        assert "Authorization" not in rec.requests[0].headers

    @pytest.mark.asyncio
    async def test_auth_false_skips_header(self):
        rec = Recorder(httpx.Response(200, json={"access_token": "t"}))
        async with _executor(rec) as ex:
            await ex.post("/login/access-token", {"username": "u"}, auth=False)
        assert "Authorization" not in rec.requests[0].headers

    @pytest.mark.asyncio
    async def test_json_body_and_params(self):
        rec = Recorder(httpx.Response(200, json={}))
        async with _executor(rec) as ex:
            await ex.get("/principles/1/samples", params={"show_revised": False})
            await ex.patch("/samples/s1/opinion", {"expert_opinion": "AB"})
        assert rec.requests[0].url.params["show_revised"] == "false"
        assert json.loads(rec.requests[1].content) == {"expert_opinion": "AB"}
        assert rec.requests[1].method == "PATCH"

    @pytest.mark.asyncio
    async def test_no_content_returns_none(self):
        rec = Recorder(httpx.Response(204))
        async with _executor(rec) as ex:
            assert await ex.delete("/principles/1") is None

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        rec = Recorder(httpx.Response(200, content=b"{not json"))
        async with _executor(rec) as ex:
            with pytest.raises(ApiError) as exc_info:
                await ex.get("/principles")
        assert exc_info.value.kind is ErrorKind.UNKNOWN


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_read_retried_on_server_error(self):
        rec = Recorder(httpx.Response(503), httpx.Response(503), httpx.Response(200, json={"ok": 1}))
        async with _executor(rec) as ex:
            assert await ex.get("/principles") == {"ok": 1}
        assert len(rec.requests) == 3

    @pytest.mark.asyncio
    async def test_read_gives_up_after_retries(self):
        rec = Recorder(httpx.Response(500))
        async with _executor(rec, retries=2) as ex:
            with pytest.raises(ApiError) as exc_info:
                await ex.get("/principles")
        assert exc_info.value.kind is ErrorKind.SERVER_ERROR
        assert len(rec.requests) == 3

    @pytest.mark.asyncio
    async def test_read_retried_on_timeout(self):
        rec = Recorder(httpx.ReadTimeout("slow"), httpx.Response(200, json={}))
        async with _executor(rec) as ex:
            await ex.get("/principles")
        assert len(rec.requests) == 2

    @pytest.mark.asyncio
    async def test_read_not_retried_on_not_found(self):
        rec = Recorder(httpx.Response(404, json={"error": {"message": "missing"}}))
        async with _executor(rec) as ex:
            with pytest.raises(ApiError) as exc_info:
                await ex.get("/samples/zz")
        assert exc_info.value.kind is ErrorKind.NOT_FOUND
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    async def test_write_never_retried(self):
        rec = Recorder(httpx.Response(503))
        async with _executor(rec) as ex:
            with pytest.raises(ApiError) as exc_info:
                await ex.patch("/samples/s1/opinion", {"expert_opinion": "x"})
        assert len(rec.requests) == 1
        assert exc_info.value.is_write is True

    @pytest.mark.asyncio
    async def test_write_network_failure_classified(self):
        rec = Recorder(httpx.ConnectError("refused"))
        async with _executor(rec) as ex:
            with pytest.raises(ApiError) as exc_info:
                await ex.patch("/principles/1", {"label_name": "x"})
        assert exc_info.value.kind is ErrorKind.NETWORK_UNREACHABLE
        assert exc_info.value.is_retryable
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self):
        rec = Recorder(httpx.Response(429, json={}, headers={"Retry-After": "3"}))
        async with _executor(rec) as ex:
            with pytest.raises(ApiError) as exc_info:
                await ex.patch("/samples/s1/revision", {})
        assert exc_info.value.kind is ErrorKind.RATE_LIMITED
        assert exc_info.value.retry_after == 3.0


class TestUnauthorized:
    @pytest.mark.asyncio
    async def test_sign_out_once_for_concurrent_rejections(self):
        rec = Recorder(httpx.Response(401, json={"detail": "expired"}))
        session = TokenSession("tok")
        ex = RequestExecutor(
            BASE, session=session, transport=httpx.MockTransport(rec),
            read_retry=RetryConfig(max_retries=0, delay_s=0),
        )
        calls = []
        ex.on_unauthorized(lambda: calls.append("cb"))
        ex.on_unauthorized(session.sign_out)
        results = await asyncio.gather(
            ex.get("/principles"),
            ex.get("/principles/1/samples"),
            ex.get("/samples/s1"),
            return_exceptions=True,
        )
        with pytest.raises(ApiError):
            await ex.get("/principles")
        await ex.aclose()
        assert all(isinstance(r, ApiError) for r in results)
        assert calls == ["cb"]
        assert session.sign_out_count == 1
        assert session.current_token() is None

    @pytest.mark.asyncio
    async def test_new_token_can_sign_out_again(self):
        rec = Recorder(httpx.Response(401, json={"detail": "expired"}))
        session = TokenSession("first")
        ex = RequestExecutor(BASE, session=session, transport=httpx.MockTransport(rec))
        ex.on_unauthorized(session.sign_out)
        with pytest.raises(ApiError):
            await ex.get("/principles")
        session.set_token("second")
        with pytest.raises(ApiError):
            await ex.get("/principles")
        await ex.aclose()
        assert session.sign_out_count == 2

    @pytest.mark.asyncio
    async def test_login_rejection_does_not_sign_out(self):
        rec = Recorder(httpx.Response(401, json={"detail": "Incorrect password"}))
        async with _executor(rec) as ex:
            calls = []
            ex.on_unauthorized(lambda: calls.append(1))
            with pytest.raises(ApiError):
                await ex.post("/login/access-token", {}, auth=False)
        assert calls == []

    @pytest.mark.asyncio
    async def test_failing_callback_is_isolated(self):
        rec = Recorder(httpx.Response(401, json={}))
        async with _executor(rec) as ex:
            calls = []

            def broken():
                raise RuntimeError("boom")

            ex.on_unauthorized(broken)
            ex.on_unauthorized(lambda: calls.append(1))
            with pytest.raises(ApiError) as exc_info:
                await ex.get("/principles")
        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_unregister(self):
        rec = Recorder(httpx.Response(401, json={}))
        async with _executor(rec) as ex:
            calls = []
            unregister = ex.on_unauthorized(lambda: calls.append(1))
            unregister()
            with pytest.raises(ApiError):
                await ex.get("/principles")
        assert calls == []
