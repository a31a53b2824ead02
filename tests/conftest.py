# tests/conftest.py - v2
"""Shared test fixtures for all unit and integration tests.

Provides sample principles and samples, a controllable clock, a fresh cache
store and an in-process fake backend served through httpx.MockTransport.
No network access: all I/O goes through the fake.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio

from annoreview.api.facade import ReviewClient
from annoreview.cache.memory_store import MemoryCacheStore
from annoreview.config.settings import Settings
from annoreview.core.models import Principle, Sample, SamplePartition, SampleStats
from annoreview.session.token_session import TokenSession


# === HELPERS ===


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_sample(sample_id: str, principle_id: int, **overrides: Any) -> Sample:
    fields: dict[str, Any] = {
        "id": sample_id,
        "principle_id": principle_id,
        "preceding_text": "Before the span.",
        "target_text": f"Target text of {sample_id}.",
        "following_text": "After the span.",
        "scores": [0.8, 0.6, 0.9],
        "llm_justification": "Matches the definition.",
        "llm_evidence_quote": "the span",
        "expert_opinion": "",
    }
    fields.update(overrides)
    return Sample(**fields)


def make_partition(samples: list[Sample], total: int | None = None, revised: int | None = None) -> SamplePartition:
    total = len(samples) if total is None else total
    revised = sum(s.is_revised for s in samples) if revised is None else revised
    percentage = round(revised / total * 100, 1) if total else 0.0
    return SamplePartition(
        samples=samples,
        stats=SampleStats(total=total, revised_count=revised, percentage=percentage),
    )


class FakeBackend:
    """In-memory review backend speaking the REST contract.

    ``fail(method, path_regex, status)`` makes the next matching request
    fail with ``status``; ``calls`` records (method, path, query) tuples.
    """

    def __init__(self) -> None:
        self.principles: dict[int, Principle] = {}
        self.samples: dict[str, Sample] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.token = "header.payload.signature"
        self._failures: list[tuple[str, re.Pattern[str], int, dict[str, str]]] = []

    # --- Setup ---

    def add_principle(self, principle_id: int, label_name: str, **fields: Any) -> Principle:
        principle = Principle(id=principle_id, label_name=label_name, **fields)
        self.principles[principle_id] = principle
        return principle

    def add_sample(self, sample_id: str, principle_id: int, **fields: Any) -> Sample:
        sample = make_sample(sample_id, principle_id, **fields)
        self.samples[sample_id] = sample
        return sample

    def fail(
        self, method: str, path_regex: str, status: int, headers: dict[str, str] | None = None
    ) -> None:
        self._failures.append((method, re.compile(path_regex), status, headers or {}))

    def count(self, method: str, path: str) -> int:
        return sum(1 for m, p, _ in self.calls if m == method and p == path)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # --- Handler ---

    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path.removeprefix("/api/v1")
        self.calls.append((method, path, request.url.query.decode()))

        for i, (m, pattern, status, headers) in enumerate(self._failures):
            if m == method and pattern.fullmatch(path):
                del self._failures[i]
                return httpx.Response(
                    status, json={"error": {"message": f"injected {status}"}}, headers=headers,
                )

        if path != "/login/access-token":
            if request.headers.get("Authorization") != f"Bearer {self.token}":
                return httpx.Response(401, json={"detail": "Not authenticated"})

        body = json.loads(request.content) if request.content else {}
        return self._route(method, path, request, body)

    def _route(self, method: str, path: str, request: httpx.Request, body: dict) -> httpx.Response:
        if method == "POST" and path == "/login/access-token":
            if body.get("password") != "secret":
                return httpx.Response(401, json={"detail": "Incorrect username or password"})
            return httpx.Response(200, json={"access_token": self.token, "token_type": "bearer"})

        if method == "GET" and path == "/principles":
            return httpx.Response(200, json={
                "principles": [p.model_dump() for p in self.principles.values()],
            })

        match = re.fullmatch(r"/principles/(\d+)", path)
        if match:
            pid = int(match.group(1))
            if pid not in self.principles:
                return httpx.Response(404, json={"error": {"message": "Principle not found"}})
            if method == "GET":
                return httpx.Response(200, json={"principle": self.principles[pid].model_dump()})
            if method == "PATCH":
                self.principles[pid] = self.principles[pid].model_copy(update=body)
                return httpx.Response(200, json={"principle": self.principles[pid].model_dump()})
            if method == "DELETE":
                del self.principles[pid]
                return httpx.Response(204)

        match = re.fullmatch(r"/principles/(\d+)/samples", path)
        if match and method == "GET":
            pid = int(match.group(1))
            show_revised = request.url.params.get("show_revised", "true") == "true"
            owned = [s for s in self.samples.values() if s.principle_id == pid]
            visible = owned if show_revised else [s for s in owned if not s.is_revised]
            revised = sum(s.is_revised for s in owned)
            return httpx.Response(200, json={
                "samples": [s.model_dump(mode="json") for s in visible],
                "stats": {
                    "total": len(owned),
                    "revised": revised,
                    "percentage": round(revised / len(owned) * 100, 1) if owned else 0,
                },
            })

        match = re.fullmatch(r"/samples/([^/]+)(?:/(opinion|revision|reassign))?", path)
        if match:
            sid, action = match.group(1), match.group(2)
            if sid not in self.samples:
                return httpx.Response(404, json={"error": {"message": "Sample not found"}})
            sample = self.samples[sid]
            now = datetime(2026, 1, 1, tzinfo=timezone.utc)
            if method == "GET" and action is None:
                pass
            elif method == "PATCH" and action == "opinion":
                sample = sample.model_copy(update={"expert_opinion": body["expert_opinion"]})
            elif method == "PATCH" and action == "revision":
                sample = sample.model_copy(update={
                    "is_revised": body["is_revised"],
                    "reviser_name": body["reviser_name"] if body["is_revised"] else None,
                    "revision_timestamp": now if body["is_revised"] else None,
                })
            elif method == "PATCH" and action == "reassign":
                target = body["target_principle_id"]
                if target not in self.principles:
                    return httpx.Response(404, json={"error": {"message": "Principle not found"}})
                sample = sample.model_copy(update={
                    "principle_id": target,
                    "is_revised": True,
                    "reviser_name": body["reviser_name"],
                    "revision_timestamp": now,
                })
            else:
                return httpx.Response(405)
            self.samples[sid] = sample
            return httpx.Response(200, json={"sample": sample.model_dump(mode="json")})

        return httpx.Response(404, json={"detail": "Not Found"})


# === FIXTURES ===


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryCacheStore:
    return MemoryCacheStore(clock=clock)


@pytest.fixture
def principles() -> list[Principle]:
    return [
        Principle(id=1, label_name="Honesty", definition="Tells the truth."),
        Principle(id=7, label_name="Empathy", definition="Acknowledges feelings."),
    ]


@pytest.fixture
def partition() -> SamplePartition:
    """Principle 1 with two samples, one already revised."""
    return make_partition([
        make_sample("s1", 1, expert_opinion="A"),
        make_sample("s2", 1, is_revised=True, reviser_name="ana"),
    ])


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        api_base_url="http://testserver/api/v1",
        read_retry_delay_s=0.0,
        opinion_coalesce_delay_s=0.01,
        reviser_name="tester",
    )


@pytest.fixture
def backend() -> FakeBackend:
    """Two principles: A (id 1) with five samples, B (id 2) with three."""
    fake = FakeBackend()
    fake.add_principle(1, "Honesty", definition="Tells the truth.")
    fake.add_principle(2, "Empathy", definition="Acknowledges feelings.")
    for i in range(1, 6):
        fake.add_sample(f"a{i}", 1, is_revised=(i == 1), expert_opinion="A" if i == 1 else "")
    for i in range(1, 4):
        fake.add_sample(f"b{i}", 2)
    return fake


@pytest_asyncio.fixture
async def client(settings: Settings, backend: FakeBackend, clock: FakeClock):
    review = ReviewClient(
        settings=settings,
        session=TokenSession(backend.token),
        transport=backend.transport,
        clock=clock,
    )
    yield review
    await review.aclose()
