# src/client/services.py - v1
"""Typed endpoint wrappers over the request executor.

One method per REST route. Payloads are validated into core models on the
way in so the cache only ever holds model instances.
"""

from __future__ import annotations

import logging

from annoreview.client.executor import RequestExecutor
from annoreview.core.models import (
    AccessToken,
    Principle,
    PrincipleUpdate,
    Sample,
    SamplePartition,
)

logger = logging.getLogger(__name__)


class PrincipleService:
    """Principle routes."""

    def __init__(self, executor: RequestExecutor) -> None:
        self._executor = executor

    async def get_all(self) -> list[Principle]:
        """GET /principles"""
        data = await self._executor.get("/principles")
        return [Principle.model_validate(p) for p in data["principles"]]

    async def get_by_id(self, principle_id: int) -> Principle:
        """GET /principles/{id}"""
        data = await self._executor.get(f"/principles/{principle_id}")
        return Principle.model_validate(data["principle"])

    async def update(self, principle_id: int, updates: PrincipleUpdate) -> Principle:
        """PATCH /principles/{id} with only the fields being changed."""
        data = await self._executor.patch(
            f"/principles/{principle_id}", updates.changed_fields(),
        )
        return Principle.model_validate(data["principle"])

    async def delete(self, principle_id: int) -> None:
        """DELETE /principles/{id}"""
        await self._executor.delete(f"/principles/{principle_id}")


class SampleService:
    """Sample routes."""

    def __init__(self, executor: RequestExecutor) -> None:
        self._executor = executor

    async def get_by_principle(
        self, principle_id: int, show_revised: bool = True
    ) -> SamplePartition:
        """GET /principles/{id}/samples?show_revised=..."""
        data = await self._executor.get(
            f"/principles/{principle_id}/samples",
            params={"show_revised": show_revised},
        )
        return SamplePartition.model_validate(
            {"samples": data["samples"], "stats": data["stats"]}
        )

    async def get_by_id(self, sample_id: str) -> Sample:
        """GET /samples/{id}"""
        data = await self._executor.get(f"/samples/{sample_id}")
        return Sample.model_validate(data["sample"])

    async def update_opinion(self, sample_id: str, opinion: str) -> Sample:
        """PATCH /samples/{id}/opinion. Does not touch revision state."""
        data = await self._executor.patch(
            f"/samples/{sample_id}/opinion", {"expert_opinion": opinion},
        )
        return Sample.model_validate(data["sample"])

    async def toggle_revision(
        self, sample_id: str, is_revised: bool, reviser_name: str
    ) -> Sample:
        """PATCH /samples/{id}/revision"""
        data = await self._executor.patch(
            f"/samples/{sample_id}/revision",
            {"is_revised": is_revised, "reviser_name": reviser_name},
        )
        return Sample.model_validate(data["sample"])

    async def reassign(
        self, sample_id: str, target_principle_id: int, reviser_name: str
    ) -> Sample:
        """PATCH /samples/{id}/reassign. The server also marks it revised."""
        data = await self._executor.patch(
            f"/samples/{sample_id}/reassign",
            {"target_principle_id": target_principle_id, "reviser_name": reviser_name},
        )
        return Sample.model_validate(data["sample"])


class AuthService:
    """Login route; the only request sent without a bearer token."""

    def __init__(self, executor: RequestExecutor) -> None:
        self._executor = executor

    async def login(self, username: str, password: str) -> AccessToken:
        data = await self._executor.post(
            "/login/access-token",
            {"username": username, "password": password},
            auth=False,
        )
        token = AccessToken.model_validate(data)
        logger.info("Login successful for user %s", username)
        return token
