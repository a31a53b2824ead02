# src/api/facade.py - v2
"""Public API facade: one object wiring the consistency layer together.

Usage:
    from annoreview.api.facade import ReviewClient

    async with ReviewClient(session=TokenSession(token)) as client:
        principles = await client.load_principles()
        editor = client.opinion_editor("s1")
        editor.write("Looks right")
        await editor.flush()
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from annoreview.cache.keys import (
    principle_key,
    principles_key,
    sample_key,
    samples_key,
    samples_prefix,
)
from annoreview.cache.memory_store import MemoryCacheStore
from annoreview.cache.models import ABSENT, CachePolicy
from annoreview.client.executor import RequestExecutor
from annoreview.client.services import AuthService, PrincipleService, SampleService
from annoreview.config.settings import Settings
from annoreview.core.models import Principle, PrincipleUpdate, Sample, SamplePartition
from annoreview.mutation import operations
from annoreview.mutation.coalescer import Coalescer, CoalescerRegistry
from annoreview.mutation.engine import Mutation, MutationEngine
from annoreview.query.controller import QueryController, QueryObserver, QueryOptions, QueryResult
from annoreview.session.base_session import BaseSession
from annoreview.session.token_session import TokenSession

logger = logging.getLogger(__name__)

PRINCIPLE_FIELDS = ("label_name", "definition", "inclusion_criteria", "exclusion_criteria")


def policies_from_settings(settings: Settings) -> dict[str, CachePolicy]:
    return {
        "principles": CachePolicy(
            stale_after_s=settings.principles_stale_after_s,
            retention_s=settings.principles_retention_s,
        ),
        "samples": CachePolicy(
            stale_after_s=settings.samples_stale_after_s,
            retention_s=settings.samples_retention_s,
        ),
    }


class ReviewClient:
    """Read and write surface for principles and samples.

    Args:
        settings: Global settings. Loaded from .env if None.
        session: Token source and sign-out target. Defaults to an empty
            in-memory session (call ``login`` or ``set_token``).
        transport: Optional httpx transport, mainly for tests.
        executor: Pre-built executor; overrides ``transport``.
        clock: Monotonic clock used for cache freshness.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session: BaseSession | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        executor: RequestExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or Settings()
        self.session = session or TokenSession()
        self.executor = executor or RequestExecutor.from_settings(
            self.settings, session=self.session, transport=transport,
        )
        self._unregister_sign_out = self.executor.on_unauthorized(self.session.sign_out)

        self.store = MemoryCacheStore(
            policies=policies_from_settings(self.settings), clock=clock,
        )
        self.queries = QueryController(self.store, current_token=self.session.current_token)
        self.engine = MutationEngine(self.store)
        self.coalescers = CoalescerRegistry(self.settings.opinion_coalesce_delay_s)

        self.principle_service = PrincipleService(self.executor)
        self.sample_service = SampleService(self.executor)
        self.auth_service = AuthService(self.executor)

        self.update_principle_mutation = Mutation(
            self.engine, operations.update_principle(self.principle_service),
        )
        self.delete_principle_mutation = Mutation(
            self.engine, operations.delete_principle(self.principle_service),
        )
        self.update_opinion_mutation = Mutation(
            self.engine, operations.update_opinion(self.sample_service),
        )
        self.toggle_revision_mutation = Mutation(
            self.engine, operations.toggle_revision(self.sample_service),
        )
        self.reassign_sample_mutation = Mutation(
            self.engine, operations.reassign_sample(self.sample_service),
        )

    # --- Session ---

    async def login(self, username: str, password: str) -> None:
        """Exchange credentials for a token and store it on the session."""
        token = await self.auth_service.login(username, password)
        if not isinstance(self.session, TokenSession):
            raise TypeError("login() needs a TokenSession to store the token")
        self.session.set_token(token.access_token)

    # --- Reads ---

    def principles(self, options: QueryOptions | None = None) -> QueryResult:
        return self.queries.use_entry(
            principles_key(), self.principle_service.get_all, options or QueryOptions(),
        )

    async def load_principles(self, force: bool = False) -> list[Principle]:
        return await self.queries.fetch(
            principles_key(), self.principle_service.get_all, force=force,
        )

    def principle(self, principle_id: int) -> QueryResult:
        return self.queries.use_entry(
            principle_key(principle_id),
            lambda: self.principle_service.get_by_id(principle_id),
            QueryOptions(enabled=principle_id > 0),
        )

    async def load_principle(self, principle_id: int) -> Principle:
        return await self.queries.fetch(
            principle_key(principle_id),
            lambda: self.principle_service.get_by_id(principle_id),
        )

    def samples(self, principle_id: int | None, show_revised: bool = True) -> QueryResult:
        """Samples partition; disabled until a principle is selected."""
        if not principle_id or principle_id <= 0:
            return QueryResult.disabled()
        return self.queries.use_entry(
            samples_key(principle_id, show_revised),
            self._samples_fetcher(principle_id, show_revised),
        )

    async def load_samples(
        self, principle_id: int, show_revised: bool = True, force: bool = False
    ) -> SamplePartition:
        return await self.queries.fetch(
            samples_key(principle_id, show_revised),
            self._samples_fetcher(principle_id, show_revised),
            force=force,
        )

    def observe_samples(
        self, principle_id: int | None, show_revised: bool = True
    ) -> QueryObserver:
        """Live samples view that keeps showing old rows while a new key loads.

        Re-target with ``retarget_samples`` when the selection or filter
        changes; dispose when the view goes away.
        """
        return self.queries.observe(*self._samples_target(principle_id, show_revised))

    def retarget_samples(
        self, observer: QueryObserver, principle_id: int | None, show_revised: bool = True
    ) -> QueryResult:
        return observer.set_key(*self._samples_target(principle_id, show_revised))

    def sample(self, sample_id: str) -> QueryResult:
        return self.queries.use_entry(
            sample_key(sample_id),
            lambda: self.sample_service.get_by_id(sample_id),
            QueryOptions(enabled=bool(sample_id)),
        )

    async def load_sample(self, sample_id: str) -> Sample:
        return await self.queries.fetch(
            sample_key(sample_id), lambda: self.sample_service.get_by_id(sample_id),
        )

    # --- Writes ---

    async def update_principle(self, principle_id: int, **fields: str) -> Principle:
        unknown = set(fields) - set(PRINCIPLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown principle field(s): {sorted(unknown)}")
        return await self.update_principle_mutation.run(
            operations.UpdatePrincipleArgs(principle_id, PrincipleUpdate(**fields))
        )

    async def rename_principle(self, principle_id: int, label_name: str) -> Principle:
        return await self.update_principle(principle_id, label_name=label_name)

    async def delete_principle(self, principle_id: int) -> None:
        await self.delete_principle_mutation.run(
            operations.DeletePrincipleArgs(principle_id)
        )

    async def update_opinion(self, sample_id: str, opinion: str) -> Sample:
        return await self.update_opinion_mutation.run(
            operations.UpdateOpinionArgs(sample_id, opinion)
        )

    async def toggle_revision(
        self, sample_id: str, is_revised: bool, reviser_name: str | None = None
    ) -> Sample:
        return await self.toggle_revision_mutation.run(
            operations.ToggleRevisionArgs(
                sample_id, is_revised, self._reviser(reviser_name),
            )
        )

    async def reassign_sample(
        self, sample_id: str, target_principle_id: int, reviser_name: str | None = None
    ) -> Sample | None:
        """Move a sample; dropping it on its current principle is a no-op."""
        owner = operations.find_sample_owner(self.store, sample_id)
        if owner == target_principle_id:
            logger.debug("Sample %s already belongs to %d", sample_id, owner)
            return None
        return await self.reassign_sample_mutation.run(
            operations.ReassignSampleArgs(
                sample_id, target_principle_id, self._reviser(reviser_name),
            )
        )

    # --- Coalesced editors ---

    def opinion_editor(self, sample_id: str, delay_s: float | None = None) -> Coalescer[str]:
        """Debounced editor for one sample's expert opinion."""
        return self.coalescers.coalesce(
            ("opinion", sample_id),
            lambda value: self.update_opinion(sample_id, value),
            delay_s,
            committed=self._cached_opinion(sample_id),
        )

    def principle_field_editor(
        self, principle_id: int, field: str, delay_s: float | None = None
    ) -> Coalescer[str]:
        """Debounced editor for one principle text field."""
        if field not in PRINCIPLE_FIELDS:
            raise ValueError(f"Unknown principle field: {field!r}")
        return self.coalescers.coalesce(
            ("principle", principle_id, field),
            lambda value: self.update_principle(principle_id, **{field: value}),
            delay_s,
            committed=self._cached_principle_field(principle_id, field),
        )

    # --- Lifecycle ---

    async def aclose(self) -> None:
        """Flush pending edits, stop reads and close the HTTP client."""
        await self.coalescers.dispose_all()
        self.queries.close()
        self._unregister_sign_out()
        await self.executor.aclose()

    async def __aenter__(self) -> ReviewClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # --- Internals ---

    def _samples_fetcher(self, principle_id: int, show_revised: bool):
        return lambda: self.sample_service.get_by_principle(principle_id, show_revised)

    def _samples_target(
        self, principle_id: int | None, show_revised: bool
    ) -> tuple[Any, Any, QueryOptions]:
        if not principle_id or principle_id <= 0:
            return None, None, QueryOptions(enabled=False, keep_previous_on_key_change=True)
        return (
            samples_key(principle_id, show_revised),
            self._samples_fetcher(principle_id, show_revised),
            QueryOptions(keep_previous_on_key_change=True),
        )

    def _reviser(self, reviser_name: str | None) -> str:
        name = reviser_name or self.settings.reviser_name
        if not name:
            raise ValueError("reviser_name is required (or set ANNOREVIEW_REVISER_NAME)")
        return name

    def _cached_opinion(self, sample_id: str) -> Any:
        owner = operations.find_sample_owner(self.store, sample_id)
        if owner is not None:
            for key in self.store.keys(samples_prefix(owner)):
                partition = self.store.get_data(key)
                found = partition.find(sample_id) if isinstance(partition, SamplePartition) else None
                if found is not None:
                    return found.expert_opinion
        detail = self.store.get_data(sample_key(sample_id))
        return detail.expert_opinion if isinstance(detail, Sample) else ABSENT

    def _cached_principle_field(self, principle_id: int, field: str) -> Any:
        for principle in self.store.get_data(principles_key(), []):
            if principle.id == principle_id:
                return getattr(principle, field)
        return ABSENT
