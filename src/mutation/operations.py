# src/mutation/operations.py - v2
"""Concrete mutation descriptors for the review backend.

| operation        | optimistic                     | invalidates                 |
|------------------|--------------------------------|-----------------------------|
| update principle | merge fields into principles   | nothing                     |
| update opinion   | merge opinion where cached     | owning principle partitions |
| toggle revision  | none                           | owning principle partitions |
| reassign sample  | none                           | every samples partition     |
| delete principle | none                           | principles, its partitions  |

Revision and reassignment change aggregate stats, which only the server
can compute correctly because they span the unfiltered sample set.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from annoreview.cache.keys import (
    CacheKey,
    is_partition_key,
    key_matches,
    principle_key,
    principles_key,
    sample_key,
    samples_prefix,
)
from annoreview.cache.memory_store import MemoryCacheStore
from annoreview.client.services import PrincipleService, SampleService
from annoreview.core.models import Principle, PrincipleUpdate, Sample, SamplePartition
from annoreview.mutation.engine import MutationDescriptor


# === ARGUMENTS ===


@dataclass(frozen=True)
class UpdatePrincipleArgs:
    principle_id: int
    updates: PrincipleUpdate


@dataclass(frozen=True)
class UpdateOpinionArgs:
    sample_id: str
    opinion: str


@dataclass(frozen=True)
class ToggleRevisionArgs:
    sample_id: str
    is_revised: bool
    reviser_name: str


@dataclass(frozen=True)
class ReassignSampleArgs:
    sample_id: str
    target_principle_id: int
    reviser_name: str


@dataclass(frozen=True)
class DeletePrincipleArgs:
    principle_id: int


# === HELPERS ===


def partitions_holding(store: MemoryCacheStore, sample_id: str) -> list[CacheKey]:
    """Every cached ``("samples", pid, show_revised)`` key listing ``sample_id``."""
    holding: list[CacheKey] = []
    for key in store.keys(samples_prefix()):
        if not is_partition_key(key):
            continue
        partition = store.get_data(key)
        if isinstance(partition, SamplePartition) and partition.find(sample_id):
            holding.append(key)
    return holding


def find_sample_owner(store: MemoryCacheStore, sample_id: str) -> int | None:
    """Principle id of a cached partition holding ``sample_id``.

    After a reassignment the old owner's stale partition may still list the
    sample, so fresh partitions win.
    """
    holding = partitions_holding(store, sample_id)
    for key in holding:
        if not store.get(key).is_stale:
            return key[1]
    return holding[0][1] if holding else None


def _merge_principle(principle_id: int, fields: dict[str, Any]):
    def _update(data: Any) -> Any:
        if isinstance(data, list):
            if not any(p.id == principle_id for p in data):
                return data
            return [
                p.model_copy(update=fields) if p.id == principle_id else p
                for p in data
            ]
        if isinstance(data, Principle) and data.id == principle_id:
            return data.model_copy(update=fields)
        return data

    return _update


def _replace_principle(server: Principle):
    def _update(data: Any) -> Any:
        if isinstance(data, list):
            if not any(p.id == server.id for p in data):
                return data
            return [server if p.id == server.id else p for p in data]
        if isinstance(data, Principle) and data.id == server.id:
            return server
        return data

    return _update


def _merge_sample(sample_id: str, fields: dict[str, Any]):
    def _update(data: Any) -> Any:
        if isinstance(data, SamplePartition):
            if data.find(sample_id) is None:
                return data
            return data.with_sample(sample_id, **fields)
        if isinstance(data, Sample) and data.id == sample_id:
            return data.model_copy(update=fields)
        return data

    return _update


def _replace_sample(server: Sample):
    def _update(data: Any) -> Any:
        if isinstance(data, SamplePartition):
            if data.find(server.id) is None:
                return data
            samples = [server if s.id == server.id else s for s in data.samples]
            return data.model_copy(update={"samples": samples})
        if isinstance(data, Sample) and data.id == server.id:
            return server
        return data

    return _update


def _in(keys: list[CacheKey]):
    wanted = set(keys)
    return lambda key: key in wanted


def _store_sample_detail(store: MemoryCacheStore, sample: Sample) -> None:
    key = sample_key(sample.id)
    if store.get_data(key) is not None:
        store.set(key, sample)


# === DESCRIPTORS ===


def update_principle(
    principles: PrincipleService,
) -> MutationDescriptor[UpdatePrincipleArgs, Principle]:
    """Partial principle update, applied optimistically."""

    def target_keys(store: MemoryCacheStore, args: UpdatePrincipleArgs) -> list[CacheKey]:
        return [principles_key(), principle_key(args.principle_id)]

    def optimistic_apply(store: MemoryCacheStore, args: UpdatePrincipleArgs) -> None:
        store.set_many(
            _in(target_keys(store, args)),
            _merge_principle(args.principle_id, args.updates.changed_fields()),
        )

    def commit(store: MemoryCacheStore, result: Principle, args: UpdatePrincipleArgs) -> None:
        store.set_many(_in(target_keys(store, args)), _replace_principle(result))

    async def execute(args: UpdatePrincipleArgs) -> Principle:
        return await principles.update(args.principle_id, args.updates)

    return MutationDescriptor(
        name="update_principle",
        execute=execute,
        target_keys=target_keys,
        optimistic_apply=optimistic_apply,
        commit=commit,
    )


def update_opinion(
    samples: SampleService,
) -> MutationDescriptor[UpdateOpinionArgs, Sample]:
    """Expert opinion edit; optimistic only when the sample is cached."""

    def target_keys(store: MemoryCacheStore, args: UpdateOpinionArgs) -> list[CacheKey]:
        keys: list[CacheKey] = []
        for owner in dict.fromkeys(k[1] for k in partitions_holding(store, args.sample_id)):
            keys.extend(store.keys(samples_prefix(owner)))
        if store.get_data(sample_key(args.sample_id)) is not None:
            keys.append(sample_key(args.sample_id))
        return keys

    def optimistic_apply(store: MemoryCacheStore, args: UpdateOpinionArgs) -> None:
        store.set_many(
            _in(target_keys(store, args)),
            _merge_sample(args.sample_id, {"expert_opinion": args.opinion}),
        )

    def commit(store: MemoryCacheStore, result: Sample, args: UpdateOpinionArgs) -> None:
        store.set_many(
            lambda key: key == sample_key(result.id)
            or key_matches(key, samples_prefix(result.principle_id)),
            _replace_sample(result),
        )

    def invalidates(args: UpdateOpinionArgs, result: Sample) -> list[CacheKey]:
        return [samples_prefix(result.principle_id)]

    async def execute(args: UpdateOpinionArgs) -> Sample:
        return await samples.update_opinion(args.sample_id, args.opinion)

    return MutationDescriptor(
        name="update_opinion",
        execute=execute,
        target_keys=target_keys,
        optimistic_apply=optimistic_apply,
        commit=commit,
        invalidates=invalidates,
    )


def toggle_revision(
    samples: SampleService,
) -> MutationDescriptor[ToggleRevisionArgs, Sample]:
    """Revision flag; waits for the server, then refreshes the principle."""

    def commit(store: MemoryCacheStore, result: Sample, args: ToggleRevisionArgs) -> None:
        _store_sample_detail(store, result)

    def invalidates(args: ToggleRevisionArgs, result: Sample) -> list[CacheKey]:
        return [samples_prefix(result.principle_id)]

    async def execute(args: ToggleRevisionArgs) -> Sample:
        return await samples.toggle_revision(
            args.sample_id, args.is_revised, args.reviser_name,
        )

    return MutationDescriptor(
        name="toggle_revision",
        execute=execute,
        commit=commit,
        invalidates=invalidates,
    )


def reassign_sample(
    samples: SampleService,
) -> MutationDescriptor[ReassignSampleArgs, Sample]:
    """Move a sample to another principle.

    Source and target stats both change, so the whole samples family is
    invalidated instead of tracking the two principle ids.
    """

    def commit(store: MemoryCacheStore, result: Sample, args: ReassignSampleArgs) -> None:
        _store_sample_detail(store, result)

    def invalidates(args: ReassignSampleArgs, result: Sample) -> list[CacheKey]:
        return [samples_prefix()]

    async def execute(args: ReassignSampleArgs) -> Sample:
        return await samples.reassign(
            args.sample_id, args.target_principle_id, args.reviser_name,
        )

    return MutationDescriptor(
        name="reassign_sample",
        execute=execute,
        commit=commit,
        invalidates=invalidates,
    )


def delete_principle(
    principles: PrincipleService,
) -> MutationDescriptor[DeletePrincipleArgs, None]:
    """Delete a principle; the list and its partitions are refetched."""

    def commit(store: MemoryCacheStore, result: None, args: DeletePrincipleArgs) -> None:
        store.set_many(
            lambda key: key == principles_key(),
            lambda data: [p for p in data if p.id != args.principle_id],
        )

    def invalidates(args: DeletePrincipleArgs, result: None) -> list[CacheKey]:
        return [principles_key(), samples_prefix(args.principle_id)]

    async def execute(args: DeletePrincipleArgs) -> None:
        await principles.delete(args.principle_id)

    return MutationDescriptor(
        name="delete_principle",
        execute=execute,
        commit=commit,
        invalidates=invalidates,
    )
