# tests/unit/mutation/test_engine.py - v1
"""Tests for mutation/engine.py - optimistic apply, commit and rollback."""

from __future__ import annotations

import asyncio

import pytest

from annoreview.cache.keys import principles_key, samples_key, samples_prefix
from annoreview.cache.memory_store import MemoryCacheStore
from annoreview.client.errors import ApiError, ErrorKind
from annoreview.mutation.engine import Mutation, MutationDescriptor, MutationEngine


def _descriptor(store_seen: list, execute, **overrides) -> MutationDescriptor:
    """Descriptor appending ``args`` to every cached list under principles."""

    def target_keys(store, args):
        return [principles_key()]

    def optimistic_apply(store, args):
        store.set_many(lambda k: k == principles_key(), lambda data: data + [args])

    async def wrapped(args):
        store_seen.append(args)
        return await execute(args)

    fields = dict(
        name="append",
        execute=wrapped,
        target_keys=target_keys,
        optimistic_apply=optimistic_apply,
    )
    fields.update(overrides)
    return MutationDescriptor(**fields)


@pytest.fixture
def engine(store: MemoryCacheStore) -> MutationEngine:
    return MutationEngine(store)


class TestMutate:
    @pytest.mark.asyncio
    async def test_optimistic_visible_while_request_runs(self, engine, store):
        store.set(principles_key(), ["a"])
        during = []

        async def execute(args):
            during.append(store.get_data(principles_key()))
            return "server"

        result = await engine.mutate(_descriptor([], execute), "b")
        assert result == "server"
        assert during == [["a", "b"]]

    @pytest.mark.asyncio
    async def test_commit_and_invalidate(self, engine, store):
        store.set(principles_key(), ["a"])
        store.set(samples_key(1, True), "partition")

        async def execute(args):
            return ["a", "b", "from server"]

        def commit(store, result, args):
            store.set(principles_key(), result)

        descriptor = _descriptor(
            [], execute, commit=commit,
            invalidates=lambda args, result: [samples_prefix(1)],
        )
        await engine.mutate(descriptor, "b")
        assert store.get_data(principles_key()) == ["a", "b", "from server"]
        assert store.get(samples_key(1, True)).is_stale
        assert not store.get(principles_key()).is_stale

    @pytest.mark.asyncio
    async def test_failure_restores_snapshot(self, engine, store):
        store.set(principles_key(), ["a"])

        async def execute(args):
            raise ApiError(ErrorKind.VALIDATION, "bad label", is_write=True)

        with pytest.raises(ApiError) as exc_info:
            await engine.mutate(_descriptor([], execute), "b")
        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert store.get_data(principles_key()) == ["a"]

    @pytest.mark.asyncio
    async def test_failure_does_not_invalidate(self, engine, store):
        store.set(principles_key(), ["a"])
        store.set(samples_key(1, True), "partition")

        async def execute(args):
            raise ApiError(ErrorKind.SERVER_ERROR, "boom", is_write=True)

        descriptor = _descriptor(
            [], execute, invalidates=lambda args, result: [samples_prefix()],
        )
        with pytest.raises(ApiError):
            await engine.mutate(descriptor, "b")
        assert not store.get(samples_key(1, True)).is_stale

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped_and_rolled_back(self, engine, store):
        store.set(principles_key(), ["a"])

        async def execute(args):
            raise KeyError("sample")

        with pytest.raises(ApiError) as exc_info:
            await engine.mutate(_descriptor([], execute), "b")
        assert exc_info.value.kind is ErrorKind.UNKNOWN
        assert exc_info.value.is_write
        assert store.get_data(principles_key()) == ["a"]

    @pytest.mark.asyncio
    async def test_targets_have_fetches_cancelled(self, engine, store):
        store.set(principles_key(), ["a"])
        generation = store.fetch_generation(principles_key())

        async def execute(args):
            return None

        await engine.mutate(_descriptor([], execute), "b")
        assert store.fetch_generation(principles_key()) > generation

    @pytest.mark.asyncio
    async def test_no_targets_means_no_optimistic_apply(self, engine, store):
        store.set(principles_key(), ["a"])
        seen = []

        async def execute(args):
            return "ok"

        descriptor = _descriptor(seen, execute, target_keys=lambda store, args: [])
        await engine.mutate(descriptor, "b")
        assert seen == ["b"]
        assert store.get_data(principles_key()) == ["a"]

    @pytest.mark.asyncio
    async def test_rollback_of_uncached_target_leaves_nothing(self, engine, store):
        async def execute(args):
            raise ApiError(ErrorKind.TIMEOUT, "slow", is_write=True)

        with pytest.raises(ApiError):
            await engine.mutate(_descriptor([], execute), "b")
        assert store.get_data(principles_key()) is None


class TestMutation:
    @pytest.mark.asyncio
    async def test_run_records_result(self, engine, store):
        async def execute(args):
            return args * 2

        mutation = Mutation(engine, MutationDescriptor(name="double", execute=execute))
        assert await mutation.run(4) == 8
        assert mutation.last_result == 8
        assert mutation.error is None
        assert not mutation.is_running

    @pytest.mark.asyncio
    async def test_run_records_error(self, engine):
        async def execute(args):
            raise ApiError(ErrorKind.FORBIDDEN, "nope", is_write=True)

        mutation = Mutation(engine, MutationDescriptor(name="deny", execute=execute))
        with pytest.raises(ApiError):
            await mutation.run(1)
        assert mutation.error.kind is ErrorKind.FORBIDDEN
        mutation.reset()
        assert mutation.error is None

    @pytest.mark.asyncio
    async def test_is_running_during_request(self, engine):
        gate = asyncio.Event()

        async def execute(args):
            await gate.wait()
            return args

        mutation = Mutation(engine, MutationDescriptor(name="slow", execute=execute))
        task = mutation.run_nowait("x")
        await asyncio.sleep(0)
        assert mutation.is_running
        gate.set()
        assert await task == "x"
        assert not mutation.is_running

    @pytest.mark.asyncio
    async def test_run_nowait_keeps_error(self, engine):
        async def execute(args):
            raise ApiError(ErrorKind.NETWORK_UNREACHABLE, "offline", is_write=True)

        mutation = Mutation(engine, MutationDescriptor(name="offline", execute=execute))
        assert await mutation.run_nowait(1) is None
        assert mutation.error.is_retryable
