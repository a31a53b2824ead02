# src/mutation/engine.py - v1
"""Optimistic writes with snapshot rollback.

``MutationEngine.mutate`` runs one descriptor through the fixed sequence:
resolve target keys, cancel in-flight reads on them, snapshot, apply the
optimistic transform, send the write, then either commit the server result
and mark dependent keys stale, or restore the snapshot and re-raise.
Writes are never retried here.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from annoreview.cache.keys import CacheKey
from annoreview.cache.memory_store import MemoryCacheStore
from annoreview.client.errors import ApiError, ErrorKind
from annoreview.logging.context import log_context

logger = logging.getLogger(__name__)

A = TypeVar("A")
R = TypeVar("R")


def _no_keys(store: MemoryCacheStore, args: Any) -> list[CacheKey]:
    return []


def _no_invalidation(args: Any, result: Any) -> list[CacheKey]:
    return []


@dataclass
class MutationDescriptor(Generic[A, R]):
    """How one kind of write touches the cache.

    Attributes:
        name: Operation name used in logs.
        execute: The network write.
        target_keys: Keys the optimistic phase may modify; these are
            snapshotted and have their in-flight reads cancelled.
        optimistic_apply: Synchronous cache transform applied before the
            write is sent. None means wait for the server.
        commit: Writes the authoritative server result into the cache.
        invalidates: Key prefixes to mark stale after success.
    """

    name: str
    execute: Callable[[A], Awaitable[R]]
    target_keys: Callable[[MemoryCacheStore, A], list[CacheKey]] = _no_keys
    optimistic_apply: Callable[[MemoryCacheStore, A], None] | None = None
    commit: Callable[[MemoryCacheStore, R, A], None] | None = None
    invalidates: Callable[[A, R], list[CacheKey]] = _no_invalidation


class MutationEngine:
    """Applies mutation descriptors against a shared store."""

    def __init__(self, store: MemoryCacheStore) -> None:
        self._store = store

    @property
    def store(self) -> MemoryCacheStore:
        return self._store

    async def mutate(self, descriptor: MutationDescriptor[A, R], args: A) -> R:
        """Run one write end to end.

        Raises:
            ApiError: The write failed; the cache is back to its prior state.
        """
        store = self._store
        with log_context(operation=descriptor.name):
            targets = descriptor.target_keys(store, args)
            for key in targets:
                store.cancel_in_flight(key)
            snapshot = store.snapshot(targets)

            if descriptor.optimistic_apply is not None and targets:
                descriptor.optimistic_apply(store, args)

            try:
                result = await descriptor.execute(args)
            except ApiError as e:
                self._rollback(descriptor, snapshot, e)
                raise
            except Exception as e:
                error = ApiError(
                    ErrorKind.UNKNOWN, str(e) or type(e).__name__, is_write=True,
                )
                self._rollback(descriptor, snapshot, error)
                raise error from e

            if descriptor.commit is not None:
                descriptor.commit(store, result, args)
            stale = descriptor.invalidates(args, result)
            if stale:
                store.mark_stale(stale)
            logger.debug(
                "%s committed; %d target(s), invalidated %r",
                descriptor.name, len(targets), stale,
            )
            return result

    def _rollback(
        self,
        descriptor: MutationDescriptor[Any, Any],
        snapshot: dict[CacheKey, Any],
        error: ApiError,
    ) -> None:
        self._store.restore(snapshot)
        logger.warning(
            "%s failed (%s), rolled back %d key(s): %s",
            descriptor.name, error.kind.value, len(snapshot), error.message,
        )


@dataclass
class Mutation(Generic[A, R]):
    """Write surface for one operation: ``run``, ``is_running``, ``error``."""

    engine: MutationEngine
    descriptor: MutationDescriptor[A, R]
    error: ApiError | None = None
    last_result: R | None = None
    _running: int = field(default=0, repr=False)
    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    @property
    def is_running(self) -> bool:
        return self._running > 0

    async def run(self, args: A) -> R:
        """Execute the mutation; the error is recorded and re-raised."""
        self._running += 1
        self.error = None
        try:
            result = await self.engine.mutate(self.descriptor, args)
        except ApiError as e:
            self.error = e
            raise
        finally:
            self._running -= 1
        self.last_result = result
        return result

    def run_nowait(self, args: A) -> asyncio.Task:
        """Fire the mutation in the background; failures land on ``error``."""
        task = asyncio.get_running_loop().create_task(self._run_quietly(args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_quietly(self, args: A) -> R | None:
        try:
            return await self.run(args)
        except ApiError:
            # Already recorded on self.error and logged by the engine
            return None

    def reset(self) -> None:
        self.error = None
        self.last_result = None
