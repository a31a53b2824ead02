# src/query/controller.py - v2
"""Fetch-on-demand reads over the cache store.

The controller decides when a key needs a network read, runs at most one
read per key at a time, writes results through the store and drops results
that were superseded by ``cancel_in_flight`` while they were in flight.
Observed keys that get marked stale are refetched in the background.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

from annoreview.cache.keys import CacheKey
from annoreview.cache.memory_store import MemoryCacheStore
from annoreview.client.errors import ApiError, ErrorKind
from annoreview.logging.context import log_context

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]

_NOT_SUPPRESSED = object()


@dataclass(frozen=True)
class QueryOptions:
    """Per-read options; None windows fall back to the key family policy."""

    stale_after_s: float | None = None
    retention_s: float | None = None
    enabled: bool = True
    keep_previous_on_key_change: bool = False


@dataclass(frozen=True)
class QueryResult:
    """Read surface handed to callers for one key."""

    key: CacheKey | None
    data: Any = None
    status: str = "empty"
    is_loading: bool = False
    is_fetching: bool = False
    is_stale: bool = False
    error: ApiError | None = None
    is_placeholder: bool = False

    @classmethod
    def disabled(cls, key: CacheKey | None = None) -> QueryResult:
        return cls(key=key)


class QueryController:
    """Runs and de-duplicates reads for a shared cache store."""

    def __init__(
        self,
        store: MemoryCacheStore,
        current_token: Callable[[], str | None] | None = None,
    ) -> None:
        self._store = store
        self._current_token = current_token or (lambda: None)
        self._in_flight: dict[CacheKey, tuple[asyncio.Task, int]] = {}
        self._observers: dict[CacheKey, list[QueryObserver]] = {}
        self._suppressed: dict[CacheKey, str | None] = {}
        self._unsubscribe_stale = store.subscribe_stale(self._on_stale)

    @property
    def store(self) -> MemoryCacheStore:
        return self._store

    # --- Public API ---

    def use_entry(
        self,
        key: CacheKey,
        fetcher: Fetcher,
        options: QueryOptions = QueryOptions(),
    ) -> QueryResult:
        """Return what is cached for ``key`` and start a read if needed.

        Must be called from a running event loop when a read may start.
        """
        if not options.enabled:
            return QueryResult.disabled(key)
        self._sweep()
        if self._needs_fetch(key, options):
            self._start_fetch(key, fetcher)
        return self.result(key, options)

    async def fetch(
        self,
        key: CacheKey,
        fetcher: Fetcher,
        options: QueryOptions = QueryOptions(),
        *,
        force: bool = False,
    ) -> Any:
        """Return data for ``key``, awaiting a read if it is missing or stale.

        Raises:
            ApiError: If the read fails.
        """
        if not options.enabled:
            return None
        self._sweep()
        if force or self._needs_fetch(key, options):
            task = self._start_fetch(key, fetcher)
            if task is not None:
                return await task
        return self._store.get_data(key)

    def result(self, key: CacheKey, options: QueryOptions = QueryOptions()) -> QueryResult:
        entry = self._store.get(key)
        fetching = self._is_fetching(key)
        if entry is None:
            return QueryResult(key=key, is_loading=fetching, is_fetching=fetching)
        has_data = entry.has_data
        return QueryResult(
            key=key,
            data=entry.data if has_data else None,
            status=entry.status,
            is_loading=not has_data and (fetching or entry.status == "loading"),
            is_fetching=fetching,
            is_stale=self._store.is_expired(key, options.stale_after_s),
            error=entry.error if entry.status == "error" else None,  # type: ignore[arg-type]
        )

    def observe(
        self,
        key: CacheKey | None,
        fetcher: Fetcher | None,
        options: QueryOptions = QueryOptions(),
    ) -> QueryObserver:
        """Attach a long-lived observer; call ``dispose()`` when done."""
        return QueryObserver(self, key, fetcher, options)

    def invalidate(self, *prefixes: CacheKey) -> list[CacheKey]:
        return self._store.mark_stale(prefixes)

    def close(self) -> None:
        self._unsubscribe_stale()
        for task, _ in list(self._in_flight.values()):
            task.cancel()
        self._in_flight.clear()

    # --- Fetching ---

    def _needs_fetch(self, key: CacheKey, options: QueryOptions) -> bool:
        if self._is_suppressed(key):
            return False
        return self._store.is_expired(key, options.stale_after_s)

    def _is_fetching(self, key: CacheKey) -> bool:
        running = self._in_flight.get(key)
        if running is None:
            return False
        return running[1] == self._store.fetch_generation(key)

    def _start_fetch(self, key: CacheKey, fetcher: Fetcher) -> asyncio.Task | None:
        """Start a read for ``key`` or join the one already running."""
        generation = self._store.fetch_generation(key)
        running = self._in_flight.get(key)
        if running is not None and running[1] == generation:
            return running[0]
        if self._is_suppressed(key):
            return None

        token = self._current_token()
        self._store.set_loading(key)
        with log_context(operation="fetch", cache_key=key):
            task = asyncio.get_running_loop().create_task(
                self._run_fetch(key, fetcher, generation, token)
            )
        self._in_flight[key] = (task, generation)
        task.add_done_callback(lambda t: self._fetch_done(key, t))
        return task

    async def _run_fetch(
        self,
        key: CacheKey,
        fetcher: Fetcher,
        generation: int,
        token: str | None,
    ) -> Any:
        logger.debug("Fetching %r", key)
        try:
            data = await fetcher()
        except ApiError as e:
            self._record_failure(key, e, generation, token)
            raise
        except Exception as e:
            error = ApiError(ErrorKind.UNKNOWN, str(e) or type(e).__name__)
            self._record_failure(key, error, generation, token)
            raise error from e

        if self._store.fetch_generation(key) != generation:
            logger.debug("Discarding superseded result for %r", key)
            self._store.clear_loading(key)
            return self._store.get_data(key)
        self._store.set(key, data)
        return data

    def _record_failure(
        self, key: CacheKey, error: ApiError, generation: int, token: str | None
    ) -> None:
        if self._store.fetch_generation(key) != generation:
            logger.debug("Ignoring failure of superseded fetch for %r", key)
            self._store.clear_loading(key)
            return
        if error.kind is ErrorKind.UNAUTHORIZED:
            self._suppressed[key] = token
        self._store.set_error(key, error)

    def _fetch_done(self, key: CacheKey, task: asyncio.Task) -> None:
        running = self._in_flight.get(key)
        if running is not None and running[0] is task:
            del self._in_flight[key]
        if task.cancelled():
            self._store.clear_loading(key)
        else:
            # Background reads report through the store; mark retrieved
            task.exception()

    def _is_suppressed(self, key: CacheKey) -> bool:
        """After a 401, stop reading ``key`` until a new token is observed.

        Sign-out clears the token; ``None`` is not a new token.
        """
        rejected = self._suppressed.get(key, _NOT_SUPPRESSED)
        if rejected is _NOT_SUPPRESSED:
            return False
        token = self._current_token()
        if token is not None and token != rejected:
            del self._suppressed[key]
            return False
        return True

    def _sweep(self) -> None:
        """Drop expired entries and suppressions a new token has lifted."""
        self._store.evict_due(keep=self._in_flight)
        token = self._current_token()
        if token is None:
            return
        for key in [k for k, rejected in self._suppressed.items() if rejected != token]:
            del self._suppressed[key]

    def _on_stale(self, key: CacheKey) -> None:
        observers = [o for o in self._observers.get(key, ()) if o.options.enabled]
        if not observers or observers[0].fetcher is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        logger.debug("Background refetch of %r", key)
        self._start_fetch(key, observers[0].fetcher)

    # --- Observer bookkeeping ---

    def _attach(self, observer: QueryObserver) -> None:
        key = observer.key
        if key is None:
            return
        self._observers.setdefault(key, []).append(observer)
        self._store.acquire(key, observer.options.retention_s)

    def _detach(self, observer: QueryObserver) -> None:
        key = observer.key
        if key is None:
            return
        observers = self._observers.get(key, [])
        if observer in observers:
            observers.remove(observer)
        if not observers:
            self._observers.pop(key, None)
        self._store.release(key)
        entry = self._store.get(key)
        if entry is None or entry.observers:
            return
        retention = (
            observer.options.retention_s
            if observer.options.retention_s is not None
            else self._store.policy_for(key).retention_s
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(retention, self._evict)

    def _evict(self) -> None:
        self._store.evict_expired(keep=self._in_flight)


class QueryObserver:
    """A caller's live view of one key, re-targetable without a blank flash."""

    def __init__(
        self,
        controller: QueryController,
        key: CacheKey | None,
        fetcher: Fetcher | None,
        options: QueryOptions,
    ) -> None:
        self._controller = controller
        self.key = key
        self.fetcher = fetcher
        self.options = options
        self._previous_data: Any = None
        self._unsubscribe: Callable[[], None] | None = None
        self._listeners: list[Callable[[QueryResult], None]] = []
        self._disposed = False
        self._bind()

    @property
    def result(self) -> QueryResult:
        if self.key is None or not self.options.enabled:
            return QueryResult.disabled(self.key)
        current = self._controller.result(self.key, self.options)
        if (
            current.data is None
            and self._previous_data is not None
            and self.options.keep_previous_on_key_change
        ):
            return replace(current, data=self._previous_data, is_placeholder=True)
        return current

    def subscribe(self, callback: Callable[[QueryResult], None]) -> Callable[[], None]:
        """Call ``callback(result)`` whenever the observed entry changes."""
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def set_key(
        self,
        key: CacheKey | None,
        fetcher: Fetcher | None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Point the observer at another key (e.g. a new filter value)."""
        if options is not None:
            new_options = options
        else:
            new_options = self.options
        if key == self.key and new_options == self.options:
            return self.result
        previous = self.result.data
        self._unbind()
        self.key, self.fetcher, self.options = key, fetcher, new_options
        self._previous_data = previous
        self._bind()
        return self.result

    async def refresh(self) -> Any:
        """Force a read of the observed key."""
        if self.key is None or self.fetcher is None or not self.options.enabled:
            return None
        return await self._controller.fetch(
            self.key, self.fetcher, self.options, force=True,
        )

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._unbind()
        self._listeners.clear()

    def _bind(self) -> None:
        if self.key is None:
            return
        self._controller._attach(self)
        self._unsubscribe = self._controller.store.subscribe(self.key, self._on_change)
        if self.options.enabled and self.fetcher is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return
            self._controller.use_entry(self.key, self.fetcher, self.options)

    def _unbind(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._controller._detach(self)

    def _on_change(self, key: CacheKey, entry: Any) -> None:
        if entry.has_data:
            self._previous_data = None
        result = self.result
        for listener in list(self._listeners):
            listener(result)
