# src/cache/memory_store.py - v2
"""In-memory cache store with observer notification.

One instance is shared by the query controller and the mutation engine for
the lifetime of a client. All mutations run to completion synchronously on
the event loop thread, so no entry is ever observed half-updated.
"""

from __future__ import annotations

import logging
import time
from itertools import count
from typing import Any, Callable, Iterable

from annoreview.cache.base_cache_store import BaseCacheStore
from annoreview.cache.keys import CacheKey, family, key_matches
from annoreview.cache.models import (
    ABSENT,
    DEFAULT_POLICIES,
    FALLBACK_POLICY,
    CacheEntry,
    CachePolicy,
)

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_S = 60.0

EntryCallback = Callable[[CacheKey, CacheEntry], None]
StaleCallback = Callable[[CacheKey], None]


class MemoryCacheStore(BaseCacheStore):
    """Dictionary-backed store keyed by structural cache keys."""

    def __init__(
        self,
        policies: dict[str, CachePolicy] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policies = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._subscribers: dict[CacheKey, list[EntryCallback]] = {}
        self._stale_listeners: list[StaleCallback] = []
        self._generations: dict[CacheKey, int] = {}
        self._generation_seq = count(1)
        self._versions = count(1)
        self._last_sweep_at = clock()

    # --- Reads ---

    def get(self, key: CacheKey) -> CacheEntry | None:
        return self._entries.get(key)

    def get_data(self, key: CacheKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None or not entry.has_data:
            return default
        return entry.data

    def keys(self, prefix: CacheKey = ()) -> list[CacheKey]:
        return [k for k in self._entries if key_matches(k, prefix)]

    def policy_for(self, key: CacheKey) -> CachePolicy:
        return self._policies.get(family(key), FALLBACK_POLICY)

    def is_expired(self, key: CacheKey, stale_after_s: float | None = None) -> bool:
        """True if the entry needs a fetch: missing, stale, or too old."""
        entry = self._entries.get(key)
        if entry is None or not entry.has_data or entry.last_updated_at is None:
            return True
        if entry.is_stale:
            return True
        window = (
            self.policy_for(key).stale_after_s
            if stale_after_s is None else stale_after_s
        )
        return self._clock() - entry.last_updated_at >= window

    # --- Writes ---

    def set(self, key: CacheKey, data: Any) -> CacheEntry:
        entry = self._ensure(key)
        entry.data = data
        entry.status = "ready"
        entry.error = None
        entry.is_stale = False
        entry.last_updated_at = self._clock()
        entry.version = next(self._versions)
        self._notify(key, entry)
        return entry

    def set_many(
        self,
        predicate: Callable[[CacheKey], bool],
        updater: Callable[[Any], Any],
    ) -> list[CacheKey]:
        touched: list[CacheKey] = []
        for key, entry in list(self._entries.items()):
            if not entry.has_data or not predicate(key):
                continue
            new_data = updater(entry.data)
            if new_data is entry.data:
                continue
            # Optimistic touch: keep last_updated_at so freshness is unchanged
            entry.data = new_data
            entry.version = next(self._versions)
            touched.append(key)
            self._notify(key, entry)
        return touched

    def set_loading(self, key: CacheKey) -> CacheEntry:
        entry = self._ensure(key)
        if entry.status != "ready":
            entry.status = "loading"
            self._notify(key, entry)
        return entry

    def clear_loading(self, key: CacheKey) -> None:
        """Settle a loading entry whose fetch result was discarded."""
        entry = self._entries.get(key)
        if entry is None or entry.status != "loading":
            return
        entry.status = "ready" if entry.has_data else "empty"
        self._notify(key, entry)

    def set_error(self, key: CacheKey, error: Exception) -> CacheEntry:
        """Record a failed fetch; displayed data, if any, is kept."""
        entry = self._ensure(key)
        entry.status = "error"
        entry.error = error
        self._notify(key, entry)
        return entry

    def snapshot(self, keys: Iterable[CacheKey]) -> dict[CacheKey, Any]:
        snap: dict[CacheKey, Any] = {}
        for key in keys:
            entry = self._entries.get(key)
            snap[key] = entry.data if entry is not None else ABSENT
        return snap

    def restore(self, snapshot: dict[CacheKey, Any]) -> None:
        for key, data in snapshot.items():
            entry = self._entries.get(key)
            if data is ABSENT:
                if entry is None or not entry.has_data:
                    continue
                entry.data = ABSENT
                entry.status = "empty"
            else:
                entry = self._ensure(key)
                entry.data = data
                if entry.status != "error":
                    entry.status = "ready"
            entry.version = next(self._versions)
            self._notify(key, entry)

    def mark_stale(self, prefixes: Iterable[CacheKey]) -> list[CacheKey]:
        prefixes = list(prefixes)
        marked: list[CacheKey] = []
        for key, entry in self._entries.items():
            if any(key_matches(key, p) for p in prefixes):
                entry.is_stale = True
                marked.append(key)
        for key in marked:
            logger.debug("Marked stale: %r", key)
            self._notify(key, self._entries[key])
            for listener in list(self._stale_listeners):
                self._safe_call(listener, key)
        return marked

    def cancel_in_flight(self, prefix: CacheKey) -> list[CacheKey]:
        cancelled = [k for k in self._generations if key_matches(k, prefix)]
        for key in cancelled:
            self._generations[key] = next(self._generation_seq)
        return cancelled

    def fetch_generation(self, key: CacheKey) -> int:
        """Current generation; a fetch is valid only while it is unchanged.

        Generations come from one store-wide counter, so a key dropped by
        eviction or ``clear`` never gets back a number an older fetch holds.
        """
        generation = self._generations.get(key)
        if generation is None:
            generation = self._generations[key] = next(self._generation_seq)
        return generation

    # --- Observers & retention ---

    def subscribe(self, key: CacheKey, callback: EntryCallback) -> Callable[[], None]:
        """Call ``callback(key, entry)`` on every change of ``key``."""
        self._subscribers.setdefault(key, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(key, None)

        return _unsubscribe

    def subscribe_stale(self, callback: StaleCallback) -> Callable[[], None]:
        self._stale_listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._stale_listeners:
                self._stale_listeners.remove(callback)

        return _unsubscribe

    def acquire(self, key: CacheKey, retention_s: float | None = None) -> CacheEntry:
        entry = self._ensure(key)
        if retention_s is not None:
            entry.retention_s = retention_s
        entry.observers += 1
        entry.released_at = None
        return entry

    def release(self, key: CacheKey) -> None:
        entry = self._entries.get(key)
        if entry is None or entry.observers == 0:
            return
        entry.observers -= 1
        if entry.observers == 0:
            entry.released_at = self._clock()

    def evict_expired(self, keep: Iterable[CacheKey] = ()) -> list[CacheKey]:
        """Drop unobserved entries whose retention window has run out.

        Keys in ``keep`` (reads still running) and loading entries stay.
        """
        now = self._clock()
        keep = set(keep)
        evicted: list[CacheKey] = []
        for key, entry in list(self._entries.items()):
            if entry.observers > 0 or key in self._subscribers or key in keep:
                continue
            if entry.status == "loading":
                continue
            since = entry.released_at if entry.released_at is not None else entry.last_updated_at
            retention = (
                entry.retention_s
                if entry.retention_s is not None else self.policy_for(key).retention_s
            )
            if since is None or now - since >= retention:
                del self._entries[key]
                self._generations.pop(key, None)
                evicted.append(key)
        if evicted:
            logger.debug("Evicted %d cache entries", len(evicted))
        return evicted

    def evict_due(
        self, keep: Iterable[CacheKey] = (), interval_s: float = SWEEP_INTERVAL_S
    ) -> list[CacheKey]:
        """Run ``evict_expired`` at most once per ``interval_s``."""
        now = self._clock()
        if now - self._last_sweep_at < interval_s:
            return []
        self._last_sweep_at = now
        return self.evict_expired(keep)

    def clear(self) -> None:
        self._entries.clear()
        self._generations.clear()

    # --- Internals ---

    def _ensure(self, key: CacheKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
        return entry

    def _notify(self, key: CacheKey, entry: CacheEntry) -> None:
        for callback in list(self._subscribers.get(key, ())):
            self._safe_call(callback, key, entry)

    @staticmethod
    def _safe_call(callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Cache subscriber failed")
