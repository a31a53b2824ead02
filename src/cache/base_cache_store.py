# src/cache/base_cache_store.py - v2
"""Abstract cache store interface.

Every method is synchronous and total: stores hold data structures only and
never perform I/O, so no caller has to handle a store failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable

from annoreview.cache.keys import CacheKey
from annoreview.cache.models import CacheEntry


class BaseCacheStore(ABC):
    """Unified interface for client-side entity caches."""

    @abstractmethod
    def get(self, key: CacheKey) -> CacheEntry | None:
        """Entry for ``key``, or None if never seen."""

    @abstractmethod
    def set(self, key: CacheKey, data: Any) -> CacheEntry:
        """Replace data, mark ready and notify observers of ``key``."""

    @abstractmethod
    def set_many(
        self,
        predicate: Callable[[CacheKey], bool],
        updater: Callable[[Any], Any],
    ) -> list[CacheKey]:
        """Apply ``updater`` to the data of every matching entry."""

    @abstractmethod
    def snapshot(self, keys: Iterable[CacheKey]) -> dict[CacheKey, Any]:
        """Capture current values (ABSENT where missing) for rollback."""

    @abstractmethod
    def restore(self, snapshot: dict[CacheKey, Any]) -> None:
        """Write captured values back verbatim."""

    @abstractmethod
    def mark_stale(self, prefixes: Iterable[CacheKey]) -> list[CacheKey]:
        """Flag matching entries for refetch without clearing their data."""

    @abstractmethod
    def cancel_in_flight(self, prefix: CacheKey) -> list[CacheKey]:
        """Make results of fetches already started for matching keys ignorable."""
