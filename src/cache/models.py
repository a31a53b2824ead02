# src/cache/models.py - v2
"""Cache domain models: CacheEntry, CachePolicy and the ABSENT marker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel

EntryStatus = Literal["empty", "loading", "ready", "error"]


class _Absent:
    """Marker for 'no value' in snapshots, distinct from a cached None."""

    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT: Any = _Absent()


class CachePolicy(BaseModel):
    """Freshness and retention windows for one key family, in seconds."""

    stale_after_s: float
    retention_s: float


DEFAULT_POLICIES: dict[str, CachePolicy] = {
    "principles": CachePolicy(stale_after_s=600.0, retention_s=900.0),
    "samples": CachePolicy(stale_after_s=120.0, retention_s=300.0),
}

FALLBACK_POLICY = CachePolicy(stale_after_s=0.0, retention_s=300.0)


@dataclass
class CacheEntry:
    """Last known value for one key plus its bookkeeping.

    ``version`` increases on every write to the entry and is never reused
    across the store.
    """

    key: tuple
    data: Any = ABSENT
    status: EntryStatus = "empty"
    version: int = 0
    last_updated_at: float | None = None
    is_stale: bool = False
    error: Exception | None = None
    observers: int = 0
    released_at: float | None = None
    retention_s: float | None = None

    @property
    def has_data(self) -> bool:
        return self.data is not ABSENT
