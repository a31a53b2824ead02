# src/cache/keys.py - v1
"""Cache key construction.

Keys are plain tuples ``(family, *params)`` compared structurally. Build
them only through these helpers so that one logical query always maps to
one key, whatever the call site.
"""

from __future__ import annotations

from typing import Any, Tuple

CacheKey = Tuple[Any, ...]

PRINCIPLES = "principles"
SAMPLES = "samples"
_DETAIL = "detail"


def principles_key() -> CacheKey:
    """All principles, as a list."""
    return (PRINCIPLES,)


def principle_key(principle_id: int) -> CacheKey:
    return (PRINCIPLES, int(principle_id))


def samples_key(principle_id: int, show_revised: bool) -> CacheKey:
    """One samples partition: a principle under one revision filter."""
    return (SAMPLES, int(principle_id), bool(show_revised))


def sample_key(sample_id: str) -> CacheKey:
    return (SAMPLES, _DETAIL, str(sample_id))


def samples_prefix(principle_id: int | None = None) -> CacheKey:
    """Prefix matching every partition, or every partition of one principle."""
    if principle_id is None:
        return (SAMPLES,)
    return (SAMPLES, int(principle_id))


def key_matches(key: CacheKey, prefix: CacheKey) -> bool:
    """True when ``prefix`` is a leading slice of ``key``."""
    return len(prefix) <= len(key) and key[: len(prefix)] == prefix


def family(key: CacheKey) -> str:
    return key[0]


def is_partition_key(key: CacheKey) -> bool:
    return len(key) == 3 and key[0] == SAMPLES and key[1] != _DETAIL
