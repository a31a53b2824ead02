# src/logging/context.py - v2
"""Contextual logging support: attach operation and cache key to log records."""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

_operation: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "operation", default=None
)
_cache_key: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "cache_key", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    operation: str | None = None
    cache_key: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(operation=_operation.get(), cache_key=_cache_key.get())


@contextmanager
def log_context(
    operation: str | None = None, cache_key: object | None = None
) -> Iterator[None]:
    """Scope ``operation`` / ``cache_key`` to the enclosed block.

    asyncio tasks copy the context at creation, so values set here follow
    any fetch or mutation started inside the block.
    """
    tokens = []
    if operation is not None:
        tokens.append((_operation, _operation.set(operation)))
    if cache_key is not None:
        tokens.append((_cache_key, _cache_key.set(repr(cache_key))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def clear_context() -> None:
    """Reset all context variables."""
    _operation.set(None)
    _cache_key.set(None)
