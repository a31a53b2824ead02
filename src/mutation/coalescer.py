# src/mutation/coalescer.py - v1
"""Debounced commits for fields edited keystroke by keystroke.

A ``Coalescer`` is an explicit resource: a pending-value slot plus one
timer handle. ``write`` restarts the timer, the timer or ``flush`` commits
the latest value, and ``dispose`` always flushes so an unfinished burst of
edits is never dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

from annoreview.cache.models import ABSENT

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Coalescer(Generic[T]):
    """Holds the latest written value and commits it after a quiet period."""

    def __init__(
        self,
        commit_fn: Callable[[T], Awaitable[Any]],
        delay_s: float,
        committed: Any = ABSENT,
        name: str = "field",
    ) -> None:
        self._commit_fn = commit_fn
        self._delay_s = delay_s
        self._committed: Any = committed
        self._pending: Any = ABSENT
        self._handle: asyncio.TimerHandle | None = None
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._disposed = False
        self.name = name
        self.commit_count = 0
        self.last_error: Exception | None = None

    # --- State ---

    @property
    def has_pending(self) -> bool:
        return self._pending is not ABSENT

    @property
    def pending_value(self) -> Any:
        """What the field shows now: the pending edit, else the committed value."""
        return self._pending if self.has_pending else self._committed

    @property
    def committed_value(self) -> Any:
        return self._committed

    @property
    def disposed(self) -> bool:
        return self._disposed

    # --- Editing ---

    def write(self, value: T) -> None:
        """Record ``value`` and restart the quiet-period timer."""
        if self._disposed:
            raise RuntimeError(f"Coalescer {self.name!r} is disposed")
        self._pending = value
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay_s, self._on_timer)

    async def flush(self) -> None:
        """Commit the pending value now (blur, Enter without Shift).

        Raises:
            Exception: Whatever ``commit_fn`` raised; the value stays pending.
        """
        self._cancel_timer()
        await self._commit_pending(raise_errors=True)

    def cancel(self) -> None:
        """Stop the timer without committing; the pending value is kept."""
        self._cancel_timer()

    async def dispose(self) -> None:
        """Flush and release the timer; later writes are rejected."""
        if self._disposed:
            return
        self._cancel_timer()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        try:
            await self._commit_pending(raise_errors=False)
        finally:
            self._disposed = True

    # --- Internals ---

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _on_timer(self) -> None:
        self._handle = None
        task = asyncio.get_running_loop().create_task(
            self._commit_pending(raise_errors=False)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _commit_pending(self, raise_errors: bool) -> None:
        # Commits run one at a time, in write order
        async with self._lock:
            if not self.has_pending:
                return
            value = self._pending
            self._pending = ABSENT
            if value == self._committed:
                return
            try:
                await self._commit_fn(value)
            except Exception as e:
                self.last_error = e
                if not self.has_pending:
                    self._pending = value
                logger.warning("Commit of %s failed: %s", self.name, e)
                if raise_errors:
                    raise
                return
            self._committed = value
            self.last_error = None
            self.commit_count += 1


class CoalescerRegistry:
    """One coalescer per edited field, keyed like the cache."""

    def __init__(self, default_delay_s: float = 0.5) -> None:
        self._default_delay_s = default_delay_s
        self._coalescers: dict[Hashable, Coalescer[Any]] = {}

    def coalesce(
        self,
        key: Hashable,
        commit_fn: Callable[[Any], Awaitable[Any]],
        delay_s: float | None = None,
        committed: Any = ABSENT,
    ) -> Coalescer[Any]:
        """Return the live coalescer for ``key``, creating it if needed."""
        existing = self._coalescers.get(key)
        if existing is not None and not existing.disposed:
            return existing
        coalescer: Coalescer[Any] = Coalescer(
            commit_fn,
            self._default_delay_s if delay_s is None else delay_s,
            committed=committed,
            name=repr(key),
        )
        self._coalescers[key] = coalescer
        return coalescer

    def get(self, key: Hashable) -> Coalescer[Any] | None:
        return self._coalescers.get(key)

    async def release(self, key: Hashable) -> None:
        coalescer = self._coalescers.pop(key, None)
        if coalescer is not None:
            await coalescer.dispose()

    async def flush_all(self) -> None:
        for coalescer in list(self._coalescers.values()):
            await coalescer.flush()

    async def dispose_all(self) -> None:
        while self._coalescers:
            _, coalescer = self._coalescers.popitem()
            await coalescer.dispose()

    def __len__(self) -> int:
        return len(self._coalescers)
