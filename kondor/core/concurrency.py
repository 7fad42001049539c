"""KONDOR — In-process concurrency helpers.

- ``InFlightCache``: coalesces identical concurrent calls onto one task and
  keeps a successful result for a short TTL.
- ``KeyedGate``: bounded FIFO concurrency per key.
- ``map_with_concurrency``: order-preserving bounded fan-out.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Hashable,
    Iterable,
    List,
    Optional,
    TypeVar,
)

from kondor.core.logging import get_logger

logger = get_logger("core.concurrency")

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class _InFlightEntry:
    task: "asyncio.Future[Any]"
    expires_at: float


class InFlightCache:
    """Short-TTL promise cache keyed by tuples.

    While a task runs, every caller with the same key awaits it. After it
    succeeds the result is reused until ``ttl_seconds`` elapse; failures are
    dropped immediately so the next caller retries. Callers are shielded: a
    cancelled awaiter never cancels the shared task.

    Expired entries are swept on every ``run`` so keys that never recur do
    not accumulate.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, _InFlightEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        now = self._clock()
        self._sweep(now)
        entry = self._entries.get(key)
        if entry is not None and (not entry.task.done() or entry.expires_at > now):
            return await asyncio.shield(entry.task)

        task = asyncio.ensure_future(factory())
        self._entries[key] = _InFlightEntry(task, now + self.ttl_seconds)
        task.add_done_callback(lambda t, k=key: self._on_done(k, t))
        return await asyncio.shield(task)

    def _on_done(self, key: Hashable, task: "asyncio.Future[Any]") -> None:
        entry = self._entries.get(key)
        failed = task.cancelled() or task.exception() is not None
        if failed and not task.cancelled():
            logger.debug(f"In-flight task {key!r} failed: {task.exception()!r}")
        if failed and entry is not None and entry.task is task:
            self._entries.pop(key, None)
        if self.ttl_seconds <= 0 and entry is not None and entry.task is task:
            self._entries.pop(key, None)

    def _sweep(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.task.done() and e.expires_at <= now]
        for k in expired:
            self._entries.pop(k, None)

    def invalidate(self, predicate: Callable[[Hashable], bool]) -> int:
        """Forget entries whose key matches.

        Running tasks keep going for the callers already awaiting them, but
        the next caller starts a fresh execution.
        """
        stale = [k for k in self._entries if predicate(k)]
        for k in stale:
            self._entries.pop(k, None)
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


class KeyedGate:
    """At most ``width`` concurrent holders per key; waiters are served FIFO."""

    def __init__(self, width: int):
        self.width = max(1, int(width))
        self._semaphores: Dict[Hashable, asyncio.Semaphore] = {}
        self._users: Dict[Hashable, int] = {}
        self._active: Dict[Hashable, int] = {}

    def active(self, key: Hashable) -> int:
        return self._active.get(key, 0)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        sem = self._semaphores.setdefault(key, asyncio.Semaphore(self.width))
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with sem:
                self._active[key] = self._active.get(key, 0) + 1
                try:
                    yield
                finally:
                    self._active[key] -= 1
                    if not self._active[key]:
                        self._active.pop(key, None)
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                self._users.pop(key, None)
                self._semaphores.pop(key, None)


async def map_with_concurrency(
    items: Iterable[T],
    concurrency: int,
    worker: Callable[[T], Awaitable[R]],
) -> List[R]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Results keep the input order. Exceptions propagate; workers that must not
    abort the batch catch their own errors.
    """
    items = list(items)
    if not items:
        return []
    results: List[Optional[R]] = [None] * len(items)
    next_index = 0

    async def run() -> None:
        nonlocal next_index
        while next_index < len(items):
            idx = next_index
            next_index += 1
            results[idx] = await worker(items[idx])

    await asyncio.gather(*(run() for _ in range(min(max(1, concurrency), len(items)))))
    return results  # type: ignore[return-value]
