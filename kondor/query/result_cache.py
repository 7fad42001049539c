"""KONDOR — Query Result Cache & Concurrency Gate.

Get-or-populate over ``QueryResult`` objects:

- hit → deep copy of the cached result
- miss with an identical query in flight → await that execution
- otherwise → execute under a per-(tenant, brand) FIFO gate and cache the
  result on success

Writes that affect a brand bump its generation, so a result computed
before an invalidation is never stored after it. A query that materializes
its own facts calls ``restamp`` once that write is done, so its own write
does not fence off its result.
"""

import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from kondor.config import settings
from kondor.core.concurrency import KeyedGate
from kondor.core.logging import get_logger
from kondor.models.query_models import MetricsQuery, QueryResult

logger = get_logger("query.cache")

BrandKey = Tuple[str, str]


@dataclass
class CacheStats:
    """Cache performance counters."""

    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses + self.coalesced
        return (self.hits + self.coalesced) / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "coalesced": self.coalesced,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "hit_rate": round(self.hit_rate, 4),
        }


@dataclass
class _Entry:
    brand: BrandKey
    expires_at: float
    result: QueryResult


def cache_key(tenant_id: str, payload: Any) -> str:
    """Stable digest of (tenant, normalized query payload)."""
    if isinstance(payload, MetricsQuery):
        payload = payload.model_dump(mode="json")
    raw = json.dumps({"tenant_id": tenant_id, "query": payload}, sort_keys=True, default=str)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


class QueryResultCache:
    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        concurrency: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = settings.query_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.max_entries = max(1, max_entries or settings.query_cache_max_entries)
        self.gate = KeyedGate(concurrency or settings.brand_query_concurrency)
        self.stats = CacheStats()
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._inflight: Dict[str, "asyncio.Future[QueryResult]"] = {}
        self._generations: Dict[BrandKey, int] = {}
        self._fences: Dict[str, Tuple[BrandKey, Optional[int]]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_compute(
        self,
        tenant_id: str,
        brand_id: str,
        payload: Any,
        compute: Callable[[], Awaitable[QueryResult]],
    ) -> QueryResult:
        key = cache_key(tenant_id, payload)
        brand: BrandKey = (str(tenant_id), str(brand_id))

        entry = self._entries.get(key)
        if entry is not None:
            if entry.expires_at > self._clock():
                self.stats.hits += 1
                return entry.result.model_copy(deep=True)
            self._entries.pop(key, None)

        pending = self._inflight.get(key)
        if pending is not None:
            self.stats.coalesced += 1
            result = await asyncio.shield(pending)
            return result.model_copy(deep=True)

        self.stats.misses += 1
        self._fences[key] = (brand, self._generations.setdefault(brand, 0))
        task = asyncio.ensure_future(self._execute(brand, compute))
        self._inflight[key] = task
        task.add_done_callback(lambda t: self._settle(key, brand, t))
        result = await asyncio.shield(task)
        return result.model_copy(deep=True)

    async def _execute(
        self, brand: BrandKey, compute: Callable[[], Awaitable[QueryResult]]
    ) -> QueryResult:
        async with self.gate.hold(brand):
            return await compute()

    def _settle(
        self, key: str, brand: BrandKey, task: "asyncio.Future[QueryResult]"
    ) -> None:
        _, generation = self._fences.get(key, (brand, None))
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)
            self._fences.pop(key, None)
        if task.cancelled() or task.exception() is not None:
            return
        if self._generations.get(brand, 0) != generation or self.ttl_seconds <= 0:
            return
        self._entries[key] = _Entry(brand, self._clock() + self.ttl_seconds, task.result())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self.stats.evictions += 1

    # ── Invalidation ──

    def invalidate_brand(self, tenant_id: str, brand_id: str, revoke_inflight: bool = False) -> int:
        """Drop every cached result of a brand and fence off in-flight ones.

        With ``revoke_inflight`` the in-flight results can not be restamped
        either; binding switches use it since those queries read the old
        property.
        """
        brand: BrandKey = (str(tenant_id), str(brand_id))
        self._generations[brand] = self._generations.get(brand, 0) + 1
        if revoke_inflight:
            for k, (b, _) in list(self._fences.items()):
                if b == brand:
                    self._fences[k] = (b, None)
        stale = [k for k, e in self._entries.items() if e.brand == brand]
        for k in stale:
            self._entries.pop(k, None)
        self.stats.invalidations += 1
        if stale:
            logger.info(
                f"🧹 Invalidated {len(stale)} cached queries",
                extra={"tenant_id": tenant_id, "brand_id": brand_id},
            )
        return len(stale)

    def restamp(self, tenant_id: str, brand_id: str, payload: Any) -> None:
        """Move an in-flight query's fence to the brand's current generation.

        Called after the query's own materialization so the facts it just
        wrote do not keep its result out of the cache; writes after this
        point still do.
        """
        key = cache_key(tenant_id, payload)
        fence = self._fences.get(key)
        if fence is None or fence[1] is None:
            return
        brand: BrandKey = (str(tenant_id), str(brand_id))
        self._fences[key] = (brand, self._generations.get(brand, 0))

    def clear(self) -> None:
        self._entries.clear()
        self._fences = {k: (b, None) for k, (b, _) in self._fences.items()}
        for brand in list(self._generations):
            self._generations[brand] += 1
        self.stats = CacheStats()
