"""KONDOR — Runtime Wiring.

Builds the stateful collaborators (lock, caches, gate, registry,
materializer, engine, applicator, queue) as explicit instances so each
app, worker or test owns and can reset its own set.
"""

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from kondor.config import settings
from kondor.connectors.base import BrandDirectory, CredentialResolver, ReportFetcher
from kondor.connectors.ga4.client import EnvCredentialResolver, Ga4Client
from kondor.core.concurrency import InFlightCache
from kondor.core.locking import TenantBrandLock
from kondor.database import build_engine, build_session_factory
from kondor.materializer.fact_materializer import FactMaterializer
from kondor.models.query_models import QueryResult
from kondor.query.engine import MetricsQueryEngine, parse_query
from kondor.query.result_cache import QueryResultCache
from kondor.registry.bindings import BindingRegistry
from kondor.registry.brands import SqlBrandDirectory
from kondor.scheduler.jobs import SyncJobQueue
from kondor.services.property_scope import PropertyScopeApplicator


@dataclass
class Runtime:
    engine: AsyncEngine
    session_factory: async_sessionmaker
    lock: TenantBrandLock
    cache: QueryResultCache
    registry: BindingRegistry
    materializer: FactMaterializer
    query_engine: MetricsQueryEngine
    queue: SyncJobQueue
    scope: PropertyScopeApplicator
    brands: BrandDirectory

    async def query_metrics(self, tenant_id: str, payload: Any) -> QueryResult:
        """Cached, coalesced and gated metrics query."""
        query = parse_query(payload)
        return await self.cache.get_or_compute(
            tenant_id,
            query.brand_id,
            query,
            lambda: self.query_engine.query(
                tenant_id,
                query,
                on_materialized=lambda: self.cache.restamp(tenant_id, query.brand_id, query),
            ),
        )

    def invalidate_cache(self, tenant_id: str, brand_id: str) -> int:
        self.materializer.invalidate_brand(tenant_id, brand_id)
        return self.cache.invalidate_brand(tenant_id, brand_id, revoke_inflight=True)

    async def close(self) -> None:
        await self.engine.dispose()


def build_runtime(
    db_url: Optional[str] = None,
    engine: Optional[AsyncEngine] = None,
    fetcher: Optional[ReportFetcher] = None,
    credential_resolver: Optional[CredentialResolver] = None,
    brands: Optional[BrandDirectory] = None,
    cache: Optional[QueryResultCache] = None,
    flight_cache: Optional[InFlightCache] = None,
    materialize_timeout: Optional[float] = None,
) -> Runtime:
    engine = engine or build_engine(db_url)
    session_factory = build_session_factory(engine)
    lock = TenantBrandLock(session_factory)
    cache = cache or QueryResultCache()
    credentials = credential_resolver or EnvCredentialResolver()
    brands = brands or SqlBrandDirectory(session_factory)

    def on_binding_change(tenant_id: str, brand_id: str) -> None:
        materializer.invalidate_brand(tenant_id, brand_id)
        cache.invalidate_brand(tenant_id, brand_id, revoke_inflight=True)

    registry = BindingRegistry(
        session_factory,
        lock,
        credential_resolver=credentials,
        on_invalidate=on_binding_change,
    )
    materializer = FactMaterializer(
        session_factory,
        lock,
        registry,
        fetcher or Ga4Client(),
        credential_resolver=credentials,
        flight_cache=flight_cache or InFlightCache(settings.fact_cache_ttl_seconds),
        on_write=cache.invalidate_brand,
    )
    query_engine = MetricsQueryEngine(
        session_factory,
        registry,
        brands,
        materializer=materializer,
        materialize_timeout=materialize_timeout,
    )
    queue = SyncJobQueue(registry, materializer)
    scope = PropertyScopeApplicator(registry, brands, queue=queue)
    return Runtime(
        engine=engine,
        session_factory=session_factory,
        lock=lock,
        cache=cache,
        registry=registry,
        materializer=materializer,
        query_engine=query_engine,
        queue=queue,
        scope=scope,
        brands=brands,
    )
