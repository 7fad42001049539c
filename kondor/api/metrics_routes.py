"""KONDOR — Metrics Query API Routes."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from kondor.api.deps import get_runtime, get_tenant_id
from kondor.core.logging import get_logger
from kondor.core.metric_registry import catalog_entries
from kondor.models.query_models import MetricsQuery, QueryResult
from kondor.runtime import Runtime

logger = get_logger("api.metrics")

router = APIRouter(prefix="/metrics", tags=["Metrics"])


# ── Request / Response Models ──


class InvalidateRequest(BaseModel):
    brand_id: str = Field(min_length=1)


# ── Endpoints ──


@router.post("/query", response_model=QueryResult)
async def query_metrics(
    request: MetricsQuery,
    tenant_id: str = Depends(get_tenant_id),
    runtime: Runtime = Depends(get_runtime),
):
    """Run an aggregate metrics query for one brand.

    Served from the short-TTL result cache when an identical query was
    answered recently; concurrent identical requests share one execution.
    """
    return await runtime.query_metrics(tenant_id, request)


@router.post("/cache/invalidate")
async def invalidate_cache(
    request: InvalidateRequest,
    tenant_id: str = Depends(get_tenant_id),
    runtime: Runtime = Depends(get_runtime),
):
    """Drop cached query results for a brand."""
    evicted = runtime.invalidate_cache(tenant_id, request.brand_id)
    return {"status": "success", "evicted": evicted}


@router.get("/catalog")
async def metric_catalog():
    """List queryable metrics with their formulas."""
    return {"status": "success", "metrics": catalog_entries()}


@router.get("/cache/stats")
async def cache_stats(runtime: Runtime = Depends(get_runtime)):
    return {"status": "success", "stats": runtime.cache.stats.to_dict()}
