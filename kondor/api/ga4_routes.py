"""KONDOR — GA4 Property-Scope API Routes."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from kondor.api.deps import get_runtime, get_tenant_id
from kondor.core.logging import get_logger
from kondor.runtime import Runtime
from kondor.services.property_scope import ScopeApplySummary

logger = get_logger("api.ga4")

router = APIRouter(prefix="/ga4", tags=["GA4"])


class PropertyScopeRequest(BaseModel):
    """Request body for POST /ga4/property-scope."""

    property_id: str = Field(min_length=1)
    property_name: Optional[str] = None
    apply_mode: str = "SINGLE_BRAND"
    """SINGLE_BRAND or ALL_BRANDS."""
    brand_id: Optional[str] = None
    sync_after_select: bool = True
    include_campaigns: bool = False
    sync_days: Optional[int] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"property_id": "properties/123456", "apply_mode": "SINGLE_BRAND", "brand_id": "brand-1"},
                {"property_id": "123456", "apply_mode": "ALL_BRANDS", "sync_days": 30},
            ]
        }
    }


@router.post("/property-scope", response_model=ScopeApplySummary)
async def apply_property_scope(
    request: PropertyScopeRequest,
    tenant_id: str = Depends(get_tenant_id),
    runtime: Runtime = Depends(get_runtime),
):
    """Apply a GA4 property to one brand or every brand of the tenant."""
    return await runtime.scope.apply_scope_selection(
        tenant_id,
        request.property_id,
        request.apply_mode,
        brand_id=request.brand_id,
        property_name=request.property_name,
        sync_after_select=request.sync_after_select,
        include_campaigns=request.include_campaigns,
        sync_days=request.sync_days,
    )
