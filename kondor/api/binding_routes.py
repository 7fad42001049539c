"""KONDOR — Brand Platform-Binding API Routes."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from kondor.api.deps import get_runtime, get_tenant_id
from kondor.core.errors import BrandNotFoundError
from kondor.core.logging import get_logger
from kondor.runtime import Runtime

logger = get_logger("api.bindings")

router = APIRouter(prefix="/brands", tags=["Bindings"])


# ── Request / Response Models ──


class SetActiveAccountRequest(BaseModel):
    """Request body for PUT /brands/{brand_id}/platforms/{platform}/active-account."""

    account_id: str = Field(min_length=1)
    """External account id; GA4 accepts ``properties/<id>`` as well."""
    account_name: Optional[str] = None
    timezone: Optional[str] = None
    """IANA timezone of the GA4 property (invalid zones fall back to UTC)."""
    validate_credentials: bool = False


# ── Endpoints ──


@router.get("/{brand_id}/platforms/{platform}/active-account")
async def get_active_account(
    brand_id: str,
    platform: str,
    tenant_id: str = Depends(get_tenant_id),
    runtime: Runtime = Depends(get_runtime),
):
    """Authoritative account for a brand + platform (reconciles duplicates)."""
    if not await runtime.brands.brand_exists(tenant_id, brand_id):
        raise BrandNotFoundError(brand_id)
    account_id = await runtime.registry.resolve_active_account(tenant_id, brand_id, platform)
    return {
        "status": "success",
        "brand_id": brand_id,
        "platform": platform.upper(),
        "account_id": account_id,
    }


@router.put("/{brand_id}/platforms/{platform}/active-account")
async def set_active_account(
    brand_id: str,
    platform: str,
    request: SetActiveAccountRequest,
    tenant_id: str = Depends(get_tenant_id),
    runtime: Runtime = Depends(get_runtime),
):
    """Switch the authoritative account; purges facts of any other account."""
    if not await runtime.brands.brand_exists(tenant_id, brand_id):
        raise BrandNotFoundError(brand_id)
    binding = await runtime.registry.set_active_account(
        tenant_id,
        brand_id,
        platform,
        request.account_id,
        account_name=request.account_name,
        timezone_name=request.timezone,
        validate_credentials=request.validate_credentials,
    )
    return {
        "status": "success",
        "binding": {
            "id": binding.id,
            "platform": binding.platform.value,
            "account_id": binding.external_account_id,
            "account_name": binding.external_account_name,
            "status": binding.status.value,
            "version": binding.version,
        },
    }
