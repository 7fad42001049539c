"""KONDOR — GA4 Property-Scope Applicator.

Propagates a newly selected GA4 property to one brand or to every brand of
a tenant. Per-brand failures are collected, never abort the batch; each
successfully switched brand can get a deduplicated background sync.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from kondor.config import settings
from kondor.connectors.base import BrandDirectory, JobQueue
from kondor.connectors.ga4.client import normalize_property_id
from kondor.core.concurrency import map_with_concurrency
from kondor.core.errors import BrandNotFoundError, KondorError, QueryValidationError
from kondor.core.logging import get_logger
from kondor.models.fact_models import Platform
from kondor.registry.bindings import BindingRegistry

logger = get_logger("services.property_scope")

SYNC_JOB_PREFIX = "ga4-brand-facts-sync"


class ApplyMode(str, Enum):
    SINGLE_BRAND = "SINGLE_BRAND"
    ALL_BRANDS = "ALL_BRANDS"

    @classmethod
    def parse(cls, value: Any) -> "ApplyMode":
        raw = str(value or "").strip().upper().replace("-", "_")
        try:
            return cls(raw)
        except ValueError:
            raise QueryValidationError(
                f"Invalid apply mode: {value}",
                code="INVALID_APPLY_MODE",
                details={"allowed": [m.value for m in cls]},
            ) from None


class ScopeFailure(BaseModel):
    brand_id: Optional[str] = None
    code: Optional[str] = None
    message: str


class ScopeApplySummary(BaseModel):
    scope_applied: ApplyMode
    property_id: str
    affected_total: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: List[ScopeFailure] = []
    sync_queued_total: int = 0
    sync_skipped_total: int = 0
    applied_brand_ids: List[str] = []


def clamp_sync_days(value: Any) -> int:
    try:
        days = int(float(value))
    except (TypeError, ValueError):
        return 30
    return max(1, min(365, days))


def build_sync_job_id(tenant_id: str, brand_id: str, property_id: str) -> str:
    return f"{SYNC_JOB_PREFIX}:{tenant_id}:{brand_id}:{property_id}"


class PropertyScopeApplicator:
    def __init__(
        self,
        registry: BindingRegistry,
        brands: BrandDirectory,
        queue: Optional[JobQueue] = None,
        concurrency: Optional[int] = None,
    ):
        self._registry = registry
        self._brands = brands
        self._queue = queue
        self.concurrency = max(1, concurrency or settings.scope_apply_concurrency)

    async def apply_scope_selection(
        self,
        tenant_id: str,
        property_id: str,
        mode: Any,
        brand_id: Optional[str] = None,
        property_name: Optional[str] = None,
        sync_after_select: bool = True,
        include_campaigns: bool = False,
        sync_days: Any = None,
        requested_by: Optional[str] = None,
    ) -> ScopeApplySummary:
        tenant_id = str(tenant_id or "").strip()
        if not tenant_id:
            raise QueryValidationError("tenant id is required", code="TENANT_REQUIRED")
        property_id = normalize_property_id(property_id)
        if not property_id:
            raise QueryValidationError("propertyId is required", code="PROPERTY_REQUIRED")
        apply_mode = ApplyMode.parse(mode)

        targets = await self._resolve_targets(tenant_id, apply_mode, brand_id)
        summary = ScopeApplySummary(
            scope_applied=apply_mode, property_id=property_id, affected_total=len(targets)
        )

        async def switch(target: str) -> Optional[ScopeFailure]:
            try:
                await self._registry.set_active_account(
                    tenant_id, target, Platform.GA4, property_id, account_name=property_name
                )
                return None
            except KondorError as e:
                return ScopeFailure(brand_id=target, code=e.code, message=str(e))
            except Exception as e:
                logger.error(
                    f"❌ Property switch failed for brand {target}: {e}",
                    extra={"tenant_id": tenant_id, "brand_id": target},
                    exc_info=True,
                )
                return ScopeFailure(
                    brand_id=target, code=None, message=str(e) or "Failed to apply property on brand"
                )

        results = await map_with_concurrency(targets, self.concurrency, switch)
        for target, failure in zip(targets, results):
            if failure is None:
                summary.applied_brand_ids.append(target)
            else:
                summary.failures.append(failure)
        summary.succeeded = len(summary.applied_brand_ids)
        summary.failed = max(0, len(targets) - summary.succeeded)

        if sync_after_select and summary.applied_brand_ids:
            await self._enqueue_syncs(
                summary, tenant_id, property_id, include_campaigns, sync_days, requested_by
            )

        logger.info(
            f"🎯 GA4 property {property_id} applied ({apply_mode.value}): "
            f"{summary.succeeded}/{summary.affected_total} brands, "
            f"{summary.sync_queued_total} syncs queued",
            extra={"tenant_id": tenant_id, "event": "ga4_property_scope_applied"},
        )
        if summary.failed:
            logger.warning(
                f"⚠️ GA4 property scope partially failed: {summary.failed} brands",
                extra={"tenant_id": tenant_id, "event": "ga4_property_scope_partial_failure"},
            )
        return summary

    async def _resolve_targets(
        self, tenant_id: str, mode: ApplyMode, brand_id: Optional[str]
    ) -> List[str]:
        if mode == ApplyMode.SINGLE_BRAND:
            if not brand_id:
                raise QueryValidationError(
                    "brandId is required for SINGLE_BRAND", code="BRAND_REQUIRED"
                )
            if not await self._brands.brand_exists(tenant_id, str(brand_id)):
                raise BrandNotFoundError(str(brand_id))
            return [str(brand_id)]
        return [str(b) for b in await self._brands.list_brand_ids(tenant_id)]

    async def _enqueue_syncs(
        self,
        summary: ScopeApplySummary,
        tenant_id: str,
        property_id: str,
        include_campaigns: bool,
        sync_days: Any,
        requested_by: Optional[str],
    ) -> None:
        days = clamp_sync_days(settings.sync_days if sync_days is None else sync_days)

        async def enqueue(target: str) -> Dict[str, Any]:
            if self._queue is None:
                return {"queued": False, "reason": "queue_unavailable"}
            payload = {
                "tenant_id": tenant_id,
                "brand_id": target,
                "property_id": property_id,
                "days": days,
                "include_campaigns": bool(include_campaigns),
                "requested_by": requested_by,
                "trigger": "property_select",
            }
            try:
                queued = await self._queue.enqueue(
                    build_sync_job_id(tenant_id, target, property_id), payload
                )
            except Exception as e:
                return {"queued": False, "reason": getattr(e, "code", None) or str(e) or "queue_failed"}
            return {"queued": queued, "reason": None if queued else "already_queued"}

        results = await map_with_concurrency(summary.applied_brand_ids, self.concurrency, enqueue)
        for target, result in zip(summary.applied_brand_ids, results):
            if result["queued"]:
                summary.sync_queued_total += 1
                continue
            summary.sync_skipped_total += 1
            if result["reason"] != "already_queued":
                summary.failures.append(
                    ScopeFailure(brand_id=target, code="SYNC_QUEUE_FAILED", message=str(result["reason"]))
                )
