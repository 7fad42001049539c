"""KONDOR — Scheduler Jobs.

APScheduler-backed background queue:

- ``enqueue(job_id, payload)``: one-shot GA4 brand sync, deduplicated by job id
  while a job with that id is pending.
- daily job at the configured hour re-materializing yesterday for every
  brand with an ACTIVE GA4 binding.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from kondor.config import settings
from kondor.core.date_ranges import DateRange, build_rolling_range, today_in
from kondor.core.errors import KondorError
from kondor.core.logging import get_logger
from kondor.materializer.fact_materializer import FactMaterializer, sync_metric_keys
from kondor.models.fact_models import Platform
from kondor.registry.bindings import BindingRegistry

logger = get_logger("scheduler")

DAILY_JOB_ID = "daily_ga4_fact_sync"


class SyncJobQueue:
    """Background materialization queue on an ``AsyncIOScheduler``."""

    def __init__(
        self,
        registry: BindingRegistry,
        materializer: FactMaterializer,
        scheduler: Optional[AsyncIOScheduler] = None,
        delay_seconds: float = 1.0,
    ):
        self.registry = registry
        self.materializer = materializer
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.delay_seconds = delay_seconds

    # ── Queue ──

    async def enqueue(self, job_id: str, payload: Dict[str, Any]) -> bool:
        """Schedule a brand sync; False when ``job_id`` is already pending."""
        if self.scheduler.get_job(job_id) is not None:
            logger.info(f"Sync job {job_id} already queued")
            return False
        run_at = datetime.now(timezone.utc) + timedelta(seconds=self.delay_seconds)
        try:
            self.scheduler.add_job(
                self.run_brand_sync,
                "date",
                run_date=run_at,
                id=job_id,
                kwargs={"payload": dict(payload)},
                misfire_grace_time=3600,
                replace_existing=False,
            )
        except ConflictingIdError:
            return False
        logger.info(
            f"📥 Sync job queued: {job_id}",
            extra={"tenant_id": payload.get("tenant_id"), "brand_id": payload.get("brand_id")},
        )
        return True

    async def run_brand_sync(self, payload: Dict[str, Any]) -> Optional[str]:
        """Materialize the rolling window for a brand if its property is still active."""
        tenant_id = str(payload["tenant_id"])
        brand_id = str(payload["brand_id"])
        property_id = str(payload.get("property_id") or "")
        extra = {"tenant_id": tenant_id, "brand_id": brand_id, "platform": "GA4"}

        current = await self.registry.resolve_active_account(tenant_id, brand_id, Platform.GA4)
        if not current or (property_id and current != property_id):
            logger.info(f"Skipping sync for brand {brand_id}: property is no longer active", extra=extra)
            return "skipped"

        tz_name = await self.registry.resolve_timezone(tenant_id, brand_id)
        window = build_rolling_range(int(payload.get("days") or settings.sync_days), tz_name)
        return await self._sync(tenant_id, brand_id, window, bool(payload.get("include_campaigns")))

    async def _sync(
        self, tenant_id: str, brand_id: str, window: DateRange, include_campaigns: bool
    ) -> str:
        extra = {"tenant_id": tenant_id, "brand_id": brand_id, "platform": "GA4"}
        scopes = [[]] + ([["campaign_id"]] if include_campaigns else [])
        status = "ok"
        for dimensions in scopes:
            try:
                outcome = await self.materializer.ensure_fresh(
                    tenant_id, brand_id, window, sync_metric_keys(), dimensions
                )
                logger.info(
                    f"Brand sync {brand_id} ({outcome.scope or 'n/a'}, {window}): {outcome.status}",
                    extra=extra,
                )
            except KondorError as e:
                status = "failed"
                logger.warning(
                    f"⚠️ Brand sync failed for {brand_id}: {e}",
                    extra={**extra, "error_code": e.code},
                )
        return status

    # ── Daily ──

    async def daily_sync_job(self) -> int:
        """Re-materialize yesterday for every GA4-bound brand."""
        logger.info("Scheduled daily GA4 sync starting...")
        synced = 0
        try:
            pairs = await self.registry.list_bound_brands(Platform.GA4)
        except Exception as e:
            logger.error(f"Scheduled daily sync failed to list brands: {e}")
            return 0
        for tenant_id, brand_id in pairs:
            tz_name = await self.registry.resolve_timezone(tenant_id, brand_id)
            yesterday = today_in(tz_name) - timedelta(days=1)
            if await self._sync(tenant_id, brand_id, DateRange(yesterday, yesterday), False) == "ok":
                synced += 1
        logger.info(f"Scheduled daily GA4 sync complete: {synced}/{len(pairs)} brands")
        return synced

    # ── Lifecycle ──

    def start(self) -> None:
        """Configure the daily job and start the scheduler."""
        if not settings.scheduler_enabled:
            logger.info("Scheduler disabled via config")
            return
        self.scheduler.add_job(
            self.daily_sync_job,
            "cron",
            hour=settings.daily_sync_hour,
            minute=0,
            id=DAILY_JOB_ID,
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started. Daily GA4 sync at {settings.daily_sync_hour}:00 UTC")

    def stop(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
