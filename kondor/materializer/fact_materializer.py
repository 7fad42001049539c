"""KONDOR — Fact Materializer.

Pulls GA4 reports for a brand's ACTIVE property and replace-writes them into
``fact_metrics_daily``:

1. Resolve the active property (reconciling duplicates) and snapshot its
   binding version.
2. Pick the scope: campaign when dimensions/filters reference campaigns.
3. Skip closed ranges already covered by a previous write.
4. Fetch sessions / conversions / revenue with schema-drift recovery, then
   event-count fetches for leads (and conversions when the metric is gone).
5. Under the tenant/brand lock, re-verify the snapshot and delete + insert the
   exact (account, scope, range) partition in bounded batches.
6. Stamp success / failure on the canonical GA4 settings.

Identical concurrent calls share one execution through ``InFlightCache``.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from kondor.config import settings
from kondor.connectors.base import (
    CredentialResolver,
    InListFilter,
    ReportFetcher,
    ReportResponse,
)
from kondor.connectors.ga4.transformer import (
    ALTERNATE_DIMENSIONS,
    ALTERNATE_METRICS,
    GA4_METRIC_MAP,
    RowMap,
    apply_report,
    build_fact_rows,
)
from kondor.core.concurrency import InFlightCache
from kondor.core.date_ranges import DateRange, range_touches_today, resolve_timezone
from kondor.core.errors import (
    CredentialNotConnectedError,
    KondorError,
    ReportFetchError,
    ScopeDowngradeError,
    StaleBindingError,
)
from kondor.core.locking import TenantBrandLock
from kondor.core.logging import get_logger
from kondor.core.metric_registry import BASE_METRICS, build_metrics_plan
from kondor.models.fact_models import (
    FactMetricDaily,
    FactScope,
    FactSyncCoverage,
    Platform,
)
from kondor.registry.bindings import BindingRegistry, BindingSnapshot

logger = get_logger("materializer")

# Fact columns a GA4 sync can populate
GA4_COLUMNS = frozenset({"sessions", "leads", "conversions", "revenue"})

MAX_DRIFT_ATTEMPTS = 6


@dataclass
class MaterializeOutcome:
    status: str  # written | empty | skipped | aborted | no_account | not_connected
    platform: str = Platform.GA4.value
    account_id: Optional[str] = None
    scope: Optional[str] = None
    date_range: Optional[Dict[str, str]] = None
    rows_written: int = 0
    fetch_calls: int = 0
    dropped_metrics: List[str] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass
class _FetchPlan:
    """Result of a drift-tolerant fetch: merged rows plus what was dropped."""

    rows_map: RowMap
    campaign_dimension: Optional[str]
    dropped_metrics: List[str]
    calls: int


def _references_campaign(dimensions: Sequence[str], filters: Sequence[Any]) -> bool:
    if "campaign_id" in (dimensions or []):
        return True
    for f in filters or []:
        name = f.get("field") if isinstance(f, dict) else getattr(f, "field", None)
        if name == "campaign_id":
            return True
    return False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FactMaterializer:
    platform = Platform.GA4

    def __init__(
        self,
        session_factory: async_sessionmaker,
        lock: TenantBrandLock,
        registry: BindingRegistry,
        fetcher: ReportFetcher,
        credential_resolver: Optional[CredentialResolver] = None,
        flight_cache: Optional[InFlightCache] = None,
        on_write: Optional[Callable[[str, str], None]] = None,
        insert_chunk: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._lock = lock
        self._registry = registry
        self._fetcher = fetcher
        self._credentials = credential_resolver
        self._flights = flight_cache or InFlightCache(settings.fact_cache_ttl_seconds)
        self._on_write = on_write
        self._insert_chunk = max(100, insert_chunk or settings.effective_insert_chunk)
        self._clock = clock

    # ── Public entry point ──

    async def ensure_fresh(
        self,
        tenant_id: str,
        brand_id: str,
        date_range: DateRange,
        requested_metrics: Sequence[str],
        requested_dimensions: Sequence[str] = (),
        filters: Sequence[Any] = (),
    ) -> MaterializeOutcome:
        """Best-effort: make facts for ``date_range`` current for the active property.

        Raises upstream errors (``ReportFetchError``, ``ScopeDowngradeError``)
        after recording them; callers on the query path log and continue.
        """
        plan = build_metrics_plan(list(requested_metrics))
        if not GA4_COLUMNS.intersection(plan.base):
            return MaterializeOutcome(status="skipped", reason="no_ga4_metrics")

        account_id = await self._registry.resolve_active_account(
            tenant_id, brand_id, self.platform
        )
        if not account_id:
            return MaterializeOutcome(status="no_account")

        scope = (
            FactScope.CAMPAIGN
            if _references_campaign(requested_dimensions, filters)
            else FactScope.AGGREGATED
        )
        key = (
            tenant_id,
            brand_id,
            self.platform.value,
            account_id,
            scope.value,
            date_range.start.isoformat(),
            date_range.end.isoformat(),
        )
        return await self._flights.run(
            key, lambda: self._materialize(tenant_id, brand_id, date_range, scope)
        )

    def invalidate_brand(self, tenant_id: str, brand_id: str) -> int:
        """Forget finished coalesced results for one brand."""
        return self._flights.invalidate(lambda k: k[0] == tenant_id and k[1] == brand_id)

    # ── Pipeline ──

    async def _materialize(
        self, tenant_id: str, brand_id: str, date_range: DateRange, scope: FactScope
    ) -> MaterializeOutcome:
        started = time.monotonic()
        snap = await self._registry.snapshot(tenant_id, brand_id, self.platform)
        if snap is None:
            return MaterializeOutcome(status="no_account")

        outcome = MaterializeOutcome(
            status="skipped",
            account_id=snap.account_id,
            scope=scope.value,
            date_range=date_range.to_dict(),
        )
        log_extra = {
            "tenant_id": tenant_id,
            "brand_id": brand_id,
            "platform": self.platform.value,
            "account_id": snap.account_id,
        }

        ga4_settings = await self._registry.get_ga4_settings(tenant_id, brand_id)
        tz_name = resolve_timezone(ga4_settings.timezone if ga4_settings else None)
        closed = not range_touches_today(date_range, tz_name, self._clock())

        if closed and await self._is_covered(tenant_id, brand_id, snap.account_id, scope, date_range):
            outcome.reason = "closed_range_covered"
            return outcome

        user_id = None
        if self._credentials is not None:
            try:
                ctx = await self._credentials.resolve_integration_context(tenant_id, snap.account_id)
                user_id = ctx.user_id
            except CredentialNotConnectedError as e:
                logger.warning(f"⚠️ GA4 credential missing for brand {brand_id}: {e}", extra=log_extra)
                outcome.status = "not_connected"
                outcome.reason = e.code
                return outcome

        lead_events = list(ga4_settings.lead_events or []) if ga4_settings else []
        conversion_events = list(ga4_settings.conversion_events or []) if ga4_settings else []

        try:
            fetched = await self._fetch(
                tenant_id,
                user_id,
                snap.account_id,
                date_range,
                wants_campaign=scope == FactScope.CAMPAIGN,
                lead_events=lead_events,
                conversion_events=conversion_events,
            )
        except KondorError as e:
            await self._registry.record_sync_result(
                tenant_id, brand_id, snap.account_id, error=f"{e.code}: {e}"
            )
            raise

        outcome.fetch_calls = fetched.calls
        outcome.dropped_metrics = fetched.dropped_metrics

        facts = build_fact_rows(
            tenant_id,
            brand_id,
            snap.account_id,
            fetched.rows_map,
            currency=settings.default_currency,
        )
        try:
            written = await self._write(
                tenant_id, brand_id, snap, scope, date_range, facts, record_coverage=closed
            )
        except StaleBindingError as e:
            logger.warning(
                f"⏭️ Materialization aborted for brand {brand_id}: {e}",
                extra={**log_extra, "error_code": e.code},
            )
            outcome.status = "aborted"
            outcome.reason = e.code
            return outcome

        outcome.rows_written = written
        outcome.status = "written" if written else "empty"
        await self._registry.record_sync_result(
            tenant_id, brand_id, snap.account_id, cursor=date_range.end.isoformat()
        )
        if self._on_write is not None:
            self._on_write(tenant_id, brand_id)

        logger.info(
            f"✅ Materialized {written} GA4 fact rows for brand {brand_id} "
            f"({scope.value}, {date_range}, {fetched.calls} fetches)",
            extra={**log_extra, "duration_ms": round((time.monotonic() - started) * 1000)},
        )
        return outcome

    # ── Upstream fetch with schema-drift recovery ──

    async def _fetch(
        self,
        tenant_id: str,
        user_id: Optional[str],
        account_id: str,
        date_range: DateRange,
        wants_campaign: bool,
        lead_events: List[str],
        conversion_events: List[str],
    ) -> _FetchPlan:
        calls = 0

        async def run(metrics: List[str], dimensions: List[str], flt=None) -> ReportResponse:
            nonlocal calls
            calls += 1
            return await self._fetcher.fetch_report(
                tenant_id, user_id, account_id, metrics, dimensions, date_range, flt
            )

        # column → upstream metric name
        metric_names: Dict[str, str] = dict(GA4_METRIC_MAP)
        campaign_dim: Optional[str] = "campaignId" if wants_campaign else None
        swapped_metrics: set = set()
        swapped_dims: set = set()
        dropped: List[str] = []
        response: Optional[ReportResponse] = None

        for _ in range(MAX_DRIFT_ATTEMPTS):
            if not metric_names:
                break
            dims = ["date"] + ([campaign_dim] if campaign_dim else [])
            try:
                response = await run(list(metric_names.values()), dims)
                break
            except ReportFetchError as e:
                if not e.is_schema_drift:
                    raise
                progressed = False
                for name in e.invalid_dimensions:
                    if name != campaign_dim:
                        continue
                    alternate = ALTERNATE_DIMENSIONS.get(name)
                    if alternate and name not in swapped_dims:
                        swapped_dims.add(name)
                        campaign_dim = alternate
                    elif wants_campaign:
                        raise ScopeDowngradeError(
                            "Campaign breakdown is not available for this property",
                            details={"account_id": account_id, "rejected": e.invalid_dimensions},
                        ) from e
                    else:
                        campaign_dim = None
                    progressed = True
                for name in e.invalid_metrics:
                    column = next((c for c, n in metric_names.items() if n == name), None)
                    if column is None:
                        continue
                    alternate = ALTERNATE_METRICS.get(name)
                    if alternate and name not in swapped_metrics:
                        swapped_metrics.add(name)
                        metric_names[column] = alternate
                    else:
                        metric_names.pop(column)
                        dropped.append(column)
                    progressed = True
                if not progressed:
                    raise
                logger.info(
                    f"🔁 GA4 schema drift on {account_id}: metrics={e.invalid_metrics} "
                    f"dimensions={e.invalid_dimensions}; retrying"
                )
        else:
            raise ReportFetchError(
                "Schema drift recovery exhausted", upstream_status=400
            )

        rows_map: RowMap = {}
        apply_report(
            rows_map,
            response,
            {column: name for column, name in metric_names.items()},
            campaign_dimension=campaign_dim,
        )

        dims = ["date"] + ([campaign_dim] if campaign_dim else [])
        if lead_events:
            lead_response = await run(
                ["eventCount"], dims, InListFilter("eventName", list(lead_events))
            )
            apply_report(rows_map, lead_response, {"leads": "eventCount"}, campaign_dim)

        if "conversions" in dropped and conversion_events:
            conv_response = await run(
                ["eventCount"], dims, InListFilter("eventName", list(conversion_events))
            )
            apply_report(rows_map, conv_response, {"conversions": "eventCount"}, campaign_dim)

        return _FetchPlan(rows_map, campaign_dim, dropped, calls)

    # ── Coverage ──

    @staticmethod
    def _coverage_filter(tenant_id, brand_id, platform, account_id, scope):
        return (
            FactSyncCoverage.tenant_id == tenant_id,
            FactSyncCoverage.brand_id == brand_id,
            FactSyncCoverage.platform == platform,
            FactSyncCoverage.account_id == account_id,
            FactSyncCoverage.scope == scope,
        )

    async def _is_covered(
        self,
        tenant_id: str,
        brand_id: str,
        account_id: str,
        scope: FactScope,
        date_range: DateRange,
    ) -> bool:
        """True iff previous closed-range writes cover every day of ``date_range``."""
        async with self._session_factory() as session:
            stmt = (
                select(FactSyncCoverage)
                .where(
                    *self._coverage_filter(tenant_id, brand_id, self.platform, account_id, scope),
                    FactSyncCoverage.start_date <= date_range.end,
                    FactSyncCoverage.end_date >= date_range.start,
                )
                .order_by(FactSyncCoverage.start_date)
            )
            spans = list((await session.exec(stmt)).all())

        cursor = date_range.start
        for span in spans:
            if span.start_date > cursor:
                return False
            cursor = max(cursor, span.end_date + timedelta(days=1))
            if cursor > date_range.end:
                return True
        return False

    # ── Locked replace-write ──

    async def _write(
        self,
        tenant_id: str,
        brand_id: str,
        snap: BindingSnapshot,
        scope: FactScope,
        date_range: DateRange,
        facts: List[FactMetricDaily],
        record_coverage: bool,
    ) -> int:
        async with self._lock.locked_transaction(tenant_id, brand_id) as session:
            if not await self._registry.verify_snapshot(session, snap):
                raise StaleBindingError(
                    "Active GA4 property changed during sync",
                    details={"account_id": snap.account_id, "version": snap.version},
                )

            if facts:
                await self._delete_partition(session, tenant_id, brand_id, snap.account_id, scope, date_range)
                for i in range(0, len(facts), self._insert_chunk):
                    session.add_all(facts[i : i + self._insert_chunk])
                    await session.flush()

            if record_coverage:
                await session.execute(
                    delete(FactSyncCoverage).where(
                        *self._coverage_filter(
                            tenant_id, brand_id, self.platform, snap.account_id, scope
                        ),
                        FactSyncCoverage.start_date >= date_range.start,
                        FactSyncCoverage.end_date <= date_range.end,
                    )
                )
                session.add(
                    FactSyncCoverage(
                        tenant_id=tenant_id,
                        brand_id=brand_id,
                        platform=self.platform,
                        account_id=snap.account_id,
                        scope=scope,
                        start_date=date_range.start,
                        end_date=date_range.end,
                    )
                )
        return len(facts)

    async def _delete_partition(
        self,
        session: AsyncSession,
        tenant_id: str,
        brand_id: str,
        account_id: str,
        scope: FactScope,
        date_range: DateRange,
    ) -> None:
        partition = (
            FactMetricDaily.campaign_id.is_not(None)
            if scope == FactScope.CAMPAIGN
            else FactMetricDaily.campaign_id.is_(None)
        )
        await session.execute(
            delete(FactMetricDaily).where(
                FactMetricDaily.tenant_id == tenant_id,
                FactMetricDaily.brand_id == brand_id,
                FactMetricDaily.platform == self.platform,
                FactMetricDaily.account_id == account_id,
                FactMetricDaily.date >= date_range.start,
                FactMetricDaily.date <= date_range.end,
                partition,
            )
        )


def sync_metric_keys() -> Tuple[str, ...]:
    """Metric keys a background sync requests (every GA4-populated column)."""
    return tuple(k for k in BASE_METRICS if k in GA4_COLUMNS)
