"""KONDOR — Metrics Query Engine.

Answers declarative aggregate queries over the fact store:

    validate brand → check connections → plan metrics → validate sort →
    resolve range (brand timezone) → best-effort GA4 materialization →
    grouped + totals SQL → derived metrics → optional compare window.

Materialization is time-boxed and never fails a query; degraded freshness
is reported in ``meta.stale_platforms`` / ``meta.sync_errors``.
"""

import asyncio
import time
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from kondor.config import settings
from kondor.connectors.base import BrandDirectory
from kondor.core.date_ranges import (
    DateRange,
    build_compare_range,
    resolve_preset,
)
from kondor.core.errors import (
    BrandNotFoundError,
    KondorError,
    MissingConnectionsError,
    QueryValidationError,
)
from kondor.core.logging import get_logger
from kondor.core.metric_registry import (
    ADS_METRICS,
    GA4_METRICS,
    MetricsPlan,
    build_metrics_plan,
    compute_derived,
)
from kondor.materializer.fact_materializer import FactMaterializer, GA4_COLUMNS
from kondor.models.fact_models import ADS_PLATFORMS, Platform
from kondor.models.query_models import (
    CompareBlock,
    MetricsQuery,
    PageInfo,
    QueryMeta,
    QueryResult,
)
from kondor.query.sql_builder import FactQuery, FactQueryBuilder
from kondor.registry.bindings import BindingRegistry

logger = get_logger("query.engine")


def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _dimension_value(value: Any) -> Any:
    if isinstance(value, Platform):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return value


def parse_query(payload: Any) -> MetricsQuery:
    """Accept a ``MetricsQuery`` or a raw dict; schema errors become 400s."""
    if isinstance(payload, MetricsQuery):
        return payload
    try:
        return MetricsQuery.model_validate(payload or {})
    except ValidationError as e:
        raise QueryValidationError(
            "Invalid metrics query",
            code="INVALID_QUERY",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


class MetricsQueryEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: BindingRegistry,
        brands: BrandDirectory,
        materializer: Optional[FactMaterializer] = None,
        materialize_timeout: Optional[float] = None,
        clock=None,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._brands = brands
        self._materializer = materializer
        self.materialize_timeout = (
            settings.materialize_timeout_seconds
            if materialize_timeout is None
            else materialize_timeout
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def query(
        self,
        tenant_id: str,
        payload: Any,
        on_materialized: Optional[Callable[[], None]] = None,
    ) -> QueryResult:
        if not tenant_id:
            raise QueryValidationError("tenant id is required", code="TENANT_REQUIRED")
        q = parse_query(payload)
        started = time.monotonic()
        log_extra = {"tenant_id": tenant_id, "brand_id": q.brand_id}

        # 1. Brand belongs to tenant
        if not await self._brands.brand_exists(tenant_id, q.brand_id):
            raise BrandNotFoundError(q.brand_id)

        # 2. Connections (fail before any fact SQL)
        filter_platforms = self._filter_platforms(q)
        accounts = await self._registry.active_accounts(tenant_id, q.brand_id)
        self._ensure_connections(q, filter_platforms, accounts)

        # 3. Metrics plan + sort whitelist
        plan = build_metrics_plan(q.metrics)
        if q.sort is not None:
            allowed = set(q.dimensions) | set(q.metrics)
            if q.sort.field not in allowed:
                raise QueryValidationError(
                    "Invalid sort field",
                    code="INVALID_SORT_FIELD",
                    details={"field": q.sort.field, "allowed": sorted(allowed)},
                )

        # Range in brand timezone
        tz_name = await self._registry.resolve_timezone(tenant_id, q.brand_id)
        if q.date_range is not None:
            date_range = DateRange.parse(q.date_range.start, q.date_range.end)
        else:
            date_range = resolve_preset(q.preset, tz_name, self._clock())
        compare_range = (
            build_compare_range(date_range, q.compare_to.mode) if q.compare_to else None
        )

        # 4. Best-effort materialization
        stale_platforms, sync_errors = await self._materialize(
            tenant_id, q, plan, date_range, filter_platforms, accounts
        )
        if on_materialized is not None:
            on_materialized()

        # 5-7. Aggregate SQL
        fact_query = self._fact_query(tenant_id, q, plan, date_range, filter_platforms, accounts)
        rows, totals, page_info = await self._run(fact_query, q, plan)

        # 8. Compare window
        compare = None
        if compare_range is not None:
            c_rows, c_totals, c_page = await self._run(
                fact_query.with_range(compare_range), q, plan
            )
            compare = CompareBlock(
                date_range=compare_range.to_dict(),
                rows=c_rows,
                totals=c_totals,
                page_info=c_page,
            )

        result = QueryResult(
            meta=QueryMeta(
                timezone=tz_name,
                currency=settings.default_currency or None,
                date_range=date_range.to_dict(),
                compare_range=compare_range.to_dict() if compare_range else None,
                generated_at=self._clock().isoformat(),
                stale_platforms=stale_platforms,
                sync_errors=sync_errors,
            ),
            rows=rows,
            totals=totals,
            page_info=page_info,
            compare=compare,
        )
        logger.info(
            f"📊 Query for brand {q.brand_id}: {len(rows)} rows, "
            f"dims={q.dimensions} metrics={q.metrics}",
            extra={**log_extra, "duration_ms": round((time.monotonic() - started) * 1000)},
        )
        return result

    # ── Connections ──

    @staticmethod
    def _filter_platforms(q: MetricsQuery) -> List[Platform]:
        out: List[Platform] = []
        for raw in q.filter_values("platform"):
            platform = Platform.parse(raw)
            if platform is None:
                raise QueryValidationError(
                    f"Invalid platform filter: {raw}",
                    code="INVALID_FILTER",
                    details={"field": "platform", "value": raw},
                )
            if platform not in out:
                out.append(platform)
        return out

    @staticmethod
    def _ensure_connections(
        q: MetricsQuery, filter_platforms: List[Platform], accounts: Dict[Platform, str]
    ) -> None:
        required: List[Platform] = []
        for p in list(q.required_platforms or []) + filter_platforms:
            if p not in required:
                required.append(p)

        requires_ads = False
        if not required:
            for metric in q.metrics:
                if metric in GA4_METRICS and Platform.GA4 not in required:
                    required.append(Platform.GA4)
                elif metric in ADS_METRICS:
                    requires_ads = True

        missing: List[str] = [p.value for p in required if p not in accounts]
        if requires_ads and not any(p in accounts for p in ADS_PLATFORMS):
            missing.extend(
                p.value for p in sorted(ADS_PLATFORMS, key=lambda p: p.value)
                if p.value not in missing
            )
        if missing:
            raise MissingConnectionsError(missing)

    # ── Materialization ──

    async def _materialize(
        self,
        tenant_id: str,
        q: MetricsQuery,
        plan: MetricsPlan,
        date_range: DateRange,
        filter_platforms: List[Platform],
        accounts: Dict[Platform, str],
    ) -> Tuple[List[str], List[Dict[str, Any]]]:
        if self._materializer is None or Platform.GA4 not in accounts:
            return [], []
        if filter_platforms and Platform.GA4 not in filter_platforms:
            return [], []
        if not GA4_COLUMNS.intersection(plan.base):
            return [], []

        log_extra = {"tenant_id": tenant_id, "brand_id": q.brand_id, "platform": "GA4"}
        try:
            await asyncio.wait_for(
                self._materializer.ensure_fresh(
                    tenant_id,
                    q.brand_id,
                    date_range,
                    plan.base,
                    q.dimensions,
                    q.filters,
                ),
                timeout=self.materialize_timeout,
            )
            return [], []
        except asyncio.TimeoutError:
            logger.warning(
                f"⏱️ GA4 materialization exceeded {self.materialize_timeout}s; serving stored facts",
                extra={**log_extra, "error_code": "MATERIALIZE_TIMEOUT"},
            )
            return ["GA4"], [{"platform": "GA4", "code": "MATERIALIZE_TIMEOUT"}]
        except KondorError as e:
            logger.warning(
                f"⚠️ GA4 materialization failed ({e.code}): {e}; serving stored facts",
                extra={**log_extra, "error_code": e.code},
            )
            return ["GA4"], [{"platform": "GA4", "code": e.code, "message": str(e)}]
        except Exception as e:
            logger.warning(
                f"⚠️ GA4 materialization failed: {e!r}; serving stored facts",
                extra={**log_extra, "error_code": "MATERIALIZE_FAILED"},
                exc_info=True,
            )
            return ["GA4"], [{"platform": "GA4", "code": "MATERIALIZE_FAILED", "message": str(e)}]

    # ── SQL ──

    @staticmethod
    def _fact_query(
        tenant_id: str,
        q: MetricsQuery,
        plan: MetricsPlan,
        date_range: DateRange,
        filter_platforms: List[Platform],
        accounts: Dict[Platform, str],
    ) -> FactQuery:
        page_limit: Optional[int] = None
        offset = 0
        if q.pagination is not None:
            offset = q.pagination.offset
            page_limit = q.pagination.limit + 1
            if q.limit:
                remaining = q.limit - offset
                page_limit = min(page_limit, remaining) if remaining > 0 else 0
        elif q.limit:
            page_limit = q.limit

        sort_derived = [
            d for d in plan.derived if q.sort is not None and d.key == q.sort.field
        ]
        return FactQuery(
            tenant_id=tenant_id,
            brand_id=q.brand_id,
            date_range=date_range,
            dimensions=list(q.dimensions),
            base_metrics=list(plan.base),
            derived_metrics=sort_derived,
            platforms=filter_platforms,
            account_ids=q.filter_values("account_id"),
            campaign_ids=q.filter_values("campaign_id"),
            campaign_scope=q.wants_campaign,
            ga4_property_id=accounts.get(Platform.GA4),
            sort_field=q.sort.field if q.sort else None,
            sort_direction=q.sort.direction if q.sort else "asc",
            limit=page_limit,
            offset=offset,
        )

    async def _run(
        self, fact_query: FactQuery, q: MetricsQuery, plan: MetricsPlan
    ) -> Tuple[List[Dict[str, Any]], Dict[str, float], Optional[PageInfo]]:
        builder = FactQueryBuilder(fact_query)
        async with self._session_factory() as session:
            grouped = (await session.execute(builder.grouped())).mappings().all()
            totals_row = (await session.execute(builder.totals())).mappings().first()

        raw_rows = list(grouped)
        page_info = None
        if q.pagination is not None:
            has_more = len(raw_rows) > q.pagination.limit
            raw_rows = raw_rows[: q.pagination.limit]
            if q.limit and q.pagination.offset + len(raw_rows) >= q.limit:
                has_more = False
            page_info = PageInfo(
                limit=q.pagination.limit, offset=q.pagination.offset, has_more=has_more
            )

        rows = [self._shape(row, q, plan) for row in raw_rows]
        totals = self._shape(totals_row or {}, q, plan, with_dimensions=False)
        return rows, totals, page_info

    @staticmethod
    def _shape(
        row: Any, q: MetricsQuery, plan: MetricsPlan, with_dimensions: bool = True
    ) -> Dict[str, Any]:
        base = {m: _to_float(row.get(m)) for m in plan.base}
        derived = compute_derived(base, plan.derived)
        out: Dict[str, Any] = {}
        if with_dimensions:
            for dim in q.dimensions:
                out[dim] = _dimension_value(row.get(dim))
        for metric in q.metrics:
            out[metric] = base[metric] if metric in base else derived.get(metric, 0.0)
        return out

