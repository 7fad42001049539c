"""
Pytest configuration and shared fixtures.
"""
import asyncio
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import pytest

from kondor.connectors.base import IntegrationContext, ReportResponse, ReportRow
from kondor.core.concurrency import InFlightCache
from kondor.core.errors import ReportFetchError
from kondor.database import init_db
from kondor.models.binding_models import Brand
from kondor.models.fact_models import FactMetricDaily, Platform
from kondor.query.result_cache import QueryResultCache
from kondor.runtime import build_runtime

TENANT = "tenant-1"
BRAND = "brand-1"


class FakeReportFetcher:
    """In-memory GA4 stand-in.

    Returns one row per day (and per campaign when a campaign dimension is
    requested) with the configured per-day metric values. Names listed in
    ``reject_metrics`` / ``reject_dimensions`` are refused the way the real
    API refuses them.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.values: Dict[str, str] = {
            "sessions": "10",
            "conversions": "2",
            "keyEvents": "2",
            "totalRevenue": "100",
            "purchaseRevenue": "100",
            "eventCount": "3",
        }
        self.campaigns: List[str] = ["cmp-1"]
        self.reject_metrics: set = set()
        self.reject_dimensions: set = set()
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def fetch_report(
        self,
        tenant_id,
        user_id,
        account_id,
        metrics,
        dimensions,
        date_range,
        dimension_filter=None,
    ) -> ReportResponse:
        self.calls.append(
            {
                "account_id": account_id,
                "metrics": list(metrics),
                "dimensions": list(dimensions),
                "date_range": date_range,
                "filter": dimension_filter,
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error

        bad_metrics = [m for m in metrics if m in self.reject_metrics]
        bad_dims = [d for d in dimensions if d in self.reject_dimensions]
        if bad_metrics or bad_dims:
            message = "; ".join(
                [f"Field {m} is not a valid metric." for m in bad_metrics]
                + [f"Field {d} is not a valid dimension." for d in bad_dims]
            )
            raise ReportFetchError(
                message,
                invalid_metrics=bad_metrics,
                invalid_dimensions=bad_dims,
                upstream_status=400,
            )

        campaign_dims = [d for d in dimensions if d != "date"]
        rows: List[ReportRow] = []
        day = date_range.start
        while day <= date_range.end:
            keys = self.campaigns if campaign_dims else [None]
            for campaign in keys:
                dims = [day.strftime("%Y%m%d")] + ([campaign] if campaign_dims else [])
                rows.append(
                    ReportRow(
                        dimension_values=dims,
                        metric_values=[self.values.get(m, "0") for m in metrics],
                    )
                )
            day += timedelta(days=1)
        return ReportResponse(list(dimensions), list(metrics), rows)


class StaticCredentialResolver:
    async def resolve_integration_context(self, tenant_id, account_id):
        return IntegrationContext(integration_id="int-1", user_id="user-1")


@pytest.fixture
def fetcher() -> FakeReportFetcher:
    return FakeReportFetcher()


async def make_runtime(db_path, fetcher, flight_ttl: float = 0):
    """Fully wired runtime over a fresh on-disk SQLite database."""
    rt = build_runtime(
        db_url=f"sqlite+aiosqlite:///{db_path}",
        fetcher=fetcher,
        credential_resolver=StaticCredentialResolver(),
        cache=QueryResultCache(ttl_seconds=30, max_entries=100, concurrency=4),
        flight_cache=InFlightCache(ttl_seconds=flight_ttl),
        materialize_timeout=5.0,
    )
    await init_db(rt.engine)
    await seed_brand(rt, TENANT, BRAND)
    return rt


@pytest.fixture
async def runtime(tmp_path, fetcher):
    rt = await make_runtime(tmp_path / "kondor-test.db", fetcher)
    yield rt
    await rt.close()


async def seed_brand(rt, tenant_id: str, brand_id: str, name: str = "") -> None:
    async with rt.session_factory() as session:
        session.add(Brand(id=brand_id, tenant_id=tenant_id, name=name or brand_id))
        await session.commit()


async def add_facts(rt, rows: List[Dict[str, Any]]) -> None:
    """Insert fact rows; each dict needs at least date/platform/account_id."""
    async with rt.session_factory() as session:
        for row in rows:
            data = {"tenant_id": TENANT, "brand_id": BRAND, **row}
            if isinstance(data["date"], str):
                data["date"] = date.fromisoformat(data["date"])
            if isinstance(data["platform"], str):
                data["platform"] = Platform(data["platform"])
            session.add(FactMetricDaily(**data))
        await session.commit()
