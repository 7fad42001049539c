"""
Tests for the GA4 fact materializer against a real SQLite fact store.
"""
import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlmodel import select

from conftest import BRAND, TENANT, add_facts
from kondor.core.date_ranges import DateRange
from kondor.core.errors import CredentialNotConnectedError, ReportFetchError, ScopeDowngradeError
from kondor.models.fact_models import FactMetricDaily, Platform

CLOSED = DateRange(date(2025, 1, 1), date(2025, 1, 3))


async def _facts(rt):
    async with rt.session_factory() as session:
        stmt = select(FactMetricDaily).order_by(FactMetricDaily.date, FactMetricDaily.campaign_id)
        return list((await session.exec(stmt)).all())


@pytest.fixture
async def bound(runtime):
    await runtime.registry.set_active_account(TENANT, BRAND, Platform.GA4, "111")
    return runtime


def _main_calls(fetcher):
    return [c for c in fetcher.calls if c["metrics"] != ["eventCount"]]


class TestEnsureFresh:
    """Tests for FactMaterializer.ensure_fresh."""

    async def test_writes_daily_rows(self, bound, fetcher):
        """Should write one aggregated row per day with leads from event counts."""
        outcome = await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["sessions", "leads"])

        assert outcome.status == "written"
        assert outcome.rows_written == 3
        assert outcome.fetch_calls == 2
        facts = await _facts(bound)
        assert [f.date for f in facts] == [date(2025, 1, 1), date(2025, 1, 2), date(2025, 1, 3)]
        first = facts[0]
        assert (first.account_id, first.campaign_id) == ("111", None)
        assert (first.sessions, first.leads, first.conversions, first.revenue) == (10, 3, 2.0, 100.0)
        assert first.currency == "BRL"

    async def test_closed_range_is_not_refetched(self, bound, fetcher):
        await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["sessions"])
        calls = len(fetcher.calls)

        outcome = await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["sessions"])
        sub_range = DateRange(date(2025, 1, 2), date(2025, 1, 2))
        inner = await bound.materializer.ensure_fresh(TENANT, BRAND, sub_range, ["sessions"])

        assert outcome.status == inner.status == "skipped"
        assert outcome.reason == "closed_range_covered"
        assert len(fetcher.calls) == calls

    async def test_open_range_is_refetched(self, bound, fetcher):
        today = datetime.now(timezone.utc).date()
        open_range = DateRange(today - timedelta(days=1), today)

        await bound.materializer.ensure_fresh(TENANT, BRAND, open_range, ["sessions"])
        await bound.materializer.ensure_fresh(TENANT, BRAND, open_range, ["sessions"])

        assert len(_main_calls(fetcher)) == 2
        assert len(await _facts(bound)) == 2

    async def test_replaces_partition_rows(self, bound, fetcher):
        """Should delete-then-insert the range and leave the campaign partition alone."""
        await add_facts(
            bound,
            [
                {"date": "2025-01-01", "platform": "GA4", "account_id": "111", "sessions": 999},
                {"date": "2025-01-01", "platform": "GA4", "account_id": "111",
                 "campaign_id": "cmp-9", "sessions": 7},
            ],
        )

        await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["sessions"])

        facts = await _facts(bound)
        aggregated = [f for f in facts if f.campaign_id is None]
        assert [f.sessions for f in aggregated] == [10, 10, 10]
        assert [(f.campaign_id, f.sessions) for f in facts if f.campaign_id] == [("cmp-9", 7)]

    async def test_empty_fetch_keeps_existing_rows(self, bound, fetcher):
        fetcher.campaigns = []
        await add_facts(
            bound,
            [{"date": "2025-01-02", "platform": "GA4", "account_id": "111",
              "campaign_id": "cmp-1", "sessions": 4}],
        )

        outcome = await bound.materializer.ensure_fresh(
            TENANT, BRAND, CLOSED, ["sessions"], ["campaign_id"]
        )

        assert outcome.status == "empty"
        assert [f.sessions for f in await _facts(bound)] == [4]

    async def test_no_ga4_metrics_is_skipped(self, bound, fetcher):
        outcome = await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["spend", "clicks"])
        assert outcome.status == "skipped"
        assert fetcher.calls == []

    async def test_no_account(self, runtime, fetcher):
        outcome = await runtime.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["sessions"])
        assert outcome.status == "no_account"
        assert fetcher.calls == []

    async def test_not_connected(self, bound, fetcher):
        class Disconnected:
            async def resolve_integration_context(self, tenant_id, account_id):
                raise CredentialNotConnectedError("no token")

        bound.materializer._credentials = Disconnected()
        outcome = await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["sessions"])
        assert outcome.status == "not_connected"
        assert fetcher.calls == []

    async def test_concurrent_identical_calls_share_one_fetch(self, bound, fetcher):
        fetcher.gate = asyncio.Event()
        tasks = [
            asyncio.create_task(bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["sessions"]))
            for _ in range(3)
        ]
        await asyncio.sleep(0.05)
        fetcher.gate.set()
        outcomes = await asyncio.gather(*tasks)

        assert len(_main_calls(fetcher)) == 1
        assert {o.status for o in outcomes} == {"written"}


class TestSchemaDrift:
    """Tests for rejected metric / dimension recovery."""

    async def test_metric_alternates(self, bound, fetcher):
        fetcher.reject_metrics = {"conversions", "totalRevenue"}

        outcome = await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["conversions", "revenue"])

        assert outcome.status == "written"
        assert outcome.dropped_metrics == []
        assert _main_calls(fetcher)[-1]["metrics"] == ["sessions", "keyEvents", "purchaseRevenue"]
        first = (await _facts(bound))[0]
        assert (first.conversions, first.revenue) == (2.0, 100.0)

    async def test_dropped_conversions_fall_back_to_event_counts(self, bound, fetcher):
        """Should count configured conversion events when both conversion metrics are gone."""
        await bound.registry.update_event_mappings(TENANT, BRAND, conversion_events=["purchase"])
        fetcher.reject_metrics = {"conversions", "keyEvents"}

        outcome = await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["conversions"])

        assert outcome.dropped_metrics == ["conversions"]
        event_calls = [c for c in fetcher.calls if c["metrics"] == ["eventCount"]]
        assert [c["filter"].values for c in event_calls] == [["generate_lead"], ["purchase"]]
        first = (await _facts(bound))[0]
        assert first.conversions == 3.0

    async def test_lead_fetch_uses_in_list_filter(self, bound, fetcher):
        await bound.registry.update_event_mappings(TENANT, BRAND, lead_events=["generate_lead", "sign_up"])

        await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["leads"])

        lead_call = fetcher.calls[-1]
        assert lead_call["metrics"] == ["eventCount"]
        assert lead_call["filter"].field_name == "eventName"
        assert lead_call["filter"].values == ["generate_lead", "sign_up"]

    async def test_no_lead_events_skips_lead_fetch(self, bound, fetcher):
        await bound.registry.update_event_mappings(TENANT, BRAND, lead_events=[])
        outcome = await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["leads"])
        assert outcome.fetch_calls == 1
        assert (await _facts(bound))[0].leads == 0

    async def test_campaign_dimension_alternate(self, bound, fetcher):
        fetcher.reject_dimensions = {"campaignId"}

        outcome = await bound.materializer.ensure_fresh(
            TENANT, BRAND, CLOSED, ["sessions"], ["campaign_id"]
        )

        assert outcome.scope == "campaign"
        assert _main_calls(fetcher)[-1]["dimensions"] == ["date", "campaignName"]
        assert {f.campaign_id for f in await _facts(bound)} == {"cmp-1"}

    async def test_campaign_unavailable_raises_and_records(self, bound, fetcher):
        fetcher.reject_dimensions = {"campaignId", "campaignName"}

        with pytest.raises(ScopeDowngradeError):
            await bound.materializer.ensure_fresh(
                TENANT, BRAND, CLOSED, ["sessions"], filters=[{"field": "campaign_id", "op": "eq", "value": "x"}]
            )

        settings_row = await bound.registry.get_ga4_settings(TENANT, BRAND)
        assert settings_row.last_error.startswith("CAMPAIGN_SCOPE_UNAVAILABLE")
        assert await _facts(bound) == []

    async def test_upstream_failure_is_recorded(self, bound, fetcher):
        fetcher.error = ReportFetchError("quota exhausted", retryable=True, upstream_status=429)

        with pytest.raises(ReportFetchError):
            await bound.materializer.ensure_fresh(TENANT, BRAND, CLOSED, ["sessions"])

        settings_row = await bound.registry.get_ga4_settings(TENANT, BRAND)
        assert "quota exhausted" in settings_row.last_error
