"""
Tests for the REST surface (FastAPI app driven through httpx's ASGI transport).
"""
import httpx
import pytest

from conftest import BRAND, TENANT, add_facts, seed_brand
from kondor.main import create_app

HEADERS = {"X-Tenant-Id": TENANT}


@pytest.fixture
async def client(runtime):
    app = create_app(runtime=runtime, run_scheduler=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://kondor.test") as c:
        yield c


class TestSystem:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    async def test_catalog(self, client):
        resp = await client.get("/metrics/catalog")
        keys = {m["key"] for m in resp.json()["metrics"]}
        assert {"sessions", "leads", "ctr", "roas"} <= keys

    async def test_tenant_header_required(self, client):
        resp = await client.post("/metrics/query", json={"brand_id": BRAND, "preset": "last_7d", "metrics": ["spend"]})
        assert resp.status_code == 422


class TestActiveAccountRoutes:
    """Tests for /brands/{brand_id}/platforms/{platform}/active-account."""

    async def test_put_then_get(self, client):
        resp = await client.put(
            f"/brands/{BRAND}/platforms/ga4/active-account",
            json={"account_id": "properties/111", "timezone": "America/Sao_Paulo"},
            headers=HEADERS,
        )
        assert resp.status_code == 200
        binding = resp.json()["binding"]
        assert (binding["platform"], binding["account_id"], binding["status"]) == ("GA4", "111", "ACTIVE")

        resp = await client.get(f"/brands/{BRAND}/platforms/GA4/active-account", headers=HEADERS)
        assert resp.json()["account_id"] == "111"

    async def test_unknown_brand_is_404_envelope(self, client):
        resp = await client.get("/brands/nope/platforms/GA4/active-account", headers=HEADERS)
        assert resp.status_code == 404
        assert resp.json() == {
            "error": {"code": "BRAND_NOT_FOUND", "message": "Brand not found", "details": {"brand_id": "nope"}}
        }

    async def test_invalid_platform_is_400(self, client):
        resp = await client.put(
            f"/brands/{BRAND}/platforms/myspace/active-account",
            json={"account_id": "x"},
            headers=HEADERS,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_PLATFORM"


class TestQueryRoute:
    """Tests for POST /metrics/query."""

    async def test_query_returns_rows_and_totals(self, client, runtime):
        await runtime.registry.set_active_account(TENANT, BRAND, "META_ADS", "act-1")
        await add_facts(
            runtime,
            [
                {"date": "2025-01-01", "platform": "META_ADS", "account_id": "act-1", "spend": 10.0, "clicks": 20},
                {"date": "2025-01-02", "platform": "META_ADS", "account_id": "act-1", "spend": 5.0, "clicks": 5},
            ],
        )

        resp = await client.post(
            "/metrics/query",
            json={
                "brand_id": BRAND,
                "date_range": {"start": "2025-01-01", "end": "2025-01-02"},
                "dimensions": ["date"],
                "metrics": ["spend", "cpc"],
                "pagination": {"limit": 1},
            },
            headers=HEADERS,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["rows"] == [{"date": "2025-01-01", "spend": 10.0, "cpc": 0.5}]
        assert body["totals"] == {"spend": 15.0, "cpc": 0.6}
        assert body["page_info"] == {"limit": 1, "offset": 0, "has_more": True}
        assert body["meta"]["currency"] == "BRL"

    async def test_missing_connection_is_409(self, client):
        resp = await client.post(
            "/metrics/query",
            json={"brand_id": BRAND, "preset": "last_7d", "metrics": ["sessions"]},
            headers=HEADERS,
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["details"] == {"missing": ["GA4"]}

    async def test_cache_stats_and_invalidate(self, client, runtime):
        await runtime.registry.set_active_account(TENANT, BRAND, "META_ADS", "act-1")
        payload = {"brand_id": BRAND, "date_range": {"start": "2025-01-01", "end": "2025-01-02"}, "metrics": ["spend"]}
        for _ in range(2):
            await client.post("/metrics/query", json=payload, headers=HEADERS)

        stats = (await client.get("/metrics/cache/stats")).json()["stats"]
        assert stats["hits"] == 1

        resp = await client.post("/metrics/cache/invalidate", json={"brand_id": BRAND}, headers=HEADERS)
        assert resp.json() == {"status": "success", "evicted": 1}


class TestPropertyScopeRoute:
    async def test_all_brands(self, client, runtime):
        await seed_brand(runtime, TENANT, "brand-2")

        resp = await client.post(
            "/ga4/property-scope",
            json={"property_id": "properties/777", "apply_mode": "ALL_BRANDS", "sync_after_select": False},
            headers=HEADERS,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["scope_applied"] == "ALL_BRANDS"
        assert body["succeeded"] == 2
        assert body["applied_brand_ids"] == [BRAND, "brand-2"]
        assert await runtime.registry.resolve_active_account(TENANT, "brand-2", "GA4") == "777"

    async def test_single_brand_requires_brand_id(self, client):
        resp = await client.post(
            "/ga4/property-scope",
            json={"property_id": "777", "apply_mode": "SINGLE_BRAND"},
            headers=HEADERS,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "BRAND_REQUIRED"

    async def test_sync_is_queued_once(self, client, runtime):
        payload = {"property_id": "777", "apply_mode": "SINGLE_BRAND", "brand_id": BRAND}
        first = (await client.post("/ga4/property-scope", json=payload, headers=HEADERS)).json()
        second = (await client.post("/ga4/property-scope", json=payload, headers=HEADERS)).json()

        assert first["sync_queued_total"] == 1
        assert second["sync_queued_total"] == 0
        assert second["sync_skipped_total"] == 1
        assert second["failures"] == []
