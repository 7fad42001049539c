"""KONDOR — GA4 Data API Client.

Handles authentication, retry logic, rate limiting, pagination and
classification of rejected metric/dimension names (schema drift).
"""

import asyncio
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx

from kondor.config import settings
from kondor.connectors.base import (
    InListFilter,
    IntegrationContext,
    ReportResponse,
    ReportRow,
)
from kondor.core.date_ranges import DateRange
from kondor.core.errors import CredentialNotConnectedError, ReportFetchError
from kondor.core.logging import get_logger

logger = get_logger("ga4.client")

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2  # seconds
PAGE_SIZE = 10000
MAX_PAGES = 50

_INVALID_FIELD_RE = re.compile(r"Field (\w+) is not a valid (metric|dimension)", re.I)


def normalize_property_id(value: Any) -> str:
    """``properties/123`` → ``123``; blank input → ``""``."""
    raw = str(value or "").strip()
    if raw.startswith("properties/"):
        raw = raw[len("properties/"):]
    return raw.strip("/")


def parse_invalid_fields(message: str) -> Dict[str, List[str]]:
    """Extract the metric/dimension names an API error message rejects."""
    invalid: Dict[str, List[str]] = {"metric": [], "dimension": []}
    for name, kind in _INVALID_FIELD_RE.findall(message or ""):
        bucket = invalid[kind.lower()]
        if name not in bucket:
            bucket.append(name)
    return invalid


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("error", {}).get("message") or resp.text)
    return resp.text


class Ga4Client:
    """Async HTTP client for the GA4 Data API ``runReport`` method."""

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ):
        self.access_token = access_token or settings.ga4_access_token
        self.base_url = (base_url or settings.ga4_api_base_url).rstrip("/")
        self.retry_base_delay = retry_base_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=settings.ga4_request_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST with retry + rate-limit handling."""
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {self.access_token}"}

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                resp = await client.post(url, json=body, headers=headers)
            except httpx.RequestError as e:
                if attempt < MAX_RETRIES:
                    wait = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(f"Request error: {e}. Retrying in {wait}s")
                    await asyncio.sleep(wait)
                    continue
                raise ReportFetchError(
                    f"Connection failed after {MAX_RETRIES} retries: {e}", retryable=True
                ) from e

            if resp.status_code == 429 or resp.status_code >= 500:
                if attempt < MAX_RETRIES:
                    wait = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"GA4 returned {resp.status_code}. Retrying in {wait}s "
                        f"(attempt {attempt}/{MAX_RETRIES})"
                    )
                    await asyncio.sleep(wait)
                    continue
                raise ReportFetchError(
                    _error_message(resp), retryable=True, upstream_status=resp.status_code
                )

            if resp.status_code >= 400:
                message = _error_message(resp)
                invalid = parse_invalid_fields(message)
                raise ReportFetchError(
                    message,
                    invalid_metrics=invalid["metric"],
                    invalid_dimensions=invalid["dimension"],
                    upstream_status=resp.status_code,
                )

            return resp.json()

        raise ReportFetchError("Max retries exhausted", retryable=True)

    # ── Reports ──

    async def fetch_report(
        self,
        tenant_id: str,
        user_id: Optional[str],
        account_id: str,
        metrics: Sequence[str],
        dimensions: Sequence[str],
        date_range: DateRange,
        dimension_filter: Optional[InListFilter] = None,
    ) -> ReportResponse:
        """Run a report over every page and return one merged response."""
        property_id = normalize_property_id(account_id)
        url = f"{self.base_url}/properties/{property_id}:runReport"
        body: Dict[str, Any] = {
            "dateRanges": [
                {
                    "startDate": date_range.start.isoformat(),
                    "endDate": date_range.end.isoformat(),
                }
            ],
            "metrics": [{"name": m} for m in metrics],
            "dimensions": [{"name": d} for d in dimensions],
            "limit": PAGE_SIZE,
        }
        if dimension_filter is not None:
            body["dimensionFilter"] = {
                "filter": {
                    "fieldName": dimension_filter.field_name,
                    "inListFilter": {
                        "values": list(dimension_filter.values),
                        "caseSensitive": True,
                    },
                }
            }

        report = ReportResponse()
        offset = 0
        for _ in range(MAX_PAGES):
            body["offset"] = offset
            result = await self._post(url, body)
            if not report.dimension_headers:
                report.dimension_headers = [
                    h.get("name", "") for h in result.get("dimensionHeaders", [])
                ]
                report.metric_headers = [
                    h.get("name", "") for h in result.get("metricHeaders", [])
                ]
            page = result.get("rows", []) or []
            for row in page:
                report.rows.append(
                    ReportRow(
                        dimension_values=[
                            str(v.get("value", "")) for v in row.get("dimensionValues", [])
                        ],
                        metric_values=[
                            str(v.get("value", "0")) for v in row.get("metricValues", [])
                        ],
                    )
                )
            offset += len(page)
            row_count = int(result.get("rowCount", 0) or 0)
            if not page or offset >= row_count:
                break

        logger.info(
            f"Fetched {len(report.rows)} GA4 rows for property {property_id} ({date_range})",
            extra={"tenant_id": tenant_id, "account_id": property_id},
        )
        return report


class EnvCredentialResolver:
    """Single-credential resolver backed by ``GA4_ACCESS_TOKEN``."""

    def __init__(self, access_token: str | None = None):
        self.access_token = access_token if access_token is not None else settings.ga4_access_token

    async def resolve_integration_context(
        self, tenant_id: str, account_id: str
    ) -> IntegrationContext:
        if not self.access_token:
            raise CredentialNotConnectedError(
                "No GA4 credential is connected",
                details={"tenant_id": tenant_id, "account_id": account_id},
            )
        return IntegrationContext(integration_id="env", user_id=None)
