"""KONDOR — GA4 Report → Fact Rows Transformer.

Merges one or more GA4 report responses into a single row map keyed by
(date, campaign key), then builds ``FactMetricDaily`` objects from it.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from kondor.connectors.base import ReportResponse
from kondor.core.logging import get_logger
from kondor.models.fact_models import FactMetricDaily, Platform

logger = get_logger("ga4.transformer")

NOT_SET_CAMPAIGN = "(not set)"

# Canonical fact column → GA4 Data API metric name
GA4_METRIC_MAP: Dict[str, str] = {
    "sessions": "sessions",
    "conversions": "conversions",
    "revenue": "totalRevenue",
}

# GA4 renames seen in the wild; each primary name is retried once as its alternate
ALTERNATE_METRICS: Dict[str, str] = {
    "conversions": "keyEvents",
    "totalRevenue": "purchaseRevenue",
}

ALTERNATE_DIMENSIONS: Dict[str, str] = {
    "campaignId": "campaignName",
}

INTEGER_COLUMNS = ("sessions", "leads", "impressions", "clicks")

RowKey = Tuple[date, Optional[str]]
RowMap = Dict[RowKey, Dict[str, float]]


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_ga4_date(value: str) -> Optional[date]:
    """GA4 ``date`` dimension values are ``YYYYMMDD``; ISO is accepted too."""
    raw = str(value or "").strip()
    for fmt in ("%Y%m%d", "%Y-%m-%d"):
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    return None


def apply_report(
    rows_map: RowMap,
    response: Optional[ReportResponse],
    metric_map: Dict[str, str],
    campaign_dimension: Optional[str] = None,
) -> int:
    """Add ``response`` values into ``rows_map`` in place.

    ``metric_map`` maps fact column → metric header in the response. Values
    for the same (date, campaign) key are summed. Returns the number of
    response rows applied.
    """
    if response is None or not metric_map:
        return 0

    applied = 0
    for dims, mets in response.iter_records():
        day = parse_ga4_date(dims.get("date", ""))
        if day is None:
            continue
        campaign_key: Optional[str] = None
        if campaign_dimension:
            campaign_key = str(dims.get(campaign_dimension) or "").strip() or NOT_SET_CAMPAIGN
        entry = rows_map.setdefault((day, campaign_key), {})
        for column, header in metric_map.items():
            if header in mets:
                entry[column] = entry.get(column, 0.0) + _safe_float(mets[header])
        applied += 1
    return applied


def build_fact_rows(
    tenant_id: str,
    brand_id: str,
    account_id: str,
    rows_map: RowMap,
    currency: str,
    platform: Platform = Platform.GA4,
) -> List[FactMetricDaily]:
    """Materialize the merged row map as fact objects, sorted by date."""
    facts: List[FactMetricDaily] = []
    for (day, campaign_key), values in sorted(
        rows_map.items(), key=lambda kv: (kv[0][0], kv[0][1] or "")
    ):
        fields: Dict[str, Any] = {}
        for column, value in values.items():
            fields[column] = int(round(value)) if column in INTEGER_COLUMNS else float(value)
        facts.append(
            FactMetricDaily(
                tenant_id=tenant_id,
                brand_id=brand_id,
                date=day,
                platform=platform,
                account_id=account_id,
                campaign_id=campaign_key,
                currency=currency,
                **fields,
            )
        )
    return facts
