"""KONDOR — Unified Metric Catalog.

Defines the canonical set of queryable metrics. Base metrics map one-to-one
onto summable fact columns; derived metrics are ratios computed from base
sums and are never stored.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple

from kondor.core.errors import QueryValidationError


class MetricType(str, Enum):
    """How a metric is categorised."""

    VOLUME = "volume"  # Raw counts: impressions, clicks, sessions
    COST = "cost"  # Monetary: spend
    REVENUE = "revenue"  # Income: revenue
    OUTCOME = "outcome"  # conversions, leads
    DERIVED = "derived"  # Ratios computed from base sums


class MetricDefinition:
    """Describes a single catalog entry."""

    def __init__(
        self,
        key: str,
        label: str,
        metric_type: MetricType,
        fmt: str = "number",
        formula: Optional[str] = None,
        required_fields: Tuple[str, ...] = (),
        source: str = "ads",
    ):
        self.key = key
        self.label = label
        self.metric_type = metric_type
        self.format = fmt
        self.formula = formula
        self.required_fields = required_fields
        self.source = source

    @property
    def is_derived(self) -> bool:
        return self.formula is not None

    def __repr__(self) -> str:
        return f"<Metric {self.key} ({self.metric_type.value})>"


# ─────────────────────────────────────────────
# BASE METRICS — one summable fact column each
# ─────────────────────────────────────────────

BASE_METRICS: Dict[str, MetricDefinition] = {
    "impressions": MetricDefinition(
        "impressions", "Impressions", MetricType.VOLUME, "number"
    ),
    "clicks": MetricDefinition("clicks", "Clicks", MetricType.VOLUME, "number"),
    "spend": MetricDefinition("spend", "Spend", MetricType.COST, "currency"),
    "conversions": MetricDefinition(
        "conversions", "Conversions", MetricType.OUTCOME, "number", source="any"
    ),
    "revenue": MetricDefinition(
        "revenue", "Revenue", MetricType.REVENUE, "currency", source="any"
    ),
    "sessions": MetricDefinition(
        "sessions", "Sessions", MetricType.VOLUME, "number", source="ga4"
    ),
    "leads": MetricDefinition("leads", "Leads", MetricType.OUTCOME, "number", source="ga4"),
}


# ─────────────────────────────────────────────
# DERIVED METRICS — whitelisted formulas only
# ─────────────────────────────────────────────

DERIVED_METRICS: Dict[str, MetricDefinition] = {
    "ctr": MetricDefinition(
        "ctr", "CTR", MetricType.DERIVED, "percent", "clicks / impressions",
        ("clicks", "impressions"),
    ),
    "cpc": MetricDefinition(
        "cpc", "CPC", MetricType.DERIVED, "currency", "spend / clicks",
        ("spend", "clicks"),
    ),
    "cpm": MetricDefinition(
        "cpm", "CPM", MetricType.DERIVED, "currency", "spend / impressions * 1000",
        ("spend", "impressions"),
    ),
    "cpa": MetricDefinition(
        "cpa", "CPA", MetricType.DERIVED, "currency", "spend / conversions",
        ("spend", "conversions"),
    ),
    "roas": MetricDefinition(
        "roas", "ROAS", MetricType.DERIVED, "ratio", "revenue / spend",
        ("revenue", "spend"),
    ),
}

SUPPORTED_DERIVED_METRICS = frozenset(DERIVED_METRICS)


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────

ALL_METRICS = {**BASE_METRICS, **DERIVED_METRICS}

GA4_METRICS = frozenset({"sessions", "leads"})
ADS_METRICS = frozenset(
    {"spend", "impressions", "clicks", "ctr", "cpc", "cpm", "cpa", "conversions", "revenue", "roas"}
)


def catalog_entries() -> List[dict]:
    """Serializable catalog for API consumers."""
    return [
        {
            "key": m.key,
            "label": m.label,
            "format": m.format,
            "formula": m.formula,
            "required_fields": list(m.required_fields),
        }
        for m in ALL_METRICS.values()
    ]


class MetricsPlan:
    """Split of requested metric keys into base columns and derived formulas."""

    def __init__(self, requested: List[str], base: List[str], derived: List[MetricDefinition]):
        self.requested = requested
        self.base = base
        self.derived = derived

    @property
    def derived_keys(self) -> List[str]:
        return [m.key for m in self.derived]


def build_metrics_plan(
    requested: List[str], catalog: Optional[Dict[str, MetricDefinition]] = None
) -> MetricsPlan:
    """Validate requested keys and compute the base columns they need."""
    catalog = catalog if catalog is not None else ALL_METRICS

    missing = [m for m in requested if m not in catalog]
    if missing:
        raise QueryValidationError(
            f"Metrics not found: {', '.join(missing)}",
            code="METRIC_NOT_FOUND",
            details={"metrics": missing},
        )

    base: List[str] = []
    derived: List[MetricDefinition] = []
    for key in requested:
        entry = catalog[key]
        if entry.is_derived:
            if key not in SUPPORTED_DERIVED_METRICS:
                raise QueryValidationError(
                    f"Unsupported derived metric: {key}",
                    code="UNSUPPORTED_DERIVED_METRIC",
                    details={"metric": key},
                )
            if not entry.required_fields:
                raise QueryValidationError(
                    f"Derived metric without required fields: {key}",
                    code="INVALID_METRIC_CATALOG",
                    details={"metric": key},
                )
            for field in entry.required_fields:
                if field not in base:
                    base.append(field)
            derived.append(entry)
        elif key not in base:
            base.append(key)

    unsupported = [m for m in base if m not in BASE_METRICS]
    if unsupported:
        raise QueryValidationError(
            f"Unsupported base metrics: {', '.join(unsupported)}",
            code="UNSUPPORTED_METRIC",
            details={"metrics": unsupported},
        )
    return MetricsPlan(list(requested), base, derived)


def _safe_divide(num: float, den: float) -> float:
    if not den:
        return 0.0
    return num / den


def compute_derived(base_values: Dict[str, float], derived: List[MetricDefinition]) -> Dict[str, float]:
    """Evaluate whitelisted formulas over base sums (division by zero → 0)."""
    out: Dict[str, float] = {}
    for metric in derived:
        key = metric.key
        if key == "ctr":
            out[key] = _safe_divide(base_values.get("clicks", 0), base_values.get("impressions", 0))
        elif key == "cpc":
            out[key] = _safe_divide(base_values.get("spend", 0), base_values.get("clicks", 0))
        elif key == "cpm":
            out[key] = _safe_divide(base_values.get("spend", 0), base_values.get("impressions", 0)) * 1000
        elif key == "cpa":
            out[key] = _safe_divide(base_values.get("spend", 0), base_values.get("conversions", 0))
        elif key == "roas":
            out[key] = _safe_divide(base_values.get("revenue", 0), base_values.get("spend", 0))
        else:
            out[key] = 0.0
    return out
