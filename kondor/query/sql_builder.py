"""KONDOR — Aggregate Query Builder.

Builds parameterized SQLAlchemy Core statements over ``fact_metrics_daily``.
Only columns in the whitelists below can reach SQL; every value is a bound
parameter.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import Float, and_, case, cast, func, or_, select
from sqlalchemy.sql import ColumnElement, Select

from kondor.core.date_ranges import DateRange
from kondor.core.errors import QueryValidationError
from kondor.core.metric_registry import BASE_METRICS, MetricDefinition
from kondor.models.fact_models import FactMetricDaily, Platform

facts = FactMetricDaily.__table__

DIMENSION_COLUMNS: Dict[str, ColumnElement] = {
    "date": facts.c.date,
    "platform": facts.c.platform,
    "account_id": facts.c.account_id,
    "campaign_id": facts.c.campaign_id,
}

METRIC_COLUMNS: Dict[str, ColumnElement] = {key: facts.c[key] for key in BASE_METRICS}


def _sum(key: str) -> ColumnElement:
    return func.coalesce(func.sum(METRIC_COLUMNS[key]), 0)


def _ratio(num: str, den: str, scale: float = 1.0) -> ColumnElement:
    expr = cast(_sum(num), Float) / cast(_sum(den), Float)
    if scale != 1.0:
        expr = expr * scale
    return case((_sum(den) == 0, 0.0), else_=expr)


# Derived formulas, mirrored in metric_registry.compute_derived
DERIVED_SQL = {
    "ctr": lambda: _ratio("clicks", "impressions"),
    "cpc": lambda: _ratio("spend", "clicks"),
    "cpm": lambda: _ratio("spend", "impressions", 1000.0),
    "cpa": lambda: _ratio("spend", "conversions"),
    "roas": lambda: _ratio("revenue", "spend"),
}


@dataclass
class FactQuery:
    """Validated, whitelisted description of one aggregate read."""

    tenant_id: str
    brand_id: str
    date_range: DateRange
    dimensions: List[str]
    base_metrics: List[str]
    derived_metrics: List[MetricDefinition] = field(default_factory=list)
    platforms: List[Platform] = field(default_factory=list)
    account_ids: List[str] = field(default_factory=list)
    campaign_ids: List[str] = field(default_factory=list)
    campaign_scope: bool = False
    ga4_property_id: Optional[str] = None
    sort_field: Optional[str] = None
    sort_direction: str = "asc"
    limit: Optional[int] = None
    offset: int = 0

    def with_range(self, date_range: DateRange) -> "FactQuery":
        clone = FactQuery(**{**self.__dict__})
        clone.date_range = date_range
        return clone


class FactQueryBuilder:
    def __init__(self, query: FactQuery):
        unknown = [d for d in query.dimensions if d not in DIMENSION_COLUMNS]
        unknown += [m for m in query.base_metrics if m not in METRIC_COLUMNS]
        if unknown:
            raise QueryValidationError(
                f"Fields not allowed in aggregate query: {', '.join(unknown)}",
                code="INVALID_QUERY",
                details={"fields": unknown},
            )
        self.query = query

    # ── WHERE ──

    def conditions(self) -> List[ColumnElement]:
        q = self.query
        conds: List[ColumnElement] = [
            facts.c.tenant_id == q.tenant_id,
            facts.c.brand_id == q.brand_id,
            facts.c.date >= q.date_range.start,
            facts.c.date <= q.date_range.end,
        ]
        # Aggregated and campaign partitions are never summed together
        if q.campaign_scope:
            conds.append(facts.c.campaign_id.is_not(None))
        else:
            conds.append(facts.c.campaign_id.is_(None))

        # GA4 rows only count for the canonical property
        if q.ga4_property_id:
            conds.append(
                or_(facts.c.platform != Platform.GA4, facts.c.account_id == q.ga4_property_id)
            )
        else:
            conds.append(facts.c.platform != Platform.GA4)

        if q.platforms:
            conds.append(facts.c.platform.in_(list(q.platforms)))
        if q.account_ids:
            conds.append(facts.c.account_id.in_(list(q.account_ids)))
        if q.campaign_ids:
            conds.append(facts.c.campaign_id.in_(list(q.campaign_ids)))
        return conds

    # ── SELECT ──

    def _metric_selects(self) -> List[ColumnElement]:
        return [_sum(m).label(m) for m in self.query.base_metrics]

    def _sort_expression(self) -> Optional[ColumnElement]:
        q = self.query
        if not q.sort_field:
            return None
        if q.sort_field in q.dimensions:
            return DIMENSION_COLUMNS[q.sort_field]
        if q.sort_field in METRIC_COLUMNS and q.sort_field in q.base_metrics:
            return _sum(q.sort_field)
        if q.sort_field in DERIVED_SQL and q.sort_field in {d.key for d in q.derived_metrics}:
            return DERIVED_SQL[q.sort_field]()
        raise QueryValidationError(
            "Invalid sort field",
            code="INVALID_SORT_FIELD",
            details={"field": q.sort_field},
        )

    def grouped(self) -> Select:
        """Grouped rows; fetches ``limit + 1`` so the caller can detect more pages."""
        q = self.query
        dim_cols = [DIMENSION_COLUMNS[d].label(d) for d in q.dimensions]
        stmt = select(*dim_cols, *self._metric_selects()).where(and_(*self.conditions()))
        if q.dimensions:
            stmt = stmt.group_by(*[DIMENSION_COLUMNS[d] for d in q.dimensions])

        order: List[ColumnElement] = []
        sort_expr = self._sort_expression()
        if sort_expr is not None:
            order.append(sort_expr.desc() if q.sort_direction == "desc" else sort_expr.asc())
        order.extend(DIMENSION_COLUMNS[d].asc() for d in q.dimensions if d != q.sort_field)
        if order:
            stmt = stmt.order_by(*order)

        if q.limit is not None:
            stmt = stmt.limit(q.limit)
        if q.offset:
            stmt = stmt.offset(q.offset)
        return stmt

    def totals(self) -> Select:
        """Ungrouped sums over the full filtered set, independent of pagination."""
        return select(*self._metric_selects()).where(and_(*self.conditions()))
