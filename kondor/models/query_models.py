"""KONDOR — Metrics Query Request / Result Schemas."""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from kondor.config import settings
from kondor.models.fact_models import Platform

Dimension = Literal["date", "platform", "account_id", "campaign_id"]
FilterField = Literal["platform", "account_id", "campaign_id"]


# ─────────────────────────────────────────────
# REQUEST
# ─────────────────────────────────────────────


class DateRangeIn(BaseModel):
    start: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    end: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")


class QueryFilter(BaseModel):
    """Equality / IN filter over a dimension column."""

    field: FilterField
    op: Literal["eq", "in"]
    value: Union[str, List[str]]

    @model_validator(mode="after")
    def _check_value_shape(self):
        if self.op == "eq" and (not isinstance(self.value, str) or not self.value):
            raise ValueError("eq filter requires a non-empty string value")
        if self.op == "in" and (not isinstance(self.value, list) or not self.value):
            raise ValueError("in filter requires a non-empty list value")
        return self

    @property
    def values(self) -> List[str]:
        raw = self.value if isinstance(self.value, list) else [self.value]
        return [str(v).strip() for v in raw if str(v).strip()]


class CompareTo(BaseModel):
    mode: Literal["previous_period", "previous_year"]


class SortSpec(BaseModel):
    field: str = Field(min_length=1)
    direction: Literal["asc", "desc"] = "asc"


def _cap_page_size(value: Optional[int]) -> Optional[int]:
    if value is not None and value > settings.max_page_size:
        raise ValueError(f"must be at most {settings.max_page_size}")
    return value


class Pagination(BaseModel):
    limit: int = Field(default_factory=lambda: settings.default_page_size, ge=1)
    offset: int = Field(default=0, ge=0)

    @field_validator("limit")
    @classmethod
    def _cap_limit(cls, value: Optional[int]) -> Optional[int]:
        return _cap_page_size(value)


class MetricsQuery(BaseModel):
    """Declarative aggregate query over the fact store."""

    brand_id: str = Field(min_length=1)
    date_range: Optional[DateRangeIn] = None
    preset: Optional[str] = None
    """Named rolling window ("today", "yesterday", "last_7d", ...) in the brand timezone."""
    dimensions: List[Dimension] = []
    metrics: List[str] = Field(min_length=1)
    filters: List[QueryFilter] = []
    required_platforms: Optional[List[Platform]] = None
    compare_to: Optional[CompareTo] = None
    sort: Optional[SortSpec] = None
    pagination: Optional[Pagination] = None
    limit: Optional[int] = Field(default=None, ge=1)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "brand_id": "brand-1",
                    "preset": "last_7d",
                    "dimensions": ["date"],
                    "metrics": ["sessions", "leads"],
                    "required_platforms": ["GA4"],
                },
                {
                    "brand_id": "brand-1",
                    "date_range": {"start": "2026-01-10", "end": "2026-01-19"},
                    "dimensions": ["platform"],
                    "metrics": ["spend", "ctr", "cpc"],
                    "compare_to": {"mode": "previous_period"},
                    "sort": {"field": "spend", "direction": "desc"},
                    "pagination": {"limit": 25, "offset": 0},
                },
            ]
        }
    }

    @field_validator("limit")
    @classmethod
    def _cap_limit(cls, value: Optional[int]) -> Optional[int]:
        return _cap_page_size(value)

    @field_validator("dimensions")
    @classmethod
    def _unique_dimensions(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))

    @field_validator("metrics")
    @classmethod
    def _unique_metrics(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(m.strip() for m in value if m.strip()))

    @model_validator(mode="after")
    def _require_range(self):
        if self.date_range is None and not self.preset:
            raise ValueError("either date_range or preset is required")
        return self

    def filter_values(self, field: str) -> List[str]:
        out: List[str] = []
        for f in self.filters:
            if f.field == field:
                out.extend(v for v in f.values if v not in out)
        return out

    @property
    def wants_campaign(self) -> bool:
        return "campaign_id" in self.dimensions or bool(self.filter_values("campaign_id"))


# ─────────────────────────────────────────────
# RESULT
# ─────────────────────────────────────────────


class PageInfo(BaseModel):
    limit: int
    offset: int
    has_more: bool


class QueryMeta(BaseModel):
    timezone: str = "UTC"
    currency: Optional[str] = None
    date_range: Dict[str, str]
    compare_range: Optional[Dict[str, str]] = None
    generated_at: str
    stale_platforms: List[str] = []
    sync_errors: List[Dict[str, Any]] = []


class CompareBlock(BaseModel):
    date_range: Dict[str, str]
    rows: List[Dict[str, Any]]
    totals: Dict[str, float]
    page_info: Optional[PageInfo] = None


class QueryResult(BaseModel):
    """Ephemeral query answer. Never persisted; cached transiently."""

    meta: QueryMeta
    rows: List[Dict[str, Any]]
    totals: Dict[str, float]
    page_info: Optional[PageInfo] = None
    compare: Optional[CompareBlock] = None
