"""KONDOR — Daily Fact Store Models.

One row per (tenant, brand, platform, external account, campaign-or-null,
calendar date). Rows with ``campaign_id IS NULL`` (aggregated scope) and rows
with a campaign id (campaign scope) are two disjoint partitions of the same
data and are never summed together.
"""

import datetime as dt
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, Enum as SAEnum, Index
from sqlmodel import SQLModel, Field


class Platform(str, Enum):
    """External platforms a brand can bind."""

    GA4 = "GA4"
    META_ADS = "META_ADS"
    GOOGLE_ADS = "GOOGLE_ADS"
    TIKTOK_ADS = "TIKTOK_ADS"
    LINKEDIN_ADS = "LINKEDIN_ADS"

    @classmethod
    def parse(cls, value) -> Optional["Platform"]:
        """Case-insensitive lookup; None for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return None


ADS_PLATFORMS = frozenset(
    {Platform.META_ADS, Platform.GOOGLE_ADS, Platform.TIKTOK_ADS, Platform.LINKEDIN_ADS}
)


class FactScope(str, Enum):
    """Fact partition: campaign_id IS NULL vs NOT NULL."""

    AGGREGATED = "aggregated"
    CAMPAIGN = "campaign"


def platform_column(**kwargs) -> Column:
    return Column(SAEnum(Platform, name="brand_source_platform"), nullable=False, **kwargs)


class FactMetricDaily(SQLModel, table=True):
    """Materialized daily metrics.

    Deleted and rewritten per (tenant, brand, platform, account, scope,
    date range) on every successful materialization; never updated in place.
    """

    __tablename__ = "fact_metrics_daily"
    __table_args__ = (
        Index(
            "ix_fact_metrics_daily_lookup",
            "tenant_id",
            "brand_id",
            "platform",
            "account_id",
            "date",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    brand_id: str = Field(index=True)
    date: dt.date = Field(description="Calendar date (UTC midnight semantics)")
    platform: Platform = Field(sa_column=platform_column())
    account_id: str = Field(description="External account / GA4 property id")
    campaign_id: Optional[str] = Field(default=None, description="NULL = aggregated scope")
    currency: str = Field(default="BRL")
    impressions: int = Field(default=0)
    clicks: int = Field(default=0)
    spend: float = Field(default=0.0)
    conversions: float = Field(default=0.0)
    revenue: float = Field(default=0.0)
    sessions: int = Field(default=0)
    leads: int = Field(default=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class FactSyncCoverage(SQLModel, table=True):
    """Closed date ranges already materialized for an (account, scope).

    Written together with the fact rows it describes, purged together with
    them when the brand's active account changes.
    """

    __tablename__ = "fact_sync_coverage"
    __table_args__ = (
        Index(
            "ix_fact_sync_coverage_lookup",
            "tenant_id",
            "brand_id",
            "platform",
            "account_id",
            "scope",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str
    brand_id: str
    platform: Platform = Field(sa_column=platform_column())
    account_id: str
    scope: FactScope = Field(
        default=FactScope.AGGREGATED,
        sa_column=Column(SAEnum(FactScope, name="fact_scope"), nullable=False),
    )
    start_date: dt.date
    end_date: dt.date
    synced_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
