"""KONDOR — Brand Platform Bindings & Canonical GA4 Settings."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import Column, Enum as SAEnum, JSON
from sqlmodel import SQLModel, Field

from kondor.models.fact_models import Platform, platform_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BindingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISCONNECTED = "DISCONNECTED"


class Brand(SQLModel, table=True):
    """Read-only mirror of a tenant's brands (owned by the clients service)."""

    __tablename__ = "brands"

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    name: str = Field(default="")
    created_at: datetime = Field(default_factory=_utcnow)


class BrandPlatformBinding(SQLModel, table=True):
    """Which external account is authoritative for a brand + platform.

    At most one row per (tenant, brand, platform) may be ACTIVE. ``version``
    is bumped on every status change and acts as the optimistic-concurrency
    token for materialization writes.
    """

    __tablename__ = "brand_platform_bindings"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    brand_id: str = Field(index=True)
    platform: Platform = Field(sa_column=platform_column(index=True))
    external_account_id: str
    external_account_name: Optional[str] = None
    status: BindingStatus = Field(
        default=BindingStatus.ACTIVE,
        sa_column=Column(
            SAEnum(BindingStatus, name="binding_status"),
            nullable=False,
            default=BindingStatus.ACTIVE,
        ),
    )
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class BrandGa4Settings(SQLModel, table=True):
    """Canonical GA4 configuration, unique per brand.

    ``property_id`` must always equal the ACTIVE GA4 binding.
    """

    __tablename__ = "brand_ga4_settings"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    brand_id: str = Field(unique=True, index=True)
    property_id: str
    timezone: Optional[str] = None
    lead_events: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    conversion_events: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    backfill_cursor: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
