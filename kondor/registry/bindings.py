"""KONDOR — Brand Platform-Binding Registry.

Owns "at most one ACTIVE external account per (tenant, brand, platform)".
For GA4 it also keeps ``BrandGa4Settings`` (canonical property, timezone,
event mappings) equal to the ACTIVE binding, reconciling legacy duplicates
under the tenant/brand lock.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from kondor.config import settings
from kondor.connectors.base import CredentialResolver
from kondor.connectors.ga4.client import normalize_property_id
from kondor.core.date_ranges import resolve_timezone
from kondor.core.errors import (
    AccountNotAvailableError,
    BrandNotFoundError,
    CredentialNotConnectedError,
    QueryValidationError,
)
from kondor.core.locking import TenantBrandLock
from kondor.core.logging import get_logger
from kondor.models.binding_models import (
    BindingStatus,
    BrandGa4Settings,
    BrandPlatformBinding,
)
from kondor.models.fact_models import FactMetricDaily, FactSyncCoverage, Platform

logger = get_logger("registry.bindings")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_event_names(names: Optional[Iterable[str]]) -> List[str]:
    """Trim, drop blanks, de-duplicate case-insensitively (first spelling wins)."""
    seen = set()
    out: List[str] = []
    for name in names or []:
        value = str(name or "").strip()
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        out.append(value)
    return out


def normalize_account_id(platform: Platform, account_id) -> str:
    if platform == Platform.GA4:
        return normalize_property_id(account_id)
    return str(account_id or "").strip()


@dataclass(frozen=True)
class BindingSnapshot:
    """Optimistic-concurrency token for an ACTIVE binding."""

    binding_id: int
    account_id: str
    version: int


class BindingRegistry:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        lock: TenantBrandLock,
        credential_resolver: Optional[CredentialResolver] = None,
        on_invalidate: Optional[Callable[[str, str], None]] = None,
        default_lead_events: Optional[List[str]] = None,
        default_conversion_events: Optional[List[str]] = None,
    ):
        self._session_factory = session_factory
        self._lock = lock
        self._credentials = credential_resolver
        self._on_invalidate = on_invalidate
        self.default_lead_events = normalize_event_names(
            settings.default_lead_events if default_lead_events is None else default_lead_events
        )
        self.default_conversion_events = normalize_event_names(
            settings.default_conversion_events
            if default_conversion_events is None
            else default_conversion_events
        )

    # ── Reads ──

    @staticmethod
    async def _active_bindings(
        session: AsyncSession, tenant_id: str, brand_id: str, platform: Platform
    ) -> List[BrandPlatformBinding]:
        stmt = (
            select(BrandPlatformBinding)
            .where(
                BrandPlatformBinding.tenant_id == tenant_id,
                BrandPlatformBinding.brand_id == brand_id,
                BrandPlatformBinding.platform == platform,
                BrandPlatformBinding.status == BindingStatus.ACTIVE,
            )
            .order_by(BrandPlatformBinding.updated_at.desc(), BrandPlatformBinding.id.desc())
        )
        return list((await session.exec(stmt)).all())

    @staticmethod
    async def _settings_row(session: AsyncSession, brand_id: str) -> Optional[BrandGa4Settings]:
        stmt = select(BrandGa4Settings).where(BrandGa4Settings.brand_id == brand_id)
        return (await session.exec(stmt)).first()

    async def list_active_bindings(
        self, tenant_id: str, brand_id: str, platform: Platform
    ) -> List[BrandPlatformBinding]:
        async with self._session_factory() as session:
            return await self._active_bindings(session, tenant_id, brand_id, platform)

    async def list_bound_brands(self, platform: Platform | str) -> List[Tuple[str, str]]:
        """Distinct (tenant_id, brand_id) pairs with an ACTIVE binding for ``platform``."""
        platform = self._parse_platform(platform)
        async with self._session_factory() as session:
            stmt = (
                select(BrandPlatformBinding.tenant_id, BrandPlatformBinding.brand_id)
                .where(
                    BrandPlatformBinding.platform == platform,
                    BrandPlatformBinding.status == BindingStatus.ACTIVE,
                )
                .distinct()
                .order_by(BrandPlatformBinding.tenant_id, BrandPlatformBinding.brand_id)
            )
            return [(t, b) for t, b in (await session.exec(stmt)).all()]

    async def get_ga4_settings(self, tenant_id: str, brand_id: str) -> Optional[BrandGa4Settings]:
        async with self._session_factory() as session:
            row = await self._settings_row(session, brand_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        return row

    async def resolve_timezone(self, tenant_id: str, brand_id: str) -> str:
        row = await self.get_ga4_settings(tenant_id, brand_id)
        return resolve_timezone(row.timezone if row else None)

    async def snapshot(
        self, tenant_id: str, brand_id: str, platform: Platform
    ) -> Optional[BindingSnapshot]:
        """Most recent ACTIVE binding as a (id, account, version) token."""
        active = await self.list_active_bindings(tenant_id, brand_id, platform)
        if not active:
            return None
        b = active[0]
        return BindingSnapshot(b.id, b.external_account_id, b.version)

    @staticmethod
    async def verify_snapshot(session: AsyncSession, snap: BindingSnapshot) -> bool:
        """True iff the binding is still ACTIVE with the same account and version."""
        current = await session.get(BrandPlatformBinding, snap.binding_id, populate_existing=True)
        return bool(
            current is not None
            and current.status == BindingStatus.ACTIVE
            and current.external_account_id == snap.account_id
            and current.version == snap.version
        )

    # ── Resolve ──

    async def resolve_active_account(
        self, tenant_id: str, brand_id: str, platform: Platform | str
    ) -> Optional[str]:
        """Return the authoritative account id, reconciling duplicates if needed."""
        platform = self._parse_platform(platform)
        async with self._session_factory() as session:
            active = await self._active_bindings(session, tenant_id, brand_id, platform)
            canonical = (
                await self._settings_row(session, brand_id) if platform == Platform.GA4 else None
            )

        if not active:
            return None
        if len(active) == 1:
            account = active[0].external_account_id
            if platform != Platform.GA4:
                return account
            if (
                canonical is not None
                and canonical.tenant_id == tenant_id
                and canonical.property_id == account
            ):
                return account

        return await self._reconcile(tenant_id, brand_id, platform)

    async def active_accounts(self, tenant_id: str, brand_id: str) -> Dict[Platform, str]:
        """Authoritative account per connected platform for a brand."""
        async with self._session_factory() as session:
            stmt = select(BrandPlatformBinding.platform).where(
                BrandPlatformBinding.tenant_id == tenant_id,
                BrandPlatformBinding.brand_id == brand_id,
                BrandPlatformBinding.status == BindingStatus.ACTIVE,
            )
            platforms = set((await session.exec(stmt)).all())

        accounts: Dict[Platform, str] = {}
        for platform in sorted(platforms, key=lambda p: p.value):
            account = await self.resolve_active_account(tenant_id, brand_id, platform)
            if account:
                accounts[platform] = account
        return accounts

    async def _reconcile(self, tenant_id: str, brand_id: str, platform: Platform) -> Optional[str]:
        changed = False
        async with self._lock.locked_transaction(tenant_id, brand_id) as session:
            active = await self._active_bindings(session, tenant_id, brand_id, platform)
            if not active:
                return None

            target = active[0]
            if platform == Platform.GA4:
                canonical = await self._settings_row(session, brand_id)
                if canonical is not None and canonical.tenant_id == tenant_id:
                    preferred = [b for b in active if b.external_account_id == canonical.property_id]
                    if preferred:
                        target = preferred[0]

            now = _utcnow()
            for binding in active:
                if binding.id == target.id:
                    continue
                binding.status = BindingStatus.DISCONNECTED
                binding.version += 1
                binding.updated_at = now
                session.add(binding)
                changed = True

            purged = await self._purge_other_accounts(
                session, tenant_id, brand_id, platform, target.external_account_id
            )
            changed = changed or purged > 0

            if platform == Platform.GA4:
                changed = (
                    await self._upsert_ga4_settings(
                        session, tenant_id, brand_id, target.external_account_id
                    )
                    or changed
                )
            account = target.external_account_id

        if len(active) > 1:
            logger.warning(
                f"🔧 Reconciled {len(active)} ACTIVE {platform.value} bindings → {account}",
                extra={"tenant_id": tenant_id, "brand_id": brand_id, "platform": platform.value},
            )
        if changed:
            self._invalidate(tenant_id, brand_id)
        return account

    # ── Switch ──

    async def set_active_account(
        self,
        tenant_id: str,
        brand_id: str,
        platform: Platform | str,
        account_id: str,
        account_name: Optional[str] = None,
        timezone_name: Optional[str] = None,
        validate_credentials: bool = False,
    ) -> BrandPlatformBinding:
        """Make ``account_id`` the single ACTIVE binding (idempotent).

        Other ACTIVE rows are demoted and the platform's facts for any other
        account are purged in the same locked transaction. Re-selecting the
        current account only refreshes ``updated_at``.
        """
        platform = self._parse_platform(platform)
        account_id = normalize_account_id(platform, account_id)
        if not account_id:
            raise QueryValidationError("account id is required", code="PROPERTY_REQUIRED")

        if validate_credentials and self._credentials is not None:
            try:
                await self._credentials.resolve_integration_context(tenant_id, account_id)
            except CredentialNotConnectedError as e:
                raise AccountNotAvailableError(
                    f"Account {account_id} is not available for this tenant",
                    details={"account_id": account_id, "reason": e.code},
                ) from e

        async with self._lock.locked_transaction(tenant_id, brand_id) as session:
            stmt = (
                select(BrandPlatformBinding)
                .where(
                    BrandPlatformBinding.tenant_id == tenant_id,
                    BrandPlatformBinding.brand_id == brand_id,
                    BrandPlatformBinding.platform == platform,
                )
                .order_by(BrandPlatformBinding.updated_at.desc(), BrandPlatformBinding.id.desc())
            )
            rows = list((await session.exec(stmt)).all())
            now = _utcnow()

            matching = [b for b in rows if b.external_account_id == account_id]
            matching.sort(key=lambda b: b.status != BindingStatus.ACTIVE)
            target = matching[0] if matching else None
            if target is None:
                default_name = (
                    f"Property {account_id}" if platform == Platform.GA4 else account_id
                )
                target = BrandPlatformBinding(
                    tenant_id=tenant_id,
                    brand_id=brand_id,
                    platform=platform,
                    external_account_id=account_id,
                    external_account_name=account_name or default_name,
                    status=BindingStatus.ACTIVE,
                )
                session.add(target)
                await session.flush()
                created = True
            else:
                created = False
                if target.status != BindingStatus.ACTIVE:
                    target.status = BindingStatus.ACTIVE
                    target.version += 1
                if account_name:
                    target.external_account_name = account_name
                target.updated_at = now
                session.add(target)

            demoted = 0
            for binding in rows:
                if binding.id == target.id or binding.status != BindingStatus.ACTIVE:
                    continue
                binding.status = BindingStatus.DISCONNECTED
                binding.version += 1
                binding.updated_at = now
                session.add(binding)
                demoted += 1

            purged = await self._purge_other_accounts(
                session, tenant_id, brand_id, platform, account_id
            )
            if platform == Platform.GA4:
                await self._upsert_ga4_settings(
                    session, tenant_id, brand_id, account_id, timezone_name=timezone_name
                )
            await session.flush()

        logger.info(
            f"🔗 Active {platform.value} account for brand {brand_id}: {account_id} "
            f"(created={created}, demoted={demoted}, purged_rows={purged})",
            extra={
                "tenant_id": tenant_id,
                "brand_id": brand_id,
                "platform": platform.value,
                "account_id": account_id,
                "event": "binding_switch",
            },
        )
        self._invalidate(tenant_id, brand_id)
        return target

    # ── GA4 settings ──

    async def _upsert_ga4_settings(
        self,
        session: AsyncSession,
        tenant_id: str,
        brand_id: str,
        property_id: str,
        timezone_name: Optional[str] = None,
    ) -> bool:
        """Point canonical settings at ``property_id``; returns True if anything changed."""
        row = await self._settings_row(session, brand_id)
        now = _utcnow()
        if row is None:
            session.add(
                BrandGa4Settings(
                    tenant_id=tenant_id,
                    brand_id=brand_id,
                    property_id=property_id,
                    timezone=resolve_timezone(timezone_name) if timezone_name else None,
                    lead_events=list(self.default_lead_events),
                    conversion_events=list(self.default_conversion_events),
                )
            )
            return True
        if row.tenant_id != tenant_id:
            raise BrandNotFoundError(brand_id)

        changed = False
        if row.property_id != property_id:
            row.property_id = property_id
            row.backfill_cursor = None
            row.last_error = None
            row.last_error_at = None
            changed = True
        if timezone_name and row.timezone != resolve_timezone(timezone_name):
            row.timezone = resolve_timezone(timezone_name)
            changed = True
        row.updated_at = now
        session.add(row)
        return changed

    async def update_event_mappings(
        self,
        tenant_id: str,
        brand_id: str,
        lead_events: Optional[List[str]] = None,
        conversion_events: Optional[List[str]] = None,
    ) -> Optional[BrandGa4Settings]:
        async with self._lock.locked_transaction(tenant_id, brand_id) as session:
            row = await self._settings_row(session, brand_id)
            if row is None:
                return None
            if row.tenant_id != tenant_id:
                raise BrandNotFoundError(brand_id)
            if lead_events is not None:
                row.lead_events = normalize_event_names(lead_events)
            if conversion_events is not None:
                row.conversion_events = normalize_event_names(conversion_events)
            row.updated_at = _utcnow()
            session.add(row)
        self._invalidate(tenant_id, brand_id)
        return row

    async def record_sync_result(
        self,
        tenant_id: str,
        brand_id: str,
        property_id: str,
        error: Optional[str] = None,
        cursor: Optional[str] = None,
    ) -> None:
        """Stamp sync observability fields on canonical settings."""
        async with self._session_factory() as session:
            row = await self._settings_row(session, brand_id)
            if row is None or row.tenant_id != tenant_id or row.property_id != property_id:
                return
            now = _utcnow()
            row.last_sync_at = now
            if error:
                row.last_error = error[:1000]
                row.last_error_at = now
            else:
                row.last_success_at = now
                row.last_error = None
                if cursor:
                    row.backfill_cursor = cursor
            session.add(row)
            await session.commit()

    # ── Helpers ──

    @staticmethod
    def _parse_platform(platform) -> Platform:
        parsed = Platform.parse(platform)
        if parsed is None:
            raise QueryValidationError(
                f"Unknown platform: {platform}",
                code="INVALID_PLATFORM",
                details={"allowed": [p.value for p in Platform]},
            )
        return parsed

    @staticmethod
    async def _purge_other_accounts(
        session: AsyncSession,
        tenant_id: str,
        brand_id: str,
        platform: Platform,
        keep_account_id: str,
    ) -> int:
        facts = await session.execute(
            delete(FactMetricDaily).where(
                FactMetricDaily.tenant_id == tenant_id,
                FactMetricDaily.brand_id == brand_id,
                FactMetricDaily.platform == platform,
                FactMetricDaily.account_id != keep_account_id,
            )
        )
        await session.execute(
            delete(FactSyncCoverage).where(
                FactSyncCoverage.tenant_id == tenant_id,
                FactSyncCoverage.brand_id == brand_id,
                FactSyncCoverage.platform == platform,
                FactSyncCoverage.account_id != keep_account_id,
            )
        )
        return facts.rowcount or 0

    def _invalidate(self, tenant_id: str, brand_id: str) -> None:
        if self._on_invalidate is not None:
            self._on_invalidate(tenant_id, brand_id)
