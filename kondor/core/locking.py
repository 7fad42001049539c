"""KONDOR — Tenant/Brand Advisory Lock.

Every operation that mutates a brand's authoritative fact rows or its
platform bindings runs inside ``locked_transaction``. On PostgreSQL the
mutex is ``pg_advisory_xact_lock`` and is released by COMMIT/ROLLBACK. Other
dialects (SQLite in development and tests) get a process-local keyed lock
that is held until the transaction has ended.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from kondor.core.logging import get_logger

logger = get_logger("core.locking")

ADVISORY_LOCK_SQL = text(
    "SELECT pg_advisory_xact_lock(hashtext(:tenant_id), hashtext(:brand_id))"
)


class TenantBrandLock:
    """Transaction-scoped mutex keyed by (tenant_id, brand_id)."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory
        self._local: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._holders: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def _local_lock(self, key: Tuple[str, str]) -> AsyncIterator[None]:
        lock = self._local.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                self._holders.pop(key, None)
                self._local.pop(key, None)

    def is_locked(self, tenant_id: str, brand_id: str) -> bool:
        lock = self._local.get((str(tenant_id), str(brand_id)))
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def locked_transaction(
        self, tenant_id: str, brand_id: str
    ) -> AsyncIterator[AsyncSession]:
        """Open a session + transaction holding the (tenant, brand) lock.

        Commits on normal exit, rolls back on error; the lock is released only
        after the transaction has finished.
        """
        key = (str(tenant_id), str(brand_id))
        async with self._session_factory() as session:
            is_postgres = session.get_bind().dialect.name == "postgresql"
            if is_postgres:
                async with session.begin():
                    await session.execute(
                        ADVISORY_LOCK_SQL, {"tenant_id": key[0], "brand_id": key[1]}
                    )
                    yield session
            else:
                async with self._local_lock(key):
                    async with session.begin():
                        yield session
