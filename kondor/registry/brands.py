"""KONDOR — SQL Brand Directory."""

from typing import List

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from kondor.models.binding_models import Brand


class SqlBrandDirectory:
    """Answers brand existence / listing from the ``brands`` mirror table."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def brand_exists(self, tenant_id: str, brand_id: str) -> bool:
        async with self._session_factory() as session:
            stmt = select(Brand.id).where(Brand.id == brand_id, Brand.tenant_id == tenant_id)
            return (await session.exec(stmt)).first() is not None

    async def list_brand_ids(self, tenant_id: str) -> List[str]:
        async with self._session_factory() as session:
            stmt = select(Brand.id).where(Brand.tenant_id == tenant_id).order_by(Brand.id)
            return list((await session.exec(stmt)).all())
