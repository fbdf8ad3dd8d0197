from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (AsyncEngine, AsyncSession, async_sessionmaker,
                                    create_async_engine)

from meshvpn.core.config import make_async_db_url

log = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine(database_url: str) -> AsyncEngine:
    url = make_async_db_url(database_url)
    if url.startswith("sqlite"):
        return create_async_engine(url)
    return create_async_engine(url, pool_pre_ping=True)


def make_sessionmaker(engine: AsyncEngine) -> SessionFactory:
    sm = async_sessionmaker(engine, expire_on_commit=False)
    log.info("db_engine_initialized dialect=%s", engine.dialect.name)
    return sm


@asynccontextmanager
async def session_scope(sessions: SessionFactory) -> AsyncIterator[AsyncSession]:
    """AsyncSession context manager that commits on success and rolls back on error."""
    async with sessions() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
