from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from printvault.core.config import Settings, get_settings


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        # Page workers and confirms write concurrently; wait on the file lock.
        options["connect_args"] = {"timeout": 30}
        return options
    options.update(
        pool_size=max(1, int(settings.db_pool_size)),
        max_overflow=max(0, int(settings.db_max_overflow)),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.db_statement_timeout_ms > 0:
        # Guarded ledger updates must never hang behind a stuck lock.
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return options


settings = get_settings()
engine = create_async_engine(settings.database_url, **_engine_options(settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def create_all() -> None:
    # Local runs and tests build the schema directly; deployments run alembic.
    from printvault.domain.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
