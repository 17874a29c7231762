from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from orgaccess.core.config import Settings, get_settings
from orgaccess.domain.models import Base


def engine_options(settings: Settings) -> dict[str, Any]:
    """Engine keyword arguments for the configured database.

    Postgres gets a bounded pool and an optional server-side statement timeout so a slow
    snapshot read cannot hold a decision open indefinitely. SQLite keeps driver defaults.
    """
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=max(1, settings.api_db_pool_size),
        max_overflow=max(0, settings.api_db_max_overflow),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(settings.api_db_statement_timeout_ms)}
        }
    return options


engine = create_async_engine(get_settings().database_url, **engine_options(get_settings()))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def create_schema() -> None:
    # Local runs and tests only; deployed databases are migrated out of band.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


SNAPSHOT_ISOLATION = "REPEATABLE READ"


async def begin_snapshot(session: AsyncSession) -> None:
    """Pin every read of the session's transaction to one snapshot.

    Must run before the first statement. SQLite transactions are already serializable and
    the driver rejects the Postgres level name, so it is left alone there.
    """
    if session.bind.dialect.name == "sqlite":
        return
    await session.connection(execution_options={"isolation_level": SNAPSHOT_ISOLATION})
