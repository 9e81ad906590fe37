from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from xbrch.core.config import get_settings
from xbrch.domain.models import Base


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    # Configure bounded asyncpg pools for predictable latency under load.
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        return kwargs
    settings = get_settings()
    kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
    kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    kwargs["pool_timeout"] = 30
    kwargs["pool_recycle"] = 1800
    return kwargs


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Storage handle opened at process start and closed at shutdown.

    Request handlers receive one ``AsyncSession`` per call through
    :meth:`session`; nothing holds a module-level engine.
    """

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        self.url = database_url
        self.engine: AsyncEngine = create_async_engine(
            database_url, echo=echo, **_engine_kwargs(database_url)
        )
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session

    async def create_all(self) -> None:
        # Build the schema directly from metadata for dev databases and tests.
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    def pool_stats(self) -> dict[str, int | None]:
        # Expose DB pool counters for ops visibility without querying Postgres internals.
        pool = self.engine.sync_engine.pool
        checked_out_fn = getattr(pool, "checkedout", None)
        checked_in_fn = getattr(pool, "checkedin", None)
        overflow_fn = getattr(pool, "overflow", None)
        size_fn = getattr(pool, "size", None)
        return {
            "size": int(size_fn()) if callable(size_fn) else None,
            "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
            "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
            "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
        }


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    # Close any implicit read transaction so all writes land in one explicit transaction.
    if session.in_transaction():
        await session.commit()
    async with session.begin():
        yield session
