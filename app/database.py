from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.cache import cache
from app.config import settings
from app.errors import StorageError
from app.middleware import install_query_counter


class Base(DeclarativeBase):
    pass


def engine_options(url: str) -> dict:
    """Pool sizing for *url*; SQLite drivers use their own pool classes."""
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
    }


def enable_sqlite_savepoints(engine) -> None:
    """
    Take transaction control away from the sqlite3 driver so that
    ``Session.begin_nested()`` emits working SAVEPOINTs.
    """
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


class Database:
    """
    Storage handle: owns the async engine (and therefore the bounded
    connection pool) plus the session factory.

    One instance is created at process start-up, kept on ``app.state`` and
    disposed at shutdown.  Service functions never see it directly; they
    receive a session drawn from it.
    """

    def __init__(self, url: str, *, echo: bool = False, **engine_kwargs) -> None:
        options = engine_options(url)
        options.update(engine_kwargs)
        self.url = url
        self.engine = create_async_engine(url, echo=echo, pool_pre_ping=True, **options)
        if url.startswith("sqlite"):
            enable_sqlite_savepoints(self.engine)

        # Register the per-request SQL query counter on this engine.
        install_query_counter(self.engine)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Yield a session whose transaction commits when the block exits
        cleanly and rolls back otherwise.  A failing commit surfaces as
        ``StorageError``.

        Cached tag data for articles whose tags changed in the transaction
        is dropped after the commit succeeds, never before.
        """
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                cache.discard_pending(session)
                raise
            try:
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                cache.discard_pending(session)
                raise StorageError("commit") from exc
            await cache.invalidate_committed(session)


async def get_db(request: Request):
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session
