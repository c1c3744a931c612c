"""Async engine setup shared by the server, the seeding script and tests."""
import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, NamedTuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

from ..model.db import Base

Gated = Callable[[], AsyncContextManager[None]]

ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),  # heroku-style
)


class Database(NamedTuple):
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gated: Gated


def normalize_async_url(url: str) -> str:
    for plain, driver in ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _pool_options(db_url: str) -> dict:
    if not db_url.startswith("postgresql+asyncpg://"):
        return {}
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
    }


def _sqlite_pragmas(dbapi_connection, _record):
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.close()


def db_gate(limit: int) -> Gated:
    """``async with gated(): ...`` admits at most ``limit`` callers."""
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def make_async_engine(database_url: str) -> Database:
    """Engine, session factory and DB gate for ``database_url``.

    The gate keeps bursts of requests waiting in the event loop instead of
    in the connection pool; it defaults to the pool size on Postgres.
    """
    db_url = normalize_async_url(database_url)
    pool = _pool_options(db_url)
    engine = create_async_engine(db_url, pool_pre_ping=True, **pool)
    if db_url.startswith("sqlite+aiosqlite://"):
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    gate_limit = int(os.getenv("DB_GATE_LIMIT", pool.get("pool_size", 10)))
    return Database(engine, SessionAsync, db_gate(gate_limit))


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
