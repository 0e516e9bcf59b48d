"""Async engine, session factory and the DB gate.

The gate is a semaphore sized like the connection pool. Every unit of DB work
runs as ``async with gated(): async with db.begin(): ...`` so bursts queue in
the event loop instead of timing out inside the pool.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, NamedTuple, Optional

from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


class Database(NamedTuple):
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Gated


def async_url(url: str) -> str:
    """Plain database URLs get the async driver the service runs on."""
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _sqlite_pragmas(dbapi_connection, _):
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.close()


def make_async_engine(
    database_url: str, *, pool_size: int = 10, max_overflow: int = 10,
    pool_timeout: int = 30, gate_limit: Optional[int] = None,
) -> Database:
    url = async_url(database_url)
    kw = dict(pool_pre_ping=True)
    is_postgres = url.startswith("postgresql+asyncpg://")
    if is_postgres:
        kw.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )

    engine = create_async_engine(url, **kw)
    if url.startswith("sqlite+aiosqlite://"):
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    gate = asyncio.Semaphore(max(1, gate_limit or pool_size))

    def gated():
        return _gated(gate)

    return Database(engine=engine, sessions=sessions, gated=gated)


def dialect_insert(db: AsyncSession, model):
    """INSERT construct that supports ON CONFLICT for the session's dialect."""
    if db.bind.dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)
