# flowerscan/infra/sql.py
"""
Async engine, session factory and DB gate.

Every unit of work runs inside `gated()`, a per-engine semaphore, so that
callers queue here instead of inside the connection pool. SQLite gets a
single writer by default; PostgreSQL gets one slot per pooled connection.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    # attendances reference participants and sessions
    "PRAGMA foreign_keys=ON;",
)


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return url.replace(plain, driver, 1)
    return url


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite://")


def _install_sqlite_pragmas(sync_engine: Engine) -> None:
    @event.listens_for(sync_engine, "connect")
    def _pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


def make_gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated() -> AsyncIterator[None]:
        async with sem:
            yield

    return gated


def make_async_engine(
    database_url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    gate_limit: Optional[int] = None,
) -> tuple[AsyncEngine, async_sessionmaker, Gated]:
    url = async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)
    default_gate = pool_size
    if _is_sqlite(url):
        default_gate = 1
    elif url.startswith("postgresql+asyncpg://"):
        kw.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )

    engine = create_async_engine(url, **kw)
    if _is_sqlite(url):
        _install_sqlite_pragmas(engine.sync_engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    gated = make_gate(gate_limit if gate_limit is not None else default_gate)
    return engine, SessionAsync, gated
