# boxoffice/infra/sql.py
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from ..config import (
    DB_GATE_LIMIT, DB_MAX_OVERFLOW, DB_POOL_SIZE, DB_POOL_TIMEOUT,
)

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

# gate size when the pool does not dictate one (sqlite)
SQLITE_GATE = 10


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite://")


def _engine_kwargs(url: str) -> Dict[str, Any]:
    kw: Dict[str, Any] = dict(future=True, pool_pre_ping=True)
    if url.startswith("postgresql+asyncpg://"):
        kw.update(
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            pool_timeout=DB_POOL_TIMEOUT,
        )
    return kw


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _pragmas(dbapi_connection, _):
        # we emit BEGIN ourselves (see below)
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        for pragma in ("journal_mode=WAL", "busy_timeout=5000",
                       "synchronous=NORMAL"):
            cur.execute(f"PRAGMA {pragma};")
        cur.close()

    # SQLite has no row locks: take the write lock up front so that
    # every transaction is serialized like a FOR UPDATE would.
    @event.listens_for(sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _gate_size(url: str) -> int:
    if DB_GATE_LIMIT:
        return max(1, int(DB_GATE_LIMIT))
    return SQLITE_GATE if _is_sqlite(url) else max(1, DB_POOL_SIZE)


# DB-GATE: never queue more transactions than the pool can serve
def _make_gate(size: int) -> Gated:
    sem = asyncio.Semaphore(size)

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def for_update(session: AsyncSession, skip_locked: bool = False) -> str:
    """Row-lock suffix for the session's dialect ('' on SQLite)."""
    if session.get_bind().dialect.name != "postgresql":
        return ""
    return " FOR UPDATE SKIP LOCKED" if skip_locked else " FOR UPDATE"


@dataclass
class Database:
    engine: AsyncEngine
    sessionmaker: async_sessionmaker
    gated: Gated

    @classmethod
    def from_url(cls, database_url: str) -> "Database":
        url = async_url(database_url)
        engine = create_async_engine(url, **_engine_kwargs(url))
        if _is_sqlite(url):
            _install_sqlite_hooks(engine)
        sessionmaker = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        return cls(engine=engine, sessionmaker=sessionmaker,
                   gated=_make_gate(_gate_size(url)))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        One short gated transaction. Commits on normal exit, rolls back when
        an exception leaves the block.
        """
        async with self.gated():
            async with self.sessionmaker() as session:
                async with session.begin():
                    yield session

    async def create_schema(self, metadata) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
