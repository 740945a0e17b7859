# lifeledger/db.py
from __future__ import annotations
from pathlib import Path

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy import event, inspect

from lifeledger.log import logger
from lifeledger.models import Base


async def table_names(engine: AsyncEngine) -> list[str]:
    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


def missing_tables(existing: list[str]) -> list[str]:
    """Model tables absent from the database."""
    return [t for t in Base.metadata.tables if t not in existing]


async def ensure_schema(engine: AsyncEngine) -> None:
    """
    Create every table when the database is empty; otherwise leave it alone.
    A partial schema is only reported: column and table changes belong to
    `alembic upgrade head`, never to a running command.
    """
    existing = await table_names(engine)
    if not existing:
        logger.info("[db] creating tables...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return
    missing = missing_tables(existing)
    if missing:
        logger.warning(f"[db] schema is behind ({', '.join(missing)} missing); run 'alembic upgrade head'")


def _sqlite_pragmas(dbapi_conn, _record) -> None:
    cur = dbapi_conn.cursor()
    # concurrent readers while a job writes
    cur.execute("PRAGMA journal_mode=WAL")
    cur.close()


def make_engine(db_path: Path) -> tuple[AsyncEngine, async_sessionmaker]:
    """
    Async engine + session factory for the ledger database at db_path.
    Sessions keep attributes loaded after commit so outcomes can be
    returned once the session is closed.
    """
    url = f"sqlite+aiosqlite:///{db_path}"
    # busy timeout lets the sweeper and ingestion overlap without "database is locked"
    eng = create_async_engine(url, connect_args={"timeout": 30})
    event.listen(eng.sync_engine, "connect", _sqlite_pragmas)
    session_factory = async_sessionmaker(eng, expire_on_commit=False)
    return eng, session_factory
