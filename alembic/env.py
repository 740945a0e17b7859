# alembic/env.py
from lifeledger.models import Base
from lifeledger.config import load_settings
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy import pool
from alembic import context
import asyncio
from logging.config import fileConfig


config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url() -> str:
    """
    `alembic -x db=/path/to/lifeledger.db upgrade head` targets another
    ledger; otherwise the database named by config.toml.
    """
    override = context.get_x_argument(as_dictionary=True).get("db")
    db_path = override or load_settings().db_path
    return f"sqlite+aiosqlite:///{db_path}"


def _configure(**kw) -> None:
    # SQLite cannot ALTER most column properties in place
    context.configure(target_metadata=target_metadata, compare_type=True, render_as_batch=True, **kw)


def run_migrations_offline():
    _configure(url=get_url(), literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online():
    connectable = create_async_engine(get_url(), poolclass=pool.NullPool)
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
