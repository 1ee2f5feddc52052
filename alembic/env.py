"""Alembic environment for the transfers schema.

Migrations connect with the indexer's own DATABASE_URL (environment or
`.env`) through the same async engine factory the indexer uses.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection

from token_transfer_indexer.config import DatabaseSettings
from token_transfer_indexer.storage.database import create_async_db_engine
from token_transfer_indexer.storage.models import Base

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name, disable_existing_loggers=False)


def _migrate(connection: Connection) -> None:
    # SQLite can't ALTER most constraints in place.
    context.configure(
        connection=connection,
        target_metadata=Base.metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


async def _upgrade(database_url: str) -> None:
    engine = create_async_db_engine(database_url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    raise SystemExit("Offline (--sql) migrations are not supported; run against a database")

asyncio.run(_upgrade(DatabaseSettings(_env_file=".env").url))
