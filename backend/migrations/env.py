"""
Alembic migration environment for the order store.

The target URL is read from APP_DATABASE_URL through application settings,
never from alembic.ini, so migrations and the API always agree on the store.
SQLite databases are migrated in batch mode.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection

from delivery.core.config import get_settings
from delivery.core.logging import get_logger
from delivery.database.connection import async_database_url, create_engine
from delivery.database.models import Base

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name, disable_existing_loggers=False)

logger = get_logger("delivery.migrations")

DATABASE_URL = async_database_url(get_settings().database_url)
context.config.set_main_option("sqlalchemy.url", DATABASE_URL)

MIGRATION_OPTIONS = {
    "target_metadata": Base.metadata,
    "compare_type": True,
    "render_as_batch": DATABASE_URL.startswith("sqlite"),
}


def emit_sql() -> None:
    """Write migration SQL to stdout without touching the store."""
    context.configure(
        url=DATABASE_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **MIGRATION_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection: Connection) -> None:
    context.configure(connection=connection, transaction_per_migration=True, **MIGRATION_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


async def migrate_store() -> None:
    engine = create_engine(DATABASE_URL)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()
    logger.info("Order store migrated", dialect=engine.dialect.name)


if context.is_offline_mode():
    emit_sql()
else:
    asyncio.run(migrate_store())
