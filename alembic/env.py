"""Migrations for the reconciler tables.

The database URL is taken from ``-x url=...`` on the alembic command line,
then the DATABASE_URL environment variable, then ``sqlalchemy.url`` in
alembic.ini, so the service and its migrations point at the same database.
"""
import asyncio
import os
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

from reconciler.models import Base

config = context.config

if config.config_file_name is not None:
    # Keep the reconciler's own loggers when migrations run in-process
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def database_url() -> str:
    url = (
        context.get_x_argument(as_dictionary=True).get("url")
        or os.getenv("DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
    )
    if not url:
        raise ValueError("Set DATABASE_URL, pass -x url=..., or configure sqlalchemy.url in alembic.ini")
    return url


def configure(**options):
    context.configure(
        target_metadata=target_metadata,
        # Enum and Numeric changes matter for the ledger columns
        compare_type=True,
        **options,
    )


def migrate_offline():
    configure(url=database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def migrate(connection: Connection):
    configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def migrate_online():
    options = config.get_section(config.config_ini_section) or {}
    options["sqlalchemy.url"] = database_url()
    engine = async_engine_from_config(options, prefix="sqlalchemy.", poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    migrate_offline()
else:
    asyncio.run(migrate_online())
