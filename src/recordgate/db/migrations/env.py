"""Alembic migration environment configuration.

This module configures how Alembic runs migrations:
- Loads SQLAlchemy models for autogenerate support
- Takes the database URL from RECORDGATE_DATABASE__URL
- Supports both online and offline migration modes
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from recordgate.db.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url() -> str:
    """Get a synchronous database URL.

    Priority:
    1. RECORDGATE_DATABASE__URL environment variable
    2. sqlalchemy.url from alembic.ini

    Migrations run on a blocking connection, so the aiosqlite driver is
    swapped for pysqlite. psycopg serves both modes under the same URL.
    """
    url = os.environ.get("RECORDGATE_DATABASE__URL") or config.get_main_option(
        "sqlalchemy.url", ""
    )
    if url.startswith(("postgresql://", "postgres://")):
        url = "postgresql+psycopg://" + url.split("://", 1)[1]
    return url.replace("sqlite+aiosqlite://", "sqlite://", 1)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Generates SQL script without connecting to database.
    """
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = create_engine(get_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
            # SQLite cannot ALTER constraints in place
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
