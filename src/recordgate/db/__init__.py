"""RecordGate Database module.

Database models and migrations:
- SQLAlchemy 2.x ORM models
- Alembic migration configuration
- Connection pooling via psycopg

The engine lives on an explicitly constructed Database handle; there is no
module-level engine. The process entry point builds one from settings and
hands sessions to the services.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from recordgate.db.models import Base
from recordgate.services.errors import DisclosureError

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from recordgate.core.config import DatabaseSettings

logger = logging.getLogger(__name__)


def _install_sqlite_hooks(engine: Any) -> None:
    """Make pysqlite/aiosqlite emit BEGIN itself and enforce foreign keys.

    The driver's implicit transaction handling breaks SAVEPOINT semantics.
    BEGIN IMMEDIATE takes the write lock up front so concurrent writers
    wait on the busy timeout instead of failing on a lock upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Engine and session factory for one relational store.

    Usage:
        database = Database(settings.database)
        async with database.session_scope() as session:
            ledger = DisclosureRequestLedger(session, ...)
            await ledger.submit(...)
        await database.dispose()
    """

    def __init__(self, settings: DatabaseSettings) -> None:
        """Create the engine (connections are opened lazily).

        Args:
            settings: Connection settings.
        """
        engine_kwargs: dict[str, Any] = {"echo": settings.echo}
        if not settings.is_sqlite:
            engine_kwargs.update(
                pool_size=settings.pool_size,
                max_overflow=settings.max_overflow,
                pool_timeout=settings.pool_timeout,
            )

        self._engine = create_async_engine(settings.url, **engine_kwargs)
        if settings.is_sqlite:
            _install_sqlite_hooks(self._engine)

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> Any:
        """The underlying AsyncEngine."""
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a bare async session; the caller commits.

        Yields:
            AsyncSession for database operations.
        """
        session = self._session_factory()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """Run one unit of work in a transaction.

        Commits on success. Domain errors (DisclosureError) are raised only
        after the primary mutation was refused, so the audit rows written
        alongside them are committed too. Any other exception rolls back.

        Yields:
            AsyncSession bound to the unit of work.
        """
        session = self._session_factory()
        try:
            yield session
        except DisclosureError:
            await session.commit()
            raise
        except Exception:
            await session.rollback()
            raise
        else:
            await session.commit()
        finally:
            await session.close()

    async def create_schema(self) -> None:
        """Create all tables directly from the models (development and tests).

        Deployed databases are managed by the Alembic migrations instead.
        """
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema created from models")

    async def dispose(self) -> None:
        """Close pooled connections.

        Call this during application shutdown to clean up connections.
        """
        await self._engine.dispose()


__all__ = ["Database"]
