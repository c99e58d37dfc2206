"""
Database engine and transaction helpers.

Services accept either an AsyncEngine or an AsyncConnection as their ``db``.
``transaction(db)`` joins an already open transaction on a connection, so
nested service calls made with the same handle see each other's uncommitted
writes and roll back together.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

Database = Union[AsyncEngine, AsyncConnection]


def create_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """
    Create an async engine for ``settings.database_url``.

    SQLite connections get ``PRAGMA foreign_keys=ON`` so foreign keys are
    enforced the same way they are on other backends.
    """
    settings = settings or get_settings()
    engine = create_async_engine(settings.database_url, echo=settings.sql_echo)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


# Engine (initialized lazily)
_engine: Optional[AsyncEngine] = None


def get_engine() -> AsyncEngine:
    """Get or create the process-wide async engine."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


async def close_db():
    """Close database connections."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


@asynccontextmanager
async def transaction(db: Database) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection inside a transaction.

    - AsyncEngine: opens a connection and a transaction, committed on exit
    - AsyncConnection already in a transaction: reused as is; the owner commits
    - AsyncConnection outside a transaction: begins one, committed on exit
    """
    if isinstance(db, AsyncEngine):
        async with db.begin() as conn:
            yield conn
    elif db.in_transaction():
        yield db
    else:
        async with db.begin():
            yield db


@asynccontextmanager
async def connect(db: Database) -> AsyncIterator[AsyncConnection]:
    """Yield a connection for reads, reusing ``db`` when it already is one."""
    if isinstance(db, AsyncEngine):
        async with db.connect() as conn:
            yield conn
    else:
        yield db
