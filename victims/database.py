"""Database engine construction and request-scoped store access."""

import asyncio
from typing import TYPE_CHECKING

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

if TYPE_CHECKING:
    from victims.config import Settings
    from victims.services.victims.store import FingerprintStore


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine backing a fingerprint store.

    SQLite connections get foreign keys switched on so deleting an advisory
    cascades to its fingerprints and metadata.
    """
    engine = create_async_engine(database_url, echo=echo)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory used for each store operation."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_store(request: Request) -> "FingerprintStore":
    """Dependency to get the application's fingerprint store."""
    return request.app.state.store


def get_app_settings(request: Request) -> "Settings":
    """Dependency to get the settings the application was created with."""
    return request.app.state.settings


def get_write_lock(request: Request) -> asyncio.Lock:
    """Dependency to get the lock serializing writes to the store."""
    return request.app.state.write_lock
