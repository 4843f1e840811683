"""
Database connection and session management.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from app.core.config import Settings, get_settings


def _enable_sqlite_transactions(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINTs work on SQLite; enforce foreign keys."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(settings: Settings) -> AsyncEngine:
    url = settings.database_url
    if not url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.debug, future=True)

    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if url.endswith("://") or ":memory:" in url:
        # One shared connection, otherwise every session sees an empty database
        kwargs["poolclass"] = StaticPool
    engine = create_async_engine(url, echo=settings.debug, future=True, **kwargs)
    _enable_sqlite_transactions(engine)
    return engine


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


settings = get_settings()

engine = build_engine(settings)

async_session_factory = build_session_factory(engine)


async def init_db(bind: AsyncEngine = engine):
    """Create all tables (development and tests; use migrations in production)."""
    import app.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_session_context(factory: sessionmaker = async_session_factory):
    """Context manager for use outside of the FastAPI request lifecycle (RPC worker, tasks)."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
