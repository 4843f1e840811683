"""
Shared helpers for the persistence layer: error translation and pagination.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import ConflictError, StorageError

log = structlog.get_logger()


@asynccontextmanager
async def translate_errors(operation: str, conflict_message: str = "Record already exists"):
    """Map driver failures onto the platform taxonomy."""
    try:
        yield
    except IntegrityError as exc:
        log.warning("store.conflict", operation=operation, error=str(exc.orig))
        raise ConflictError(conflict_message) from exc
    except SQLAlchemyError as exc:
        log.error("store.failure", operation=operation, error=str(exc))
        raise StorageError() from exc


async def count_rows(session: AsyncSession, stmt) -> int:
    """Count the rows a select would return (ignores its ordering)."""
    subquery = stmt.order_by(None).subquery()
    result = await session.execute(select(func.count()).select_from(subquery))
    return result.scalar_one()


def page_window(stmt, page_number: int, page_size: int):
    return stmt.offset((page_number - 1) * page_size).limit(page_size)


def contains(column, search: str):
    """Case-insensitive substring match."""
    return column.ilike(f"%{search}%")
