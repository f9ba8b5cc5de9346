# app/db/helpers.py
"""
Query helpers shared by the automation repositories.

Each helper borrows a pooled connection for one statement and turns driver
errors into DatabaseError, keeping the psycopg error as ``__cause__`` so
with_db_retry can tell a dropped connection from a bad statement.
"""

import asyncio
import functools
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from app.db.pool import get_db_connection
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _statement(operation: str, query: str) -> AsyncIterator[psycopg.AsyncConnection]:
    try:
        async with await get_db_connection() as conn:
            yield conn
    except psycopg.Error as e:
        logger.error("Database statement failed", operation=operation, query=query[:100], error=str(e))
        raise DatabaseError(
            f"Query failed: {e}",
            operation=operation,
            recoverable=isinstance(e, psycopg.OperationalError),
        ) from e


async def fetch_one(query: str, params: tuple = ()) -> dict[str, Any] | None:
    """First row of the result, or None. Also used for UPDATE ... RETURNING."""
    async with _statement("fetch_one", query) as conn:
        cursor = await conn.execute(query, params)
        return await cursor.fetchone()


async def fetch_all(query: str, params: tuple = ()) -> list[dict[str, Any]]:
    async with _statement("fetch_all", query) as conn:
        cursor = await conn.execute(query, params)
        return await cursor.fetchall()


async def execute_query(query: str, params: tuple = ()) -> int:
    """Run a write and return the affected row count."""
    async with _statement("execute", query) as conn:
        cursor = await conn.execute(query, params)
        return cursor.rowcount


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a repository call while the underlying failure is a lost or
    refused connection. Statement errors are raised on the first attempt.
    Delay doubles per attempt starting at ``base_delay`` seconds.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except DatabaseError as e:
                    cause = e.__cause__
                    if not isinstance(cause, psycopg.OperationalError) or attempt >= max_retries:
                        raise
                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
