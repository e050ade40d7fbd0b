"""
Query helpers for the repository layer.

Every psycopg failure is re-raised as DatabaseError; connection-level
failures are marked recoverable so with_db_retry (and the dispatcher's
error classification) can treat them as transient.
"""

import asyncio
import functools
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from agency_sync.db.pool import db_pool
from agency_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def as_json(value: Any) -> Jsonb | None:
    """Adapt a dict/list for a JSONB parameter."""
    return Jsonb(value) if value is not None else None


def _statement_head(query: str) -> str:
    return " ".join(query.split())[:100]


def _wrap(operation: str, query: str, error: psycopg.Error) -> DatabaseError:
    recoverable = isinstance(error, psycopg.OperationalError)
    logger.error(
        "Database query failed",
        operation=operation,
        statement=_statement_head(query),
        error=str(error),
        recoverable=recoverable,
    )
    return DatabaseError(f"Query failed: {error}", operation=operation, recoverable=recoverable)


async def fetch_one(query: str, params: tuple = ()) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Returns:
        Dict with row data or None if no results
    """
    try:
        async with db_pool.connection() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()
    except psycopg.Error as e:
        raise _wrap("fetch_one", query, e) from e


async def fetch_all(query: str, params: tuple = ()) -> list[dict[str, Any]]:
    try:
        async with db_pool.connection() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()
    except psycopg.Error as e:
        raise _wrap("fetch_all", query, e) from e


async def execute_query(query: str, params: tuple = ()) -> int:
    """Execute a write and return the number of affected rows."""
    try:
        async with db_pool.connection() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount
    except psycopg.Error as e:
        raise _wrap("execute", query, e) from e


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Decorator to retry database operations on temporary failures.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay between retries (exponential backoff)
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except DatabaseError as e:
                    if not e.recoverable:
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "Database operation failed after all retries",
                            operation=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise
                    delay = base_delay * (2**attempt)
                    attempt += 1
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
