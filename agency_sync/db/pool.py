"""
Async Postgres pool shared by the API process and the worker.

The dispatcher handles one job at a time, so the pool stays small; every
connection is autocommit with dict rows and UTC timestamps.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from agency_sync.config import settings
from agency_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

STATEMENT_TIMEOUT = "60s"
CLOSE_TIMEOUT_SECONDS = 30.0


class SyncDatabasePool:
    """Owns the psycopg_pool lifecycle: open once, hand out connections, close once."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._state = "new"  # new -> open -> closed

    @property
    def initialized(self) -> bool:
        return self._state == "open"

    async def initialize(self) -> None:
        if self._state == "open":
            logger.warning("Database pool already initialized")
            return
        if self._state == "closed":
            raise RuntimeError("Cannot reinitialize closed pool")
        if not settings.DATABASE_URL:
            raise RuntimeError("DATABASE_URL not configured")

        options = settings.get_db_pool_config()
        logger.info("Opening database pool", **options)
        pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._prepare_connection,
            **options,
        )
        try:
            await pool.open()
            await pool.wait()
            self.pool = pool
            self._state = "open"
            await self._probe()
        except Exception as e:
            logger.error("Failed to open database pool", error=str(e))
            self.pool = None
            self._state = "new"
            try:
                await pool.close()
            except Exception as close_error:
                logger.warning("Error closing half-open pool", error=str(close_error))
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Database pool ready")

    async def _prepare_connection(self, conn: psycopg.AsyncConnection) -> None:
        """Per-connection session settings."""
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"agency-sync-{settings.environment}")
            )
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(sql.Literal(STATEMENT_TIMEOUT))
        )

    async def _probe(self) -> None:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT 1 AS ok")
            row = await cursor.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database probe returned an unexpected row")

    async def close(self) -> None:
        if self._state != "open":
            return
        logger.info("Closing database pool")
        self._state = "closed"
        try:
            await asyncio.wait_for(self.pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection.

        Usage:
            async with db_pool.connection() as conn:
                await conn.execute("SELECT 1")
        """
        if self._state != "open":
            raise RuntimeError(f"Database pool is {self._state}; call initialize() first")

        async with self.pool.connection() as conn:
            yield conn

    async def health_check(self) -> dict[str, Any]:
        """Readiness status with pool statistics."""
        if self._state != "open":
            return {"healthy": False, "error": f"Pool is {self._state}"}

        started = time.monotonic()
        try:
            await self._probe()
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {"healthy": False, "error": str(e), "error_type": type(e).__name__}

        stats = self.pool.get_stats()
        return {
            "healthy": True,
            "connection_time_ms": round((time.monotonic() - started) * 1000, 2),
            "pool_stats": {
                "pool_size": stats.get("pool_size", 0),
                "pool_available": stats.get("pool_available", 0),
                "requests_waiting": stats.get("requests_waiting", 0),
            },
        }


db_pool = SyncDatabasePool()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
