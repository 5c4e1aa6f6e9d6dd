"""PostgreSQL connection management.

Thin asyncpg wrapper with connect/query timeouts, statistics and a
context manager for short-lived connections. Migrations run one domain at a
time, so a single connection per operation is enough; no pool is kept.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import asyncpg

from .config import MigrationConfig, get_config

logger = logging.getLogger(__name__)


class ConnectionError(Exception):
    """Database connection error."""

    pass


class QueryError(Exception):
    """Database query error."""

    pass


@dataclass
class ConnectionStats:
    """Connection statistics."""

    total_connections: int = 0
    failed_connections: int = 0
    total_queries: int = 0
    failed_queries: int = 0
    last_connected: Optional[datetime] = None
    last_error: Optional[str] = None


_stats = ConnectionStats()


def get_stats() -> ConnectionStats:
    """Get process-wide connection statistics."""
    return _stats


class Connection:
    """A single PostgreSQL connection wrapper.

    Handles connection lifecycle and wraps driver errors in
    ``ConnectionError``/``QueryError``. Undefined-table and
    undefined-schema errors are re-raised untouched so callers can treat a
    missing metadata table as a fresh database.
    """

    def __init__(self, config: MigrationConfig):
        """Initialize connection.

        Args:
            config: Migration configuration
        """
        self.config = config
        self._conn: Optional[asyncpg.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if connection is active."""
        return self._conn is not None and not self._conn.is_closed()

    @property
    def raw(self) -> asyncpg.Connection:
        """Underlying asyncpg connection (connect first)."""
        if self._conn is None:
            raise ConnectionError("Not connected")
        return self._conn

    async def connect(self) -> None:
        """Establish the connection."""
        async with self._lock:
            if self.is_connected:
                return

            try:
                self._conn = await asyncpg.connect(
                    self.config.database_url,
                    timeout=self.config.connect_timeout,
                    command_timeout=self.config.query_timeout,
                )
                _stats.total_connections += 1
                _stats.last_connected = datetime.now()
                logger.debug(f"Connected to PostgreSQL: {self.config.redacted_url}")

            except asyncio.TimeoutError as e:
                _stats.failed_connections += 1
                _stats.last_error = "timeout"
                raise ConnectionError(
                    f"Connection timeout after {self.config.connect_timeout}s"
                ) from e
            except (OSError, ValueError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                _stats.failed_connections += 1
                _stats.last_error = str(e)
                raise ConnectionError(f"Failed to connect: {e}") from e

    async def disconnect(self) -> None:
        """Close connection."""
        async with self._lock:
            if self._conn is not None:
                try:
                    await self._conn.close()
                except (OSError, asyncpg.PostgresError) as e:
                    logger.warning(f"Error closing connection: {e}")
                finally:
                    self._conn = None

    async def _run(self, method: str, sql: str, *args: Any) -> Any:
        if not self.is_connected:
            await self.connect()

        _stats.total_queries += 1
        try:
            return await getattr(self.raw, method)(sql, *args)
        except (asyncpg.UndefinedTableError, asyncpg.InvalidSchemaNameError):
            raise
        except asyncio.TimeoutError as e:
            _stats.failed_queries += 1
            raise QueryError(f"Query timeout after {self.config.query_timeout}s") from e
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            _stats.failed_queries += 1
            _stats.last_error = str(e)
            raise QueryError(f"Query failed: {e}") from e

    async def execute(self, sql: str, *args: Any) -> str:
        """Execute one or more statements.

        Args:
            sql: SQL text
            *args: Positional parameters ($1, $2, ...)

        Returns:
            Status string of the last statement
        """
        result: str = await self._run("execute", sql, *args)
        return result

    async def fetchrow(self, sql: str, *args: Any) -> Optional[asyncpg.Record]:
        """Fetch a single row, or None if the query returned nothing."""
        return await self._run("fetchrow", sql, *args)

    async def fetchval(self, sql: str, *args: Any) -> Any:
        """Fetch the first column of the first row."""
        return await self._run("fetchval", sql, *args)

    def transaction(self) -> Any:
        """Start a transaction block (``async with conn.transaction():``)."""
        return self.raw.transaction()


@asynccontextmanager
async def get_connection(
    config: Optional[MigrationConfig] = None,
) -> AsyncGenerator[Connection, None]:
    """Context manager for getting a database connection.

    Usage:
        async with get_connection(config) as conn:
            await conn.execute("CREATE SCHEMA IF NOT EXISTS content_schema")

    Args:
        config: Optional configuration override

    Yields:
        Connected database connection
    """
    conn = Connection(config or get_config())
    await conn.connect()
    try:
        yield conn
    finally:
        await conn.disconnect()


def quote_ident(name: str) -> str:
    """Quote a SQL identifier.

    Examples:
        >>> quote_ident("content_schema")
        '"content_schema"'
    """
    return '"' + name.replace('"', '""') + '"'
