"""PostgreSQL migration engine.

Applies every pending ``.up.sql`` file of one domain against that domain's
dedicated schema and records progress in ``<domain>_schema.schema_migrations``
(one row: the current version and a dirty flag). A migration that fails
midway leaves the row dirty; later runs refuse to continue until the schema
is recreated or repaired by hand.

Targeted rollback runs the matching ``.down.sql`` files newest first and
moves the row down one version at a time.
"""

import logging
import time
from typing import Optional

import asyncpg

from ..config import MigrationConfig, get_config, schema_name
from ..connection import ConnectionError, QueryError, get_connection, quote_ident
from .base import (
    DirtyDatabaseError,
    MigrationError,
    MigrationExecutionError,
    NoChangeError,
    PathLike,
    RollbackError,
)
from .source import FileMigrationSource

logger = logging.getLogger(__name__)


class PostgresMigrationEngine:
    """Per-domain migration engine backed by asyncpg."""

    def __init__(
        self,
        config: Optional[MigrationConfig] = None,
        source: Optional[FileMigrationSource] = None,
        connect=get_connection,
    ):
        """Initialize the engine.

        Args:
            config: Database configuration (global config if not provided)
            source: Migration file reader
            connect: Async context manager factory yielding a connection
        """
        self.config = config or get_config()
        self.source = source or FileMigrationSource()
        self._connect = connect

    async def _ensure_metadata(self, conn, schema: str) -> None:
        await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema)}")
        await conn.execute(
            f"CREATE TABLE IF NOT EXISTS {quote_ident(schema)}.schema_migrations ("
            "version BIGINT NOT NULL PRIMARY KEY, "
            "dirty BOOLEAN NOT NULL)"
        )

    async def _set_version(self, conn, schema: str, version: Optional[int], dirty: bool) -> None:
        table = f"{quote_ident(schema)}.schema_migrations"
        await conn.execute(f"TRUNCATE {table}")
        if version is not None:
            await conn.execute(f"INSERT INTO {table} (version, dirty) VALUES ($1, $2)", version, dirty)

    async def _clean_version(self, conn, schema: str, domain: str) -> int:
        row = await conn.fetchrow(
            f"SELECT version, dirty FROM {quote_ident(schema)}.schema_migrations "
            "ORDER BY version DESC LIMIT 1"
        )
        current = int(row["version"]) if row else 0
        if row and row["dirty"]:
            raise DirtyDatabaseError(
                f"domain '{domain}' is dirty at version {current}; "
                "fix the schema and force a version, or recreate it",
                domain=domain,
            )
        return current

    async def apply_pending(self, domain: str, migrations_path: PathLike) -> int:
        """Apply all pending migrations of a domain.

        Args:
            domain: Domain name
            migrations_path: Directory with the domain's migration files

        Returns:
            Version after the last applied migration

        Raises:
            NoChangeError: If nothing was pending
            DirtyDatabaseError: If a previous run left the schema dirty
            MigrationExecutionError: If a migration fails
        """
        schema = schema_name(domain)

        try:
            async with self._connect(self.config) as conn:
                await self._ensure_metadata(conn, schema)
                current = await self._clean_version(conn, schema, domain)

                pending = [v for v in self.source.list_versions(migrations_path) if v > current]
                if not pending:
                    raise NoChangeError(f"no change for domain '{domain}'", domain=domain)

                for version in pending:
                    sql = self.source.read_up(migrations_path, version)
                    logger.info(f"Applying {domain} migration {version}...")
                    start_time = time.time()

                    await self._set_version(conn, schema, version, dirty=True)
                    try:
                        async with conn.transaction():
                            await conn.execute(f"SET LOCAL search_path TO {quote_ident(schema)}, public")
                            await conn.execute(sql)
                            await self._set_version(conn, schema, version, dirty=False)
                    except (QueryError, asyncpg.PostgresError) as e:
                        raise MigrationExecutionError(
                            f"failed to apply migration {version} for domain '{domain}': {e}",
                            domain=domain,
                        ) from e

                    execution_time_ms = int((time.time() - start_time) * 1000)
                    logger.info(f"Applied {domain} migration {version} in {execution_time_ms}ms")
                    current = version

                return current

        except MigrationError:
            raise
        except (ConnectionError, QueryError, asyncpg.PostgresError) as e:
            raise MigrationExecutionError(
                f"migration engine failed for domain '{domain}': {e}",
                domain=domain,
            ) from e

    async def migrate_down(self, domain: str, migrations_path: PathLike, target_version: int) -> int:
        """Revert a domain to ``target_version`` with its down migrations.

        Versions above the target are reverted newest first, each in its own
        transaction. After each one the metadata row moves to the next lower
        version on disk, or is emptied once nothing is left applied.

        Args:
            domain: Domain name
            migrations_path: Directory with the domain's migration files
            target_version: Version to end at; 0 or an existing version

        Returns:
            Version after the last reverted migration

        Raises:
            NoChangeError: If the domain is already at or below the target
            DirtyDatabaseError: If a previous run left the schema dirty
            MigrationSourceError: If a down file is missing
            RollbackError: If the target is unknown or a down migration fails
        """
        schema = schema_name(domain)

        try:
            async with self._connect(self.config) as conn:
                await self._ensure_metadata(conn, schema)
                current = await self._clean_version(conn, schema, domain)
                if current <= target_version:
                    raise NoChangeError(f"no change for domain '{domain}'", domain=domain)

                available = self.source.list_versions(migrations_path)
                if target_version != 0 and target_version not in available:
                    raise RollbackError(
                        f"target version {target_version} of domain '{domain}' "
                        f"does not exist in {migrations_path}",
                        domain=domain,
                    )

                applied = [v for v in available if v <= current]
                to_revert = [v for v in reversed(applied) if v > target_version]
                # Read every down file before touching the schema
                scripts = {v: self.source.read_down(migrations_path, v) for v in to_revert}

                for version in to_revert:
                    previous = max((v for v in applied if v < version), default=None)
                    logger.info(f"Reverting {domain} migration {version}...")
                    start_time = time.time()

                    await self._set_version(conn, schema, version, dirty=True)
                    try:
                        async with conn.transaction():
                            await conn.execute(f"SET LOCAL search_path TO {quote_ident(schema)}, public")
                            await conn.execute(scripts[version])
                            await self._set_version(conn, schema, previous, dirty=False)
                    except (QueryError, asyncpg.PostgresError) as e:
                        raise RollbackError(
                            f"failed to revert migration {version} for domain '{domain}': {e}",
                            domain=domain,
                        ) from e

                    execution_time_ms = int((time.time() - start_time) * 1000)
                    logger.info(f"Reverted {domain} migration {version} in {execution_time_ms}ms")
                    current = previous or 0

                return current

        except MigrationError:
            raise
        except (ConnectionError, QueryError, asyncpg.PostgresError) as e:
            raise RollbackError(
                f"rollback failed for domain '{domain}': {e}",
                domain=domain,
            ) from e
