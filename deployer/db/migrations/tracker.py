"""Applied schema version lookup.

Each domain keeps its migration metadata in
``<domain>_schema.schema_migrations``. The highest recorded version is the
domain's current schema version.
"""

import logging
from typing import Optional

import asyncpg

from ..config import MigrationConfig, get_config, schema_name
from ..connection import ConnectionError, QueryError, get_connection, quote_ident
from .base import VersionLookupError
from .registry import DomainRegistry

logger = logging.getLogger(__name__)


def metadata_table(domain: str) -> str:
    """Qualified, quoted metadata table name for a domain."""
    return f"{quote_ident(schema_name(domain))}.schema_migrations"


class VersionTracker:
    """Reads the currently applied version of each domain."""

    def __init__(
        self,
        registry: DomainRegistry,
        config: Optional[MigrationConfig] = None,
        connect=get_connection,
    ):
        """Initialize the tracker.

        Args:
            registry: Domains to track
            config: Database configuration (global config if not provided)
            connect: Async context manager factory yielding a connection
        """
        self.registry = registry
        self.config = config or get_config()
        self._connect = connect

    async def get_current_version(self, domain: str) -> int:
        """Get the highest applied version of a domain.

        No row, and a metadata table that does not exist yet, both mean
        version 0.

        Args:
            domain: Domain name

        Returns:
            Applied version (0 when nothing has been applied)

        Raises:
            VersionLookupError: On any connection or query fault
        """
        sql = f"SELECT version FROM {metadata_table(domain)} ORDER BY version DESC LIMIT 1"

        try:
            async with self._connect(self.config) as conn:
                version = await conn.fetchval(sql)
        except (asyncpg.UndefinedTableError, asyncpg.InvalidSchemaNameError):
            logger.debug(f"No migration metadata for domain {domain} yet")
            return 0
        except (ConnectionError, QueryError) as e:
            raise VersionLookupError(
                f"failed to get current version for domain '{domain}': {e}",
                domain=domain,
            ) from e

        if version is None:
            return 0
        return int(version)

    async def get_current_versions(self) -> dict[str, int]:
        """Get the applied version of every registered domain.

        Raises:
            VersionLookupError: On the first domain that cannot be read
        """
        versions: dict[str, int] = {}
        for domain in self.registry.domains:
            versions[domain] = await self.get_current_version(domain)
        return versions
