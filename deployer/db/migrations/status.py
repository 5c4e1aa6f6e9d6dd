"""Per-domain migration status."""

import logging
from datetime import datetime
from typing import Optional

import asyncpg

from ..config import MigrationConfig, get_config
from ..connection import ConnectionError, QueryError, get_connection
from .base import (
    DevMigrationStatus,
    DomainStatus,
    DomainStatusProvider,
    MigrationError,
    MigrationSource,
)
from .source import FileMigrationSource, enumerate_versions
from .tracker import VersionTracker, metadata_table

logger = logging.getLogger(__name__)


class PostgresDomainStatus:
    """Reads version and dirty flag from a domain's metadata table."""

    def __init__(
        self,
        config: Optional[MigrationConfig] = None,
        source: Optional[MigrationSource] = None,
        connect=get_connection,
    ):
        self.config = config or get_config()
        self.source = source or FileMigrationSource()
        self._connect = connect

    async def get_domain_status(self, domain: str) -> DomainStatus:
        """Get the status of one domain.

        Raises:
            MigrationError: If the metadata or the migration source cannot be read
        """
        try:
            async with self._connect(self.config) as conn:
                row = await conn.fetchrow(
                    f"SELECT version, dirty FROM {metadata_table(domain)} "
                    "ORDER BY version DESC LIMIT 1"
                )
        except (asyncpg.UndefinedTableError, asyncpg.InvalidSchemaNameError):
            row = None
        except (ConnectionError, QueryError) as e:
            raise MigrationError(
                f"failed to get migration status: {e}", domain=domain, operation="status"
            ) from e

        version = int(row["version"]) if row else 0
        dirty = bool(row["dirty"]) if row else False

        if dirty:
            label = "dirty"
        elif row is None:
            label = "uninitialized"
        else:
            label = "clean"

        available = enumerate_versions(self.source, self.config.migrations_path(domain))
        pending = sum(1 for v in available if v > version)

        return DomainStatus(
            domain=domain,
            current_version=version,
            ready=not dirty,
            dirty=dirty,
            status=label,
            pending_migrations=pending,
        )


async def collect_migration_status(
    environment: str,
    tracker: VersionTracker,
    status_provider: DomainStatusProvider,
) -> DevMigrationStatus:
    """Aggregate readiness across every tracked domain.

    Read-only and best-effort: a failing domain is recorded in
    ``domain_errors`` and the remaining domains are still checked. Only a
    failure to read the current versions stops early, with ``error`` set.

    Args:
        environment: Environment name reported in the status
        tracker: Applied version lookup
        status_provider: Per-domain status collaborator

    Returns:
        Aggregated status
    """
    status = DevMigrationStatus(environment=environment, timestamp=datetime.now())

    try:
        status.current_versions = await tracker.get_current_versions()
    except MigrationError as e:
        status.error = str(e)
        logger.error(f"Failed to read current versions: {e}")
        return status

    for domain, version in status.current_versions.items():
        try:
            domain_status = await status_provider.get_domain_status(domain)
        except Exception as e:
            status.domain_errors.append(f"{domain}: {e}")
            continue

        domain_status.current_version = version
        status.domain_statuses.append(domain_status)
        if domain_status.ready:
            status.ready_domains += 1

    status.total_domains = len(status.current_versions)
    status.is_ready = status.ready_domains == status.total_domains and not status.domain_errors
    return status
