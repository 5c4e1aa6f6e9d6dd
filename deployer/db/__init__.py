"""PostgreSQL integration for domain migrations.

Provides:
- Environment-based configuration
- Short-lived asyncpg connections with timeouts

Usage:
    from deployer.db import MigrationConfig, get_connection

    config = MigrationConfig()
    async with get_connection(config) as conn:
        version = await conn.fetchval("SELECT 1")

Environment Variables:
    DATABASE_URL: PostgreSQL URL (postgres:// or postgresql://)
    MIGRATIONS_BASE_PATH: Directory with one <domain>/migrations folder per domain
    DEPLOY_ENVIRONMENT: development, staging or production
    MIGRATION_DOMAINS: Comma-separated domains (default: content,services)
    DB_CONNECT_TIMEOUT: Connection timeout in seconds
    DB_QUERY_TIMEOUT: Statement timeout in seconds
    DEV_MAX_RETRY_ATTEMPTS: Development migration attempts
    DEV_RETRY_DELAY_SECONDS: Delay between development attempts
"""

from .config import (
    ConfigurationError,
    Environment,
    MigrationConfig,
    get_config,
    schema_name,
    set_config,
)

from .connection import (
    Connection,
    ConnectionError,
    QueryError,
    get_connection,
    get_stats,
)

__all__ = [
    # Config
    "ConfigurationError",
    "Environment",
    "MigrationConfig",
    "get_config",
    "set_config",
    "schema_name",
    # Connection
    "Connection",
    "ConnectionError",
    "QueryError",
    "get_connection",
    "get_stats",
]
