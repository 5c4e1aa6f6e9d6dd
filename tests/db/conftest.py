"""DB-specific pytest fixtures.

Provides a mocked asyncpg-style connection, connection factories that
yield or fail, and builders for migration plans.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from deployer.db.connection import ConnectionError
from deployer.db.migrations.base import (
    CONTINUE_ON_ERROR,
    DomainMigrationPlan,
    MigrationPlan,
)
from deployer.db.migrations.registry import DomainRegistry


@pytest.fixture
def mock_conn():
    """Create a mock Connection with a working transaction block."""
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="OK")
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)

    tx = MagicMock()
    tx.__aenter__ = AsyncMock(return_value=None)
    tx.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=tx)
    return conn


@pytest.fixture
def mock_connect(mock_conn):
    """Connection factory yielding ``mock_conn``."""

    @asynccontextmanager
    async def _connect(config=None):
        yield mock_conn

    return _connect


@pytest.fixture
def failing_connect():
    """Connection factory that cannot reach the database."""

    @asynccontextmanager
    async def _connect(config=None):
        raise ConnectionError("Failed to connect: connection refused")
        yield  # pragma: no cover

    return _connect


@pytest.fixture
def registry() -> DomainRegistry:
    """Registry with the two standard domains."""
    return DomainRegistry(["content", "services"], {"content": [], "services": ["content"]})


@pytest.fixture
def make_plan(migrations_base):
    """Build a MigrationPlan from (domain, current, pending) tuples.

    Domains are kept in the given order so tests can check re-ordering.
    """

    def _make(*domains, environment: str = "development", stop_policy: str = CONTINUE_ON_ERROR):
        domain_plans = []
        for domain, current, pending in domains:
            pending = tuple(pending)
            domain_plans.append(
                DomainMigrationPlan(
                    domain=domain,
                    migrations_path=Path(migrations_base) / domain / "migrations",
                    pending_migrations=pending,
                    current_version=current,
                    target_version=max(pending) if pending else current,
                )
            )
        total = sum(len(p.pending_migrations) for p in domain_plans)
        return MigrationPlan(
            environment=environment,
            stop_policy=stop_policy,
            domains=domain_plans,
            total_migrations=total,
            estimated_duration=timedelta(seconds=5 * total),
        )

    return _make
