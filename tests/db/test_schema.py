"""Tests for schema recreation, seeding and grants, and emergency rollback."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from deployer.db.connection import QueryError
from deployer.db.migrations.base import RecreationError, RollbackError
from deployer.db.migrations.rollback import DevRollbackHandler
from deployer.db.migrations.schema import SEED_DATA, SchemaManager


class TestSchemaManager:
    """Tests for SchemaManager."""

    @pytest.fixture
    def manager(self, dev_config, mock_connect):
        return SchemaManager(dev_config, connect=mock_connect)

    @pytest.mark.asyncio
    async def test_recreate_domain_schema(self, manager, mock_conn):
        await manager.recreate_domain_schema("services")

        assert [c.args[0] for c in mock_conn.execute.await_args_list] == [
            'DROP SCHEMA IF EXISTS "services_schema" CASCADE',
            'CREATE SCHEMA IF NOT EXISTS "services_schema"',
        ]

    @pytest.mark.asyncio
    async def test_recreate_failure(self, manager, mock_conn):
        mock_conn.execute = AsyncMock(side_effect=QueryError("Query failed: permission denied"))

        with pytest.raises(RecreationError, match="permission denied") as exc_info:
            await manager.recreate_domain_schema("content")

        assert exc_info.value.domain == "content"

    @pytest.mark.asyncio
    async def test_recreate_connection_failure(self, dev_config, failing_connect):
        manager = SchemaManager(dev_config, connect=failing_connect)

        with pytest.raises(RecreationError):
            await manager.recreate_domain_schema("content")

    def test_default_seed_data(self, manager):
        assert manager.has_seed_data("content") is True
        assert manager.has_seed_data("services") is True
        assert manager.has_seed_data("identity") is False
        assert manager.seed_data is SEED_DATA

    @pytest.mark.asyncio
    async def test_seed_domain_in_transaction(self, dev_config, mock_connect, mock_conn):
        manager = SchemaManager(
            dev_config,
            seed_data={"content": ["INSERT 1", "INSERT 2"]},
            connect=mock_connect,
        )

        await manager.seed_domain("content")

        assert [c.args[0] for c in mock_conn.execute.await_args_list] == ["INSERT 1", "INSERT 2"]
        mock_conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_seed_domain_without_data(self, dev_config, mock_connect, mock_conn):
        manager = SchemaManager(dev_config, seed_data={}, connect=mock_connect)

        await manager.seed_domain("content")

        mock_conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_grant_domain_privileges(self, manager, mock_conn):
        await manager.grant_domain_privileges("content")

        assert [c.args[0] for c in mock_conn.execute.await_args_list] == [
            'GRANT ALL PRIVILEGES ON ALL TABLES IN SCHEMA "content_schema" TO current_user',
            'GRANT ALL PRIVILEGES ON ALL SEQUENCES IN SCHEMA "content_schema" TO current_user',
        ]


class TestDevRollbackHandler:
    """Tests for DevRollbackHandler."""

    @pytest.fixture
    def schema_manager(self):
        manager = MagicMock(spec=SchemaManager)
        manager.recreate_domain_schema = AsyncMock()
        return manager

    @pytest.mark.asyncio
    async def test_emergency_rollback_all_domains(self, registry, schema_manager):
        handler = DevRollbackHandler(registry, schema_manager)

        rolled_back = await handler.perform_emergency_rollback()

        assert rolled_back == ["services:0", "content:0"]
        assert [c.args[0] for c in schema_manager.recreate_domain_schema.await_args_list] == [
            "services",
            "content",
        ]

    @pytest.mark.asyncio
    async def test_emergency_rollback_skips_failed_domain(self, registry, schema_manager):
        async def recreate(domain):
            if domain == "services":
                raise RecreationError("locked", domain=domain)

        schema_manager.recreate_domain_schema = AsyncMock(side_effect=recreate)
        handler = DevRollbackHandler(registry, schema_manager)

        assert await handler.perform_emergency_rollback() == ["content:0"]

    @pytest.mark.asyncio
    async def test_emergency_rollback_all_failed(self, registry, schema_manager):
        schema_manager.recreate_domain_schema = AsyncMock(side_effect=RecreationError("down"))
        handler = DevRollbackHandler(registry, schema_manager)

        with pytest.raises(RollbackError, match="failed for all domains"):
            await handler.perform_emergency_rollback()

    @pytest.mark.asyncio
    async def test_recreate_from_scratch(self, registry, schema_manager):
        handler = DevRollbackHandler(registry, schema_manager)

        assert await handler.recreate_from_scratch() == ["content", "services"]

    @pytest.mark.asyncio
    async def test_recreate_from_scratch_fails_fast(self, registry, schema_manager):
        schema_manager.recreate_domain_schema = AsyncMock(side_effect=RecreationError("down"))
        handler = DevRollbackHandler(registry, schema_manager)

        with pytest.raises(RollbackError, match="content") as exc_info:
            await handler.recreate_from_scratch()

        assert exc_info.value.domain == "content"
        schema_manager.recreate_domain_schema.assert_awaited_once()
