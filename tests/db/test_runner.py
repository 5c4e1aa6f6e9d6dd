"""Tests for migration plan execution and validation."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from deployer.db.config import ConfigurationError
from deployer.db.migrations import runner as runner_module
from deployer.db.migrations.base import (
    MigrationCancelledError,
    MigrationExecutionError,
    MigrationValidationError,
    NoChangeError,
)
from deployer.db.migrations.planner import MigrationPlanner
from deployer.db.migrations.runner import MigrationRunner, build_runner
from deployer.db.migrations.source import FileMigrationSource
from deployer.db.migrations.tracker import VersionTracker


class RecordingEngine:
    """Engine double that records the order domains are applied in."""

    def __init__(self, outcomes=None):
        self.calls: list[str] = []
        self.outcomes = outcomes or {}

    async def apply_pending(self, domain, migrations_path):
        self.calls.append(domain)
        outcome = self.outcomes.get(domain)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestMigrationRunnerPolicy:
    """Tests for the environment-driven stop policy."""

    def test_development_continues(self, registry, dev_config):
        runner = MigrationRunner(registry, RecordingEngine(), config=dev_config)
        assert runner.should_stop_on_error() is False
        assert runner.environment == "development"

    @pytest.mark.parametrize("environment", ["staging", "production"])
    def test_other_environments_stop(self, registry, config_factory, environment):
        runner = MigrationRunner(registry, RecordingEngine(), config=config_factory(environment))
        assert runner.should_stop_on_error() is True


class TestExecuteMigrationPlan:
    """Tests for MigrationRunner.execute_migration_plan()."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reverse", [False, True])
    async def test_order_from_dependencies(self, registry, dev_config, make_plan, reverse):
        """Test content always runs before services."""
        domains = [("content", 0, [1]), ("services", 0, [1])]
        if reverse:
            domains.reverse()
        engine = RecordingEngine({"content": 1, "services": 1})
        runner = MigrationRunner(registry, engine, config=dev_config)

        results = await runner.execute_migration_plan(make_plan(*domains))

        assert engine.calls == ["content", "services"]
        assert [r.domain for r in results] == ["content", "services"]

    @pytest.mark.asyncio
    async def test_scenario_success_versions(self, registry, dev_config, make_plan):
        """Test each domain reports its highest pending version."""
        plan = make_plan(("services", 1, [2]), ("content", 0, [1, 2, 3]))
        runner = MigrationRunner(
            registry, RecordingEngine({"content": 3, "services": 2}), config=dev_config
        )

        results = await runner.execute_migration_plan(plan)

        assert [(r.domain, r.version, r.success) for r in results] == [
            ("content", 3, True),
            ("services", 2, True),
        ]
        assert results[0].migrations_applied == (1, 2, 3)
        assert results[1].migrations_applied == (2,)

    @pytest.mark.asyncio
    async def test_non_development_stops_at_first_failure(self, registry, staging_config, make_plan):
        """Test partial results include the failed domain and nothing after it."""
        engine = RecordingEngine({"content": RuntimeError("syntax error at line 3")})
        runner = MigrationRunner(registry, engine, config=staging_config)

        with pytest.raises(MigrationExecutionError, match="content") as exc_info:
            await runner.execute_migration_plan(make_plan(("content", 0, [1]), ("services", 0, [1])))

        assert engine.calls == ["content"]
        assert len(exc_info.value.results) == 1
        assert exc_info.value.results[0].success is False
        assert "syntax error" in exc_info.value.results[0].error
        assert exc_info.value.domain == "content"

    @pytest.mark.asyncio
    async def test_non_development_failure_on_second_domain(self, registry, staging_config, make_plan):
        engine = RecordingEngine({"content": 1, "services": RuntimeError("boom")})
        runner = MigrationRunner(registry, engine, config=staging_config)

        with pytest.raises(MigrationExecutionError) as exc_info:
            await runner.execute_migration_plan(make_plan(("content", 0, [1]), ("services", 0, [1])))

        assert [r.success for r in exc_info.value.results] == [True, False]

    @pytest.mark.asyncio
    async def test_development_continues_after_failure(self, registry, dev_config, make_plan):
        """Test a failed domain does not stop later domains in development."""
        engine = RecordingEngine({"content": RuntimeError("boom"), "services": 1})
        runner = MigrationRunner(registry, engine, config=dev_config)

        with pytest.raises(MigrationExecutionError) as exc_info:
            await runner.execute_migration_plan(make_plan(("content", 0, [1]), ("services", 0, [1])))

        assert engine.calls == ["content", "services"]
        assert [(r.domain, r.success) for r in exc_info.value.results] == [
            ("content", False),
            ("services", True),
        ]

    @pytest.mark.asyncio
    async def test_no_change_is_success(self, registry, dev_config, make_plan):
        """Test re-running an up-to-date plan succeeds with nothing applied."""
        engine = RecordingEngine(
            {"content": NoChangeError("no change"), "services": NoChangeError("no change")}
        )
        runner = MigrationRunner(registry, engine, config=dev_config)
        plan = make_plan(("content", 3, []), ("services", 2, []))

        results = await runner.execute_migration_plan(plan)

        assert all(not p.pending_migrations for p in plan.domains)
        assert [(r.domain, r.version, r.success, r.migrations_applied) for r in results] == [
            ("content", 3, True, ()),
            ("services", 2, True, ()),
        ]

    @pytest.mark.asyncio
    async def test_cancelled_before_first_domain(self, registry, dev_config, make_plan):
        engine = RecordingEngine()
        runner = MigrationRunner(registry, engine, config=dev_config)
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(MigrationCancelledError):
            await runner.execute_migration_plan(make_plan(("content", 0, [1])), cancel_event)

        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_between_domains(self, registry, dev_config, make_plan):
        cancel_event = asyncio.Event()

        class CancellingEngine(RecordingEngine):
            async def apply_pending(self, domain, migrations_path):
                self.calls.append(domain)
                cancel_event.set()
                return 1

        engine = CancellingEngine()
        runner = MigrationRunner(registry, engine, config=dev_config)

        with pytest.raises(MigrationCancelledError, match="services"):
            await runner.execute_migration_plan(
                make_plan(("content", 0, [1]), ("services", 0, [1])), cancel_event
            )

        assert engine.calls == ["content"]


class TestValidateMigrations:
    """Tests for migration source validation."""

    @pytest.fixture
    def runner(self, registry, dev_config):
        return MigrationRunner(registry, RecordingEngine(), config=dev_config)

    def test_valid_domain(self, runner, write_migrations):
        write_migrations("content", {1: "CREATE TABLE a ();", 2: "CREATE TABLE b ();"}, down=True)
        assert runner.validate_domain("content") == []

    def test_missing_directory(self, runner):
        issues = runner.validate_domain("content")
        assert len(issues) == 1
        assert issues[0].startswith("content: migrations directory not found")

    def test_empty_up_file(self, runner, write_migrations):
        write_migrations("content", {1: ""})
        assert runner.validate_domain("content") == [
            "content: migration 1_migration_1.up.sql is empty"
        ]

    def test_duplicate_version(self, runner, write_migrations):
        path = write_migrations("content", {1: "A"})
        (path / "1_other.up.sql").write_text("B")

        issues = runner.validate_domain("content")

        assert len(issues) == 1
        assert "duplicate up migration for version 1" in issues[0]

    def test_down_without_up(self, runner, write_migrations):
        path = write_migrations("content", {1: "A"})
        (path / "2_orphan.down.sql").write_text("DROP TABLE b;")

        assert runner.validate_domain("content") == [
            "content: version 2 has a down migration but no up migration"
        ]

    def test_large_file_only_warns(self, runner, write_migrations, monkeypatch, caplog):
        monkeypatch.setattr(runner_module, "MAX_MIGRATION_FILE_SIZE", 10)
        write_migrations("content", {1: "CREATE TABLE a (id INT PRIMARY KEY);"})

        with caplog.at_level(logging.WARNING):
            assert runner.validate_domain("content") == []

        assert "larger than 1MB" in caplog.text

    @pytest.mark.asyncio
    async def test_validate_migrations_collects_all_domains(self, runner, write_migrations):
        write_migrations("content", {1: ""})

        with pytest.raises(MigrationValidationError) as exc_info:
            await runner.validate_migrations()

        issues = exc_info.value.issues
        assert len(issues) == 2
        assert issues[0].startswith("content:")
        assert issues[1].startswith("services:")

    @pytest.mark.asyncio
    async def test_validate_migrations_passes(self, runner, write_migrations):
        write_migrations("content", {1: "A"})
        write_migrations("services", {1: "B"})

        await runner.validate_migrations()


class TestConvenienceFunctions:
    """Tests for module-level helpers."""

    def test_build_runner_shares_registry(self, dev_config):
        planner, runner = build_runner(dev_config)

        assert planner.registry is runner.registry
        assert runner.registry.execution_order() == ["content", "services"]

    def test_build_runner_rejects_invalid_config(self, config_factory):
        with pytest.raises(ConfigurationError, match="DATABASE_URL"):
            build_runner(config_factory(database_url=""))

    @pytest.mark.asyncio
    async def test_apply_migrations_uses_planner_and_runner(self, dev_config, make_plan, monkeypatch):
        plan = make_plan(("content", 0, [1]))
        planner, runner = build_runner(dev_config)
        planner.create_migration_plan = AsyncMock(return_value=plan)
        runner.execute_migration_plan = AsyncMock(return_value=[])
        monkeypatch.setattr(runner_module, "build_runner", lambda config=None: (planner, runner))

        assert await runner_module.apply_migrations(dev_config) == []
        runner.execute_migration_plan.assert_awaited_once_with(plan, None)


class AppliedVersionEngine:
    """Engine double that records applied versions in a shared dict."""

    def __init__(self, applied: dict[str, int]):
        self.applied = applied
        self.source = FileMigrationSource()

    async def apply_pending(self, domain, migrations_path):
        current = self.applied[domain]
        pending = [v for v in self.source.list_versions(migrations_path) if v > current]
        if not pending:
            raise NoChangeError(f"no change for domain '{domain}'", domain=domain)
        self.applied[domain] = pending[-1]
        return pending[-1]


class TestPlanExecuteReplan:
    """Tests for planning again after a completed run."""

    @pytest.mark.asyncio
    async def test_second_run_applies_nothing(self, registry, dev_config, write_migrations):
        write_migrations("content", {1: "A", 2: "B", 3: "C"})
        write_migrations("services", {1: "A", 2: "B"})
        applied = {"content": 0, "services": 1}
        tracker = MagicMock(spec=VersionTracker)
        tracker.get_current_version = AsyncMock(side_effect=lambda domain: applied[domain])
        planner = MigrationPlanner(registry, tracker, config=dev_config)
        runner = MigrationRunner(registry, AppliedVersionEngine(applied), config=dev_config)

        first = await runner.execute_migration_plan(await planner.create_migration_plan())

        assert [(r.domain, r.version, r.migrations_applied) for r in first] == [
            ("content", 3, (1, 2, 3)),
            ("services", 2, (2,)),
        ]
        assert applied == {"content": 3, "services": 2}

        replan = await planner.create_migration_plan()

        assert replan.total_migrations == 0
        assert [(p.domain, p.pending_migrations, p.target_version) for p in replan.domains] == [
            ("content", (), 3),
            ("services", (), 2),
        ]

        second = await runner.execute_migration_plan(replan)

        assert [(r.domain, r.version, r.success, r.migrations_applied) for r in second] == [
            ("content", 3, True, ()),
            ("services", 2, True, ()),
        ]
        assert applied == {"content": 3, "services": 2}
