"""Development migration orchestrator.

Wraps the migration runner with the aggressive development policy:
- recreate schemas when migration metadata is unreadable
- validate migration sources, recreating schemas on conflict
- retry whole-plan execution with a delay between attempts
- emergency rollback once retries are exhausted
- best-effort test data seeding and privilege grants after success

Never use this against staging or production; the constructor refuses any
other environment.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Optional

from ..config import ConfigurationError, Environment, MigrationConfig, get_config
from .base import (
    AggressiveSettings,
    DevMigrationResult,
    DevMigrationStatus,
    DomainStatusProvider,
    MigrationError,
    MigrationExecutionError,
    MigrationPlan,
    MigrationResult,
    PlanningError,
    RecreationError,
    RollbackError,
    RollbackHandler,
    SideEffectResult,
)
from .engine import PostgresMigrationEngine
from .planner import MigrationPlanner
from .registry import DomainRegistry
from .rollback import DevRollbackHandler
from .runner import MigrationRunner, check_cancelled
from .schema import SchemaManager
from .source import FileMigrationSource
from .status import PostgresDomainStatus, collect_migration_status
from .tracker import VersionTracker

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class DevMigrationOrchestrator:
    """Aggressive migration orchestration for development databases."""

    def __init__(
        self,
        registry: DomainRegistry,
        planner: MigrationPlanner,
        runner: MigrationRunner,
        rollback_handler: RollbackHandler,
        schema_manager: SchemaManager,
        status_provider: DomainStatusProvider,
        config: Optional[MigrationConfig] = None,
        settings: Optional[AggressiveSettings] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        """Initialize the orchestrator.

        Args:
            registry: Domains and their dependencies
            planner: Builds migration plans
            runner: Executes migration plans
            rollback_handler: Emergency rollback collaborator
            schema_manager: Schema recreation, seeding and grants
            status_provider: Per-domain status collaborator
            config: Configuration (global config if not provided)
            settings: Aggressive policy (derived from config if not provided)
            sleep: Awaitable sleep used between retry attempts

        Raises:
            ConfigurationError: If the environment is not development
        """
        self.config = config or get_config()
        if self.config.environment != Environment.DEVELOPMENT.value:
            raise ConfigurationError(
                f"development migration orchestrator cannot run in "
                f"'{self.config.environment}' environment"
            )

        self.registry = registry
        self.planner = planner
        self.runner = runner
        self.rollback_handler = rollback_handler
        self.schema_manager = schema_manager
        self.status_provider = status_provider
        self.settings = settings
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: Optional[MigrationConfig] = None,
        settings: Optional[AggressiveSettings] = None,
    ) -> "DevMigrationOrchestrator":
        """Build an orchestrator wired to PostgreSQL and the filesystem.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        config = config or get_config()
        config.require_valid()

        registry = DomainRegistry(config.domains, config.domain_dependencies())
        source = FileMigrationSource()
        tracker = VersionTracker(registry, config)
        schema_manager = SchemaManager(config)

        return cls(
            registry=registry,
            planner=MigrationPlanner(registry, tracker, source, config),
            runner=MigrationRunner(registry, PostgresMigrationEngine(config, source), source, config),
            rollback_handler=DevRollbackHandler(registry, schema_manager),
            schema_manager=schema_manager,
            status_provider=PostgresDomainStatus(config, source),
            config=config,
            settings=settings,
        )

    def get_aggressive_settings(self) -> AggressiveSettings:
        """Policy for one run: explicit settings, else the development defaults."""
        if self.settings is not None:
            return self.settings
        return AggressiveSettings.development(
            max_retry_attempts=self.config.dev_max_retry_attempts,
            retry_delay=timedelta(seconds=self.config.dev_retry_delay),
        )

    def validate_configuration(self) -> None:
        """Check that the database URL and base path are set.

        Raises:
            ConfigurationError: If either is missing
        """
        if not self.config.database_url:
            raise ConfigurationError("database URL is required")
        if not self.config.base_path:
            raise ConfigurationError("base path is required")

    async def execute_migrations(
        self,
        cancel_event: Optional[asyncio.Event] = None,
        raise_on_failure: bool = False,
    ) -> DevMigrationResult:
        """Run the full development migration sequence.

        Args:
            cancel_event: Optional event checked between domains and before sleeps
            raise_on_failure: Raise the final error instead of only reporting it

        Returns:
            Structured result; ``success`` is False and ``error`` set on failure

        Raises:
            MigrationError: Only when ``raise_on_failure`` is True
        """
        result = DevMigrationResult(
            environment=self.config.environment,
            start_time=datetime.now(),
        )
        settings = self.get_aggressive_settings()

        logger.info(
            f"Starting development migrations (max attempts: {settings.max_retry_attempts}, "
            f"retry delay: {settings.retry_delay.total_seconds():g}s)"
        )

        if await self.should_recreate_database():
            try:
                await self.recreate_database()
            except RecreationError as e:
                return self._fail(result, RecreationError(f"failed to recreate database: {e}"), raise_on_failure)
            result.database_recreated = True

        try:
            plan = await self.planner.create_migration_plan()
        except MigrationError as e:
            return self._fail(
                result,
                PlanningError(f"failed to create migration plan: {e}", domain=e.domain),
                raise_on_failure,
            )

        stale_plan = False
        if not settings.skip_validation:
            try:
                await self.runner.validate_migrations()
            except MigrationError as e:
                if not settings.recreate_on_conflict:
                    return self._fail(result, e, raise_on_failure)

                logger.warning(f"Validation failed, recreating database: {e}")
                try:
                    await self.recreate_database()
                except RecreationError as recreate_error:
                    return self._fail(
                        result,
                        RecreationError(f"failed to recreate database after validation failure: {recreate_error}"),
                        raise_on_failure,
                    )
                result.database_recreated = True
                stale_plan = True

        try:
            result.executed_migrations = await self._execute_with_retry(
                plan, settings, result, cancel_event, replan=stale_plan
            )
        except MigrationError as e:
            if settings.auto_rollback_on_error and isinstance(e, (MigrationExecutionError, RecreationError)):
                e = await self._rollback_after_failure(e, result)
            return self._fail(result, e, raise_on_failure)

        if settings.enable_test_data_seed:
            result.seed_result = await self.seed_test_data()
            result.test_data_seeded = result.seed_result.ok

        result.privileges_result = await self.initialize_schemas()
        result.schemas_initialized = result.privileges_result.ok

        result.success = True
        result.end_time = datetime.now()
        logger.info(
            f"Development migrations completed ({result.outcome}) in "
            f"{result.duration.total_seconds():.1f}s"
        )
        return result

    def _fail(
        self,
        result: DevMigrationResult,
        error: MigrationError,
        raise_on_failure: bool,
    ) -> DevMigrationResult:
        result.success = False
        result.error = str(error)
        result.end_time = datetime.now()
        logger.error(f"Development migrations failed: {error}")
        if raise_on_failure:
            raise error
        return result

    async def should_recreate_database(self) -> bool:
        """Recreate only when the migration metadata cannot be read.

        An empty but readable database is a valid starting point and is
        migrated in place.
        """
        try:
            await self.planner.tracker.get_current_versions()
        except MigrationError as e:
            logger.warning(f"Migration metadata unreadable, database will be recreated: {e}")
            return True
        return False

    async def recreate_database(self) -> None:
        """Drop and recreate every domain schema, dependents first.

        Raises:
            RecreationError: On the first domain that fails
        """
        logger.warning("Recreating development database...")
        for domain in reversed(self.registry.execution_order()):
            await self.schema_manager.recreate_domain_schema(domain)

    async def _execute_with_retry(
        self,
        plan: MigrationPlan,
        settings: AggressiveSettings,
        result: DevMigrationResult,
        cancel_event: Optional[asyncio.Event],
        replan: bool = False,
    ) -> list[MigrationResult]:
        """Run the whole plan up to ``max_retry_attempts`` times.

        A plan computed before a schema recreation is rebuilt before the
        next attempt so pending sets match the reset schemas. A failure to
        rebuild it counts as an execution failure, since schemas were
        already reset.
        """
        for attempt in range(1, settings.max_retry_attempts + 1):
            check_cancelled(cancel_event, f"migration attempt {attempt}")
            result.attempts = attempt

            if replan:
                try:
                    plan = await self.planner.create_migration_plan()
                except PlanningError as e:
                    raise MigrationExecutionError(
                        f"failed to re-plan after database recreation: {e}",
                        results=result.executed_migrations,
                        domain=e.domain,
                    ) from e
                replan = False

            logger.info(f"Migration attempt {attempt} of {settings.max_retry_attempts}")
            try:
                return await self.runner.execute_migration_plan(plan, cancel_event)
            except MigrationExecutionError as e:
                result.executed_migrations = list(e.results)
                logger.error(f"Migration attempt {attempt} failed: {e}")
                if attempt == settings.max_retry_attempts:
                    raise MigrationExecutionError(
                        f"all {settings.max_retry_attempts} migration attempts failed, last error: {e}",
                        results=e.results,
                        domain=e.domain,
                    ) from e

            if settings.recreate_on_conflict:
                logger.info("Recreating database before retry...")
                try:
                    await self.recreate_database()
                except RecreationError as e:
                    raise RecreationError(f"failed to recreate database on retry: {e}") from e
                result.database_recreated = True
                replan = True

            check_cancelled(cancel_event, "retry delay")
            delay = settings.retry_delay.total_seconds()
            logger.info(f"Waiting {delay:g}s before retry...")
            await self._sleep(delay)

        raise MigrationExecutionError(
            f"no migration attempts made (max attempts: {settings.max_retry_attempts})"
        )

    async def _rollback_after_failure(
        self,
        error: MigrationError,
        result: DevMigrationResult,
    ) -> MigrationError:
        """Run the emergency rollback and fold its outcome into the error."""
        try:
            result.rollbacks_performed = await self.rollback_handler.perform_emergency_rollback()
        except Exception as rollback_error:
            return RollbackError(
                f"migration failed and rollback failed: {rollback_error} "
                f"(migration error: {error})",
                domain=error.domain,
            )
        return MigrationExecutionError(
            f"migration failed but rollback successful: {error}",
            results=getattr(error, "results", None),
            domain=error.domain,
        )

    async def _best_effort(self, operation: str, action, domains: list[str]) -> SideEffectResult:
        outcome = SideEffectResult(operation=operation)
        for domain in domains:
            try:
                await action(domain)
            except Exception as e:
                logger.warning(f"Warning: failed to {operation} for domain {domain}: {e}")
                outcome.failed[domain] = str(e)
                continue
            outcome.succeeded.append(domain)
        return outcome

    async def seed_test_data(self) -> SideEffectResult:
        """Seed reference data into every domain that has some. Never raises."""
        logger.info("Seeding test data...")
        order = self.registry.execution_order()
        domains = [d for d in order if self.schema_manager.has_seed_data(d)]
        outcome = await self._best_effort("seed test data", self.schema_manager.seed_domain, domains)
        outcome.skipped = [d for d in order if d not in domains]
        return outcome

    async def initialize_schemas(self) -> SideEffectResult:
        """Grant schema privileges on every domain. Never raises."""
        logger.info("Initializing database schemas...")
        return await self._best_effort(
            "initialize schema",
            self.schema_manager.grant_domain_privileges,
            self.registry.execution_order(),
        )

    async def get_migration_status(self) -> DevMigrationStatus:
        """Report per-domain readiness. Domain failures are collected, not raised."""
        return await collect_migration_status(
            self.config.environment,
            self.planner.tracker,
            self.status_provider,
        )
