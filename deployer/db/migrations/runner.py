"""Migration runner for executing migration plans.

Provides:
- Dependency-ordered, sequential execution of a ``MigrationPlan``
- Environment-driven stop-on-error policy
- Validation of migration sources before execution
"""

import asyncio
import logging
from typing import Optional

from ..config import Environment, MigrationConfig, get_config
from .base import (
    MigrationCancelledError,
    MigrationEngine,
    MigrationExecutionError,
    MigrationPlan,
    MigrationResult,
    MigrationSourceError,
    MigrationValidationError,
    NoChangeError,
)
from .engine import PostgresMigrationEngine
from .planner import MigrationPlanner
from .registry import DomainRegistry
from .source import FileMigrationSource
from .tracker import VersionTracker

logger = logging.getLogger(__name__)

# Migration files above this size are reported but not rejected
MAX_MIGRATION_FILE_SIZE = 1024 * 1024


def check_cancelled(cancel_event: Optional[asyncio.Event], where: str) -> None:
    """Raise if the caller has asked the run to stop."""
    if cancel_event is not None and cancel_event.is_set():
        raise MigrationCancelledError(f"migration cancelled before {where}")


class MigrationRunner:
    """Runner for executing migration plans."""

    def __init__(
        self,
        registry: DomainRegistry,
        engine: MigrationEngine,
        source: Optional[FileMigrationSource] = None,
        config: Optional[MigrationConfig] = None,
    ):
        """Initialize the runner.

        Args:
            registry: Domains and their dependencies
            engine: Engine that applies a domain's pending migrations
            source: Migration file reader, used for validation
            config: Configuration (global config if not provided)
        """
        self.registry = registry
        self.engine = engine
        self.source = source or FileMigrationSource()
        self.config = config or get_config()

    @property
    def environment(self) -> str:
        return self.config.environment

    def should_stop_on_error(self) -> bool:
        """Whether one failed domain aborts the rest of the run."""
        return self.environment != Environment.DEVELOPMENT.value

    async def execute_migration_plan(
        self,
        plan: MigrationPlan,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[MigrationResult]:
        """Execute a plan domain by domain.

        The order is re-derived from the dependency table; the order of
        ``plan.domains`` is ignored.

        Args:
            plan: Plan to execute
            cancel_event: Optional event checked before each domain

        Returns:
            One result per domain, in execution order

        Raises:
            MigrationExecutionError: With the results gathered so far. Outside
                development this is raised at the first failure; in
                development every domain is attempted first.
            MigrationCancelledError: If ``cancel_event`` is set
        """
        by_domain = {p.domain: p for p in plan.domains}
        order = self.registry.sort(by_domain)

        results: list[MigrationResult] = []
        failed: list[str] = []

        for domain in order:
            check_cancelled(cancel_event, f"domain {domain}")
            domain_plan = by_domain[domain]

            logger.info(
                f"Migrating domain {domain}: {domain_plan.current_version} -> "
                f"{domain_plan.target_version} ({len(domain_plan.pending_migrations)} pending)"
            )

            try:
                version = await self.engine.apply_pending(domain, domain_plan.migrations_path)
                result = MigrationResult(
                    domain=domain,
                    version=version,
                    success=True,
                    migrations_applied=domain_plan.pending_migrations,
                )
            except NoChangeError:
                logger.info(f"Domain {domain} is up to date at version {domain_plan.current_version}")
                result = MigrationResult(
                    domain=domain,
                    version=domain_plan.current_version,
                    success=True,
                )
            except Exception as e:
                logger.error(f"Migration failed for domain {domain}: {e}")
                result = MigrationResult(
                    domain=domain,
                    version=domain_plan.current_version,
                    success=False,
                    error=str(e),
                )

            results.append(result)

            if not result.success:
                failed.append(domain)
                if self.should_stop_on_error():
                    raise MigrationExecutionError(
                        f"migration failed for domain '{domain}': {result.error}",
                        results=results,
                        domain=domain,
                    )

        if failed:
            raise MigrationExecutionError(
                f"migration failed for domain(s): {', '.join(failed)}",
                results=results,
                domain=failed[0],
            )

        return results

    def validate_domain(self, domain: str) -> list[str]:
        """Check a domain's migration directory.

        Returns:
            Problems found (empty if valid)
        """
        path = self.config.migrations_path(domain)
        issues: list[str] = []

        try:
            files = self.source.scan(path)
        except MigrationSourceError as e:
            return [f"{domain}: {e}"]

        seen: dict[tuple[int, str], str] = {}
        for f in files:
            key = (f.version, f.direction)
            if key in seen:
                issues.append(
                    f"{domain}: duplicate {f.direction} migration for version {f.version} "
                    f"({seen[key]}, {f.path.name})"
                )
                continue
            seen[key] = f.path.name

            if f.direction != "up":
                continue

            try:
                size = f.path.stat().st_size
            except OSError as e:
                issues.append(f"{domain}: cannot read {f.path.name}: {e}")
                continue

            if size == 0:
                issues.append(f"{domain}: migration {f.path.name} is empty")
            elif size > MAX_MIGRATION_FILE_SIZE:
                logger.warning(f"Migration {f.path.name} in {domain} is larger than 1MB")

        for version, direction in seen:
            if direction == "down" and (version, "up") not in seen:
                issues.append(f"{domain}: version {version} has a down migration but no up migration")

        return issues

    async def validate_migrations(self) -> None:
        """Validate every domain's migration source.

        Raises:
            MigrationValidationError: Listing every problem found
        """
        issues: list[str] = []
        for domain in self.registry.execution_order():
            issues.extend(self.validate_domain(domain))

        if issues:
            raise MigrationValidationError(
                f"migration validation failed: {'; '.join(issues)}",
                issues=issues,
            )

        logger.info("Migration sources validated")


# Convenience functions


def build_runner(
    config: Optional[MigrationConfig] = None,
) -> tuple[MigrationPlanner, MigrationRunner]:
    """Wire a planner and runner to PostgreSQL and the filesystem.

    Args:
        config: Configuration (global config if not provided)

    Returns:
        (planner, runner) sharing one registry and source

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    config = config or get_config()
    config.require_valid()

    registry = DomainRegistry(config.domains, config.domain_dependencies())
    source = FileMigrationSource()
    planner = MigrationPlanner(registry, VersionTracker(registry, config), source, config)
    runner = MigrationRunner(registry, PostgresMigrationEngine(config, source), source, config)
    return planner, runner


async def create_migration_plan(config: Optional[MigrationConfig] = None) -> MigrationPlan:
    """Plan pending migrations for every configured domain."""
    planner, _ = build_runner(config)
    return await planner.create_migration_plan()


async def apply_migrations(
    config: Optional[MigrationConfig] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> list[MigrationResult]:
    """Plan and execute pending migrations with the environment's stop policy.

    Raises:
        PlanningError: If planning fails (nothing is executed)
        MigrationExecutionError: If a domain fails
    """
    planner, runner = build_runner(config)
    plan = await planner.create_migration_plan()
    return await runner.execute_migration_plan(plan, cancel_event)


async def validate_migrations(config: Optional[MigrationConfig] = None) -> None:
    """Validate every configured domain's migration directory."""
    _, runner = build_runner(config)
    await runner.validate_migrations()
