"""Schema rollback.

Two kinds of rollback:
- Targeted: ``RollbackManager`` runs down migrations to bring chosen domains
  back to a target version, dependents first. Outside development it stops
  at the first failed domain.
- Emergency (development only): ``DevRollbackHandler`` resets each domain's
  schema to empty (version 0). The next migration run rebuilds it.

Usage:
    manager = build_rollback_manager(config)
    plan = await manager.plan_steps(1)
    results = await manager.execute_rollback(plan)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional

from ..config import MigrationConfig, get_config
from .base import (
    STOP_ON_ERROR,
    DomainRollbackPlan,
    MigrationEngine,
    MigrationError,
    NoChangeError,
    RecreationError,
    RollbackError,
    RollbackPlan,
    RollbackResult,
)
from .engine import PostgresMigrationEngine
from .planner import stop_policy_for
from .registry import DomainRegistry
from .runner import check_cancelled
from .schema import SchemaManager
from .source import FileMigrationSource
from .tracker import VersionTracker

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class RollbackManager:
    """Plans and runs targeted down-migration rollbacks."""

    def __init__(
        self,
        registry: DomainRegistry,
        engine: MigrationEngine,
        tracker: VersionTracker,
        source: Optional[FileMigrationSource] = None,
        config: Optional[MigrationConfig] = None,
    ):
        """Initialize the manager.

        Args:
            registry: Domains and their dependencies
            engine: Engine that reverts a domain to a target version
            tracker: Applied version lookup
            source: Migration file reader (filesystem if not provided)
            config: Configuration (global config if not provided)
        """
        self.registry = registry
        self.engine = engine
        self.tracker = tracker
        self.source = source or FileMigrationSource()
        self.config = config or get_config()

    def should_stop_on_error(self) -> bool:
        """Stop at the first failed domain everywhere except development."""
        return stop_policy_for(self.config.environment) == STOP_ON_ERROR

    async def plan_domain(self, domain: str, target_version: int) -> DomainRollbackPlan:
        """Build the rollback plan for one domain.

        Raises:
            RollbackError: If the domain is unknown, the target does not
                exist, or the target is not below the current version
            VersionLookupError: If the current version cannot be read
        """
        if domain not in self.registry:
            raise RollbackError(f"unknown domain '{domain}'", domain=domain)

        current = await self.tracker.get_current_version(domain)
        path = self.config.migrations_path(domain)
        available = self.source.list_versions(path)

        if target_version != 0 and target_version not in available:
            raise RollbackError(
                f"target version {target_version} does not exist for domain '{domain}'",
                domain=domain,
            )
        if target_version >= current:
            raise RollbackError(
                f"target version {target_version} is not less than current version "
                f"{current} for domain '{domain}'",
                domain=domain,
            )

        return DomainRollbackPlan(
            domain=domain,
            migrations_path=path,
            current_version=current,
            target_version=target_version,
            versions_to_revert=tuple(v for v in reversed(available) if target_version < v <= current),
        )

    async def create_rollback_plan(self, target_versions: dict[str, int]) -> RollbackPlan:
        """Plan a rollback of each given domain to its target version.

        Args:
            target_versions: Domain -> version to end at (0 reverts everything)

        Returns:
            Plan ordered dependents first

        Raises:
            RollbackError: Naming the first domain that cannot be planned
        """
        domain_plans: dict[str, DomainRollbackPlan] = {}

        for domain, target in target_versions.items():
            try:
                domain_plans[domain] = await self.plan_domain(domain, target)
            except MigrationError as e:
                raise RollbackError(
                    f"failed to create rollback plan for domain '{domain}': {e}",
                    domain=domain,
                ) from e

        for domain in domain_plans:
            dependents = [
                d for d in self.registry.domains
                if domain in self.registry.dependencies_of(d) and d not in domain_plans
            ]
            if dependents:
                logger.warning(
                    f"Rolling back {domain} without its dependents: {', '.join(dependents)}"
                )

        ordered = list(reversed(self.registry.sort(domain_plans)))
        plan = RollbackPlan(
            environment=self.config.environment,
            stop_policy=stop_policy_for(self.config.environment),
            domains=[domain_plans[d] for d in ordered],
        )

        logger.info(
            f"Rollback plan: {plan.total_reverts} down migration(s) across "
            f"{len(plan.domains)} domain(s)"
        )
        return plan

    async def plan_steps(self, steps: int) -> RollbackPlan:
        """Plan reverting the last ``steps`` applied migrations of every domain.

        Domains with nothing applied are left out. A domain with fewer
        applied migrations than ``steps`` goes back to version 0.

        Raises:
            RollbackError: If ``steps`` is below 1 or a domain cannot be planned
        """
        if steps < 1:
            raise RollbackError(f"rollback steps must be at least 1, got {steps}")

        targets: dict[str, int] = {}
        for domain in self.registry.execution_order():
            try:
                current = await self.tracker.get_current_version(domain)
            except MigrationError as e:
                raise RollbackError(
                    f"failed to create rollback plan for domain '{domain}': {e}",
                    domain=domain,
                ) from e
            if current == 0:
                continue

            applied = [v for v in self.source.list_versions(self.config.migrations_path(domain)) if v <= current]
            remaining = applied[:-steps]
            targets[domain] = remaining[-1] if remaining else 0

        return await self.create_rollback_plan(targets)

    async def execute_rollback(
        self,
        plan: RollbackPlan,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[RollbackResult]:
        """Revert every domain in the plan, in plan order.

        Args:
            plan: Plan from ``create_rollback_plan``/``plan_steps``
            cancel_event: Optional event checked before each domain

        Returns:
            One result per domain

        Raises:
            RollbackError: With the results gathered so far. Outside
                development this is raised at the first failure; in
                development after every domain was attempted.
        """
        results: list[RollbackResult] = []
        failed: list[str] = []

        for domain_plan in plan.domains:
            domain = domain_plan.domain
            check_cancelled(cancel_event, f"rollback of domain {domain}")

            logger.info(
                f"Rolling back domain {domain}: {domain_plan.current_version} -> "
                f"{domain_plan.target_version}"
            )

            try:
                version = await self.engine.migrate_down(
                    domain, domain_plan.migrations_path, domain_plan.target_version
                )
                result = RollbackResult(
                    domain=domain,
                    version=version,
                    success=True,
                    migrations_reverted=domain_plan.versions_to_revert,
                )
            except NoChangeError:
                logger.info(f"Domain {domain} is already at or below version {domain_plan.target_version}")
                result = RollbackResult(domain=domain, version=domain_plan.target_version, success=True)
            except MigrationError as e:
                logger.error(f"Rollback failed for domain {domain}: {e}")
                result = RollbackResult(
                    domain=domain,
                    version=domain_plan.current_version,
                    success=False,
                    error=str(e),
                )

            results.append(result)

            if not result.success:
                failed.append(domain)
                if self.should_stop_on_error():
                    raise RollbackError(
                        f"failed to rollback domain '{domain}': {result.error}",
                        results=results,
                        domain=domain,
                    )

        if failed:
            raise RollbackError(
                f"failed to rollback domain(s): {', '.join(failed)}",
                results=results,
                domain=failed[0],
            )

        return results


class DevRollbackHandler:
    """Rollback for development databases, where schemas are disposable."""

    def __init__(
        self,
        registry: DomainRegistry,
        schema_manager: SchemaManager,
        rollback_manager: Optional[RollbackManager] = None,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        sleep: SleepFn = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.registry = registry
        self.schema_manager = schema_manager
        self.rollback_manager = rollback_manager
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def perform_emergency_rollback(self) -> list[str]:
        """Recreate every domain schema, skipping domains that fail.

        Returns:
            Identifiers of rolled back domains, as ``"<domain>:0"``

        Raises:
            RollbackError: If no domain could be rolled back
        """
        logger.warning("Performing emergency rollback for development environment")

        rolled_back: list[str] = []
        failures: list[str] = []

        for domain in reversed(self.registry.execution_order()):
            try:
                await self.schema_manager.recreate_domain_schema(domain)
            except RecreationError as e:
                logger.warning(f"Emergency rollback failed for domain {domain}: {e}")
                failures.append(f"{domain}: {e}")
                continue
            rolled_back.append(f"{domain}:0")

        if not rolled_back:
            raise RollbackError(
                "emergency rollback failed for all domains: " + "; ".join(failures)
            )

        logger.info(f"Emergency rollback complete: {', '.join(rolled_back)}")
        return rolled_back

    async def perform_rollback(
        self,
        target_versions: dict[str, int],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[str]:
        """Plan and run a targeted rollback with retries. See ``rollback_plan``."""
        manager = self._manager()
        plan = await manager.create_rollback_plan(target_versions)
        return await self.rollback_plan(plan, cancel_event)

    async def rollback_plan(
        self,
        plan: RollbackPlan,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[str]:
        """Run a targeted rollback, retrying the whole plan on failure.

        Domains already at their target are skipped on later attempts. Once
        attempts are exhausted the failed domains are recreated empty.

        Returns:
            ``"<domain>:<version>"`` for every domain, version 0 for
            recreated ones

        Raises:
            RollbackError: If recreating a failed domain also fails
        """
        manager = self._manager()

        for attempt in range(1, self.max_attempts + 1):
            logger.info(f"Rollback attempt {attempt} of {self.max_attempts}")
            try:
                results = await manager.execute_rollback(plan, cancel_event)
            except RollbackError as e:
                logger.warning(f"Rollback attempt {attempt} failed: {e}")
                if attempt == self.max_attempts:
                    return await self._recreate_failed(e)
                check_cancelled(cancel_event, "rollback retry delay")
                await self._sleep(self.retry_delay)
                continue

            return [f"{r.domain}:{r.version}" for r in results]

        raise RollbackError(f"no rollback attempts made (max attempts: {self.max_attempts})")

    async def _recreate_failed(self, error: RollbackError) -> list[str]:
        failed = [r.domain for r in error.results if not r.success]
        if not failed and error.domain:
            failed = [error.domain]

        logger.warning(f"Rollback failed, recreating schemas: {', '.join(failed)}")
        for domain in failed:
            try:
                await self.schema_manager.recreate_domain_schema(domain)
            except RecreationError as e:
                raise RollbackError(
                    f"rollback failed and recreation failed: {e} (rollback error: {error})",
                    results=error.results,
                    domain=domain,
                ) from e

        return [
            f"{r.domain}:{r.version}" if r.success else f"{r.domain}:0"
            for r in error.results
        ] or [f"{d}:0" for d in failed]

    def _manager(self) -> RollbackManager:
        if self.rollback_manager is None:
            raise RollbackError("targeted rollback needs a rollback manager")
        return self.rollback_manager

    async def recreate_from_scratch(self) -> list[str]:
        """Recreate every domain schema, failing on the first error.

        Returns:
            Domains that were recreated

        Raises:
            RollbackError: Naming the domain that could not be recreated
        """
        recreated: list[str] = []
        for domain in self.registry.execution_order():
            try:
                await self.schema_manager.recreate_domain_schema(domain)
            except RecreationError as e:
                raise RollbackError(
                    f"failed to recreate domain {domain}: {e}", domain=domain
                ) from e
            recreated.append(domain)
        return recreated


# Convenience functions


def build_rollback_manager(config: Optional[MigrationConfig] = None) -> RollbackManager:
    """Wire a rollback manager to PostgreSQL and the filesystem.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    config = config or get_config()
    config.require_valid()

    registry = DomainRegistry(config.domains, config.domain_dependencies())
    source = FileMigrationSource()
    return RollbackManager(
        registry,
        PostgresMigrationEngine(config, source),
        VersionTracker(registry, config),
        source,
        config,
    )


async def rollback_steps(
    steps: int,
    config: Optional[MigrationConfig] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> list[RollbackResult]:
    """Revert the last ``steps`` migrations of every domain."""
    manager = build_rollback_manager(config)
    plan = await manager.plan_steps(steps)
    return await manager.execute_rollback(plan, cancel_event)
