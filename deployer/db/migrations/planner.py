"""Migration planning.

Combines the version tracker and the migration source into a
``MigrationPlan``: one ``DomainMigrationPlan`` per configured domain.
Planning is all-or-nothing; it never touches the schema.
"""

import logging
from typing import Optional

from ..config import Environment, MigrationConfig, get_config
from .base import (
    BASE_TIME_PER_MIGRATION,
    CONTINUE_ON_ERROR,
    STOP_ON_ERROR,
    DomainMigrationPlan,
    MigrationError,
    MigrationPlan,
    MigrationSource,
    PlanningError,
)
from .registry import DomainRegistry
from .source import FileMigrationSource, enumerate_versions
from .tracker import VersionTracker

logger = logging.getLogger(__name__)


def stop_policy_for(environment: str) -> str:
    """Stop policy label for an environment.

    Every environment except development stops at the first failure.
    """
    if environment == Environment.DEVELOPMENT.value:
        return CONTINUE_ON_ERROR
    return STOP_ON_ERROR


class MigrationPlanner:
    """Builds migration plans."""

    def __init__(
        self,
        registry: DomainRegistry,
        tracker: VersionTracker,
        source: Optional[MigrationSource] = None,
        config: Optional[MigrationConfig] = None,
    ):
        """Initialize the planner.

        Args:
            registry: Domains and their dependencies
            tracker: Applied version lookup
            source: Migration source (filesystem if not provided)
            config: Configuration (global config if not provided)
        """
        self.registry = registry
        self.tracker = tracker
        self.source = source or FileMigrationSource()
        self.config = config or get_config()

    async def plan_domain(self, domain: str) -> DomainMigrationPlan:
        """Build the plan for a single domain.

        Args:
            domain: Domain name

        Returns:
            Domain plan with pending versions above the current version
        """
        current = await self.tracker.get_current_version(domain)
        path = self.config.migrations_path(domain)

        available = enumerate_versions(self.source, path)
        pending = tuple(sorted(v for v in available if v > current))
        target = max(pending) if pending else current

        logger.debug(
            f"Domain {domain}: current={current} target={target} pending={list(pending)}"
        )

        return DomainMigrationPlan(
            domain=domain,
            migrations_path=path,
            pending_migrations=pending,
            current_version=current,
            target_version=target,
            dependencies=self.registry.dependencies_of(domain),
        )

    async def create_migration_plan(self) -> MigrationPlan:
        """Create a plan covering every registered domain.

        Returns:
            Dependency-sorted migration plan

        Raises:
            PlanningError: If any domain cannot be planned
        """
        domain_plans: dict[str, DomainMigrationPlan] = {}

        for domain in self.registry.domains:
            try:
                domain_plans[domain] = await self.plan_domain(domain)
            except MigrationError as e:
                raise PlanningError(
                    f"failed to create migration plan for domain '{domain}': {e}",
                    domain=domain,
                ) from e

        ordered = [domain_plans[d] for d in self.registry.sort(domain_plans)]
        total = sum(len(p.pending_migrations) for p in ordered)

        plan = MigrationPlan(
            environment=self.config.environment,
            stop_policy=stop_policy_for(self.config.environment),
            domains=ordered,
            total_migrations=total,
            estimated_duration=BASE_TIME_PER_MIGRATION * total,
        )

        logger.info(
            f"Migration plan: {total} pending migration(s) across {len(ordered)} domain(s), "
            f"estimated {plan.estimated_duration.total_seconds():.0f}s"
        )
        return plan
