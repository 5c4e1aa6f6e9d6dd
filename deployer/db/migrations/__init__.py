"""Per-domain PostgreSQL schema migrations.

Provides:
- Planning: current vs. available versions for every domain
- Dependency-ordered execution with an environment-driven stop policy
- Validation of migration directories
- Aggressive development orchestration (recreate, retry, rollback, seed)
- Targeted rollback through down migrations, dependents first
- Readiness reporting

Usage:
    from deployer.db.migrations import (
        create_migration_plan,
        apply_migrations,
        DevMigrationOrchestrator,
    )

    # Inspect pending migrations
    plan = await create_migration_plan()

    # Apply (stops at the first failure outside development)
    results = await apply_migrations()

    # Development: recreate on broken metadata, retry, seed
    orchestrator = DevMigrationOrchestrator.from_config()
    result = await orchestrator.execute_migrations()

CLI Usage:
    python -m deployer.db.migrations plan
    python -m deployer.db.migrations migrate
    python -m deployer.db.migrations status
    python -m deployer.db.migrations validate
    python -m deployer.db.migrations rollback --steps 1 --yes
    python -m deployer.db.migrations rollback --yes
"""

from .base import (
    AggressiveSettings,
    DevMigrationResult,
    DevMigrationStatus,
    DirtyDatabaseError,
    DomainMigrationPlan,
    DomainRollbackPlan,
    DomainStatus,
    MigrationCancelledError,
    MigrationError,
    MigrationExecutionError,
    MigrationPlan,
    MigrationResult,
    MigrationSourceError,
    MigrationValidationError,
    NoChangeError,
    PlanningError,
    RecreationError,
    RollbackError,
    RollbackPlan,
    RollbackResult,
    SideEffectResult,
    VersionLookupError,
)

from .registry import DomainRegistry
from .source import FileMigrationSource, MigrationFile
from .tracker import VersionTracker
from .planner import MigrationPlanner
from .engine import PostgresMigrationEngine
from .schema import SchemaManager
from .rollback import (
    DevRollbackHandler,
    RollbackManager,
    build_rollback_manager,
    rollback_steps,
)
from .status import PostgresDomainStatus, collect_migration_status

from .runner import (
    MigrationRunner,
    apply_migrations,
    build_runner,
    create_migration_plan,
    validate_migrations,
)

from .development import DevMigrationOrchestrator

__all__ = [
    # Base types
    "AggressiveSettings",
    "DevMigrationResult",
    "DevMigrationStatus",
    "DomainMigrationPlan",
    "DomainRollbackPlan",
    "DomainStatus",
    "MigrationPlan",
    "MigrationResult",
    "RollbackPlan",
    "RollbackResult",
    "SideEffectResult",
    # Errors
    "MigrationError",
    "DirtyDatabaseError",
    "MigrationCancelledError",
    "MigrationExecutionError",
    "MigrationSourceError",
    "MigrationValidationError",
    "NoChangeError",
    "PlanningError",
    "RecreationError",
    "RollbackError",
    "VersionLookupError",
    # Components
    "DomainRegistry",
    "FileMigrationSource",
    "MigrationFile",
    "VersionTracker",
    "MigrationPlanner",
    "PostgresMigrationEngine",
    "SchemaManager",
    "DevRollbackHandler",
    "RollbackManager",
    "build_rollback_manager",
    "rollback_steps",
    "PostgresDomainStatus",
    "collect_migration_status",
    # Runner
    "MigrationRunner",
    "build_runner",
    "create_migration_plan",
    "apply_migrations",
    "validate_migrations",
    # Development
    "DevMigrationOrchestrator",
]
