"""Base types for the domain migration system.

Defines the core abstractions:
- MigrationError and its subclasses: one per failure phase
- DomainMigrationPlan / MigrationPlan: what the planner produces
- MigrationResult: what the runner reports per domain
- DomainRollbackPlan / RollbackPlan / RollbackResult: targeted down-migration rollback
- AggressiveSettings / DevMigrationResult: development orchestration
- Collaborator protocols: engine, source, rollback handler, domain status
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Protocol, Union

# Coarse per-migration time estimate used for plan summaries
BASE_TIME_PER_MIGRATION = timedelta(milliseconds=5000)

STOP_ON_ERROR = "stop_on_error"
CONTINUE_ON_ERROR = "continue_on_error"

PathLike = Union[str, Path]


class MigrationError(Exception):
    """Base exception for migration errors.

    Attributes:
        domain: Domain the failure belongs to, if any
        operation: Phase that failed (plan, validate, execute, ...)
    """

    operation: str = "migrate"

    def __init__(
        self,
        message: str,
        domain: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.domain = domain
        if operation is not None:
            self.operation = operation


class MigrationSourceError(MigrationError):
    """A migration directory could not be read."""

    operation = "read_source"


class VersionLookupError(MigrationError):
    """The applied schema version could not be read."""

    operation = "get_version"


class PlanningError(MigrationError):
    """Plan construction failed; nothing was executed."""

    operation = "plan"


class MigrationValidationError(MigrationError):
    """Migration sources failed validation.

    Attributes:
        issues: Human-readable problems, prefixed with the domain
    """

    operation = "validate"

    def __init__(self, message: str, issues: Optional[list[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.issues = issues or []


class NoChangeError(MigrationError):
    """Signal from the engine that nothing was pending. Not a failure."""

    operation = "execute"


class DirtyDatabaseError(MigrationError):
    """A previous migration was interrupted and left the schema dirty."""

    operation = "execute"


class MigrationExecutionError(MigrationError):
    """One or more domains failed to migrate.

    Attributes:
        results: Results gathered up to (and including) the failure
    """

    operation = "execute"

    def __init__(
        self,
        message: str,
        results: Optional[list["MigrationResult"]] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.results = results or []


class RecreationError(MigrationError):
    """Dropping and recreating a domain schema failed."""

    operation = "recreate"


class RollbackError(MigrationError):
    """Rolling schemas back failed.

    Attributes:
        results: Per-domain rollback results gathered up to the failure
    """

    operation = "rollback"

    def __init__(
        self,
        message: str,
        results: Optional[list["RollbackResult"]] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.results = results or []


class MigrationCancelledError(MigrationError):
    """The caller asked the run to stop."""

    operation = "cancel"


@dataclass(frozen=True)
class DomainMigrationPlan:
    """Pending work for one domain.

    Built fresh per planning cycle and consumed once by the runner.
    """

    domain: str
    migrations_path: Path
    pending_migrations: tuple[int, ...]
    current_version: int
    target_version: int
    dependencies: tuple[str, ...] = ()

    @property
    def has_pending(self) -> bool:
        return bool(self.pending_migrations)


@dataclass
class MigrationPlan:
    """Dependency-sorted plan across all domains."""

    environment: str
    stop_policy: str
    domains: list[DomainMigrationPlan]
    total_migrations: int
    estimated_duration: timedelta

    def get(self, domain: str) -> Optional[DomainMigrationPlan]:
        """Get the plan for a domain, or None."""
        for domain_plan in self.domains:
            if domain_plan.domain == domain:
                return domain_plan
        return None


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of executing one domain's plan."""

    domain: str
    version: int
    success: bool
    error: Optional[str] = None
    migrations_applied: tuple[int, ...] = ()


@dataclass(frozen=True)
class DomainRollbackPlan:
    """Down migrations to revert for one domain, newest first."""

    domain: str
    migrations_path: Path
    current_version: int
    target_version: int
    versions_to_revert: tuple[int, ...]


@dataclass
class RollbackPlan:
    """Targeted rollback across domains, dependents first."""

    environment: str
    stop_policy: str
    domains: list[DomainRollbackPlan]

    @property
    def target_versions(self) -> dict[str, int]:
        return {p.domain: p.target_version for p in self.domains}

    @property
    def total_reverts(self) -> int:
        return sum(len(p.versions_to_revert) for p in self.domains)


@dataclass(frozen=True)
class RollbackResult:
    """Outcome of rolling back one domain."""

    domain: str
    version: int
    success: bool
    error: Optional[str] = None
    migrations_reverted: tuple[int, ...] = ()


@dataclass
class AggressiveSettings:
    """Development-only policy bundle.

    ``development()`` returns the fixed policy the development orchestrator
    uses when nothing else is supplied.
    """

    auto_rollback_on_error: bool = True
    recreate_on_conflict: bool = True
    skip_validation: bool = False
    force_latest_version: bool = True
    enable_test_data_seed: bool = True
    cleanup_on_failure: bool = True
    max_retry_attempts: int = 3
    retry_delay: timedelta = timedelta(seconds=5)

    def __post_init__(self) -> None:
        if self.max_retry_attempts < 1:
            raise ValueError("max_retry_attempts must be at least 1")
        if self.retry_delay < timedelta(0):
            raise ValueError("retry_delay must not be negative")

    @classmethod
    def development(
        cls,
        max_retry_attempts: int = 3,
        retry_delay: timedelta = timedelta(seconds=5),
    ) -> "AggressiveSettings":
        return cls(max_retry_attempts=max_retry_attempts, retry_delay=retry_delay)


@dataclass
class SideEffectResult:
    """Outcome of a best-effort, per-domain operation (seeding, grants).

    Failures are recorded here and never raised.
    """

    operation: str
    succeeded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class DevMigrationResult:
    """Full report of one development orchestration run."""

    environment: str
    start_time: datetime
    end_time: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None
    executed_migrations: list[MigrationResult] = field(default_factory=list)
    rollbacks_performed: list[str] = field(default_factory=list)
    database_recreated: bool = False
    schemas_initialized: bool = False
    test_data_seeded: bool = False
    seed_result: Optional[SideEffectResult] = None
    privileges_result: Optional[SideEffectResult] = None
    attempts: int = 0

    @property
    def outcome(self) -> str:
        """One of success, success_after_recreation, failed_with_rollback, failed."""
        if self.success:
            return "success_after_recreation" if self.database_recreated else "success"
        if self.rollbacks_performed:
            return "failed_with_rollback"
        return "failed"

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


@dataclass
class DomainStatus:
    """Metadata-table state of one domain."""

    domain: str
    current_version: int
    ready: bool
    dirty: bool
    status: str
    pending_migrations: int = 0


@dataclass
class DevMigrationStatus:
    """Aggregated readiness across domains."""

    environment: str
    timestamp: datetime
    current_versions: dict[str, int] = field(default_factory=dict)
    domain_statuses: list[DomainStatus] = field(default_factory=list)
    total_domains: int = 0
    ready_domains: int = 0
    is_ready: bool = False
    domain_errors: list[str] = field(default_factory=list)
    error: Optional[str] = None


class MigrationEngine(Protocol):
    """Applies every pending migration of one domain."""

    async def apply_pending(self, domain: str, migrations_path: PathLike) -> int:
        """Apply pending migrations and return the resulting version.

        Raises:
            NoChangeError: If nothing was pending
        """
        ...

    async def migrate_down(self, domain: str, migrations_path: PathLike, target_version: int) -> int:
        """Revert applied migrations down to ``target_version``.

        Raises:
            NoChangeError: If the domain is already at or below the target
        """
        ...


class MigrationSource(Protocol):
    """Enumerates versioned migration identifiers in a directory."""

    def first_version(self, migrations_path: PathLike) -> Optional[int]:
        ...

    def next_version(self, migrations_path: PathLike, after: int) -> Optional[int]:
        ...


class RollbackHandler(Protocol):
    """Reverts applied schema state after unrecoverable failures."""

    async def perform_emergency_rollback(self) -> list[str]:
        ...


class DomainStatusProvider(Protocol):
    """Reports readiness of a single domain."""

    async def get_domain_status(self, domain: str) -> DomainStatus:
        ...
