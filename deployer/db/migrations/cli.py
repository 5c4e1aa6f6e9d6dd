"""CLI for domain migrations.

Usage:
    python -m deployer.db.migrations plan
    python -m deployer.db.migrations migrate
    python -m deployer.db.migrations migrate --dry-run
    python -m deployer.db.migrations status
    python -m deployer.db.migrations validate
    python -m deployer.db.migrations --environment development rollback --yes
    python -m deployer.db.migrations rollback --steps 1 --yes
    python -m deployer.db.migrations rollback --to services=2 --yes
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from textwrap import dedent
from typing import Optional

from rich.console import Console
from rich.table import Table

from ..config import ConfigurationError, Environment, MigrationConfig
from .base import (
    DevMigrationResult,
    DevMigrationStatus,
    MigrationError,
    MigrationExecutionError,
    MigrationPlan,
    MigrationResult,
    RollbackError,
    RollbackPlan,
    RollbackResult,
)
from .development import DevMigrationOrchestrator
from .registry import DomainRegistry
from .rollback import DevRollbackHandler, build_rollback_manager
from .runner import build_runner
from .schema import SchemaManager
from .status import PostgresDomainStatus, collect_migration_status

logger = logging.getLogger(__name__)

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_config(args: argparse.Namespace) -> MigrationConfig:
    """Environment configuration with command line overrides applied."""
    config = MigrationConfig()
    if args.environment:
        config.environment = args.environment
    if args.database_url:
        config.database_url = args.database_url
    if args.base_path:
        config.base_path = args.base_path
    return config


def install_signal_handlers(cancel_event: asyncio.Event) -> None:
    """Set ``cancel_event`` on SIGINT/SIGTERM so the run stops between domains."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, cancel_event.set)


def render_plan(plan: MigrationPlan) -> Table:
    table = Table(title=f"Migration plan ({plan.environment}, {plan.stop_policy})")
    table.add_column("Domain", style="bold")
    table.add_column("Current", justify="right")
    table.add_column("Target", justify="right")
    table.add_column("Pending")
    table.add_column("Depends on", style="dim")

    for domain_plan in plan.domains:
        pending = ", ".join(str(v) for v in domain_plan.pending_migrations) or "-"
        table.add_row(
            domain_plan.domain,
            str(domain_plan.current_version),
            str(domain_plan.target_version),
            pending,
            ", ".join(domain_plan.dependencies) or "-",
        )

    table.caption = (
        f"{plan.total_migrations} pending migration(s), "
        f"estimated {plan.estimated_duration.total_seconds():.0f}s"
    )
    return table


def render_results(results: list[MigrationResult], title: str = "Migration results") -> Table:
    table = Table(title=title)
    table.add_column("Domain", style="bold")
    table.add_column("Version", justify="right")
    table.add_column("Applied")
    table.add_column("Result")

    for result in results:
        applied = ", ".join(str(v) for v in result.migrations_applied) or "-"
        outcome = "[green]ok[/green]" if result.success else f"[red]failed[/red] {result.error}"
        table.add_row(result.domain, str(result.version), applied, outcome)

    return table


def render_rollback_plan(plan: RollbackPlan) -> Table:
    table = Table(title=f"Rollback plan ({plan.environment}, {plan.stop_policy})")
    table.add_column("Domain", style="bold")
    table.add_column("Current", justify="right")
    table.add_column("Target", justify="right")
    table.add_column("Revert")

    for domain_plan in plan.domains:
        table.add_row(
            domain_plan.domain,
            str(domain_plan.current_version),
            str(domain_plan.target_version),
            ", ".join(str(v) for v in domain_plan.versions_to_revert) or "-",
        )

    table.caption = f"{plan.total_reverts} down migration(s)"
    return table


def render_rollback_results(results: list[RollbackResult]) -> Table:
    table = Table(title="Rollback results")
    table.add_column("Domain", style="bold")
    table.add_column("Version", justify="right")
    table.add_column("Reverted")
    table.add_column("Result")

    for result in results:
        reverted = ", ".join(str(v) for v in result.migrations_reverted) or "-"
        outcome = "[green]ok[/green]" if result.success else f"[red]failed[/red] {result.error}"
        table.add_row(result.domain, str(result.version), reverted, outcome)

    return table


def render_status(status: DevMigrationStatus) -> Table:
    table = Table(title=f"Migration status ({status.environment})")
    table.add_column("Domain", style="bold")
    table.add_column("Version", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("State")

    for domain_status in status.domain_statuses:
        style = "green" if domain_status.ready else "red"
        table.add_row(
            domain_status.domain,
            str(domain_status.current_version),
            str(domain_status.pending_migrations),
            f"[{style}]{domain_status.status}[/{style}]",
        )

    table.caption = f"{status.ready_domains}/{status.total_domains} domain(s) ready"
    return table


def print_dev_result(result: DevMigrationResult) -> None:
    if result.executed_migrations:
        console.print(render_results(result.executed_migrations))

    console.print(f"Outcome: [bold]{result.outcome}[/bold] after {result.attempts} attempt(s)")
    if result.rollbacks_performed:
        console.print(f"Rolled back: {', '.join(result.rollbacks_performed)}")
    for side_effect in (result.seed_result, result.privileges_result):
        if side_effect is None:
            continue
        for domain, error in side_effect.failed.items():
            console.print(f"  [bold yellow]Warning:[/bold yellow] {side_effect.operation} failed for {domain}: {error}")
    if result.error:
        console.print(f"[bold red]Error:[/bold red] {result.error}")


async def cmd_plan(args: argparse.Namespace, config: MigrationConfig) -> int:
    """Show pending migrations per domain."""
    planner, _ = build_runner(config)
    plan = await planner.create_migration_plan()
    console.print(render_plan(plan))
    return 0


async def cmd_migrate(
    args: argparse.Namespace,
    config: MigrationConfig,
    cancel_event: Optional[asyncio.Event] = None,
) -> int:
    """Apply pending migrations.

    Development runs go through the aggressive orchestrator (recreate,
    retry, rollback, seed). Every other environment stops at the first
    failed domain.
    """
    planner, runner = build_runner(config)

    if args.dry_run:
        plan = await planner.create_migration_plan()
        console.print("[DRY-RUN] Nothing will be applied")
        console.print(render_plan(plan))
        return 0

    if config.is_development:
        # The orchestrator plans for itself, after any recreation
        orchestrator = DevMigrationOrchestrator.from_config(config)
        result = await orchestrator.execute_migrations(cancel_event)
        print_dev_result(result)
        return 0 if result.success else 1

    plan = await planner.create_migration_plan()
    if plan.total_migrations == 0:
        console.print("No pending migrations")
        return 0

    try:
        results = await runner.execute_migration_plan(plan, cancel_event)
    except MigrationExecutionError as e:
        if e.results:
            console.print(render_results(e.results))
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1

    console.print(render_results(results))
    return 0


async def cmd_status(args: argparse.Namespace, config: MigrationConfig) -> int:
    """Show applied version and readiness of every domain."""
    planner, _ = build_runner(config)
    status = await collect_migration_status(
        config.environment,
        planner.tracker,
        PostgresDomainStatus(config, planner.source),
    )

    if status.error:
        console.print(f"[bold red]Error:[/bold red] {status.error}")
        return 1

    console.print(render_status(status))
    for error in status.domain_errors:
        console.print(f"  [bold yellow]Warning:[/bold yellow] {error}")

    return 0 if status.is_ready else 1


async def cmd_validate(args: argparse.Namespace, config: MigrationConfig) -> int:
    """Check every domain's migration directory."""
    _, runner = build_runner(config)
    await runner.validate_migrations()
    console.print(f"[green]Migrations valid[/green] for {len(runner.registry)} domain(s)")
    return 0


async def cmd_rollback(
    args: argparse.Namespace,
    config: MigrationConfig,
    cancel_event: Optional[asyncio.Event] = None,
) -> int:
    """Roll back domain schemas.

    With ``--steps`` or ``--to`` the matching down migrations run,
    dependents first. Without them every schema is reset to empty, which is
    only allowed in development.
    """
    targeted = args.steps is not None or bool(args.to)

    if not targeted and not config.is_development:
        console.print(
            f"[bold red]Error:[/bold red] rollback without --steps or --to is only allowed in development "
            f"(current environment: {config.environment})"
        )
        return 1

    if not args.yes:
        console.print("[bold red]Error:[/bold red] rollback changes domain schemas; pass --yes to confirm")
        return 1

    config.require_valid()

    if not targeted:
        registry = DomainRegistry(config.domains, config.domain_dependencies())
        handler = DevRollbackHandler(registry, SchemaManager(config))
        rolled_back = await handler.perform_emergency_rollback()
        console.print(f"Rolled back: {', '.join(rolled_back)}")
        return 0

    manager = build_rollback_manager(config)
    if args.steps is not None:
        plan = await manager.plan_steps(args.steps)
    else:
        plan = await manager.create_rollback_plan(dict(args.to))

    if not plan.domains:
        console.print("Nothing to roll back")
        return 0
    console.print(render_rollback_plan(plan))

    if config.is_development:
        handler = DevRollbackHandler(manager.registry, SchemaManager(config), manager)
        rolled_back = await handler.rollback_plan(plan, cancel_event)
        console.print(f"Rolled back: {', '.join(rolled_back)}")
        return 0

    try:
        results = await manager.execute_rollback(plan, cancel_event)
    except RollbackError as e:
        if e.results:
            console.print(render_rollback_results(e.results))
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1

    console.print(render_rollback_results(results))
    return 0


def parse_target(value: str) -> tuple[str, int]:
    """Parse ``DOMAIN=VERSION`` for ``rollback --to``."""
    domain, sep, version = value.partition("=")
    if not sep or not domain or not version.isdigit():
        raise argparse.ArgumentTypeError(f"expected DOMAIN=VERSION, got {value!r}")
    return domain, int(version)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        description="PostgreSQL domain migration management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=dedent("""
            Examples:
              # Show what would be applied
              python -m deployer.db.migrations plan

              # Apply pending migrations
              python -m deployer.db.migrations migrate

              # Apply against staging, stopping at the first failure
              python -m deployer.db.migrations --environment staging migrate

              # Check status
              python -m deployer.db.migrations status

              # Revert the last migration of every domain
              python -m deployer.db.migrations rollback --steps 1 --yes

              # Reset development schemas
              python -m deployer.db.migrations rollback --yes
        """),
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--environment", "-e",
        choices=[e.value for e in Environment],
        help="Deployment environment (default: DEPLOY_ENVIRONMENT or development)",
    )
    parser.add_argument(
        "--database-url",
        help="PostgreSQL URL (default: DATABASE_URL)",
    )
    parser.add_argument(
        "--base-path",
        help="Directory with <domain>/migrations folders (default: MIGRATIONS_BASE_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # plan command
    subparsers.add_parser(
        "plan",
        help="Show pending migrations per domain",
    )

    # migrate command
    migrate_parser = subparsers.add_parser(
        "migrate",
        help="Apply pending migrations",
    )
    migrate_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the plan without applying",
    )

    # status command
    subparsers.add_parser(
        "status",
        help="Show migration status",
    )

    # validate command
    subparsers.add_parser(
        "validate",
        help="Validate migration files",
    )

    # rollback command
    rollback_parser = subparsers.add_parser(
        "rollback",
        help="Run down migrations, or reset every schema (development only)",
    )
    target_group = rollback_parser.add_mutually_exclusive_group()
    target_group.add_argument(
        "--steps",
        type=int,
        help="Revert the last N applied migrations of every domain",
    )
    target_group.add_argument(
        "--to",
        action="append",
        type=parse_target,
        metavar="DOMAIN=VERSION",
        help="Revert a domain down to VERSION (repeatable, 0 reverts everything)",
    )
    rollback_parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm the rollback",
    )

    return parser


async def async_main(args: argparse.Namespace) -> int:
    """Async main entry point."""
    config = build_config(args)

    errors = config.validate()
    if errors:
        for error in errors:
            console.print(f"[bold red]Error:[/bold red] {error}")
        return 1

    cancel_event = asyncio.Event()
    install_signal_handlers(cancel_event)

    try:
        if args.command == "plan":
            return await cmd_plan(args, config)
        elif args.command == "migrate":
            return await cmd_migrate(args, config, cancel_event)
        elif args.command == "status":
            return await cmd_status(args, config)
        elif args.command == "validate":
            return await cmd_validate(args, config)
        elif args.command == "rollback":
            return await cmd_rollback(args, config, cancel_event)
        else:
            console.print(f"Unknown command: {args.command}")
            return 1
    except (MigrationError, ConfigurationError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1


def main() -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(args.verbose)

    exit_code = asyncio.run(async_main(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
