"""CLI for the retention purge engine.

Provides commands for database profile management, purge planning,
read-only audits, purge runs, and recovery from interrupted swaps.

Usage:
    DB_PROFILE=local retention-purge connect
    retention-purge status
    retention-purge profiles
    retention-purge plan
    retention-purge audit --retain 2y
    retention-purge purge --retain 2y --dry-run
    retention-purge purge --cutoff 2023-01-01 --batch-size auto --confirm
    retention-purge recover --list
    retention-purge recover --table events --confirm

Commands:
    connect   - Connect, introspect, and validate the purge plan
    status    - Show current connection status
    profiles  - List available profiles
    plan      - Show purge order and per-table date expressions
    audit     - Pre-flight counts, age range, and strategy per table
    purge     - Preview or run a purge
    recover   - List or recover staging tables left by interrupted swaps
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from retention_purge.config.loader import load_db_config
from retention_purge.config.models import PurgeConfig, RetentionSettings
from retention_purge.errors import PurgeError
from retention_purge.factory import (
    ProfileNotFoundError,
    connect_and_validate,
    get_active_profile_name,
    get_adapter,
    introspect_schema,
    read_profile_lock,
    resolve_url,
)
from retention_purge.purge.context import RunContext
from retention_purge.purge.engine import plan_purge, preflight, run_purge
from retention_purge.purge.report import RunOutcome, RunReport
from retention_purge.purge.swap import (
    StagingProvenance,
    list_staging_artifacts,
    read_provenance,
    recover_from_staging,
    staging_name,
)

console = Console()

logger = logging.getLogger(__name__)


# ============================================================================
# Helpers
# ============================================================================


def _configure_logging(verbose: bool) -> None:
    """Route library logging through rich on the shared console."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _config_path(args: argparse.Namespace) -> Path | None:
    path = getattr(args, "config", None)
    return Path(path) if path else None


def _batch_size_arg(value: str) -> int | str:
    """argparse type for ``--batch-size``: positive int or ``auto``."""
    if value == "auto":
        return value
    try:
        size = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer or 'auto', got {value!r}")
    if size <= 0:
        raise argparse.ArgumentTypeError("batch size must be positive")
    return size


def _apply_overrides(settings: RetentionSettings, args: argparse.Namespace) -> RetentionSettings:
    """Layer command-line options over the ``[retention]`` section."""
    data = settings.model_dump(by_alias=True)
    if getattr(args, "cutoff", None):
        data["cutoff"] = args.cutoff
        data["retain"] = None
    if getattr(args, "retain", None):
        data["retain"] = args.retain
        data["cutoff"] = None
    if getattr(args, "batch_size", None) is not None:
        data["batch_size"] = args.batch_size
    if getattr(args, "tables", None):
        data["tables"] = [t.strip() for t in args.tables.split(",") if t.strip()]
    return RetentionSettings.model_validate(data)


def _load_settings(args: argparse.Namespace) -> tuple[PurgeConfig, RetentionSettings] | None:
    """Load db.toml and apply overrides, printing the error on failure."""
    try:
        config = load_db_config(_config_path(args))
        settings = _apply_overrides(config.retention, args)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return None
    return config, settings


def _resolve_profile(args: argparse.Namespace) -> str | None:
    env_prefix = getattr(args, "env_prefix", "")
    try:
        return get_active_profile_name(env_prefix=env_prefix)
    except ProfileNotFoundError:
        console.print("[yellow]No profile configured.[/yellow]")
        console.print(
            f"[dim]Run:[/dim] [cyan]{env_prefix}DB_PROFILE=<name> retention-purge connect[/cyan]"
        )
        return None


def _print_report(report: RunReport) -> None:
    table = Table(
        title="Dry Run" if report.dry_run else "Purge Results",
        show_header=True,
        header_style="bold",
    )
    table.add_column("Table")
    table.add_column("Strategy", style="dim")
    table.add_column("Before", justify="right")
    table.add_column("Aged", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Status")

    styles = {
        "purged": "green",
        "preview": "cyan",
        "skipped": "yellow",
        "failed": "red",
        "interrupted": "yellow",
    }
    for t in report.tables:
        style = styles[t.status]
        status = f"[{style}]{t.status}[/{style}]"
        if t.reason:
            status += f" [dim]({t.reason})[/dim]"
        table.add_row(
            t.table,
            t.strategy,
            str(t.rows_before),
            str(t.rows_matched),
            str(t.rows_deleted),
            "" if t.rows_after is None else str(t.rows_after),
            status,
        )
    console.print(table)

    if report.skipped:
        console.print(f"\n[bold]Not planned ({len(report.skipped)}):[/bold]")
        for name, reason in sorted(report.skipped.items()):
            console.print(f"  [dim]-[/dim] {name}: {reason}")

    if report.benchmark:
        b = report.benchmark
        console.print(
            f"\nBenchmark on [cyan]{b.table}[/cyan]: best batch size "
            f"[bold]{b.best_size}[/bold] ({len(b.measurements)} measured, "
            f"{len(b.skipped)} skipped)"
        )

    for t in report.tables:
        if t.preview_rows:
            console.print(f"\n[bold]{t.table}[/bold] (first {len(t.preview_rows)} aged rows):")
            for row in t.preview_rows:
                console.print(f"  {row}")

    console.print()
    if report.outcome == RunOutcome.SUCCESS:
        mark = "[bold green]v[/bold green]"
    else:
        mark = "[bold red]x[/bold red]"
    console.print(
        f"{mark} {report.outcome.value}: {report.rows_deleted} rows deleted "
        f"in {report.elapsed_seconds:.1f}s (cutoff {report.cutoff:%Y-%m-%d %H:%M:%S})"
    )
    if report.error:
        console.print(f"[red]{report.error}[/red]")


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_connect(args: argparse.Namespace) -> int:
    """Async implementation for connect command.

    Returns:
        0 on success, 1 on failure.
    """
    env_prefix = getattr(args, "env_prefix", "")

    previous_profile = read_profile_lock()

    console.print("Connecting to database...", style="dim")

    result = await connect_and_validate(env_prefix=env_prefix, config_path=_config_path(args))

    if result.success:
        console.print()
        console.print(
            f"[bold green]v[/bold green] Connected to profile: "
            f"[bold cyan]{result.profile_name}[/bold cyan]"
        )
        console.print("  Purge plan: [green]VALID[/green]")
        if result.plan_report:
            console.print(result.plan_report.format_report())

        if previous_profile and previous_profile != result.profile_name:
            console.print(
                f"\n[dim]Switched from[/dim] [bold]{previous_profile}[/bold] "
                f"[dim]to[/dim] [bold cyan]{result.profile_name}[/bold cyan]"
            )
        return 0

    console.print()
    console.print(f"[bold red]x[/bold red] {result.error}")
    if result.plan_report:
        console.print(result.plan_report.format_report())
    return 1


async def _async_plan(args: argparse.Namespace) -> int:
    """Async implementation for plan command.

    Returns:
        0 on a valid plan, 1 otherwise.
    """
    loaded = _load_settings(args)
    profile = _resolve_profile(args)
    if loaded is None or profile is None:
        return 1
    config, settings = loaded

    try:
        schema = await introspect_schema(resolve_url(config.profiles[profile]), settings)
        plan = plan_purge(schema, settings)
    except KeyError:
        console.print(f"[red]Error: Profile '{profile}' not found in db.toml[/red]")
        return 1
    except PurgeError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1

    table = Table(title=f"Purge Plan ({profile})", show_header=True, header_style="bold")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Table")
    table.add_column("Age from")
    table.add_column("Guards", justify="right")

    for i, node in enumerate(plan.nodes, start=1):
        table.add_row(str(i), node.name, node.expression.describe(), str(len(node.guards)))
    console.print(table)

    if plan.skipped:
        console.print(f"\n[bold]Skipped ({len(plan.skipped)}):[/bold]")
        for name, reason in sorted(plan.skipped.items()):
            console.print(f"  [dim]-[/dim] {name}: [yellow]{reason}[/yellow]")
    return 0


async def _async_audit(args: argparse.Namespace) -> int:
    """Async implementation for audit command (read-only).

    Returns:
        0 on success, 1 on failure.
    """
    loaded = _load_settings(args)
    profile = _resolve_profile(args)
    if loaded is None or profile is None:
        return 1
    _, settings = loaded

    try:
        cutoff = settings.resolve_cutoff()
        adapter = await get_adapter(
            profile_name=profile,
            env_prefix=getattr(args, "env_prefix", ""),
            config_path=_config_path(args),
            schema_name=settings.schema_name,
        )
    except (PurgeError, KeyError) as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1

    try:
        schema = await introspect_schema(adapter.database_url, settings)
        plan = plan_purge(schema, settings)
        reports = await preflight(adapter, plan, cutoff, settings)
    except PurgeError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1
    finally:
        await adapter.close()

    table = Table(
        title=f"Audit ({profile}, cutoff {cutoff:%Y-%m-%d})", show_header=True, header_style="bold"
    )
    table.add_column("Table")
    table.add_column("Rows", justify="right")
    table.add_column("Aged", justify="right")
    table.add_column("%", justify="right")
    table.add_column("Oldest")
    table.add_column("Newest")
    table.add_column("Strategy")

    for r in reports:
        table.add_row(
            r.table,
            str(r.rows_before),
            str(r.rows_matched),
            f"{r.matched_ratio:.0%}",
            "" if r.oldest is None else str(r.oldest),
            "" if r.newest is None else str(r.newest),
            r.strategy,
        )
    console.print(table)
    return 0


async def _async_purge(args: argparse.Namespace) -> int:
    """Async implementation for purge command.

    Without ``--confirm`` (or with ``--dry-run``) the run is a preview.

    Returns:
        Exit code of the run outcome (0, 1, 2, or 130).
    """
    loaded = _load_settings(args)
    profile = _resolve_profile(args)
    if loaded is None or profile is None:
        return 1
    _, settings = loaded
    dry_run = args.dry_run or settings.dry_run or not args.confirm

    try:
        cutoff = settings.resolve_cutoff()
        adapter = await get_adapter(
            profile_name=profile,
            env_prefix=getattr(args, "env_prefix", ""),
            config_path=_config_path(args),
            schema_name=settings.schema_name,
        )
    except (PurgeError, KeyError) as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1

    console.print(
        f"Purging [bold cyan]{profile}[/bold cyan] rows older than "
        f"[bold]{cutoff:%Y-%m-%d %H:%M:%S}[/bold]"
        + (" [dim](dry run)[/dim]" if dry_run else "")
    )
    if not dry_run and settings.swap.enabled:
        console.print(
            "[yellow]Tables purged by swap lose their constraints and indexes until "
            "rebuilt; other sessions must not write to them during the run.[/yellow]"
        )

    context = RunContext(adapter, settings.durability)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, context.request_stop)
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")

    try:
        schema = await introspect_schema(adapter.database_url, settings)
        report = await run_purge(
            adapter, schema, settings, cutoff, context=context, dry_run=dry_run
        )
    except PurgeError as e:
        console.print(f"\n[bold red]x[/bold red] {e}")
        return RunOutcome.FATAL.exit_code
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
        await adapter.close()

    _print_report(report)
    if dry_run and not args.dry_run and not settings.dry_run:
        console.print("\n[dim]To delete rows, add[/dim] [cyan]--confirm[/cyan] [dim]flag.[/dim]")
    return report.outcome.exit_code


async def _async_recover(args: argparse.Namespace) -> int:
    """Async implementation for recover command.

    Returns:
        0 on success, 1 on failure.
    """
    loaded = _load_settings(args)
    profile = _resolve_profile(args)
    if loaded is None or profile is None:
        return 1
    _, settings = loaded

    if not args.list and not args.table:
        console.print("[red]Error: pass --list or --table NAME[/red]")
        return 1

    try:
        adapter = await get_adapter(
            profile_name=profile,
            env_prefix=getattr(args, "env_prefix", ""),
            config_path=_config_path(args),
            schema_name=settings.schema_name,
        )
    except KeyError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1

    try:
        if args.list:
            return await _list_artifacts(adapter, settings)

        staging = staging_name(args.table, settings.staging_prefix)
        provenance = await read_provenance(adapter, staging)
        console.print(
            f"Staging table [cyan]{staging}[/cyan] holds {provenance.keep_count} rows of "
            f"[bold]{provenance.source_table}[/bold] (cutoff {provenance.cutoff:%Y-%m-%d}, "
            f"created {provenance.created_at:%Y-%m-%d %H:%M:%S})"
        )
        if not args.confirm:
            console.print(
                "\n[dim]To reload the table from staging, add[/dim] [cyan]--confirm[/cyan] [dim]flag.[/dim]"
            )
            return 0

        schema = await introspect_schema(adapter.database_url, settings)
        result = await recover_from_staging(
            adapter, schema, args.table, prefix=settings.staging_prefix
        )
    except PurgeError as e:
        console.print(f"\n[bold red]x[/bold red] {e}")
        return 1
    finally:
        await adapter.close()

    console.print(
        f"[bold green]v[/bold green] Recovered {result.table}: "
        f"{result.rows_restored} rows ({result.elapsed:.1f}s)"
    )
    return 0


async def _list_artifacts(adapter, settings: RetentionSettings) -> int:
    artifacts = await list_staging_artifacts(adapter, settings.staging_prefix)
    if not artifacts:
        console.print("[green]No staging tables found.[/green]")
        return 0

    table = Table(title="Staging Tables", show_header=True, header_style="bold")
    table.add_column("Staging table")
    table.add_column("Source")
    table.add_column("Keep rows", justify="right")
    table.add_column("Created")
    for artifact in artifacts:
        if isinstance(artifact, StagingProvenance):
            table.add_row(
                artifact.staging_table,
                artifact.source_table,
                str(artifact.keep_count),
                f"{artifact.created_at:%Y-%m-%d %H:%M:%S}",
            )
        else:
            table.add_row(artifact, "[red]no provenance[/red]", "", "")
    console.print(table)
    return 0


# ============================================================================
# Sync command wrappers (cmd_status, cmd_profiles read local files only)
# ============================================================================


def cmd_connect(args: argparse.Namespace) -> int:
    """Connect to database and validate the purge plan.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_connect(args))


def cmd_status(args: argparse.Namespace) -> int:
    """Show current connection status.

    Reads only local files (lock file and TOML config) -- no database calls.

    Returns:
        0 always (informational command).
    """
    profile = read_profile_lock()

    if profile:
        table = Table(title="Connection Status", show_header=False)
        table.add_column("Key", style="dim")
        table.add_column("Value")

        table.add_row("Current profile", f"[bold cyan]{profile}[/bold cyan]")
        table.add_row("Profile source", ".db-profile (validated)")

        try:
            config = load_db_config(_config_path(args))
            if profile in config.profiles:
                p = config.profiles[profile]
                table.add_row("Provider", p.provider)
                if p.description:
                    table.add_row("Description", p.description)
            retention = config.retention
            table.add_row("Schema", retention.schema_name)
            if retention.cutoff is not None:
                table.add_row("Cutoff", f"{retention.cutoff:%Y-%m-%d %H:%M:%S}")
            elif retention.retain is not None:
                table.add_row("Retain", retention.retain)
        except FileNotFoundError:
            table.add_row("Warning", "[yellow]db.toml not found[/yellow]")
        except ValueError as e:
            table.add_row("Warning", f"[yellow]db.toml invalid: {e}[/yellow]")

        console.print(table)
    else:
        console.print("[yellow]No validated profile.[/yellow]")
        console.print("[dim]Run:[/dim] [cyan]DB_PROFILE=<name> retention-purge connect[/cyan]")

    return 0


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from db.toml.

    Reads only local TOML config -- no database calls.

    Returns:
        0 on success, 1 if db.toml not found.
    """
    try:
        config = load_db_config(_config_path(args))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    current = read_profile_lock()

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Provider")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        name_style = "bold cyan" if name == current else ""
        table.add_row(
            marker,
            f"[{name_style}]{name}[/{name_style}]" if name_style else name,
            profile.provider,
            profile.description or "",
        )

    console.print(table)

    if current:
        console.print("\n[bold green]*[/bold green] = current profile")

    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    """Show purge order, age expressions, and skipped tables."""
    return asyncio.run(_async_plan(args))


def cmd_audit(args: argparse.Namespace) -> int:
    """Show pre-flight counts per table without changing anything."""
    return asyncio.run(_async_audit(args))


def cmd_purge(args: argparse.Namespace) -> int:
    """Preview or run a purge.

    Wraps the async implementation with ``asyncio.run()``.

    Returns:
        0 success, 1 fatal, 2 partial, 130 interrupted.
    """
    return asyncio.run(_async_purge(args))


def cmd_recover(args: argparse.Namespace) -> int:
    """List staging tables or reload a table from its staging copy."""
    return asyncio.run(_async_recover(args))


# ============================================================================
# Main entry point
# ============================================================================


def _add_cutoff_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--cutoff",
        help="Absolute cutoff date/datetime (e.g., 2023-01-01); older rows are purged",
    )
    group.add_argument(
        "--retain",
        help="Relative retention period (e.g., 730d, 18m, 2y)",
    )
    parser.add_argument(
        "--tables",
        help="Comma-separated list of tables to consider (default: all)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all commands."""
    parser = argparse.ArgumentParser(
        prog="retention-purge",
        description="Dependency-aware retention purge for PostgreSQL",
    )

    # Global options
    parser.add_argument(
        "--env-prefix",
        default="",
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix APP_ reads APP_DB_PROFILE)"
        ),
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to db.toml (default: ./db.toml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # connect command
    p_connect = subparsers.add_parser(
        "connect",
        help="Connect to database and validate the purge plan",
    )
    p_connect.set_defaults(func=cmd_connect)

    # status command
    p_status = subparsers.add_parser(
        "status",
        help="Show current connection status",
    )
    p_status.set_defaults(func=cmd_status)

    # profiles command
    p_profiles = subparsers.add_parser(
        "profiles",
        help="List available profiles",
    )
    p_profiles.set_defaults(func=cmd_profiles)

    # plan command
    p_plan = subparsers.add_parser(
        "plan",
        help="Show purge order and per-table date expressions",
    )
    p_plan.add_argument(
        "--tables",
        help="Comma-separated list of tables to consider (default: all)",
    )
    p_plan.set_defaults(func=cmd_plan)

    # audit command
    p_audit = subparsers.add_parser(
        "audit",
        help="Pre-flight counts, age range, and strategy per table (read-only)",
    )
    _add_cutoff_options(p_audit)
    p_audit.set_defaults(func=cmd_audit)

    # purge command
    p_purge = subparsers.add_parser(
        "purge",
        help="Preview or run a purge",
    )
    _add_cutoff_options(p_purge)
    p_purge.add_argument(
        "--batch-size",
        type=_batch_size_arg,
        default=None,
        help="Rows per delete batch, or 'auto' to benchmark",
    )
    p_purge.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without making changes",
    )
    p_purge.add_argument(
        "--confirm",
        action="store_true",
        help="Actually delete rows (required for non-dry-run)",
    )
    p_purge.set_defaults(func=cmd_purge)

    # recover command
    p_recover = subparsers.add_parser(
        "recover",
        help="List or recover staging tables left by interrupted swaps",
    )
    p_recover.add_argument(
        "--list",
        action="store_true",
        help="List staging tables and their provenance",
    )
    p_recover.add_argument(
        "--table",
        help="Table to reload from its staging copy",
    )
    p_recover.add_argument(
        "--confirm",
        action="store_true",
        help="Actually reload the table",
    )
    p_recover.set_defaults(func=cmd_recover)

    return parser


def main() -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = build_parser()
    args = parser.parse_args()
    _configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
