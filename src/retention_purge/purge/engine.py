"""Purge run orchestration.

``run_purge`` ties the pieces together: resolve and plan, pre-flight
counts, optional dry run, then (inside a ``RunContext``) support indexes,
batch-size benchmark, the plan walk with per-table strategy choice, and
finally maintenance and post-counts.

Failure handling during the walk:

- ``TransientPurgeError`` or any other database error on a table marks it
  ``failed`` and skips every table downstream of it; the rest continue.
- The same holds for the batch-size benchmark: a failure there fails its
  target table and the run continues with ``batch_size_fallback``.
  Support indexes that cannot be created are logged and skipped.
- ``SwapInterruptedError``, ``VerificationError`` and
  ``StagingConflictError`` are fatal: the walk stops and the staging
  artifact stays for ``recover``.
- Errors found before anything is mutated (configuration, staging
  leftovers) are raised to the caller.

Usage:
    from retention_purge.purge.engine import run_purge

    report = await run_purge(client, schema, settings, cutoff)
    print(report.format_report())
"""

import logging
import time
from datetime import datetime

from retention_purge.adapters.base import DatabaseClient
from retention_purge.config.models import RetentionSettings, SwapSettings
from retention_purge.errors import (
    StagingConflictError,
    SwapInterruptedError,
    TransientPurgeError,
    VerificationError,
)
from retention_purge.purge.benchmark import pick_benchmark_target, run_benchmark
from retention_purge.purge.context import RunContext
from retention_purge.purge.executor import purge_table
from retention_purge.purge.finalizer import finalize
from retention_purge.purge.indexes import create_support_indexes
from retention_purge.purge.planner import PurgePlan, build_plan
from retention_purge.purge.predicate import TableNode, resolve_nodes
from retention_purge.purge.report import RunOutcome, RunReport, Strategy, TableReport
from retention_purge.purge.swap import staging_name, swap_table
from retention_purge.schema.models import DatabaseSchema

logger = logging.getLogger(__name__)

FATAL_ERRORS = (SwapInterruptedError, VerificationError, StagingConflictError)


def plan_purge(schema: DatabaseSchema, settings: RetentionSettings) -> PurgePlan:
    """Resolve predicates and order the tables.

    Raises:
        ConfigurationError: On an invalid override, join rule, or cycle.
    """
    plan = build_plan(resolve_nodes(schema, settings), schema)
    logger.info("Purge order: %s", " -> ".join(plan.order) if plan.order else "(no tables)")
    return plan


def choose_strategy(rows_before: int, matched: int, settings: SwapSettings) -> Strategy:
    """Swap when most of a large table goes, batch otherwise."""
    if matched <= 0:
        return "none"
    if (
        settings.enabled
        and rows_before >= settings.min_rows
        and matched / rows_before >= settings.threshold
    ):
        return "swap"
    return "batch"


async def check_staging_leftovers(client: DatabaseClient, plan: PurgePlan, prefix: str) -> None:
    """Refuse to run while a planned table has a staging artifact.

    Raises:
        StagingConflictError: Naming the tables to recover first.
    """
    existing = set(await client.list_tables(prefix))
    blocked = [node.name for node in plan.nodes if staging_name(node.name, prefix) in existing]
    if blocked:
        raise StagingConflictError(
            f"Staging tables from an interrupted swap exist for: {', '.join(blocked)}. "
            f"Run 'retention-purge recover --table <name> --confirm' first."
        )


async def preflight(
    client: DatabaseClient,
    plan: PurgePlan,
    cutoff: datetime,
    settings: RetentionSettings,
) -> list[TableReport]:
    """Read-only counts, age range, and likely strategy for every planned table."""
    reports = []
    for node in plan.nodes:
        rows_before = await client.count_rows(node.name)
        matched = await client.count_matching(node, cutoff)
        oldest, newest = await client.age_range(node)
        reports.append(
            TableReport(
                table=node.name,
                expression=node.expression.describe(),
                rows_before=rows_before,
                rows_matched=matched,
                oldest=oldest,
                newest=newest,
                strategy=choose_strategy(rows_before, matched, settings.swap),
            )
        )
        logger.debug("%s: %d of %d rows match", node.name, matched, rows_before)
    return reports


async def _resolve_batch_size(
    client: DatabaseClient,
    plan: PurgePlan,
    schema: DatabaseSchema,
    cutoff: datetime,
    settings: RetentionSettings,
    reports: dict[str, TableReport],
    report: RunReport,
    context: RunContext,
) -> int:
    if settings.batch_size != "auto":
        return settings.batch_size

    backlogs = {name: r.rows_matched for name, r in reports.items()}
    target = pick_benchmark_target(plan, schema, backlogs, settings.benchmark.min_backlog)
    if target is None:
        logger.info(
            "No leaf table with %d+ rows to purge; using batch size %d",
            settings.benchmark.min_backlog,
            settings.batch_size_fallback,
        )
        return settings.batch_size_fallback

    credited = reports[target.name]
    try:
        result = await run_benchmark(client, target, cutoff, settings.benchmark, context=context)
    except Exception as e:
        logger.error(
            "%s: benchmark failed, using batch size %d: %s",
            target.name,
            settings.batch_size_fallback,
            e,
        )
        credited.strategy = "batch"
        credited.status = "failed"
        credited.reason = str(e)
        context.mark_modified(target.name)
        return settings.batch_size_fallback
    if result is None:
        return settings.batch_size_fallback

    report.benchmark = result
    credited.rows_deleted += result.rows_deleted
    credited.batches += sum(m.batches for m in result.measurements)
    credited.strategy = "batch"
    return result.best_size


async def _purge_node(
    client: DatabaseClient,
    node: TableNode,
    schema: DatabaseSchema,
    cutoff: datetime,
    batch_size: int,
    settings: RetentionSettings,
    table_report: TableReport,
    context: RunContext,
) -> None:
    """Purge one table with the strategy its current counts call for."""
    started = time.monotonic()
    rows_now = await client.count_rows(node.name)
    matched = await client.count_matching(node, cutoff)
    strategy = choose_strategy(rows_now, matched, settings.swap)

    if strategy == "swap":
        logger.info("%s: %d of %d rows aged, using swap", node.name, matched, rows_now)
        table_report.strategy = "swap"
        result = await swap_table(
            client,
            node,
            schema,
            cutoff,
            prefix=settings.staging_prefix,
            rows_before=rows_now,
        )
        table_report.rows_deleted += result.rows_deleted
        context.mark_modified(node.name)
    elif strategy == "batch":
        logger.info("%s: %d of %d rows aged, batches of %d", node.name, matched, rows_now, batch_size)
        table_report.strategy = "batch"
        already_deleted = table_report.rows_deleted

        def on_batch(table: str, rows: int, total: int) -> None:
            table_report.rows_deleted = already_deleted + total
            context.mark_modified(table)

        result = await purge_table(
            client,
            node,
            cutoff,
            batch_size,
            context=context,
            batch_delay=settings.batch_delay,
            on_batch=on_batch,
        )
        table_report.batches += result.batches
        if result.interrupted:
            table_report.status = "interrupted"
            table_report.reason = "stop requested"
    else:
        logger.info("%s: nothing to purge", node.name)

    table_report.elapsed_seconds += time.monotonic() - started
    if table_report.status != "interrupted":
        table_report.status = "purged"


def _outcome(report: RunReport, fatal: bool, interrupted: bool) -> RunOutcome:
    if fatal:
        return RunOutcome.FATAL
    if interrupted:
        return RunOutcome.INTERRUPTED
    if any(t.status == "failed" for t in report.tables):
        return RunOutcome.PARTIAL
    return RunOutcome.SUCCESS


async def run_purge(
    client: DatabaseClient,
    schema: DatabaseSchema,
    settings: RetentionSettings,
    cutoff: datetime,
    *,
    context: RunContext | None = None,
    dry_run: bool | None = None,
) -> RunReport:
    """Purge every planned table of rows older than ``cutoff``.

    Args:
        client: Database client bound to ``schema``.
        schema: Introspected schema.
        settings: Retention settings.
        cutoff: Absolute cutoff; rows strictly older are eligible.
        context: Run context to use (not yet entered).  Pass one in to be
            able to call ``request_stop()`` from a signal handler.
        dry_run: Override ``settings.dry_run``.

    Returns:
        ``RunReport``; ``outcome`` tells success, partial, fatal, or
        interrupted.

    Raises:
        ConfigurationError: Invalid configuration or FK cycle.
        StagingConflictError: A planned table has a staging leftover.
    """
    started = time.monotonic()
    dry_run = settings.dry_run if dry_run is None else dry_run
    plan = plan_purge(schema, settings)
    await check_staging_leftovers(client, plan, settings.staging_prefix)

    report = RunReport(cutoff=cutoff, dry_run=dry_run, order=plan.order, skipped=dict(plan.skipped))
    report.tables = await preflight(client, plan, cutoff, settings)
    reports = {t.table: t for t in report.tables}

    if dry_run:
        for node in plan.nodes:
            table_report = reports[node.name]
            table_report.status = "preview"
            if settings.preview_limit > 0 and table_report.rows_matched > 0:
                table_report.preview_rows = await client.preview(node, cutoff, settings.preview_limit)
        report.elapsed_seconds = time.monotonic() - started
        return report

    if context is None:
        context = RunContext(client, settings.durability)

    fatal = False
    async with context:
        if settings.support_indexes:
            await create_support_indexes(client, plan, schema, context)

        batch_size = await _resolve_batch_size(
            client, plan, schema, cutoff, settings, reports, report, context
        )
        report.batch_size = batch_size

        blocked: dict[str, str] = {}
        for table_report in report.tables:
            if table_report.status == "failed":
                for parent in plan.downstream_of(table_report.table):
                    blocked.setdefault(parent, table_report.table)

        for node in plan.nodes:
            table_report = reports[node.name]
            if table_report.status == "failed":
                continue
            if fatal:
                table_report.status = "skipped"
                table_report.reason = "run aborted"
                continue
            if context.stop_requested:
                table_report.status = "skipped"
                table_report.reason = "run interrupted"
                continue
            if node.name in blocked:
                table_report.status = "skipped"
                table_report.reason = f"depends on failed table {blocked[node.name]}"
                logger.warning("Skipping %s: %s", node.name, table_report.reason)
                continue

            try:
                await _purge_node(
                    client, node, schema, cutoff, batch_size, settings, table_report, context
                )
            except FATAL_ERRORS as e:
                logger.error("%s: %s", node.name, e)
                table_report.status = "failed"
                table_report.reason = str(e)
                report.error = str(e)
                fatal = True
            except TransientPurgeError as e:
                logger.error("%s: transient failure, will retry on next run: %s", node.name, e)
                table_report.status = "failed"
                table_report.reason = str(e)
            except Exception as e:
                logger.error("%s: purge failed: %s", node.name, e)
                table_report.status = "failed"
                table_report.reason = str(e)

            if table_report.status == "failed" and not fatal:
                for parent in plan.downstream_of(node.name):
                    blocked.setdefault(parent, node.name)

    interrupted = any(
        t.status == "interrupted" or t.reason == "run interrupted" for t in report.tables
    )
    report.outcome = _outcome(report, fatal, interrupted)

    if not fatal:
        if not interrupted:
            report.maintenance = await finalize(client, report.tables, settings.maintenance)
        for table_report in report.tables:
            if table_report.status in ("purged", "interrupted"):
                table_report.rows_after = await client.count_rows(table_report.table)

    report.elapsed_seconds = time.monotonic() - started
    logger.info(
        "Run %s: %d rows deleted in %.1fs",
        report.outcome.value,
        report.rows_deleted,
        report.elapsed_seconds,
    )
    return report
