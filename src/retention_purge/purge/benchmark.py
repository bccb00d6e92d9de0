"""Batch-size benchmark.

Finds a good batch size by running real delete batches of increasing size
against one table and measuring throughput.  Only a leaf table (nothing in
the schema references it) is used, so purging part of it before the plan
walk cannot break dependency order.  The rows deleted here are real and
are credited to that table's report.

Usage:
    target = pick_benchmark_target(plan, schema, backlogs, settings.benchmark.min_backlog)
    result = await run_benchmark(client, target, cutoff, settings.benchmark)
    batch_size = result.best_size if result else settings.batch_size_fallback
"""

import logging
import time
from datetime import datetime

from retention_purge.adapters.base import DatabaseClient
from retention_purge.config.models import BenchmarkSettings
from retention_purge.purge.context import RunContext
from retention_purge.purge.planner import PurgePlan
from retention_purge.purge.predicate import TableNode
from retention_purge.purge.report import BenchmarkMeasurement, BenchmarkResult
from retention_purge.schema.models import DatabaseSchema

logger = logging.getLogger(__name__)

# Consecutive measured sizes without a new best rate before giving up
MAX_STALE_SIZES = 2


def pick_benchmark_target(
    plan: PurgePlan,
    schema: DatabaseSchema,
    backlogs: dict[str, int],
    min_backlog: int,
) -> TableNode | None:
    """Leaf table with the largest backlog, if it has at least ``min_backlog``."""
    best: TableNode | None = None
    for node in plan.nodes:
        backlog = backlogs.get(node.name, 0)
        if not schema.is_leaf(node.name) or backlog < min_backlog:
            continue
        if best is None or backlog > backlogs[best.name]:
            best = node
    return best


async def run_benchmark(
    client: DatabaseClient,
    node: TableNode,
    cutoff: datetime,
    settings: BenchmarkSettings,
    *,
    context: RunContext | None = None,
) -> BenchmarkResult | None:
    """Measure delete throughput for each candidate size on ``node``.

    Sizes run in ascending order, ``trial_batches`` batches each.  A size
    is skipped when nothing is left to delete, or when fewer rows remain
    than the previous candidate size: the previous size already drained
    more than what is left, so a trial would only time a short tail batch.
    A size larger than the backlog is still measured while the backlog
    covers the previous size, so that a backlog of 25000 with sizes
    10000/50000/100000 yields two measurements rather than one.  The
    trade-off is that the largest measured size may run a partial batch.
    The run stops after ``MAX_STALE_SIZES`` consecutive measurements fail
    to beat the best rate.

    Returns:
        ``BenchmarkResult``, or None if no size could be measured.
    """
    measurements: list[BenchmarkMeasurement] = []
    skipped: list[int] = []
    best: BenchmarkMeasurement | None = None
    previous_size: int | None = None
    stale = 0

    logger.info("Benchmarking batch sizes on %s", node.name)
    for size in settings.sizes:
        if context is not None and context.stop_requested:
            break

        remaining = await client.count_matching(node, cutoff)
        if remaining == 0 or (previous_size is not None and remaining < previous_size):
            logger.info("Benchmark: skipping size %d (%d rows left)", size, remaining)
            skipped.append(size)
            previous_size = size
            continue
        previous_size = size

        deleted = 0
        batches = 0
        started = time.monotonic()
        for _ in range(settings.trial_batches):
            rows = await client.delete_batch(node, cutoff, size)
            if rows == 0:
                break
            await client.checkpoint()
            deleted += rows
            batches += 1
        elapsed = time.monotonic() - started

        if batches == 0:
            skipped.append(size)
            continue
        if context is not None:
            context.mark_modified(node.name)

        measurement = BenchmarkMeasurement(
            batch_size=size, rows_deleted=deleted, elapsed_seconds=elapsed, batches=batches
        )
        measurements.append(measurement)
        logger.info(
            "Benchmark: size %d deleted %d rows in %.2fs (%.0f rows/sec)",
            size,
            deleted,
            elapsed,
            measurement.rows_per_second,
        )

        if best is None or measurement.rows_per_second > best.rows_per_second:
            best = measurement
            stale = 0
        else:
            stale += 1
            if stale >= MAX_STALE_SIZES:
                logger.info("Benchmark: no improvement for %d sizes, stopping", stale)
                break

    if best is None:
        return None

    remaining = await client.count_matching(node, cutoff)
    rate = best.rows_per_second
    result = BenchmarkResult(
        table=node.name,
        best_size=best.batch_size,
        measurements=measurements,
        skipped=skipped,
        rows_deleted=sum(m.rows_deleted for m in measurements),
        estimated_seconds=remaining / rate if rate > 0 else None,
    )
    logger.info("Benchmark: best batch size %d (%.0f rows/sec)", result.best_size, rate)
    return result
