"""Batch purge executor.

Deletes qualifying rows in bounded batches, forcing a checkpoint after
every non-empty batch, until a batch comes back empty.  No cursor is
stored: every batch re-evaluates the predicate against live rows, so an
interrupted purge is resumed by simply running it again.

Usage:
    result = await purge_table(client, node, cutoff, batch_size=50000)
    print(f"{result.rows_deleted} rows in {result.elapsed:.1f}s")
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from retention_purge.adapters.base import DatabaseClient
from retention_purge.purge.context import RunContext
from retention_purge.purge.predicate import TableNode

logger = logging.getLogger(__name__)


@dataclass
class BatchPurgeResult:
    """Outcome of ``purge_table``."""

    rows_deleted: int = 0
    elapsed: float = 0.0
    batches: int = 0
    interrupted: bool = False

    @property
    def rows_per_second(self) -> float:
        return self.rows_deleted / self.elapsed if self.elapsed > 0 else 0.0


async def purge_table(
    client: DatabaseClient,
    node: TableNode,
    cutoff: datetime,
    batch_size: int,
    *,
    context: RunContext | None = None,
    batch_delay: float = 0.0,
    on_batch: Callable[[str, int, int], None] | None = None,
) -> BatchPurgeResult:
    """Delete every row of ``node`` that matches its predicate.

    Args:
        client: Database client.
        node: Table to purge.
        cutoff: Rows strictly older than this are eligible.
        batch_size: Maximum rows per delete transaction.
        context: Run context; its stop flag is checked between batches.
        batch_delay: Seconds to sleep between batches (lets replicas and
            other sessions catch up).
        on_batch: Optional callback ``(table, batch_rows, total_rows)``
            invoked after each non-empty batch.

    Returns:
        ``BatchPurgeResult`` with rows deleted, elapsed seconds, batch count,
        and whether the loop stopped on request.

    Raises:
        TransientPurgeError: Propagated from the client; rows deleted by
            earlier batches stay deleted.
    """
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")

    result = BatchPurgeResult()
    started = time.monotonic()

    while True:
        batch_started = time.monotonic()
        deleted = await client.delete_batch(node, cutoff, batch_size)
        if deleted == 0:
            break

        await client.checkpoint()
        result.batches += 1
        result.rows_deleted += deleted

        batch_elapsed = time.monotonic() - batch_started
        rate = deleted / batch_elapsed if batch_elapsed > 0 else 0.0
        logger.info(
            "%s: batch %d deleted %d rows (total %d, %.0f rows/sec)",
            node.name,
            result.batches,
            deleted,
            result.rows_deleted,
            rate,
        )
        if on_batch is not None:
            on_batch(node.name, deleted, result.rows_deleted)

        if context is not None and context.stop_requested:
            result.interrupted = True
            break
        if batch_delay > 0:
            await asyncio.sleep(batch_delay)

    result.elapsed = time.monotonic() - started
    return result
