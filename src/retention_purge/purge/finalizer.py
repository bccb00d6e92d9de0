"""Post-purge maintenance.

Heavy deletes leave dead tuples, bloated indexes, and stale planner
statistics behind.  The finalizer picks one action per modified table from
the share of rows deleted:

    ratio >= reindex_threshold   REINDEX TABLE, then ANALYZE
    ratio >= vacuum_threshold    VACUUM (ANALYZE)
    otherwise                    ANALYZE

Swapped tables only need ANALYZE; their indexes were just rebuilt.
"""

import logging
import time

from retention_purge.adapters.base import DatabaseClient
from retention_purge.config.models import MaintenanceSettings
from retention_purge.purge.report import MaintenanceAction, TableReport

logger = logging.getLogger(__name__)


def maintenance_action(ratio: float, settings: MaintenanceSettings) -> str:
    """Action name for a batch-purged table with the given deletion ratio."""
    if ratio >= settings.reindex_threshold:
        return "reindex"
    if ratio >= settings.vacuum_threshold:
        return "vacuum"
    return "analyze"


async def finalize(
    client: DatabaseClient,
    reports: list[TableReport],
    settings: MaintenanceSettings,
) -> list[MaintenanceAction]:
    """Run maintenance on every table that lost rows.

    A failed maintenance statement is logged and does not stop the others;
    the purge itself already committed.

    Returns:
        Actions that completed, in plan order.
    """
    if not settings.enabled:
        logger.info("Maintenance disabled")
        return []

    actions: list[MaintenanceAction] = []
    for report in reports:
        if report.rows_deleted <= 0:
            continue

        ratio = report.deletion_ratio
        action = "analyze" if report.strategy == "swap" else maintenance_action(ratio, settings)
        started = time.monotonic()
        logger.info("%s: %s (%.0f%% deleted)", report.table, action, ratio * 100)
        try:
            if action == "reindex":
                await client.reindex(report.table)
                await client.analyze(report.table)
            elif action == "vacuum":
                await client.vacuum(report.table)
            else:
                await client.analyze(report.table)
        except Exception as e:
            logger.error("%s: %s failed: %s", report.table, action, e)
            continue

        actions.append(
            MaintenanceAction(
                table=report.table,
                action=action,
                ratio=ratio,
                elapsed_seconds=time.monotonic() - started,
            )
        )
    return actions
