"""Purge engine: predicates, planning, strategies, and orchestration.

Usage:
    from retention_purge.purge import run_purge, RunContext

    async with ...:
        report = await run_purge(client, schema, settings, cutoff)
"""

from retention_purge.purge.context import RunContext
from retention_purge.purge.engine import choose_strategy, plan_purge, preflight, run_purge
from retention_purge.purge.executor import BatchPurgeResult, purge_table
from retention_purge.purge.planner import PurgePlan, build_plan
from retention_purge.purge.predicate import (
    ColumnAge,
    FallbackAge,
    ParentAge,
    Resolution,
    TableNode,
    resolve_nodes,
)
from retention_purge.purge.report import (
    BenchmarkMeasurement,
    BenchmarkResult,
    MaintenanceAction,
    RunOutcome,
    RunReport,
    TableReport,
)
from retention_purge.purge.swap import (
    StagingProvenance,
    list_staging_artifacts,
    recover_from_staging,
    swap_table,
)

__all__ = [
    "run_purge",
    "plan_purge",
    "preflight",
    "choose_strategy",
    "RunContext",
    "purge_table",
    "BatchPurgeResult",
    "swap_table",
    "recover_from_staging",
    "list_staging_artifacts",
    "StagingProvenance",
    "build_plan",
    "PurgePlan",
    "resolve_nodes",
    "Resolution",
    "TableNode",
    "ColumnAge",
    "FallbackAge",
    "ParentAge",
    "RunReport",
    "TableReport",
    "RunOutcome",
    "BenchmarkResult",
    "BenchmarkMeasurement",
    "MaintenanceAction",
]
