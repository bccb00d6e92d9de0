"""Report models for purge runs.

Usage:
    report = await run_purge(client, schema, settings, cutoff)
    print(report.format_report())
    sys.exit(report.outcome.exit_code)
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

Strategy = Literal["batch", "swap", "none"]
TableStatus = Literal["purged", "preview", "skipped", "failed", "interrupted"]


class RunOutcome(str, Enum):
    """Overall result of a run, mapped to a process exit code."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FATAL = "fatal"
    INTERRUPTED = "interrupted"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.FATAL: 1,
    RunOutcome.PARTIAL: 2,
    RunOutcome.INTERRUPTED: 130,
}


class TableReport(BaseModel):
    """Per-table counts and result."""

    table: str
    expression: str = ""
    rows_before: int = 0
    rows_matched: int = 0
    rows_deleted: int = 0
    rows_after: int | None = None
    elapsed_seconds: float = 0.0
    batches: int = 0
    strategy: Strategy = "none"
    status: TableStatus = "skipped"
    reason: str | None = None
    oldest: Any = None
    newest: Any = None
    preview_rows: list[dict] = Field(default_factory=list)

    @property
    def deletion_ratio(self) -> float:
        """Rows deleted as a share of rows before (0.0 for an empty table)."""
        return self.rows_deleted / self.rows_before if self.rows_before else 0.0

    @property
    def matched_ratio(self) -> float:
        return self.rows_matched / self.rows_before if self.rows_before else 0.0


class BenchmarkMeasurement(BaseModel):
    batch_size: int
    rows_deleted: int
    elapsed_seconds: float
    batches: int

    @property
    def rows_per_second(self) -> float:
        return self.rows_deleted / self.elapsed_seconds if self.elapsed_seconds > 0 else 0.0


class BenchmarkResult(BaseModel):
    """Outcome of the batch-size benchmark on one leaf table."""

    table: str
    best_size: int
    measurements: list[BenchmarkMeasurement] = Field(default_factory=list)
    skipped: list[int] = Field(default_factory=list)
    rows_deleted: int = 0
    estimated_seconds: float | None = None


class MaintenanceAction(BaseModel):
    table: str
    action: Literal["reindex", "vacuum", "analyze"]
    ratio: float = 0.0
    elapsed_seconds: float = 0.0


class RunReport(BaseModel):
    """Everything a run did, in plan order."""

    cutoff: datetime
    dry_run: bool = False
    outcome: RunOutcome = RunOutcome.SUCCESS
    order: list[str] = Field(default_factory=list)
    tables: list[TableReport] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)  # table -> reason, outside the plan
    batch_size: int | None = None
    benchmark: BenchmarkResult | None = None
    maintenance: list[MaintenanceAction] = Field(default_factory=list)
    error: str | None = None
    elapsed_seconds: float = 0.0

    def table(self, name: str) -> TableReport | None:
        """Return the report for ``name``, or None."""
        for report in self.tables:
            if report.table == name:
                return report
        return None

    @property
    def rows_deleted(self) -> int:
        return sum(t.rows_deleted for t in self.tables)

    def format_report(self) -> str:
        """Format the run as a human-readable summary."""
        mode = "Dry run" if self.dry_run else "Purge"
        lines = [
            f"{mode} {self.outcome.value}: cutoff {self.cutoff.isoformat(sep=' ')}, "
            f"{self.rows_deleted} rows deleted in {self.elapsed_seconds:.1f}s"
        ]
        if self.error:
            lines.append(f"  Error: {self.error}")
        if self.batch_size is not None:
            source = f" (benchmarked on {self.benchmark.table})" if self.benchmark else ""
            lines.append(f"  Batch size: {self.batch_size}{source}")

        for t in self.tables:
            if t.status == "preview":
                lines.append(f"  {t.table}: {t.rows_matched} of {t.rows_before} rows would be deleted")
            elif t.status == "purged":
                lines.append(
                    f"  {t.table}: {t.rows_deleted} deleted via {t.strategy}, "
                    f"{t.rows_after if t.rows_after is not None else '?'} remain ({t.elapsed_seconds:.1f}s)"
                )
            else:
                reason = f" ({t.reason})" if t.reason else ""
                lines.append(f"  {t.table}: {t.status}{reason}")

        if self.skipped:
            lines.append(f"\n  Skipped tables ({len(self.skipped)}):")
            for table, reason in sorted(self.skipped.items()):
                lines.append(f"    - {table}: {reason}")

        if self.maintenance:
            lines.append("\n  Maintenance:")
            for action in self.maintenance:
                lines.append(f"    - {action.table}: {action.action}")
        return "\n".join(lines)
