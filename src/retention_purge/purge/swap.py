"""Copy-keep-and-swap purge strategy, and recovery from its staging table.

When most of a table is being purged, deleting row by row costs far more
than copying the small surviving set aside and reloading it.  The strategy
runs through fixed states:

    Stage    copy keep rows into a logged staging table and record
             provenance (keep count plus every definition about to be
             detached) in the staging table's COMMENT
    Detach   drop inbound/outbound foreign keys, secondary indexes, and
             key constraints
    Swap     TRUNCATE the table and bulk-reload it from staging
    Rebuild  recreate key constraints, indexes, then foreign keys with
             their original cascade and trust semantics
    Verify   live row count must equal the staged keep count
    Commit   drop the staging table

Between Detach and Rebuild the table has no integrity constraints, so the
affected tables need exclusive access for the duration.  Any failure after
Stage leaves the staging table in place; the only way forward is
``recover_from_staging``, never re-running the swap.

Usage:
    result = await swap_table(client, node, schema, cutoff)

    # after an interrupted swap
    await recover_from_staging(client, schema, "events")
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field, ValidationError

from retention_purge.adapters.base import DatabaseClient
from retention_purge.errors import StagingConflictError, SwapInterruptedError, VerificationError
from retention_purge.purge.indexes import SUPPORT_INDEX_PREFIX
from retention_purge.purge.predicate import TableNode
from retention_purge.schema.models import DatabaseSchema, ForeignKeyEdge, IndexSchema, KeyConstraint
from retention_purge.sql import truncate_identifier

logger = logging.getLogger(__name__)

DEFAULT_STAGING_PREFIX = "purge_keep_"


class StagingProvenance(BaseModel):
    """Record stored with a staging table so it can be verified or recovered.

    Serialized as JSON into the staging table's COMMENT, so it survives a
    crashed process and is dropped together with the artifact.
    """

    source_table: str
    staging_table: str
    keep_count: int
    cutoff: datetime
    created_at: datetime
    foreign_keys: list[ForeignKeyEdge] = Field(default_factory=list)
    key_constraints: list[KeyConstraint] = Field(default_factory=list)
    indexes: list[IndexSchema] = Field(default_factory=list)


@dataclass
class SwapResult:
    table: str
    staging_table: str
    rows_before: int
    keep_count: int
    elapsed: float

    @property
    def rows_deleted(self) -> int:
        return self.rows_before - self.keep_count


@dataclass
class RecoveryResult:
    table: str
    staging_table: str
    rows_restored: int
    elapsed: float


def staging_name(table: str, prefix: str = DEFAULT_STAGING_PREFIX) -> str:
    """Name of the staging table for ``table``."""
    return truncate_identifier(f"{prefix}{table}")


def _detachable_foreign_keys(schema: DatabaseSchema, table: str) -> list[ForeignKeyEdge]:
    """Foreign keys declared on or referencing ``table``, each listed once."""
    seen: set[tuple[str, str]] = set()
    edges = []
    for fk in schema.outbound(table) + schema.inbound(table):
        key = (fk.child_table, fk.name)
        if key not in seen:
            seen.add(key)
            edges.append(fk)
    return edges


async def _detach(client: DatabaseClient, provenance: StagingProvenance) -> None:
    for fk in provenance.foreign_keys:
        logger.debug("Dropping foreign key %s on %s", fk.name, fk.child_table)
        await client.drop_constraint(fk.child_table, fk.name)
    for index in provenance.indexes:
        await client.drop_index(index.name)
    for constraint in provenance.key_constraints:
        await client.drop_constraint(constraint.table, constraint.name)


async def _rebuild(
    client: DatabaseClient, provenance: StagingProvenance, only_missing: bool = False
) -> None:
    """Recreate recorded constraints and indexes.

    Key constraints come first (inbound foreign keys need the referenced
    key), then indexes, then foreign keys.  With ``only_missing`` each
    object is checked first, which makes recovery safe to repeat.
    """
    key_constraints = sorted(
        provenance.key_constraints, key=lambda c: (c.constraint_type != "PRIMARY KEY", c.name)
    )
    for constraint in key_constraints:
        if only_missing and await client.constraint_exists(constraint.table, constraint.name):
            continue
        await client.add_constraint(constraint.table, constraint.name, constraint.definition)

    for index in provenance.indexes:
        if only_missing and await client.index_exists(index.name):
            continue
        await client.create_index(index)

    for fk in provenance.foreign_keys:
        if only_missing and await client.constraint_exists(fk.child_table, fk.name):
            continue
        await client.add_constraint(fk.child_table, fk.name, fk.definition, fk.validated)


async def swap_table(
    client: DatabaseClient,
    node: TableNode,
    schema: DatabaseSchema,
    cutoff: datetime,
    *,
    prefix: str = DEFAULT_STAGING_PREFIX,
    rows_before: int | None = None,
) -> SwapResult:
    """Purge ``node`` by staging its keep rows and reloading the table.

    Args:
        client: Database client.
        node: Table to purge.
        schema: Introspected schema (source of the definitions to detach).
        cutoff: Rows strictly older than this are eligible.
        prefix: Staging table name prefix.
        rows_before: Pre-flight row count, if already known.

    Returns:
        ``SwapResult`` with before/keep counts.

    Raises:
        StagingConflictError: A staging table from an earlier run exists.
        SwapInterruptedError: Detach, swap, or rebuild failed; the staging
            table was kept for ``recover_from_staging``.
        VerificationError: Row count after the swap does not match the
            staged keep count; the staging table was kept.
    """
    staging = staging_name(node.name, prefix)
    if await client.table_exists(staging):
        raise StagingConflictError(
            f"Staging table '{staging}' already exists for '{node.name}'. "
            f"Run: retention-purge recover --table {node.name} --confirm"
        )

    table = schema.require_table(node.name)
    started = time.monotonic()
    if rows_before is None:
        rows_before = await client.count_rows(node.name)

    # Stage
    logger.info("%s: staging keep rows into %s", node.name, staging)
    try:
        keep_count = await client.create_staging(node, cutoff, staging)
        provenance = StagingProvenance(
            source_table=node.name,
            staging_table=staging,
            keep_count=keep_count,
            cutoff=cutoff,
            created_at=datetime.now(),
            foreign_keys=_detachable_foreign_keys(schema, node.name),
            key_constraints=list(table.key_constraints),
            indexes=[ix for ix in table.indexes if not ix.name.startswith(SUPPORT_INDEX_PREFIX)],
        )
        await client.set_table_comment(staging, provenance.model_dump_json())
    except Exception:
        # Nothing detached yet and the table is untouched
        await client.drop_table(staging)
        raise
    logger.info("%s: staged %d of %d rows", node.name, keep_count, rows_before)

    state = "detach"
    try:
        await _detach(client, provenance)
        state = "swap"
        await client.truncate(node.name)
        await client.reload_from_staging(node.name, staging, table.columns)
        state = "rebuild"
        await _rebuild(client, provenance)
        state = "verify"
        actual = await client.count_rows(node.name)
    except Exception as e:
        logger.error("%s: swap failed during %s: %s", node.name, state, e)
        raise SwapInterruptedError(node.name, staging, state) from e

    if actual != keep_count:
        raise VerificationError(node.name, keep_count, actual, staging)

    # Commit
    await client.drop_table(staging)
    elapsed = time.monotonic() - started
    logger.info(
        "%s: swap complete, %d rows removed, %d kept (%.1fs)",
        node.name,
        rows_before - keep_count,
        keep_count,
        elapsed,
    )
    return SwapResult(
        table=node.name,
        staging_table=staging,
        rows_before=rows_before,
        keep_count=keep_count,
        elapsed=elapsed,
    )


async def read_provenance(client: DatabaseClient, staging: str) -> StagingProvenance:
    """Load and validate the provenance record of a staging table.

    Raises:
        StagingConflictError: If the table is missing or has no valid record.
    """
    if not await client.table_exists(staging):
        raise StagingConflictError(f"Staging table '{staging}' does not exist")
    raw = await client.get_table_comment(staging)
    if not raw:
        raise StagingConflictError(
            f"Staging table '{staging}' has no provenance record; inspect it manually"
        )
    try:
        return StagingProvenance.model_validate_json(raw)
    except ValidationError as e:
        raise StagingConflictError(f"Staging table '{staging}' has an unreadable provenance record") from e


async def recover_from_staging(
    client: DatabaseClient,
    schema: DatabaseSchema,
    table: str,
    *,
    prefix: str = DEFAULT_STAGING_PREFIX,
) -> RecoveryResult:
    """Finish an interrupted swap by reloading ``table`` from its staging copy.

    Safe to repeat: recorded foreign keys are dropped only if present, and
    constraints and indexes are recreated only if missing.

    Raises:
        StagingConflictError: No staging table, no provenance, a provenance
            record for another table, or a staging row count that does not
            match the record.
        VerificationError: The reloaded table does not hold the keep count.
    """
    staging = staging_name(table, prefix)
    provenance = await read_provenance(client, staging)
    if provenance.source_table != table:
        raise StagingConflictError(
            f"Staging table '{staging}' belongs to '{provenance.source_table}', not '{table}'"
        )

    staged = await client.count_rows(staging)
    if staged != provenance.keep_count:
        raise StagingConflictError(
            f"Staging table '{staging}' holds {staged} rows but recorded {provenance.keep_count}; "
            f"refusing to reload"
        )

    started = time.monotonic()
    columns = schema.require_table(table).columns
    logger.info("%s: recovering %d rows from %s", table, staged, staging)

    for fk in provenance.foreign_keys:
        if await client.constraint_exists(fk.child_table, fk.name):
            await client.drop_constraint(fk.child_table, fk.name)
    await client.truncate(table)
    await client.reload_from_staging(table, staging, columns)
    await _rebuild(client, provenance, only_missing=True)

    actual = await client.count_rows(table)
    if actual != provenance.keep_count:
        raise VerificationError(table, provenance.keep_count, actual, staging)

    await client.drop_table(staging)
    elapsed = time.monotonic() - started
    logger.info("%s: recovery complete (%.1fs)", table, elapsed)
    return RecoveryResult(table=table, staging_table=staging, rows_restored=actual, elapsed=elapsed)


async def list_staging_artifacts(
    client: DatabaseClient, prefix: str = DEFAULT_STAGING_PREFIX
) -> list[StagingProvenance | str]:
    """Staging tables left behind, with their provenance when readable.

    Tables whose record cannot be read are returned by name.
    """
    artifacts: list[StagingProvenance | str] = []
    for name in await client.list_tables(prefix):
        try:
            artifacts.append(await read_provenance(client, name))
        except StagingConflictError:
            artifacts.append(name)
    return artifacts
