"""Temporary support indexes for purge predicates.

Batch deletes scan by date column and probe referencing tables through
the guard subqueries.  Without an index whose leading key is the filtered
column each batch becomes a sequential scan, so the run creates btree
indexes named ``purge_ix_<table>_<cols>`` for the duration and drops them
on exit through the run context.
"""

import logging

from retention_purge.adapters.base import DatabaseClient
from retention_purge.purge.context import RunContext
from retention_purge.purge.planner import PurgePlan
from retention_purge.purge.predicate import DateExpression, ParentAge
from retention_purge.schema.models import DatabaseSchema, IndexSchema
from retention_purge.sql import create_support_index_sql, truncate_identifier

logger = logging.getLogger(__name__)

SUPPORT_INDEX_PREFIX = "purge_ix_"


def support_index_name(table: str, columns: list[str]) -> str:
    return truncate_identifier(f"{SUPPORT_INDEX_PREFIX}{table}_{'_'.join(columns)}")


def _leading_columns(schema: DatabaseSchema, table: str) -> set[str]:
    """Columns that already lead an index or key constraint on ``table``."""
    table_schema = schema.tables.get(table)
    if table_schema is None:
        return set()
    leading = {
        ix.columns[0]
        for ix in table_schema.indexes
        if ix.columns and not ix.name.startswith(SUPPORT_INDEX_PREFIX)
    }
    leading.update(c.columns[0] for c in table_schema.key_constraints if c.columns)
    return leading


def _expression_targets(table: str, expression: DateExpression) -> list[tuple[str, tuple[str, ...]]]:
    if isinstance(expression, ParentAge):
        return [(table, expression.child_columns)] + _expression_targets(
            expression.parent_table, expression.parent_expression
        )
    return [(table, (column,)) for column in expression.own_columns]


def plan_support_indexes(plan: PurgePlan, schema: DatabaseSchema) -> list[IndexSchema]:
    """Indexes the plan's predicates would benefit from and do not have.

    Candidates are each node's date columns (following join chains), the
    child columns of join edges, and the child columns of guard edges.
    """
    targets: list[tuple[str, tuple[str, ...]]] = []
    for node in plan.nodes:
        targets.extend(_expression_targets(node.name, node.expression))
        for edge in node.guards:
            targets.append((edge.child_table, tuple(edge.child_columns)))

    wanted: list[IndexSchema] = []
    seen: set[tuple[str, tuple[str, ...]]] = set()
    for table, columns in targets:
        if (table, columns) in seen or columns[0] in _leading_columns(schema, table):
            continue
        seen.add((table, columns))
        name = support_index_name(table, list(columns))
        wanted.append(
            IndexSchema(
                name=name,
                table=table,
                columns=list(columns),
                definition=create_support_index_sql(schema.schema_name, name, table, list(columns)),
            )
        )
    return wanted


async def drop_stale_support_indexes(client: DatabaseClient, schema: DatabaseSchema) -> list[str]:
    """Drop support indexes left behind by an earlier, killed run."""
    dropped = []
    for table in schema.tables.values():
        for index in table.indexes:
            if index.name.startswith(SUPPORT_INDEX_PREFIX):
                logger.info("Dropping leftover support index %s", index.name)
                try:
                    await client.drop_index(index.name)
                except Exception as e:
                    logger.warning("Could not drop leftover support index %s: %s", index.name, e)
                    continue
                dropped.append(index.name)
    return dropped


async def create_support_indexes(
    client: DatabaseClient,
    plan: PurgePlan,
    schema: DatabaseSchema,
    context: RunContext,
) -> list[IndexSchema]:
    """Create missing support indexes and register their removal on ``context``.

    An index that cannot be created is logged and skipped; the purge
    still works without it, only slower.

    Returns:
        The indexes that were created.
    """
    await drop_stale_support_indexes(client, schema)

    created = []
    for index in plan_support_indexes(plan, schema):
        logger.info("Creating support index %s on %s (%s)", index.name, index.table, ", ".join(index.columns))
        try:
            await client.create_index(index)
        except Exception as e:
            logger.warning("Could not create support index %s on %s: %s", index.name, index.table, e)
            continue
        context.defer(client.drop_index, index.name)
        created.append(index)
    return created
