"""Retention predicate resolution.

Decides, per table, which expression gives a row its "age", and renders the
deletion predicate used by both purge strategies.

A date expression is one of:

- ``ColumnAge``: a single nullable date column.
- ``FallbackAge``: several date columns.  A row is aged only when at least
  one of them is non-null and every non-null one is before the cutoff.
- ``ParentAge``: the child has no date of its own and is aged when the
  parent row it references is aged.  Evaluated per batch against the
  parent's current rows.

Rows whose date fields are all NULL are never aged unless the table opts in
with ``purge_null_age``.

Usage:
    from retention_purge.purge.predicate import resolve_nodes

    resolution = resolve_nodes(schema, settings)
    for name, node in resolution.nodes.items():
        print(name, node.expression.describe())
    for name, reason in resolution.skipped.items():
        print(f"skipped {name}: {reason}")
"""

import logging
from dataclasses import dataclass, field
from typing import Union

from retention_purge.config.models import (
    DEFAULT_DATE_PREFERENCE,
    UNRANKED_DATE_COLUMN,
    JoinRule,
    RetentionSettings,
    TableOverride,
)
from retention_purge.errors import ConfigurationError
from retention_purge.schema.models import ColumnSchema, DatabaseSchema, ForeignKeyEdge, TableSchema
from retention_purge.sql import qualify, quote_ident

logger = logging.getLogger(__name__)

CUTOFF_PARAM = "CAST(:cutoff AS timestamp)"


# ------------------------------------------------------------------
# Date expressions
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnAge:
    """Age taken from one date column.

    Example:
        ColumnAge("created_at").to_sql("t", "public")
        # '(t."created_at" IS NOT NULL AND t."created_at" < CAST(:cutoff AS timestamp))'
    """

    column: str
    purge_null_age: bool = False

    @property
    def own_columns(self) -> tuple[str, ...]:
        return (self.column,)

    def to_sql(self, alias: str, schema_name: str, depth: int = 0) -> str:
        col = f"{alias}.{quote_ident(self.column)}"
        if self.purge_null_age:
            return f"({col} IS NULL OR {col} < {CUTOFF_PARAM})"
        return f"({col} IS NOT NULL AND {col} < {CUTOFF_PARAM})"

    def describe(self) -> str:
        suffix = " (nulls purged)" if self.purge_null_age else ""
        return f"{self.column}{suffix}"


@dataclass(frozen=True)
class FallbackAge:
    """Age taken from several date columns, conservatively.

    ``(a IS NOT NULL OR b IS NOT NULL) AND (a IS NULL OR a < cutoff) AND
    (b IS NULL OR b < cutoff)`` -- any non-null date inside retention keeps
    the row, and a row with no known date is kept.
    """

    columns: tuple[str, ...]
    purge_null_age: bool = False

    @property
    def own_columns(self) -> tuple[str, ...]:
        return self.columns

    def to_sql(self, alias: str, schema_name: str, depth: int = 0) -> str:
        cols = [f"{alias}.{quote_ident(c)}" for c in self.columns]
        each_aged = " AND ".join(f"({c} IS NULL OR {c} < {CUTOFF_PARAM})" for c in cols)
        if self.purge_null_age:
            return f"({each_aged})"
        any_known = " OR ".join(f"{c} IS NOT NULL" for c in cols)
        return f"(({any_known}) AND {each_aged})"

    def describe(self) -> str:
        suffix = " (nulls purged)" if self.purge_null_age else ""
        return f"all non-null of ({', '.join(self.columns)}){suffix}"


@dataclass(frozen=True)
class ParentAge:
    """Age of the referenced parent row, reached through a join."""

    parent_table: str
    child_columns: tuple[str, ...]
    parent_columns: tuple[str, ...]
    parent_expression: "DateExpression"

    @property
    def own_columns(self) -> tuple[str, ...]:
        return ()

    def to_sql(self, alias: str, schema_name: str, depth: int = 0) -> str:
        parent_alias = f"p{depth + 1}"
        join = " AND ".join(
            f"{parent_alias}.{quote_ident(pc)} = {alias}.{quote_ident(cc)}"
            for cc, pc in zip(self.child_columns, self.parent_columns)
        )
        inner = self.parent_expression.to_sql(parent_alias, schema_name, depth + 1)
        return (
            f"EXISTS (SELECT 1 FROM {qualify(schema_name, self.parent_table)} AS {parent_alias} "
            f"WHERE {join} AND {inner})"
        )

    def describe(self) -> str:
        return (
            f"{self.parent_table}.{self.parent_expression.describe()} "
            f"via ({', '.join(self.child_columns)})"
        )


DateExpression = Union[ColumnAge, FallbackAge, ParentAge]


# ------------------------------------------------------------------
# Table nodes
# ------------------------------------------------------------------


@dataclass
class TableNode:
    """One purgeable table, built once per run from live metadata.

    Attributes:
        name: Table name.
        expression: Resolved date expression.
        columns: Columns in ordinal order.
        primary_key: Primary key columns (may be empty).
        guards: Inbound FK edges.  A row still referenced through any of
            them is never deleted, whatever the edge's cascade action.
    """

    name: str
    expression: DateExpression
    columns: list[ColumnSchema] = field(default_factory=list)
    primary_key: list[str] = field(default_factory=list)
    guards: list[ForeignKeyEdge] = field(default_factory=list)

    @property
    def join_parent(self) -> str | None:
        """Parent table whose age decides this table's rows, if join-based."""
        if isinstance(self.expression, ParentAge):
            return self.expression.parent_table
        return None

    def deletion_sql(self, schema_name: str, alias: str = "t") -> str:
        """Predicate selecting rows that may be deleted now."""
        parts = [self.expression.to_sql(alias, schema_name)]
        for i, edge in enumerate(self.guards, start=1):
            guard_alias = f"g{i}"
            match = " AND ".join(
                f"{guard_alias}.{quote_ident(cc)} = {alias}.{quote_ident(pc)}"
                for cc, pc in zip(edge.child_columns, edge.parent_columns)
            )
            parts.append(
                f"NOT EXISTS (SELECT 1 FROM {qualify(schema_name, edge.child_table)} "
                f"AS {guard_alias} WHERE {match})"
            )
        return " AND ".join(parts)

    def keep_sql(self, schema_name: str, alias: str = "t") -> str:
        """Complement of ``deletion_sql``: the rows a swap must preserve."""
        return f"NOT ({self.deletion_sql(schema_name, alias)})"


@dataclass
class Resolution:
    """Outcome of predicate resolution for all candidate tables."""

    nodes: dict[str, TableNode] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)


# ------------------------------------------------------------------
# Resolution
# ------------------------------------------------------------------


def _normalize(name: str) -> str:
    return name.lower().replace("_", "")


def rank_date_columns(
    columns: list[ColumnSchema],
    preference: dict[str, int] | None = None,
) -> list[ColumnSchema]:
    """Date-typed columns ordered best-first.

    Columns are ranked by the preference table (names compared
    case-insensitively, underscores ignored), then by ordinal position.
    Non-date columns are dropped even if their name matches.
    """
    ranks = {_normalize(k): v for k, v in (preference or DEFAULT_DATE_PREFERENCE).items()}
    dated = [c for c in columns if c.is_date]
    return sorted(dated, key=lambda c: (ranks.get(_normalize(c.name), UNRANKED_DATE_COLUMN), c.ordinal))


class _ExpressionResolver:
    """Resolves and memoizes expressions, following join rules recursively."""

    def __init__(self, schema: DatabaseSchema, settings: RetentionSettings):
        self._schema = schema
        self._settings = settings
        # Table -> why its join rule was dropped
        self.dropped_joins: dict[str, str] = {}
        self._joins = self._index_join_rules(settings.joins)
        self._cache: dict[str, DateExpression | None] = {}

    def _index_join_rules(self, rules: list[JoinRule]) -> dict[str, JoinRule]:
        joins: dict[str, JoinRule] = {}
        for rule in rules:
            if rule.child in joins:
                raise ConfigurationError(f"More than one join rule for table '{rule.child}'")
            if rule.child not in self._schema.tables:
                logger.warning(
                    "Join rule %s -> %s ignored: %s not found in schema %s",
                    rule.child, rule.parent, rule.child, self._schema.schema_name,
                )
                self.dropped_joins[rule.child] = "not found in schema"
                continue
            if rule.parent not in self._schema.tables:
                logger.warning(
                    "Join rule %s -> %s ignored: %s not found in schema %s",
                    rule.child, rule.parent, rule.parent, self._schema.schema_name,
                )
                self.dropped_joins[rule.child] = f"join parent {rule.parent} not found in schema"
                continue
            joins[rule.child] = rule
        return joins

    def resolve(self, name: str, chain: tuple[str, ...] = ()) -> DateExpression | None:
        if name in chain:
            raise ConfigurationError(
                f"Join rules form a cycle: {' -> '.join(chain + (name,))}"
            )
        if name in self._cache:
            return self._cache[name]

        table = self._schema.require_table(name)
        override = self._settings.override_for(name)

        if override.date_columns:
            expression = self._explicit(table, override)
        else:
            expression = self._automatic(table, override)
            if expression is None and name in self._joins:
                expression = self._parent_age(self._joins[name], chain + (name,))
            elif expression is not None and name in self._joins:
                logger.warning(
                    "Table %s has its own date column %s; join rule to %s ignored",
                    name,
                    expression.describe(),
                    self._joins[name].parent,
                )

        self._cache[name] = expression
        return expression

    def _explicit(self, table: TableSchema, override: TableOverride) -> DateExpression:
        for column_name in override.date_columns:
            column = self._schema.require_column(table.name, column_name)
            if not column.is_date:
                raise ConfigurationError(
                    f"Column '{table.name}.{column_name}' is {column.data_type}, not a date type"
                )
        if len(override.date_columns) == 1:
            return ColumnAge(override.date_columns[0], override.purge_null_age)
        return FallbackAge(tuple(override.date_columns), override.purge_null_age)

    def _automatic(self, table: TableSchema, override: TableOverride) -> DateExpression | None:
        ranked = rank_date_columns(table.columns, self._settings.date_column_preference)
        if not ranked:
            return None
        if self._settings.use_all_date_columns and len(ranked) > 1:
            return FallbackAge(tuple(c.name for c in ranked), override.purge_null_age)
        return ColumnAge(ranked[0].name, override.purge_null_age)

    def _parent_age(self, rule: JoinRule, chain: tuple[str, ...]) -> ParentAge | None:
        if rule.child_columns is not None:
            for col in rule.child_columns:
                self._schema.require_column(rule.child, col)
            for col in rule.parent_columns:
                self._schema.require_column(rule.parent, col)
            child_columns, parent_columns = rule.child_columns, rule.parent_columns
        else:
            edges = [fk for fk in self._schema.outbound(rule.child) if fk.parent_table == rule.parent]
            if len(edges) != 1:
                raise ConfigurationError(
                    f"Join rule {rule.child} -> {rule.parent}: found {len(edges)} foreign keys "
                    f"between the tables; set child_columns/parent_columns explicitly"
                )
            child_columns, parent_columns = edges[0].child_columns, edges[0].parent_columns

        parent_expression = self.resolve(rule.parent, chain)
        if parent_expression is None and rule.parent in self.dropped_joins:
            self.dropped_joins[rule.child] = (
                f"join parent {rule.parent} skipped: {self.dropped_joins[rule.parent]}"
            )
            return None
        if parent_expression is None:
            raise ConfigurationError(
                f"Join rule {rule.child} -> {rule.parent}: parent has no date column or join rule"
            )
        return ParentAge(
            parent_table=rule.parent,
            child_columns=tuple(child_columns),
            parent_columns=tuple(parent_columns),
            parent_expression=parent_expression,
        )


def resolve_nodes(schema: DatabaseSchema, settings: RetentionSettings) -> Resolution:
    """Build a ``TableNode`` for every purgeable candidate table.

    Candidates are ``settings.tables`` when given, otherwise every table in
    the schema.  Tables that are excluded, missing, or have no usable age
    are reported in ``skipped`` with a reason.  A join rule naming a table
    that is not in the schema is dropped with a warning; its child is
    skipped unless it has a date column of its own.

    Raises:
        ConfigurationError: On an invalid override or join rule (fatal,
            nothing has been mutated yet).
    """
    result = Resolution()
    resolver = _ExpressionResolver(schema, settings)
    excluded = set(settings.exclude)
    candidates = list(dict.fromkeys(settings.tables)) if settings.tables else sorted(schema.tables)

    for name in candidates:
        if name in excluded or settings.override_for(name).skip:
            result.skipped[name] = "excluded by configuration"
            continue
        if name.startswith(settings.staging_prefix):
            result.skipped[name] = "staging artifact"
            continue
        if name not in schema.tables:
            logger.warning("Skipping %s: not found in schema %s", name, schema.schema_name)
            result.skipped[name] = "not found in schema"
            continue

        expression = resolver.resolve(name)
        if expression is None:
            reason = resolver.dropped_joins.get(name, "no date column or join rule")
            logger.warning("Skipping %s: %s", name, reason)
            result.skipped[name] = reason
            continue

        table = schema.tables[name]
        result.nodes[name] = TableNode(
            name=name,
            expression=expression,
            columns=list(table.columns),
            primary_key=list(table.primary_key),
            guards=schema.inbound(name),
        )

    for name, reason in resolver.dropped_joins.items():
        if name not in schema.tables:
            result.skipped.setdefault(name, reason)

    return result
