"""Pydantic models for schema introspection and connection validation.

This module contains schema-domain models:
- Introspection models: ColumnSchema, KeyConstraint, IndexSchema,
  ForeignKeyEdge, TableSchema, DatabaseSchema
- Validation models: PlanValidation
- Connection result: ConnectionResult

Configuration models (DatabaseProfile, PurgeConfig) live in
retention_purge.config.models.
"""

from pydantic import BaseModel, Field

from retention_purge.errors import ConfigurationError

DATE_TYPES = frozenset({"date", "timestamp", "timestamptz"})


# ============================================================================
# Schema Introspection Models
# ============================================================================


class ColumnSchema(BaseModel):
    """Schema for a database column.

    Example:
        >>> col = ColumnSchema(name="created_at", data_type="timestamptz")
        >>> col.is_date
        True
    """

    name: str
    data_type: str
    is_nullable: bool = True
    default: str | None = None
    ordinal: int = 0
    is_identity: bool = False
    identity_generation: str | None = None  # ALWAYS, BY DEFAULT
    is_generated: bool = False  # GENERATED ALWAYS AS (...) STORED

    @property
    def is_date(self) -> bool:
        """True for date/timestamp columns usable as an age source."""
        return self.data_type in DATE_TYPES


class KeyConstraint(BaseModel):
    """Primary key, unique, or exclusion constraint with its exact definition."""

    name: str
    table: str
    constraint_type: str  # PRIMARY KEY, UNIQUE, EXCLUDE
    columns: list[str] = Field(default_factory=list)
    definition: str = ""


class IndexSchema(BaseModel):
    """Index that does not back a constraint."""

    name: str
    table: str
    columns: list[str] = Field(default_factory=list)
    is_unique: bool = False
    index_type: str = "btree"
    definition: str = ""


class ForeignKeyEdge(BaseModel):
    """Foreign key from ``child_table`` to ``parent_table``.

    ``definition`` is the verbatim ``pg_get_constraintdef`` text, which is
    replayed as-is when the constraint is recreated after a swap.
    ``validated`` mirrors ``pg_constraint.convalidated``: a ``NOT VALID``
    constraint is untrusted and must be recreated untrusted.

    Example:
        >>> edge = ForeignKeyEdge(
        ...     name="child_parent_id_fkey",
        ...     child_table="child", child_columns=["parent_id"],
        ...     parent_table="parent", parent_columns=["id"],
        ... )
        >>> edge.is_self_reference
        False
    """

    name: str
    child_table: str
    child_columns: list[str]
    parent_table: str
    parent_columns: list[str]
    on_delete: str = "NO ACTION"
    on_update: str = "NO ACTION"
    validated: bool = True
    deferrable: bool = False
    initially_deferred: bool = False
    definition: str = ""

    @property
    def is_self_reference(self) -> bool:
        return self.child_table == self.parent_table


class TableSchema(BaseModel):
    """Schema for a database table."""

    name: str
    columns: list[ColumnSchema] = Field(default_factory=list)
    primary_key: list[str] = Field(default_factory=list)
    key_constraints: list[KeyConstraint] = Field(default_factory=list)
    indexes: list[IndexSchema] = Field(default_factory=list)

    def column(self, name: str) -> ColumnSchema | None:
        """Return column by name, or None."""
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def date_columns(self) -> list[ColumnSchema]:
        return [c for c in self.columns if c.is_date]


class DatabaseSchema(BaseModel):
    """Complete schema: tables plus the foreign-key graph."""

    schema_name: str = "public"
    tables: dict[str, TableSchema] = Field(default_factory=dict)
    foreign_keys: list[ForeignKeyEdge] = Field(default_factory=list)

    def inbound(self, table: str) -> list[ForeignKeyEdge]:
        """Edges whose parent is ``table`` (other tables pointing at it)."""
        return [fk for fk in self.foreign_keys if fk.parent_table == table]

    def outbound(self, table: str) -> list[ForeignKeyEdge]:
        """Edges declared on ``table``."""
        return [fk for fk in self.foreign_keys if fk.child_table == table]

    def is_leaf(self, table: str) -> bool:
        """True when no foreign key anywhere references ``table``."""
        return not self.inbound(table)

    def require_table(self, name: str) -> TableSchema:
        """Return table metadata or raise ConfigurationError."""
        table = self.tables.get(name)
        if table is None:
            raise ConfigurationError(
                f"Table '{name}' not found in schema '{self.schema_name}'"
            )
        return table

    def require_column(self, table: str, column: str) -> ColumnSchema:
        """Return column metadata or raise ConfigurationError."""
        col = self.require_table(table).column(column)
        if col is None:
            raise ConfigurationError(f"Column '{table}.{column}' not found in schema")
        return col


# ============================================================================
# Validation / Connection Result Models
# ============================================================================


class PlanValidation(BaseModel):
    """Result of resolving predicates and ordering for a live schema.

    Example:
        >>> result = PlanValidation(valid=True, order=["child", "parent"])
        >>> result.format_report()
        'Plan valid: child -> parent'
    """

    valid: bool
    order: list[str] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)  # table -> reason
    error: str | None = None

    def format_report(self) -> str:
        """Format validation result as human-readable report."""
        if not self.valid:
            return f"Plan invalid: {self.error}"

        lines = [f"Plan valid: {' -> '.join(self.order) if self.order else '(no tables)'}"]
        if self.skipped:
            lines.append(f"\n  Skipped tables ({len(self.skipped)}):")
            for table, reason in sorted(self.skipped.items()):
                lines.append(f"    - {table}: {reason}")
        return "\n".join(lines)


class ConnectionResult(BaseModel):
    """Result of connect_and_validate()."""

    success: bool
    profile_name: str | None = None
    plan_valid: bool | None = None
    plan_report: PlanValidation | None = None
    error: str | None = None
