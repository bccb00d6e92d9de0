"""Identifier quoting and statement builders.

Every table and column name interpolated into SQL comes from introspected
metadata and passes through ``quote_ident``.  Values are always bound
parameters (``:cutoff``, ``:batch_size``, ``:limit``); the only literal
ever inlined is a table COMMENT, which goes through ``quote_literal``.

Usage:
    from retention_purge.sql import quote_ident, qualify, delete_batch_sql

    qualify("public", "Order Lines")   # '"public"."Order Lines"'
    delete_batch_sql("public", node)   # DELETE ... LIMIT :batch_size
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from retention_purge.purge.predicate import TableNode
    from retention_purge.schema.models import ColumnSchema

# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_LENGTH = 63


def quote_ident(name: str) -> str:
    """Quote a SQL identifier, doubling embedded double quotes.

    Raises:
        ValueError: If the name is empty or contains a NUL byte.

    Example:
        >>> quote_ident('weird"name')
        '"weird""name"'
    """
    if not name or "\x00" in name:
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return '"' + name.replace('"', '""') + '"'


def qualify(schema_name: str, name: str) -> str:
    """Schema-qualified, quoted relation name."""
    return f"{quote_ident(schema_name)}.{quote_ident(name)}"


def quote_literal(value: str) -> str:
    """Quote a string literal (standard_conforming_strings = on)."""
    if "\x00" in value:
        raise ValueError("String literal contains a NUL byte")
    return "'" + value.replace("'", "''") + "'"


def column_list(columns: list[str], alias: str | None = None) -> str:
    prefix = f"{alias}." if alias else ""
    return ", ".join(f"{prefix}{quote_ident(c)}" for c in columns)


def truncate_identifier(name: str) -> str:
    """Trim a generated identifier to PostgreSQL's length limit."""
    encoded = name.encode("utf-8")
    if len(encoded) <= MAX_IDENTIFIER_LENGTH:
        return name
    return encoded[:MAX_IDENTIFIER_LENGTH].decode("utf-8", errors="ignore")


# ------------------------------------------------------------------
# Row counting / preview
# ------------------------------------------------------------------


def count_rows_sql(schema_name: str, table: str) -> str:
    return f"SELECT count(*) FROM {qualify(schema_name, table)}"


def count_matching_sql(schema_name: str, node: "TableNode") -> str:
    return (
        f"SELECT count(*) FROM {qualify(schema_name, node.name)} AS t "
        f"WHERE {node.deletion_sql(schema_name)}"
    )


def age_range_sql(schema_name: str, node: "TableNode") -> str | None:
    """MIN/MAX of a node's own date column(s), or None for join-based nodes."""
    columns = node.expression.own_columns
    if not columns:
        return None
    if len(columns) == 1:
        oldest = newest = f"t.{quote_ident(columns[0])}"
    else:
        # LEAST/GREATEST ignore NULLs
        quoted = column_list(list(columns), "t")
        oldest = f"LEAST({quoted})"
        newest = f"GREATEST({quoted})"
    return f"SELECT MIN({oldest}), MAX({newest}) FROM {qualify(schema_name, node.name)} AS t"


def preview_sql(schema_name: str, node: "TableNode") -> str:
    order = column_list(node.primary_key, "t") if node.primary_key else "1"
    return (
        f"SELECT t.* FROM {qualify(schema_name, node.name)} AS t "
        f"WHERE {node.deletion_sql(schema_name)} "
        f"ORDER BY {order} LIMIT :limit"
    )


# ------------------------------------------------------------------
# Batch delete
# ------------------------------------------------------------------


def delete_batch_sql(schema_name: str, node: "TableNode") -> str:
    """Delete up to ``:batch_size`` matching rows, addressed by ctid.

    PostgreSQL has no ``DELETE ... LIMIT``; selecting ctids in a subquery
    works for tables with or without a primary key.

    Example:
        DELETE FROM "public"."events"
        WHERE ctid = ANY(ARRAY(
            SELECT t.ctid FROM "public"."events" AS t
            WHERE ("t"."created_at" IS NOT NULL AND ...) LIMIT :batch_size))
    """
    table = qualify(schema_name, node.name)
    return (
        f"DELETE FROM {table} WHERE ctid = ANY(ARRAY("
        f"SELECT t.ctid FROM {table} AS t "
        f"WHERE {node.deletion_sql(schema_name)} LIMIT :batch_size))"
    )


# ------------------------------------------------------------------
# Swap strategy
# ------------------------------------------------------------------


def create_staging_sql(schema_name: str, staging: str, table: str) -> str:
    return (
        f"CREATE TABLE {qualify(schema_name, staging)} "
        f"(LIKE {qualify(schema_name, table)})"
    )


def stage_keep_rows_sql(schema_name: str, staging: str, node: "TableNode") -> str:
    return (
        f"INSERT INTO {qualify(schema_name, staging)} "
        f"SELECT t.* FROM {qualify(schema_name, node.name)} AS t "
        f"WHERE {node.keep_sql(schema_name)}"
    )


def reload_sql(
    schema_name: str, table: str, staging: str, columns: list["ColumnSchema"]
) -> str:
    """INSERT ... SELECT from staging, skipping generated columns.

    ``OVERRIDING SYSTEM VALUE`` is added when the table has an identity
    column so that ``GENERATED ALWAYS`` identities keep their values.
    """
    insertable = [c.name for c in columns if not c.is_generated]
    overriding = " OVERRIDING SYSTEM VALUE" if any(c.is_identity for c in columns) else ""
    cols = column_list(insertable)
    return (
        f"INSERT INTO {qualify(schema_name, table)} ({cols}){overriding} "
        f"SELECT {cols} FROM {qualify(schema_name, staging)}"
    )


def truncate_sql(schema_name: str, table: str) -> str:
    return f"TRUNCATE TABLE {qualify(schema_name, table)}"


def drop_table_sql(schema_name: str, table: str) -> str:
    return f"DROP TABLE IF EXISTS {qualify(schema_name, table)}"


def comment_on_table_sql(schema_name: str, table: str, comment: str) -> str:
    return f"COMMENT ON TABLE {qualify(schema_name, table)} IS {quote_literal(comment)}"


def drop_constraint_sql(schema_name: str, table: str, name: str) -> str:
    return (
        f"ALTER TABLE {qualify(schema_name, table)} "
        f"DROP CONSTRAINT IF EXISTS {quote_ident(name)}"
    )


def add_constraint_sql(
    schema_name: str, table: str, name: str, definition: str, validated: bool = True
) -> list[str]:
    """Statements that recreate a constraint from its ``pg_get_constraintdef`` text.

    Foreign keys that were trusted are added ``NOT VALID`` and then
    validated, which holds a weaker lock during the scan.  A constraint that
    was ``NOT VALID`` originally is replayed as-is and stays untrusted.

    Example:
        add_constraint_sql("public", "child", "child_fk",
                           "FOREIGN KEY (pid) REFERENCES parent(id)")
        # ADD CONSTRAINT "child_fk" FOREIGN KEY (pid) REFERENCES parent(id) NOT VALID
        # VALIDATE CONSTRAINT "child_fk"
    """
    target = qualify(schema_name, table)
    is_fk = definition.lstrip().upper().startswith("FOREIGN KEY")
    already_not_valid = definition.rstrip().upper().endswith("NOT VALID")

    if is_fk and validated and not already_not_valid:
        return [
            f"ALTER TABLE {target} ADD CONSTRAINT {quote_ident(name)} {definition} NOT VALID",
            f"ALTER TABLE {target} VALIDATE CONSTRAINT {quote_ident(name)}",
        ]
    return [f"ALTER TABLE {target} ADD CONSTRAINT {quote_ident(name)} {definition}"]


def drop_index_sql(schema_name: str, name: str) -> str:
    return f"DROP INDEX IF EXISTS {qualify(schema_name, name)}"


def create_support_index_sql(schema_name: str, name: str, table: str, columns: list[str]) -> str:
    return (
        f"CREATE INDEX IF NOT EXISTS {quote_ident(name)} "
        f"ON {qualify(schema_name, table)} ({column_list(columns)})"
    )


# ------------------------------------------------------------------
# Maintenance
# ------------------------------------------------------------------


def analyze_sql(schema_name: str, table: str) -> str:
    return f"ANALYZE {qualify(schema_name, table)}"


def vacuum_sql(schema_name: str, table: str) -> str:
    return f"VACUUM (ANALYZE) {qualify(schema_name, table)}"


def reindex_sql(schema_name: str, table: str) -> str:
    return f"REINDEX TABLE {qualify(schema_name, table)}"
