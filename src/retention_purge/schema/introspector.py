"""PostgreSQL schema introspection via information_schema and pg_catalog.

This module queries the live database to extract what the purge engine
needs to plan and to rebuild after a swap:
- Tables, columns, data types, nullability, identity/generated flags
- Key constraints (primary key, unique, exclusion) with exact definitions
- Foreign keys with cascade actions and validated/deferrable state
- Indexes not backing a constraint, with exact definitions

Uses psycopg (v3) ``AsyncConnection`` for PostgreSQL connections.

Usage:
    async with SchemaIntrospector(database_url) as introspector:
        schema = await introspector.introspect("public")
"""

import psycopg
from psycopg import AsyncConnection

from retention_purge.errors import IntrospectionError
from retention_purge.schema.models import (
    ColumnSchema,
    DatabaseSchema,
    ForeignKeyEdge,
    IndexSchema,
    KeyConstraint,
    TableSchema,
)

# pg_constraint.confdeltype / confupdtype codes
_FK_ACTIONS = {
    "a": "NO ACTION",
    "r": "RESTRICT",
    "c": "CASCADE",
    "n": "SET NULL",
    "d": "SET DEFAULT",
}

_KEY_TYPES = {"p": "PRIMARY KEY", "u": "UNIQUE", "x": "EXCLUDE"}


class SchemaIntrospector:
    """Introspects a PostgreSQL schema for purge planning.

    Args:
        database_url: PostgreSQL connection URL (``postgresql://`` scheme;
            a SQLAlchemy ``+asyncpg`` driver suffix is stripped).
        excluded_tables: Table names to ignore.  Defaults to
            ``EXCLUDED_TABLES_DEFAULT``.
        excluded_prefixes: Table name prefixes to ignore (staging tables).
        connect_timeout: Connection timeout in seconds.
    """

    EXCLUDED_TABLES_DEFAULT = {
        "schema_migrations",
        "pg_stat_statements",
        "spatial_ref_sys",
    }

    def __init__(
        self,
        database_url: str,
        excluded_tables: set[str] | None = None,
        excluded_prefixes: tuple[str, ...] = (),
        connect_timeout: int = 10,
    ):
        self._database_url = database_url.replace("postgresql+asyncpg://", "postgresql://", 1)
        self._excluded_tables = (
            set(self.EXCLUDED_TABLES_DEFAULT) if excluded_tables is None else excluded_tables
        )
        self._excluded_prefixes = excluded_prefixes
        self._connect_timeout = connect_timeout
        self._conn: AsyncConnection | None = None

    async def __aenter__(self) -> "SchemaIntrospector":
        """Open connection."""
        try:
            self._conn = await psycopg.AsyncConnection.connect(
                self._database_url,
                connect_timeout=self._connect_timeout,
            )
        except psycopg.Error as e:
            raise IntrospectionError(f"Failed to connect for introspection: {e}") from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _is_excluded(self, table_name: str) -> bool:
        if table_name in self._excluded_tables:
            return True
        return any(table_name.startswith(p) for p in self._excluded_prefixes)

    async def introspect(self, schema_name: str = "public") -> DatabaseSchema:
        """Introspect tables and the foreign-key graph of one schema.

        Args:
            schema_name: PostgreSQL schema to introspect (default: public)

        Returns:
            DatabaseSchema with tables, key constraints, indexes, and FKs.

        Raises:
            RuntimeError: If called outside ``async with``.
            IntrospectionError: If any catalog query fails.
        """
        if not self._conn:
            raise RuntimeError("Introspector not connected. Use async with statement.")

        try:
            db_schema = DatabaseSchema(schema_name=schema_name)
            for table_name in await self._get_tables(schema_name):
                if self._is_excluded(table_name):
                    continue
                table = TableSchema(name=table_name)
                table.columns = await self._get_columns(schema_name, table_name)
                table.key_constraints = await self._get_key_constraints(schema_name, table_name)
                table.indexes = await self._get_indexes(schema_name, table_name)
                for constraint in table.key_constraints:
                    if constraint.constraint_type == "PRIMARY KEY":
                        table.primary_key = list(constraint.columns)
                db_schema.tables[table_name] = table

            db_schema.foreign_keys = [
                fk
                for fk in await self._get_foreign_keys(schema_name)
                if fk.child_table in db_schema.tables and fk.parent_table in db_schema.tables
            ]
        except psycopg.Error as e:
            raise IntrospectionError(f"Schema introspection failed: {e}") from e

        return db_schema

    async def _get_tables(self, schema_name: str) -> list[str]:
        """Get all base table names in schema."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = %s
              AND table_type = 'BASE TABLE'
            ORDER BY table_name
        """
        async with self._conn.cursor() as cur:
            await cur.execute(query, (schema_name,))
            return [row[0] for row in await cur.fetchall()]

    async def _get_columns(self, schema_name: str, table_name: str) -> list[ColumnSchema]:
        """Get columns for a table in ordinal order."""
        query = """
            SELECT
                column_name,
                data_type,
                is_nullable,
                column_default,
                ordinal_position,
                is_identity,
                identity_generation,
                is_generated
            FROM information_schema.columns
            WHERE table_schema = %s
              AND table_name = %s
            ORDER BY ordinal_position
        """
        async with self._conn.cursor() as cur:
            await cur.execute(query, (schema_name, table_name))
            columns = []
            for row in await cur.fetchall():
                (
                    col_name,
                    data_type,
                    is_nullable,
                    default,
                    ordinal,
                    is_identity,
                    identity_generation,
                    is_generated,
                ) = row
                columns.append(
                    ColumnSchema(
                        name=col_name,
                        data_type=self._normalize_data_type(data_type),
                        is_nullable=(is_nullable == "YES"),
                        default=default,
                        ordinal=ordinal,
                        is_identity=(is_identity == "YES"),
                        identity_generation=identity_generation,
                        is_generated=(is_generated == "ALWAYS"),
                    )
                )
            return columns

    def _normalize_data_type(self, data_type: str) -> str:
        """Normalize PostgreSQL data type names.

        Maps verbose information_schema types to standard names.
        """
        type_map = {
            "character varying": "varchar",
            "character": "char",
            "timestamp with time zone": "timestamptz",
            "timestamp without time zone": "timestamp",
            "integer": "int",
            "boolean": "bool",
        }
        return type_map.get(data_type.lower(), data_type.lower())

    async def _get_key_constraints(
        self, schema_name: str, table_name: str
    ) -> list[KeyConstraint]:
        """Get primary key, unique, and exclusion constraints for a table."""
        query = """
            SELECT
                c.conname,
                c.contype,
                array_agg(a.attname ORDER BY k.ordinality) AS columns,
                pg_get_constraintdef(c.oid) AS definition
            FROM pg_constraint c
            JOIN pg_class t ON t.oid = c.conrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN LATERAL unnest(c.conkey) WITH ORDINALITY AS k(attnum, ordinality) ON TRUE
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = k.attnum
            WHERE n.nspname = %s
              AND t.relname = %s
              AND c.contype IN ('p', 'u', 'x')
            GROUP BY c.oid, c.conname, c.contype
            ORDER BY c.contype, c.conname
        """
        async with self._conn.cursor() as cur:
            await cur.execute(query, (schema_name, table_name))
            return [
                KeyConstraint(
                    name=name,
                    table=table_name,
                    constraint_type=_KEY_TYPES[contype],
                    columns=list(columns),
                    definition=definition,
                )
                for name, contype, columns, definition in await cur.fetchall()
            ]

    async def _get_indexes(self, schema_name: str, table_name: str) -> list[IndexSchema]:
        """Get indexes for a table, excluding those backing a constraint."""
        query = """
            SELECT
                i.relname AS index_name,
                array_remove(array_agg(a.attname ORDER BY x.ordinality), NULL) AS columns,
                ix.indisunique AS is_unique,
                am.amname AS index_type,
                pg_get_indexdef(ix.indexrelid) AS definition
            FROM pg_index ix
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN pg_am am ON am.oid = i.relam
            JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS x(attnum, ordinality) ON TRUE
            LEFT JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = x.attnum
            WHERE n.nspname = %s
              AND t.relname = %s
              AND NOT EXISTS (
                  SELECT 1 FROM pg_constraint c
                  WHERE c.conindid = ix.indexrelid
                    AND c.conrelid = t.oid
                    AND c.contype IN ('p', 'u', 'x')
              )
            GROUP BY i.relname, ix.indexrelid, ix.indisunique, am.amname
            ORDER BY i.relname
        """
        async with self._conn.cursor() as cur:
            await cur.execute(query, (schema_name, table_name))
            return [
                IndexSchema(
                    name=name,
                    table=table_name,
                    columns=list(columns),
                    is_unique=is_unique,
                    index_type=idx_type,
                    definition=definition,
                )
                for name, columns, is_unique, idx_type, definition in await cur.fetchall()
            ]

    async def _get_foreign_keys(self, schema_name: str) -> list[ForeignKeyEdge]:
        """Get every foreign key declared in the schema.

        Column arrays are aggregated in key order so that child and parent
        columns pair up positionally.
        """
        query = """
            SELECT
                c.conname,
                child.relname AS child_table,
                ARRAY(
                    SELECT a.attname
                    FROM unnest(c.conkey) WITH ORDINALITY AS k(attnum, ordinality)
                    JOIN pg_attribute a ON a.attrelid = c.conrelid AND a.attnum = k.attnum
                    ORDER BY k.ordinality
                ) AS child_columns,
                parent.relname AS parent_table,
                ARRAY(
                    SELECT a.attname
                    FROM unnest(c.confkey) WITH ORDINALITY AS k(attnum, ordinality)
                    JOIN pg_attribute a ON a.attrelid = c.confrelid AND a.attnum = k.attnum
                    ORDER BY k.ordinality
                ) AS parent_columns,
                c.confdeltype,
                c.confupdtype,
                c.convalidated,
                c.condeferrable,
                c.condeferred,
                pg_get_constraintdef(c.oid) AS definition
            FROM pg_constraint c
            JOIN pg_class child ON child.oid = c.conrelid
            JOIN pg_class parent ON parent.oid = c.confrelid
            JOIN pg_namespace n ON n.oid = child.relnamespace
            JOIN pg_namespace pn ON pn.oid = parent.relnamespace
            WHERE c.contype = 'f'
              AND n.nspname = %s
              AND pn.nspname = %s
            ORDER BY child.relname, c.conname
        """
        async with self._conn.cursor() as cur:
            await cur.execute(query, (schema_name, schema_name))
            edges = []
            for row in await cur.fetchall():
                (
                    name,
                    child_table,
                    child_columns,
                    parent_table,
                    parent_columns,
                    deltype,
                    updtype,
                    validated,
                    deferrable,
                    deferred,
                    definition,
                ) = row
                edges.append(
                    ForeignKeyEdge(
                        name=name,
                        child_table=child_table,
                        child_columns=list(child_columns),
                        parent_table=parent_table,
                        parent_columns=list(parent_columns),
                        on_delete=_FK_ACTIONS.get(deltype, "NO ACTION"),
                        on_update=_FK_ACTIONS.get(updtype, "NO ACTION"),
                        validated=validated,
                        deferrable=deferrable,
                        initially_deferred=deferred,
                        definition=definition,
                    )
                )
            return edges
