"""Tests for SchemaIntrospector with a mocked psycopg connection."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import psycopg
import pytest

from retention_purge.errors import IntrospectionError
from retention_purge.schema.introspector import SchemaIntrospector


def _mock_connection(*results: list[tuple]) -> tuple[MagicMock, AsyncMock]:
    """Connection whose cursor returns ``results`` from successive fetchall() calls."""
    mock_cursor = AsyncMock()
    mock_cursor.fetchall.side_effect = list(results)

    mock_conn = MagicMock()
    mock_ctx = MagicMock()
    mock_ctx.__aenter__ = AsyncMock(return_value=mock_cursor)
    mock_ctx.__aexit__ = AsyncMock(return_value=None)
    mock_conn.cursor.return_value = mock_ctx
    return mock_conn, mock_cursor


# ============================================================================
# Test: Async context manager behavior
# ============================================================================


class TestAsyncContextManager:
    def test_aenter_opens_connection(self) -> None:
        """Driver suffix is stripped and the timeout passed to psycopg."""
        introspector = SchemaIntrospector("postgresql+asyncpg://localhost/test", connect_timeout=15)
        mock_conn = AsyncMock()

        with patch(
            "retention_purge.schema.introspector.psycopg.AsyncConnection.connect",
            new_callable=AsyncMock,
            return_value=mock_conn,
        ) as mock_connect:
            asyncio.run(introspector.__aenter__())

            mock_connect.assert_awaited_once_with("postgresql://localhost/test", connect_timeout=15)
            assert introspector._conn is mock_conn

    def test_connect_failure_is_introspection_error(self) -> None:
        introspector = SchemaIntrospector("postgresql://localhost/test")
        with patch(
            "retention_purge.schema.introspector.psycopg.AsyncConnection.connect",
            new_callable=AsyncMock,
            side_effect=psycopg.OperationalError("connection refused"),
        ):
            with pytest.raises(IntrospectionError, match="connection refused"):
                asyncio.run(introspector.__aenter__())

    def test_aexit_closes_connection(self) -> None:
        introspector = SchemaIntrospector("postgresql://localhost/test")
        mock_conn = AsyncMock()
        introspector._conn = mock_conn

        asyncio.run(introspector.__aexit__(None, None, None))

        mock_conn.close.assert_awaited_once()
        assert introspector._conn is None

    def test_introspect_requires_connection(self) -> None:
        with pytest.raises(RuntimeError, match="async with"):
            asyncio.run(SchemaIntrospector("postgresql://localhost/test").introspect())


# ============================================================================
# Test: introspect()
# ============================================================================


class TestIntrospect:
    """Catalog rows are assembled into a DatabaseSchema."""

    TABLES = [("events",), ("purge_keep_events",), ("schema_migrations",), ("users",)]
    EVENTS_COLUMNS = [
        ("id", "bigint", "NO", None, 1, "YES", "ALWAYS", "NEVER"),
        ("user_id", "integer", "YES", None, 2, "NO", None, "NEVER"),
        ("created_at", "timestamp without time zone", "YES", "now()", 3, "NO", None, "NEVER"),
    ]
    EVENTS_KEYS = [("events_pkey", "p", ["id"], "PRIMARY KEY (id)")]
    EVENTS_INDEXES = [
        ("events_created_at_idx", ["created_at"], False, "btree",
         "CREATE INDEX events_created_at_idx ON public.events USING btree (created_at)"),
    ]
    USERS_COLUMNS = [("id", "integer", "NO", None, 1, "NO", None, "NEVER")]
    USERS_KEYS = [("users_pkey", "p", ["id"], "PRIMARY KEY (id)")]
    FOREIGN_KEYS = [
        ("events_user_id_fkey", "events", ["user_id"], "users", ["id"], "c", "a", False, False, False,
         "FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE NOT VALID"),
        ("stray_fkey", "purge_keep_events", ["user_id"], "users", ["id"], "a", "a", True, False, False,
         "FOREIGN KEY (user_id) REFERENCES users(id)"),
    ]

    def _introspect(self):
        introspector = SchemaIntrospector(
            "postgresql://localhost/test", excluded_prefixes=("purge_keep_",)
        )
        mock_conn, mock_cursor = _mock_connection(
            self.TABLES,
            self.EVENTS_COLUMNS,
            self.EVENTS_KEYS,
            self.EVENTS_INDEXES,
            self.USERS_COLUMNS,
            self.USERS_KEYS,
            [],
            self.FOREIGN_KEYS,
        )
        introspector._conn = mock_conn
        return asyncio.run(introspector.introspect("public")), mock_cursor

    def test_excluded_tables_skipped(self) -> None:
        schema, _ = self._introspect()
        assert sorted(schema.tables) == ["events", "users"]

    def test_columns(self) -> None:
        schema, _ = self._introspect()
        events = schema.tables["events"]
        assert [c.name for c in events.columns] == ["id", "user_id", "created_at"]
        assert events.columns[0].is_identity
        assert events.columns[0].identity_generation == "ALWAYS"
        assert events.column("user_id").data_type == "int"
        assert [c.name for c in events.date_columns] == ["created_at"]

    def test_primary_key_and_indexes(self) -> None:
        schema, _ = self._introspect()
        events = schema.tables["events"]
        assert events.primary_key == ["id"]
        assert events.key_constraints[0].definition == "PRIMARY KEY (id)"
        assert events.indexes[0].name == "events_created_at_idx"
        assert events.indexes[0].definition.startswith("CREATE INDEX")

    def test_foreign_keys(self) -> None:
        schema, _ = self._introspect()
        assert len(schema.foreign_keys) == 1
        fk = schema.foreign_keys[0]
        assert fk.child_table == "events"
        assert fk.parent_table == "users"
        assert fk.on_delete == "CASCADE"
        assert fk.validated is False
        assert schema.inbound("users") == [fk]
        assert schema.is_leaf("events")

    def test_queries_are_parameterized(self) -> None:
        _, mock_cursor = self._introspect()
        first_call = mock_cursor.execute.await_args_list[0]
        assert first_call.args[1] == ("public",)

    def test_catalog_error_is_introspection_error(self) -> None:
        introspector = SchemaIntrospector("postgresql://localhost/test")
        mock_conn, mock_cursor = _mock_connection()
        mock_cursor.execute.side_effect = psycopg.Error("permission denied")
        introspector._conn = mock_conn

        with pytest.raises(IntrospectionError, match="permission denied"):
            asyncio.run(introspector.introspect())
