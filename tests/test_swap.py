"""Tests for the copy-keep-and-swap strategy and staging recovery."""

import json
from datetime import datetime

import pytest

from fakes import FakeDatabase, make_fk, make_schema, make_table
from retention_purge.errors import StagingConflictError, SwapInterruptedError, VerificationError
from retention_purge.purge.predicate import ColumnAge, TableNode
from retention_purge.purge.swap import (
    StagingProvenance,
    list_staging_artifacts,
    read_provenance,
    recover_from_staging,
    staging_name,
    swap_table,
)
from retention_purge.schema.models import IndexSchema

CUTOFF = datetime(2023, 1, 1)


@pytest.fixture
def schema():
    return make_schema(
        [
            make_table(
                "orders",
                {"id": "integer", "created_at": "timestamp"},
                indexes=[IndexSchema(name="orders_created_at_idx", table="orders", columns=["created_at"])],
            ),
            make_table("lines", {"id": "integer", "order_id": "integer", "created_at": "timestamp"}),
        ],
        [make_fk("lines", "order_id", "orders")],
    )


@pytest.fixture
def db(schema) -> FakeDatabase:
    orders = [{"id": i, "created_at": datetime(2021, 1, 1)} for i in range(1, 9)]
    orders += [{"id": 9, "created_at": datetime(2024, 1, 1)}, {"id": 10, "created_at": None}]
    # order 1 is old but still referenced by a new line
    lines = [{"id": 1, "order_id": 1, "created_at": datetime(2024, 6, 1)}]
    return FakeDatabase(schema, {"orders": orders, "lines": lines})


@pytest.fixture
def node(schema) -> TableNode:
    return TableNode(
        name="orders",
        expression=ColumnAge("created_at"),
        columns=schema.tables["orders"].columns,
        primary_key=["id"],
        guards=schema.inbound("orders"),
    )


class TestStagingName:
    def test_prefix(self) -> None:
        assert staging_name("events") == "purge_keep_events"
        assert staging_name("events", "tmp_") == "tmp_events"

    def test_truncated_to_identifier_limit(self) -> None:
        assert len(staging_name("t" * 80)) == 63


# ============================================================================
# swap_table
# ============================================================================


class TestSwapTable:
    """Stage, detach, swap, rebuild, verify, commit."""

    @pytest.mark.asyncio
    async def test_swap_keeps_exactly_the_complement(self, db, node, schema) -> None:
        result = await swap_table(db, node, schema, CUTOFF)

        # 1 referenced + 1 recent + 1 null date
        assert db.ids("orders") == {1, 9, 10}
        assert result.rows_before == 10
        assert result.keep_count == 3
        assert result.rows_deleted == 7
        assert "purge_keep_orders" not in db.tables

    @pytest.mark.asyncio
    async def test_swap_matches_batch_delete(self, schema, node) -> None:
        orders = [{"id": i, "created_at": datetime(2020 + i % 5, 1, 1)} for i in range(1, 30)]
        lines = [{"id": 1, "order_id": 2, "created_at": None}]
        swapped = FakeDatabase(schema, {"orders": orders, "lines": lines})
        batched = FakeDatabase(schema, {"orders": orders, "lines": lines})

        await swap_table(swapped, node, schema, CUTOFF)
        while await batched.delete_batch(node, CUTOFF, 4):
            pass
        assert swapped.ids("orders") == batched.ids("orders")

    @pytest.mark.asyncio
    async def test_constraints_and_indexes_restored(self, db, node, schema) -> None:
        before_constraints = dict(db.constraints)
        before_indexes = set(db.indexes)

        await swap_table(db, node, schema, CUTOFF)

        assert db.constraints == before_constraints
        assert db.indexes == before_indexes
        drops = [c for c in db.calls if c[0] in ("drop_constraint", "drop_index")]
        assert drops[0] == ("drop_constraint", "lines")

    @pytest.mark.asyncio
    async def test_rebuild_order_key_then_index_then_fk(self, db, node, schema) -> None:
        await swap_table(db, node, schema, CUTOFF)
        reload_at = db.calls.index(("reload_from_staging", "orders"))
        rebuild = [c for c in db.calls[reload_at:] if c[0] in ("add_constraint", "create_index")]
        assert rebuild == [
            ("add_constraint", "orders"),
            ("create_index", "orders"),
            ("add_constraint", "lines"),
        ]

    @pytest.mark.asyncio
    async def test_support_indexes_not_recreated(self, schema, db, node) -> None:
        schema.tables["orders"].indexes.append(
            IndexSchema(name="purge_ix_orders_created_at", table="orders", columns=["created_at"])
        )
        await swap_table(db, node, schema, CUTOFF)
        assert "purge_ix_orders_created_at" not in db.created_indexes

    @pytest.mark.asyncio
    async def test_existing_staging_is_conflict(self, db, node, schema) -> None:
        db.tables["purge_keep_orders"] = []
        with pytest.raises(StagingConflictError):
            await swap_table(db, node, schema, CUTOFF)
        assert len(db.tables["orders"]) == 10

    @pytest.mark.asyncio
    async def test_stage_failure_drops_staging(self, db, node, schema) -> None:
        db.fail("set_table_comment", RuntimeError("disk full"))
        with pytest.raises(RuntimeError):
            await swap_table(db, node, schema, CUTOFF)
        assert "purge_keep_orders" not in db.tables
        assert len(db.tables["orders"]) == 10

    @pytest.mark.asyncio
    async def test_failure_after_stage_keeps_staging(self, db, node, schema) -> None:
        db.fail("reload_from_staging", RuntimeError("connection lost"))
        with pytest.raises(SwapInterruptedError) as exc_info:
            await swap_table(db, node, schema, CUTOFF)

        assert exc_info.value.state == "swap"
        assert exc_info.value.staging_table == "purge_keep_orders"
        assert len(db.tables["purge_keep_orders"]) == 3
        assert db.tables["orders"] == []

    @pytest.mark.asyncio
    async def test_count_mismatch_is_verification_error(self, db, node, schema) -> None:
        original = db.reload_from_staging

        async def lossy_reload(table, staging, columns):
            copied = await original(table, staging, columns)
            db.tables[table].pop()
            return copied - 1

        db.reload_from_staging = lossy_reload
        with pytest.raises(VerificationError) as exc_info:
            await swap_table(db, node, schema, CUTOFF)
        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2
        assert "purge_keep_orders" in db.tables

    @pytest.mark.asyncio
    async def test_provenance_written_before_detach(self, db, node, schema) -> None:
        db.fail("drop_constraint", RuntimeError("lock timeout"))
        with pytest.raises(SwapInterruptedError):
            await swap_table(db, node, schema, CUTOFF)

        record = json.loads(db.comments["purge_keep_orders"])
        assert record["source_table"] == "orders"
        assert record["keep_count"] == 3
        assert [fk["name"] for fk in record["foreign_keys"]] == ["lines_order_id_fkey"]
        assert [ix["name"] for ix in record["indexes"]] == ["orders_created_at_idx"]


# ============================================================================
# Recovery
# ============================================================================


class TestRecovery:
    """recover_from_staging finishes an interrupted swap."""

    async def _interrupt(self, db, node, schema) -> None:
        db.fail("reload_from_staging", RuntimeError("connection lost"), times=1)
        with pytest.raises(SwapInterruptedError):
            await swap_table(db, node, schema, CUTOFF)

    @pytest.mark.asyncio
    async def test_recovers_keep_rows_and_constraints(self, db, node, schema) -> None:
        await self._interrupt(db, node, schema)
        result = await recover_from_staging(db, schema, "orders")

        assert result.rows_restored == 3
        assert db.ids("orders") == {1, 9, 10}
        assert ("lines", "lines_order_id_fkey") in db.constraints
        assert ("orders", "orders_pkey") in db.constraints
        assert "orders_created_at_idx" in db.indexes
        assert "purge_keep_orders" not in db.tables

    @pytest.mark.asyncio
    async def test_recovery_after_partial_rebuild(self, db, node, schema) -> None:
        db.fail("create_index", RuntimeError("out of memory"), times=1)
        with pytest.raises(SwapInterruptedError) as exc_info:
            await swap_table(db, node, schema, CUTOFF)
        assert exc_info.value.state == "rebuild"
        assert ("orders", "orders_pkey") in db.constraints

        await recover_from_staging(db, schema, "orders")
        assert db.ids("orders") == {1, 9, 10}
        assert "orders_created_at_idx" in db.indexes
        assert ("lines", "lines_order_id_fkey") in db.constraints

    @pytest.mark.asyncio
    async def test_missing_staging(self, db, schema) -> None:
        with pytest.raises(StagingConflictError, match="does not exist"):
            await recover_from_staging(db, schema, "orders")

    @pytest.mark.asyncio
    async def test_missing_provenance(self, db, schema) -> None:
        db.tables["purge_keep_orders"] = []
        with pytest.raises(StagingConflictError, match="no provenance"):
            await recover_from_staging(db, schema, "orders")

    @pytest.mark.asyncio
    async def test_staged_count_mismatch_refused(self, db, node, schema) -> None:
        await self._interrupt(db, node, schema)
        db.tables["purge_keep_orders"].pop()
        with pytest.raises(StagingConflictError, match="refusing"):
            await recover_from_staging(db, schema, "orders")
        assert db.tables["orders"] == []

    @pytest.mark.asyncio
    async def test_read_provenance_rejects_garbage(self, db) -> None:
        db.tables["purge_keep_orders"] = []
        db.comments["purge_keep_orders"] = "not json"
        with pytest.raises(StagingConflictError, match="unreadable"):
            await read_provenance(db, "purge_keep_orders")

    @pytest.mark.asyncio
    async def test_list_artifacts(self, db, node, schema) -> None:
        await self._interrupt(db, node, schema)
        db.tables["purge_keep_stray"] = []
        artifacts = await list_staging_artifacts(db)

        assert len(artifacts) == 2
        assert isinstance(artifacts[0], StagingProvenance)
        assert artifacts[0].source_table == "orders"
        assert artifacts[1] == "purge_keep_stray"
