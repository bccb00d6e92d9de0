"""Database client protocol definition.

Defines the ``DatabaseClient`` Protocol that purge adapters implement.
Operations are semantic (delete a batch, stage keep rows, drop a
constraint) rather than raw SQL, so the engine can be exercised against
an in-memory implementation and the SQL lives in one adapter.

All methods are ``async def`` -- callers must ``await`` every operation.

Usage:
    from retention_purge.adapters.base import DatabaseClient

    async def drain(client: DatabaseClient, node, cutoff) -> int:
        total = 0
        while deleted := await client.delete_batch(node, cutoff, 10000):
            await client.checkpoint()
            total += deleted
        return total
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from retention_purge.purge.predicate import TableNode
    from retention_purge.schema.models import ColumnSchema, IndexSchema


class DatabaseClient(Protocol):
    """Database client interface used by the purge engine.

    Table and index names are unqualified; the adapter applies its schema.
    """

    # ------------------------------------------------------------------
    # Counting and preview
    # ------------------------------------------------------------------

    async def count_rows(self, table: str) -> int:
        """Total rows in ``table``."""
        ...

    async def count_matching(self, node: "TableNode", cutoff: datetime) -> int:
        """Rows that ``node``'s deletion predicate selects right now."""
        ...

    async def age_range(self, node: "TableNode") -> tuple[Any, Any]:
        """``(oldest, newest)`` over the node's own date columns.

        Returns ``(None, None)`` for join-based nodes or empty tables.
        """
        ...

    async def preview(self, node: "TableNode", cutoff: datetime, limit: int) -> list[dict]:
        """Up to ``limit`` rows that would be deleted, primary key order."""
        ...

    # ------------------------------------------------------------------
    # Batch purge
    # ------------------------------------------------------------------

    async def delete_batch(self, node: "TableNode", cutoff: datetime, batch_size: int) -> int:
        """Delete up to ``batch_size`` matching rows in one transaction.

        Returns:
            Number of rows deleted (0 when nothing matches).

        Raises:
            TransientPurgeError: On lock timeout, deadlock, serialization
                failure, or statement timeout.
        """
        ...

    async def checkpoint(self) -> None:
        """Force a durability checkpoint so WAL does not accumulate."""
        ...

    async def get_durability(self) -> str:
        """Current session durability mode (``synchronous_commit``)."""
        ...

    async def set_durability(self, mode: str) -> None:
        """Set the session durability mode."""
        ...

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    async def table_exists(self, table: str) -> bool:
        ...

    async def list_tables(self, prefix: str = "") -> list[str]:
        """Base tables whose name starts with ``prefix``, sorted."""
        ...

    async def create_staging(self, node: "TableNode", cutoff: datetime, staging: str) -> int:
        """Create ``staging`` (a regular logged table) holding every row ``node`` keeps.

        Returns:
            Number of rows staged.
        """
        ...

    async def truncate(self, table: str) -> None:
        ...

    async def reload_from_staging(
        self, table: str, staging: str, columns: list["ColumnSchema"]
    ) -> int:
        """Bulk-copy staged rows back into ``table``; returns rows copied."""
        ...

    async def drop_table(self, table: str) -> None:
        ...

    async def get_table_comment(self, table: str) -> str | None:
        ...

    async def set_table_comment(self, table: str, comment: str) -> None:
        ...

    # ------------------------------------------------------------------
    # Constraints and indexes
    # ------------------------------------------------------------------

    async def constraint_exists(self, table: str, name: str) -> bool:
        ...

    async def drop_constraint(self, table: str, name: str) -> None:
        ...

    async def add_constraint(
        self, table: str, name: str, definition: str, validated: bool = True
    ) -> None:
        """Recreate a constraint from its ``pg_get_constraintdef`` text.

        Raises:
            Exception: If existing rows violate the constraint.
        """
        ...

    async def index_exists(self, name: str) -> bool:
        ...

    async def drop_index(self, name: str) -> None:
        ...

    async def create_index(self, index: "IndexSchema") -> None:
        """Create an index from its recorded definition."""
        ...

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def analyze(self, table: str) -> None:
        ...

    async def vacuum(self, table: str) -> None:
        ...

    async def reindex(self, table: str) -> None:
        ...

    async def close(self) -> None:
        """Close database connection and clean up resources."""
        ...
