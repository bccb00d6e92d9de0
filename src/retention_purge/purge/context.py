"""Run-scoped session state with guaranteed undo.

``RunContext`` owns everything a purge run changes about the session or
leaves behind temporarily: the relaxed durability mode, support indexes,
and the cooperative stop flag.  Undo actions are kept on an
``AsyncExitStack`` and run in reverse order on every exit path -- normal
completion, an exception, or task cancellation.

Usage:
    async with RunContext(client, durability="off") as context:
        context.defer(client.drop_index, "purge_ix_events_created_at")
        ...
        if context.stop_requested:
            ...
    # synchronous_commit restored, support indexes dropped
"""

import logging
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from typing import Any

from retention_purge.adapters.base import DatabaseClient

logger = logging.getLogger(__name__)


class RunContext:
    """Scoped durability switch, undo stack, and stop flag for one run.

    Args:
        client: Database client the run uses.
        durability: ``synchronous_commit`` value for the run, or None to
            leave the session setting alone.
    """

    def __init__(self, client: DatabaseClient, durability: str | None = "off"):
        self._client = client
        self._durability = durability
        self._stack = AsyncExitStack()
        self._stop_requested = False
        self.original_durability: str | None = None
        self.modified_tables: set[str] = set()

    async def __aenter__(self) -> "RunContext":
        await self._stack.__aenter__()
        try:
            if self._durability is not None:
                self.original_durability = await self._client.get_durability()
                if self.original_durability != self._durability:
                    self._stack.push_async_callback(self._restore_durability)
                    await self._client.set_durability(self._durability)
                    logger.info(
                        "synchronous_commit: %s -> %s for this run",
                        self.original_durability,
                        self._durability,
                    )
        except BaseException:
            await self._stack.aclose()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        return await self._stack.__aexit__(exc_type, exc_val, exc_tb)

    async def _restore_durability(self) -> None:
        await self._client.set_durability(self.original_durability)
        logger.info("synchronous_commit restored to %s", self.original_durability)

    def defer(self, callback: Callable[..., Awaitable[Any]], *args: Any) -> None:
        """Register an async undo action to run when the context exits."""
        self._stack.push_async_callback(callback, *args)

    def request_stop(self) -> None:
        """Ask the run to stop at the next batch or table boundary."""
        if not self._stop_requested:
            logger.warning("Stop requested; finishing the current batch")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def mark_modified(self, table: str) -> None:
        self.modified_tables.add(table)
