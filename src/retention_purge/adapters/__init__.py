"""Database adapters package.

Provides the ``DatabaseClient`` Protocol and the async PostgreSQL
implementation used by purge runs.

Usage:
    from retention_purge.adapters import DatabaseClient, AsyncPostgresAdapter
"""

from retention_purge.adapters.base import DatabaseClient
from retention_purge.adapters.postgres import AsyncPostgresAdapter

__all__ = [
    "DatabaseClient",
    "AsyncPostgresAdapter",
]
