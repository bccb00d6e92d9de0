"""retention-purge: dependency-aware retention purge for PostgreSQL.

Deletes rows older than a cutoff from a whole schema, children before
parents, never removing a row that a surviving row still references.
Large purges switch to a copy-keep-and-swap strategy; every run restores
the session settings and support objects it changed.

Usage:
    from retention_purge import get_adapter, introspect_schema, run_purge
    from retention_purge import load_db_config, RunContext
"""

__version__ = "0.1.0"

# Adapters
from retention_purge.adapters.base import DatabaseClient
from retention_purge.adapters.postgres import AsyncPostgresAdapter

# Config
from retention_purge.config.loader import load_db_config
from retention_purge.config.models import DatabaseProfile, PurgeConfig, RetentionSettings

# Errors
from retention_purge.errors import (
    ConfigurationError,
    IntrospectionError,
    PurgeError,
    StagingConflictError,
    SwapInterruptedError,
    TransientPurgeError,
    VerificationError,
)

# Factory
from retention_purge.factory import (
    ProfileNotFoundError,
    connect_and_validate,
    get_adapter,
    introspect_schema,
    resolve_url,
)

# Engine
from retention_purge.purge.context import RunContext
from retention_purge.purge.engine import plan_purge, run_purge
from retention_purge.purge.report import RunOutcome, RunReport
from retention_purge.purge.swap import list_staging_artifacts, recover_from_staging

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncPostgresAdapter",
    # Config
    "load_db_config",
    "DatabaseProfile",
    "PurgeConfig",
    "RetentionSettings",
    # Errors
    "PurgeError",
    "ConfigurationError",
    "IntrospectionError",
    "TransientPurgeError",
    "VerificationError",
    "SwapInterruptedError",
    "StagingConflictError",
    # Factory
    "get_adapter",
    "connect_and_validate",
    "introspect_schema",
    "ProfileNotFoundError",
    "resolve_url",
    # Engine
    "run_purge",
    "plan_purge",
    "RunContext",
    "RunReport",
    "RunOutcome",
    "recover_from_staging",
    "list_staging_artifacts",
]
