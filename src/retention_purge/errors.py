"""Error taxonomy for purge runs.

Configuration and introspection errors abort a run before anything is
mutated.  Transient errors are per-table: the engine records them and keeps
going with the tables that do not depend on the failed one.  Verification,
interrupted-swap, and staging-conflict errors are fatal but never
destructive -- the staging artifact is always left in place.

Usage:
    from retention_purge.errors import ConfigurationError, TransientPurgeError

    try:
        plan = build_plan(nodes, schema)
    except ConfigurationError as e:
        print(f"Refusing to run: {e}")
"""


class PurgeError(Exception):
    """Base class for all purge engine errors."""

    pass


class ConfigurationError(PurgeError):
    """Cyclic FK graph, unresolvable predicate, or invalid table override."""

    pass


class IntrospectionError(PurgeError):
    """Live schema could not be read."""

    pass


class TransientPurgeError(PurgeError):
    """Lock timeout, deadlock, or similar retryable failure on one table.

    Attributes:
        table: Table being purged when the error occurred.
        sqlstate: PostgreSQL SQLSTATE code, if known.
    """

    def __init__(self, message: str, table: str | None = None, sqlstate: str | None = None):
        super().__init__(message)
        self.table = table
        self.sqlstate = sqlstate


class VerificationError(PurgeError):
    """Swapped table row count does not match the staged keep count."""

    def __init__(self, table: str, expected: int, actual: int, staging_table: str):
        super().__init__(
            f"Swap verification failed for '{table}': expected {expected} rows, "
            f"found {actual}. Staging table '{staging_table}' was kept for recovery."
        )
        self.table = table
        self.expected = expected
        self.actual = actual
        self.staging_table = staging_table


class SwapInterruptedError(PurgeError):
    """A swap failed after staging; the table must be recovered from staging."""

    def __init__(self, table: str, staging_table: str, state: str):
        super().__init__(
            f"Swap of '{table}' failed during {state}. Staging table "
            f"'{staging_table}' was kept; run: retention-purge recover --table {table} --confirm"
        )
        self.table = table
        self.staging_table = staging_table
        self.state = state


class StagingConflictError(PurgeError):
    """A staging artifact is in the way (or missing its provenance record)."""

    pass
