"""Live schema introspection and schema-domain models.

Usage:
    from retention_purge.schema import SchemaIntrospector, DatabaseSchema
"""

from retention_purge.schema.introspector import SchemaIntrospector
from retention_purge.schema.models import (
    ColumnSchema,
    ConnectionResult,
    DatabaseSchema,
    ForeignKeyEdge,
    IndexSchema,
    KeyConstraint,
    PlanValidation,
    TableSchema,
)

__all__ = [
    "SchemaIntrospector",
    "ColumnSchema",
    "KeyConstraint",
    "IndexSchema",
    "ForeignKeyEdge",
    "TableSchema",
    "DatabaseSchema",
    "PlanValidation",
    "ConnectionResult",
]
