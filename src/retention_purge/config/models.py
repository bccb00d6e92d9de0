"""Pydantic models for connection profiles and retention settings.

Usage:
    >>> from retention_purge.config.models import RetentionSettings
    >>> settings = RetentionSettings(retain="2y", batch_size=25000)
    >>> settings.swap.threshold
    0.7
"""

import calendar
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from retention_purge.errors import ConfigurationError

# Lower-cased, underscore-free column name -> rank (lower ranks win).
# Several candidate columns often coexist; only one reflects business age.
DEFAULT_DATE_PREFERENCE: dict[str, int] = {
    "operationdate": 1,
    "firstdate": 2,
    "xdateinserted": 3,
    "createdat": 3,
    "insertedat": 3,
    "thisdate": 4,
    "startat": 5,
    "startedat": 5,
    "exportdate": 6,
    "xdateupdated": 7,
    "updatedat": 7,
    "modifiedat": 7,
}
UNRANKED_DATE_COLUMN = 10

DEFAULT_BENCHMARK_SIZES = [5000, 10000, 25000, 50000, 100000, 250000, 500000]

_RETAIN_PATTERN = re.compile(r"^\s*(\d+)\s*([dwmy])\s*$", re.IGNORECASE)


# ============================================================================
# Connection Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution
    provider: str = "postgres"


# ============================================================================
# Retention Models
# ============================================================================


class TableOverride(BaseModel):
    """Per-table settings from ``[retention.table.<name>]``."""

    skip: bool = False
    date_columns: list[str] | None = None
    purge_null_age: bool = False


class JoinRule(BaseModel):
    """Purge ``child`` by the age of the ``parent`` row it references.

    When column lists are omitted they are inferred from the single
    foreign key between the two tables.
    """

    child: str
    parent: str
    child_columns: list[str] | None = None
    parent_columns: list[str] | None = None

    @model_validator(mode="after")
    def _columns_pair_up(self) -> "JoinRule":
        if (self.child_columns is None) != (self.parent_columns is None):
            raise ValueError("child_columns and parent_columns must be given together")
        if self.child_columns is not None and len(self.child_columns) != len(self.parent_columns):
            raise ValueError("child_columns and parent_columns must have the same length")
        return self


class SwapSettings(BaseModel):
    enabled: bool = True
    threshold: float = Field(default=0.7, gt=0.0, le=1.0)
    min_rows: int = Field(default=10000, ge=0)


class BenchmarkSettings(BaseModel):
    sizes: list[int] = Field(default_factory=lambda: list(DEFAULT_BENCHMARK_SIZES))
    trial_batches: int = Field(default=3, ge=1)
    min_backlog: int = Field(default=100000, ge=0)

    @field_validator("sizes")
    @classmethod
    def _sorted_positive(cls, v: list[int]) -> list[int]:
        if not v or any(size <= 0 for size in v):
            raise ValueError("benchmark sizes must be a non-empty list of positive integers")
        return sorted(set(v))


class MaintenanceSettings(BaseModel):
    enabled: bool = True
    vacuum_threshold: float = Field(default=0.05, ge=0.0, le=1.0)
    reindex_threshold: float = Field(default=0.30, ge=0.0, le=1.0)


class RetentionSettings(BaseModel):
    """The ``[retention]`` section of db.toml.

    At most one of ``cutoff`` (absolute) and ``retain`` (relative, e.g.
    ``"730d"``, ``"18m"``, ``"2y"``) may be set.  The CLI can supply either
    at run time, so a config with neither is valid until
    ``resolve_cutoff()`` is called.
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_name: str = Field(default="public", alias="schema")
    cutoff: datetime | date | None = None
    retain: str | None = None
    batch_size: int | Literal["auto"] = "auto"
    batch_size_fallback: int = Field(default=50000, gt=0)
    batch_delay: float = Field(default=0.0, ge=0.0)
    dry_run: bool = False
    preview_limit: int = Field(default=10, ge=0)
    durability: str | None = "off"  # synchronous_commit during the run
    tables: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    date_column_preference: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_DATE_PREFERENCE)
    )
    use_all_date_columns: bool = False
    support_indexes: bool = True
    staging_prefix: str = "purge_keep_"
    overrides: dict[str, TableOverride] = Field(default_factory=dict, alias="table")
    joins: list[JoinRule] = Field(default_factory=list, alias="join")
    swap: SwapSettings = Field(default_factory=SwapSettings)
    benchmark: BenchmarkSettings = Field(default_factory=BenchmarkSettings)
    maintenance: MaintenanceSettings = Field(default_factory=MaintenanceSettings)

    @field_validator("cutoff")
    @classmethod
    def _naive_datetime(cls, v: datetime | date | None) -> datetime | None:
        if v is None:
            return None
        if not isinstance(v, datetime):
            return datetime.combine(v, time.min)
        if v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @field_validator("retain")
    @classmethod
    def _retain_format(cls, v: str | None) -> str | None:
        if v is not None and not _RETAIN_PATTERN.match(v):
            raise ValueError(f"retain must look like '730d', '12w', '18m' or '2y', got {v!r}")
        return v

    @field_validator("batch_size")
    @classmethod
    def _positive_batch(cls, v: int | str) -> int | str:
        if isinstance(v, int) and v <= 0:
            raise ValueError("batch_size must be positive or 'auto'")
        return v

    @model_validator(mode="after")
    def _one_cutoff_source(self) -> "RetentionSettings":
        if self.cutoff is not None and self.retain is not None:
            raise ValueError("Set either 'cutoff' or 'retain', not both")
        return self

    def override_for(self, table: str) -> TableOverride:
        return self.overrides.get(table) or TableOverride()

    def resolve_cutoff(self, now: datetime | None = None) -> datetime:
        """Absolute cutoff for this run.

        Args:
            now: Reference time for a relative ``retain`` (default: current
                local time, naive).

        Raises:
            ConfigurationError: If neither ``cutoff`` nor ``retain`` is set.
        """
        if self.cutoff is not None:
            return self.cutoff
        if self.retain is None:
            raise ConfigurationError("No retention cutoff configured (set 'cutoff' or 'retain')")
        return subtract_duration(now or datetime.now(), self.retain)


def subtract_duration(moment: datetime, duration: str) -> datetime:
    """Subtract a ``<n><d|w|m|y>`` duration using calendar arithmetic.

    Example:
        >>> subtract_duration(datetime(2024, 3, 31), "1m")
        datetime.datetime(2024, 2, 29, 0, 0)
    """
    match = _RETAIN_PATTERN.match(duration)
    if not match:
        raise ConfigurationError(f"Invalid duration: {duration!r}")
    amount, unit = int(match.group(1)), match.group(2).lower()

    if unit == "d":
        return moment - timedelta(days=amount)
    if unit == "w":
        return moment - timedelta(weeks=amount)

    months = amount * 12 if unit == "y" else amount
    total = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class PurgeConfig(BaseModel):
    """Complete configuration from db.toml."""

    profiles: dict[str, DatabaseProfile]
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
