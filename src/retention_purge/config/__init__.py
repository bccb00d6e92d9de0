"""Configuration management: profiles, retention settings, TOML loading.

Usage:
    >>> from retention_purge.config import load_db_config, PurgeConfig, RetentionSettings
"""

from retention_purge.config.loader import load_db_config
from retention_purge.config.models import (
    BenchmarkSettings,
    DatabaseProfile,
    JoinRule,
    MaintenanceSettings,
    PurgeConfig,
    RetentionSettings,
    SwapSettings,
    TableOverride,
)

__all__ = [
    "load_db_config",
    "PurgeConfig",
    "DatabaseProfile",
    "RetentionSettings",
    "TableOverride",
    "JoinRule",
    "SwapSettings",
    "BenchmarkSettings",
    "MaintenanceSettings",
]
