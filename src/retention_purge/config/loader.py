"""TOML configuration loader for connection profiles and retention settings."""

import tomllib
from pathlib import Path

from retention_purge.config.models import DatabaseProfile, PurgeConfig, RetentionSettings


def load_db_config(config_path: Path | None = None) -> PurgeConfig:
    """Load profiles and retention settings from a TOML file.

    Args:
        config_path: Path to db.toml (default: ``Path.cwd() / "db.toml"``)

    Returns:
        PurgeConfig with all profiles and the ``[retention]`` section

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config format is invalid (pydantic ``ValidationError``
            and ``tomllib.TOMLDecodeError`` are both ``ValueError`` subclasses)
    """
    if config_path is None:
        config_path = Path.cwd() / "db.toml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"Database config not found: {config_path}\n"
            f"Copy db.toml.example to db.toml and configure your profiles."
        )

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Parse profiles
    profiles = {}
    for name, profile_data in data.get("profiles", {}).items():
        profiles[name] = DatabaseProfile(**profile_data)

    return PurgeConfig(
        profiles=profiles,
        retention=RetentionSettings.model_validate(data.get("retention", {})),
    )
