"""Profile resolution and database client factory.

Profiles live in ``db.toml``; the profile in use is chosen by the
``{env_prefix}DB_PROFILE`` environment variable or, once ``connect`` has
validated it, by the ``.db-profile`` lock file in the working directory.

Usage:
    from retention_purge.factory import connect_and_validate, get_adapter

    result = await connect_and_validate("local")
    adapter = await get_adapter()
"""

import os
from pathlib import Path
from urllib.parse import quote

from retention_purge.adapters.postgres import AsyncPostgresAdapter
from retention_purge.config.loader import load_db_config
from retention_purge.config.models import DatabaseProfile, PurgeConfig, RetentionSettings
from retention_purge.errors import PurgeError
from retention_purge.purge.engine import plan_purge
from retention_purge.schema.introspector import SchemaIntrospector
from retention_purge.schema.models import ConnectionResult, DatabaseSchema, PlanValidation

# Profile lock file, relative to the working directory at call time
_PROFILE_LOCK_NAME = ".db-profile"


def _profile_lock_file() -> Path:
    return Path.cwd() / _PROFILE_LOCK_NAME


# ============================================================================
# Profile Lock File Operations
# ============================================================================


class ProfileNotFoundError(Exception):
    """Raised when no database profile is configured."""

    pass


def read_profile_lock() -> str | None:
    """Read profile name from lock file.

    Returns:
        Profile name if lock file exists, None otherwise
    """
    lock_file = _profile_lock_file()
    if lock_file.exists():
        return lock_file.read_text().strip()
    return None


def write_profile_lock(profile_name: str) -> None:
    """Write profile name to lock file.

    Only call this after the schema was introspected and a plan built.
    """
    _profile_lock_file().write_text(profile_name)


def clear_profile_lock() -> None:
    """Remove profile lock file."""
    lock_file = _profile_lock_file()
    if lock_file.exists():
        lock_file.unlink()


def get_active_profile_name(env_prefix: str = "") -> str:
    """Get active profile name from env var or lock file.

    Priority:
    1. ``{env_prefix}DB_PROFILE`` env var (for initial connect or CI/CD)
    2. .db-profile file (validated profile from previous connect)
    3. Raise ProfileNotFoundError

    Raises:
        ProfileNotFoundError: If no profile is configured
    """
    env_profile = os.environ.get(f"{env_prefix}DB_PROFILE")
    if env_profile:
        return env_profile

    lock_profile = read_profile_lock()
    if lock_profile:
        return lock_profile

    raise ProfileNotFoundError(
        "No database profile configured.\n"
        f"Run: {env_prefix}DB_PROFILE=<name> retention-purge connect\n"
        "Profiles are defined in db.toml (see: retention-purge profiles)"
    )


def get_active_profile(
    env_prefix: str = "", config_path: Path | None = None
) -> tuple[str, DatabaseProfile]:
    """Get active profile name and configuration.

    Raises:
        ProfileNotFoundError: If no profile configured
        KeyError: If profile not found in db.toml
    """
    profile_name = get_active_profile_name(env_prefix)
    config = load_db_config(config_path)

    if profile_name not in config.profiles:
        raise KeyError(
            f"Profile '{profile_name}' not found in db.toml.\n"
            f"Available profiles: {', '.join(config.profiles.keys())}"
        )

    return profile_name, config.profiles[profile_name]


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL, substituting ``[YOUR-PASSWORD]`` (URL-quoted)."""
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


# ============================================================================
# Schema and Plan Validation
# ============================================================================


async def introspect_schema(database_url: str, settings: RetentionSettings) -> DatabaseSchema:
    """Read the live schema named in ``settings``, ignoring staging tables.

    Raises:
        IntrospectionError: If the database cannot be read.
    """
    async with SchemaIntrospector(
        database_url, excluded_prefixes=(settings.staging_prefix,)
    ) as introspector:
        return await introspector.introspect(settings.schema_name)


def validate_plan(schema: DatabaseSchema, settings: RetentionSettings) -> PlanValidation:
    """Resolve predicates and order tables, reporting instead of raising."""
    try:
        plan = plan_purge(schema, settings)
    except PurgeError as e:
        return PlanValidation(valid=False, error=str(e))
    return PlanValidation(valid=True, order=plan.order, skipped=plan.skipped)


async def connect_and_validate(
    profile_name: str | None = None,
    env_prefix: str = "",
    config_path: Path | None = None,
    validate_only: bool = False,
) -> ConnectionResult:
    """Connect, introspect, and check that a purge plan can be built.

    This is the primary setup API.  On success the profile is written to
    the lock file so later commands use it without the env var.

    Args:
        profile_name: Profile name from db.toml. If None, uses
            ``{env_prefix}DB_PROFILE`` or the existing lock file.
        env_prefix: Prefix for the profile environment variable.
        config_path: Path to db.toml (default: ``./db.toml``).
        validate_only: If True, do not write the lock file.

    Returns:
        ConnectionResult with success status and plan report

    Example:
        >>> result = await connect_and_validate("local")
        >>> if result.success:
        ...     print(result.plan_report.format_report())
    """
    if profile_name is None:
        try:
            profile_name = get_active_profile_name(env_prefix)
        except ProfileNotFoundError as e:
            return ConnectionResult(success=False, error=str(e))

    try:
        config = load_db_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        return ConnectionResult(success=False, profile_name=profile_name, error=str(e))

    if profile_name not in config.profiles:
        available = ", ".join(config.profiles.keys())
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            error=f"Profile '{profile_name}' not found. Available: {available}",
        )

    url = resolve_url(config.profiles[profile_name])
    try:
        schema = await introspect_schema(url, config.retention)
    except Exception as e:
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            error=f"Failed to connect to database: {e}",
        )

    validation = validate_plan(schema, config.retention)
    if not validation.valid:
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            plan_valid=False,
            plan_report=validation,
            error=f"Purge plan invalid: {validation.error}",
        )

    if not validate_only:
        write_profile_lock(profile_name)

    return ConnectionResult(
        success=True,
        profile_name=profile_name,
        plan_valid=True,
        plan_report=validation,
    )


# ============================================================================
# Database Adapter Factory
# ============================================================================


async def get_adapter(
    profile_name: str | None = None,
    database_url: str | None = None,
    env_prefix: str = "",
    config_path: Path | None = None,
    schema_name: str = "public",
) -> AsyncPostgresAdapter:
    """Create a purge adapter.

    A new adapter is returned on every call; the caller owns it and must
    ``await adapter.close()``.

    Args:
        profile_name: Profile from db.toml (default: active profile).
        database_url: Direct URL; when given, profiles are not consulted.
        env_prefix: Prefix for the profile environment variable.
        config_path: Path to db.toml.
        schema_name: Schema the adapter operates on.

    Raises:
        ProfileNotFoundError: If no URL or profile is available.
        KeyError: If the profile is not in db.toml.
    """
    if database_url:
        return AsyncPostgresAdapter(database_url=database_url, schema_name=schema_name)

    if profile_name is None:
        profile_name = get_active_profile_name(env_prefix)

    config: PurgeConfig = load_db_config(config_path)
    if profile_name not in config.profiles:
        raise KeyError(
            f"Profile '{profile_name}' not found in db.toml.\n"
            f"Available profiles: {', '.join(config.profiles.keys())}"
        )
    return AsyncPostgresAdapter(
        database_url=resolve_url(config.profiles[profile_name]), schema_name=schema_name
    )
