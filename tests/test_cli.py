"""Tests for the retention-purge CLI."""

import argparse
import asyncio
import inspect
import textwrap
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from retention_purge.cli import (
    _apply_overrides,
    _async_purge,
    _async_recover,
    _batch_size_arg,
    build_parser,
    cmd_audit,
    cmd_connect,
    cmd_plan,
    cmd_profiles,
    cmd_purge,
    cmd_recover,
    cmd_status,
)
from retention_purge.config.models import DatabaseProfile, PurgeConfig, RetentionSettings
from retention_purge.purge.report import RunOutcome, RunReport


def _purge_args(*argv: str) -> argparse.Namespace:
    return build_parser().parse_args(["purge", *argv])


def _config(**retention) -> PurgeConfig:
    return PurgeConfig(
        profiles={"local": DatabaseProfile(url="postgresql://localhost/history")},
        retention=RetentionSettings(**retention),
    )


# ------------------------------------------------------------------
# Parser surface
# ------------------------------------------------------------------


class TestParser:
    """Commands and options exposed by build_parser()."""

    def test_prog_name(self) -> None:
        assert build_parser().prog == "retention-purge"

    @pytest.mark.parametrize(
        "command, func",
        [
            ("connect", cmd_connect),
            ("status", cmd_status),
            ("profiles", cmd_profiles),
            ("plan", cmd_plan),
            ("audit", cmd_audit),
            ("purge", cmd_purge),
            ("recover", cmd_recover),
        ],
    )
    def test_dispatch(self, command, func) -> None:
        assert build_parser().parse_args([command]).func is func

    def test_global_options(self) -> None:
        args = build_parser().parse_args(["--env-prefix", "APP_", "--config", "x.toml", "-v", "status"])
        assert args.env_prefix == "APP_"
        assert args.config == "x.toml"
        assert args.verbose

    def test_purge_options(self) -> None:
        args = _purge_args("--retain", "2y", "--batch-size", "auto", "--tables", "a,b", "--confirm")
        assert args.retain == "2y"
        assert args.batch_size == "auto"
        assert args.tables == "a,b"
        assert args.confirm
        assert not args.dry_run

    def test_cutoff_and_retain_exclusive(self) -> None:
        with pytest.raises(SystemExit):
            _purge_args("--cutoff", "2023-01-01", "--retain", "2y")

    def test_recover_options(self) -> None:
        args = build_parser().parse_args(["recover", "--table", "events", "--confirm"])
        assert args.table == "events"
        assert args.confirm
        assert not args.list

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestBatchSizeArg:
    def test_values(self) -> None:
        assert _batch_size_arg("auto") == "auto"
        assert _batch_size_arg("25000") == 25000

    @pytest.mark.parametrize("value", ["0", "-5", "many"])
    def test_rejected(self, value: str) -> None:
        with pytest.raises(argparse.ArgumentTypeError):
            _batch_size_arg(value)


class TestApplyOverrides:
    def test_cli_retain_replaces_config_cutoff(self) -> None:
        settings = RetentionSettings(cutoff=datetime(2020, 1, 1), batch_size=1000)
        merged = _apply_overrides(settings, _purge_args("--retain", "18m", "--tables", " a, b ,"))
        assert merged.cutoff is None
        assert merged.retain == "18m"
        assert merged.tables == ["a", "b"]
        assert merged.batch_size == 1000

    def test_cli_cutoff_parsed(self) -> None:
        settings = RetentionSettings(retain="2y", overrides={"t": {"skip": True}})
        merged = _apply_overrides(settings, _purge_args("--cutoff", "2023-01-01", "--batch-size", "500"))
        assert merged.resolve_cutoff() == datetime(2023, 1, 1)
        assert merged.batch_size == 500
        assert merged.override_for("t").skip


# ------------------------------------------------------------------
# Async wrappers
# ------------------------------------------------------------------


class TestAsyncWrappers:
    """Database commands wrap their async implementation with asyncio.run()."""

    @pytest.mark.parametrize("func", [cmd_connect, cmd_plan, cmd_audit, cmd_purge, cmd_recover])
    def test_calls_asyncio_run(self, func) -> None:
        assert "asyncio.run(" in inspect.getsource(func)

    @pytest.mark.parametrize("func", [cmd_status, cmd_profiles])
    def test_local_commands_stay_sync(self, func) -> None:
        assert "asyncio.run(" not in inspect.getsource(func)


# ------------------------------------------------------------------
# Local commands
# ------------------------------------------------------------------


class TestProfilesCommand:
    def test_lists_profiles(self, tmp_path: Path, capsys) -> None:
        config_file = tmp_path / "db.toml"
        config_file.write_text(textwrap.dedent("""\
            [profiles.local]
            url = "postgresql://localhost/history"
            description = "Local history"
        """))
        args = build_parser().parse_args(["--config", str(config_file), "profiles"])
        with patch("retention_purge.cli.read_profile_lock", return_value="local"):
            assert cmd_profiles(args) == 0

    def test_missing_config(self, tmp_path: Path) -> None:
        args = build_parser().parse_args(["--config", str(tmp_path / "none.toml"), "profiles"])
        assert cmd_profiles(args) == 1


# ------------------------------------------------------------------
# purge / recover
# ------------------------------------------------------------------


@pytest.fixture
def purge_env():
    """Patch config, profile, adapter, and introspection for _async_purge."""
    adapter = MagicMock()
    adapter.database_url = "postgresql://localhost/history"
    adapter.close = AsyncMock()
    report = RunReport(cutoff=datetime(2023, 1, 1), outcome=RunOutcome.PARTIAL)

    with patch("retention_purge.cli.load_db_config", return_value=_config(cutoff=datetime(2023, 1, 1))), \
         patch("retention_purge.cli.get_active_profile_name", return_value="local"), \
         patch("retention_purge.cli.get_adapter", new_callable=AsyncMock, return_value=adapter), \
         patch("retention_purge.cli.introspect_schema", new_callable=AsyncMock), \
         patch("retention_purge.cli.run_purge", new_callable=AsyncMock, return_value=report) as mock_run:
        yield adapter, mock_run


class TestPurgeCommand:
    def test_without_confirm_is_dry_run(self, purge_env) -> None:
        adapter, mock_run = purge_env
        asyncio.run(_async_purge(_purge_args()))
        assert mock_run.await_args.kwargs["dry_run"] is True
        adapter.close.assert_awaited_once()

    def test_confirm_runs_and_returns_outcome_code(self, purge_env) -> None:
        _, mock_run = purge_env
        code = asyncio.run(_async_purge(_purge_args("--confirm")))
        assert code == 2
        assert mock_run.await_args.kwargs["dry_run"] is False
        assert mock_run.await_args.args[3] == datetime(2023, 1, 1)

    def test_dry_run_flag_wins_over_confirm(self, purge_env) -> None:
        _, mock_run = purge_env
        asyncio.run(_async_purge(_purge_args("--confirm", "--dry-run")))
        assert mock_run.await_args.kwargs["dry_run"] is True

    def test_purge_error_is_fatal_exit(self, purge_env) -> None:
        from retention_purge.errors import StagingConflictError

        adapter, mock_run = purge_env
        mock_run.side_effect = StagingConflictError("leftover")
        assert asyncio.run(_async_purge(_purge_args("--confirm"))) == 1
        adapter.close.assert_awaited_once()

    def test_missing_cutoff(self, purge_env) -> None:
        with patch("retention_purge.cli.load_db_config", return_value=_config()):
            assert asyncio.run(_async_purge(_purge_args("--confirm"))) == 1


class TestRecoverCommand:
    def test_requires_list_or_table(self, purge_env) -> None:
        args = build_parser().parse_args(["recover"])
        assert asyncio.run(_async_recover(args)) == 1

    def test_list(self, purge_env) -> None:
        adapter, _ = purge_env
        with patch("retention_purge.cli.list_staging_artifacts", new_callable=AsyncMock, return_value=[]) as mock_list:
            code = asyncio.run(_async_recover(build_parser().parse_args(["recover", "--list"])))
        assert code == 0
        mock_list.assert_awaited_once_with(adapter, "purge_keep_")

    def test_table_without_confirm_only_shows(self, purge_env) -> None:
        provenance = MagicMock(keep_count=3, source_table="events", cutoff=datetime(2023, 1, 1),
                               created_at=datetime(2024, 1, 1))
        with patch("retention_purge.cli.read_provenance", new_callable=AsyncMock, return_value=provenance), \
             patch("retention_purge.cli.recover_from_staging", new_callable=AsyncMock) as mock_recover:
            code = asyncio.run(_async_recover(build_parser().parse_args(["recover", "--table", "events"])))
        assert code == 0
        mock_recover.assert_not_awaited()
