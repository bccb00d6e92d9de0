"""Tests for configuration models and the db.toml loader."""

import textwrap
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from retention_purge.config.loader import load_db_config
from retention_purge.config.models import (
    JoinRule,
    RetentionSettings,
    SwapSettings,
    subtract_duration,
)
from retention_purge.errors import ConfigurationError

EXAMPLE_PATH = Path(__file__).resolve().parent.parent / "db.toml.example"


# ============================================================================
# Cutoff resolution
# ============================================================================


class TestCutoff:
    """Absolute cutoffs pass through; relative ones use calendar arithmetic."""

    def test_absolute_date_becomes_midnight(self) -> None:
        settings = RetentionSettings(cutoff=date(2023, 1, 1))
        assert settings.resolve_cutoff() == datetime(2023, 1, 1)

    def test_aware_cutoff_normalized_to_utc(self) -> None:
        aware = datetime(2023, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        assert RetentionSettings(cutoff=aware).cutoff == datetime(2023, 1, 1, 0, 0)

    def test_retain_relative_to_now(self) -> None:
        settings = RetentionSettings(retain="2y")
        assert settings.resolve_cutoff(datetime(2024, 6, 15, 12, 0)) == datetime(2022, 6, 15, 12, 0)

    @pytest.mark.parametrize(
        "moment, duration, expected",
        [
            (datetime(2024, 3, 31), "1m", datetime(2024, 2, 29)),
            (datetime(2024, 2, 29), "1y", datetime(2023, 2, 28)),
            (datetime(2024, 1, 15), "14d", datetime(2024, 1, 1)),
            (datetime(2024, 1, 15), "2w", datetime(2024, 1, 1)),
            (datetime(2024, 1, 31), "13m", datetime(2022, 12, 31)),
        ],
    )
    def test_subtract_duration(self, moment, duration, expected) -> None:
        assert subtract_duration(moment, duration) == expected

    def test_both_sources_rejected(self) -> None:
        with pytest.raises(ValidationError, match="not both"):
            RetentionSettings(cutoff=date(2023, 1, 1), retain="1y")

    def test_no_source_fails_at_resolution(self) -> None:
        settings = RetentionSettings()
        with pytest.raises(ConfigurationError):
            settings.resolve_cutoff()

    def test_bad_retain_format(self) -> None:
        with pytest.raises(ValidationError):
            RetentionSettings(retain="two years")


class TestSettingsValidation:
    def test_batch_size_auto_or_positive(self) -> None:
        assert RetentionSettings().batch_size == "auto"
        assert RetentionSettings(batch_size=500).batch_size == 500
        with pytest.raises(ValidationError):
            RetentionSettings(batch_size=0)

    def test_swap_threshold_bounds(self) -> None:
        with pytest.raises(ValidationError):
            SwapSettings(threshold=1.5)

    def test_join_rule_columns_pair_up(self) -> None:
        with pytest.raises(ValidationError):
            JoinRule(child="c", parent="p", child_columns=["a"])
        with pytest.raises(ValidationError):
            JoinRule(child="c", parent="p", child_columns=["a"], parent_columns=["x", "y"])

    def test_aliases_and_field_names(self) -> None:
        by_alias = RetentionSettings.model_validate({"schema": "history", "table": {"t": {"skip": True}}})
        by_name = RetentionSettings(schema_name="history", overrides={"t": {"skip": True}})
        assert by_alias.schema_name == by_name.schema_name == "history"
        assert by_alias.override_for("t").skip
        assert not by_alias.override_for("other").skip


# ============================================================================
# Loader
# ============================================================================


class TestLoadDbConfig:
    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="db.toml.example"):
            load_db_config(tmp_path / "db.toml")

    def test_full_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "db.toml"
        config_file.write_text(textwrap.dedent("""\
            [profiles.local]
            url = "postgresql://localhost/history"

            [retention]
            cutoff = 2023-01-01
            batch_size = 20000
            tables = ["events", "event_items"]

            [[retention.join]]
            child = "event_items"
            parent = "events"

            [retention.table.events]
            date_columns = ["start_date", "end_date"]
            purge_null_age = true

            [retention.swap]
            enabled = false
        """))

        config = load_db_config(config_file)

        assert config.profiles["local"].url == "postgresql://localhost/history"
        retention = config.retention
        assert retention.cutoff == datetime(2023, 1, 1)
        assert retention.batch_size == 20000
        assert retention.joins == [JoinRule(child="event_items", parent="events")]
        assert retention.override_for("events").date_columns == ["start_date", "end_date"]
        assert retention.override_for("events").purge_null_age
        assert not retention.swap.enabled
        assert retention.maintenance.reindex_threshold == 0.30

    def test_retention_section_optional(self, tmp_path: Path) -> None:
        config_file = tmp_path / "db.toml"
        config_file.write_text('[profiles.a]\nurl = "postgresql://localhost/a"\n')
        config = load_db_config(config_file)
        assert config.retention == RetentionSettings()

    def test_invalid_settings_are_value_errors(self, tmp_path: Path) -> None:
        config_file = tmp_path / "db.toml"
        config_file.write_text('[profiles.a]\nurl = "x"\n\n[retention]\nbatch_size = -1\n')
        with pytest.raises(ValueError):
            load_db_config(config_file)

    def test_example_file_loads(self) -> None:
        config = load_db_config(EXAMPLE_PATH)
        assert set(config.profiles) == {"local", "docker"}
        assert config.retention.retain == "2y"
        assert config.retention.override_for("process_info").skip
