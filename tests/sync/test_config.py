"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from notesync.config import (
    ConfigurationManager,
    DaemonConfig,
    NoteSyncConfig,
    TicketConfig,
    WorkspaceConfig,
)
from notesync.errors import ConfigurationError, ExitCode


class TestModels:
    def test_defaults(self) -> None:
        config = NoteSyncConfig()
        assert config.api.max_notes == 10000
        assert config.daemon.min_sleep_seconds == 5
        assert config.daemon.max_sleep_seconds == 300
        assert config.verification.chunk_size == 100000

    def test_poll_interval_must_be_shorter_than_lease(self) -> None:
        with pytest.raises(ValidationError):
            TicketConfig(lease_seconds=1.0, poll_interval_seconds=1.0)

    def test_sleep_bounds(self) -> None:
        with pytest.raises(ValidationError):
            DaemonConfig(min_sleep_seconds=10, max_sleep_seconds=5)

    def test_unknown_section_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NoteSyncConfig(bogus={})

    def test_workspace_paths(self, tmp_path: Path) -> None:
        workspace = WorkspaceConfig(path=tmp_path, log_level="debug")
        assert workspace.log_level == "DEBUG"
        assert workspace.store_path == tmp_path / "notes.db"
        assert workspace.lock_dir == tmp_path / "locks"

    def test_unknown_log_level(self) -> None:
        with pytest.raises(ValidationError):
            WorkspaceConfig(log_level="LOUD")


class TestConfigurationManager:
    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        manager = ConfigurationManager(tmp_path / "config.yaml", environ={})
        assert manager.load() == NoteSyncConfig()

    def test_loads_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("api:\n  max_notes: 2500\nbulk:\n  partition_count: 4\n")

        config = ConfigurationManager(path, environ={}).load()

        assert config.api.max_notes == 2500
        assert config.bulk.partition_count == 4

    def test_environment_overrides_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("daemon:\n  max_sleep_seconds: 100\n  min_sleep_seconds: 1\n")
        environ = {
            "NOTESYNC_DAEMON__MAX_SLEEP_SECONDS": "42",
            "NOTESYNC_UNKNOWN__FIELD": "ignored",
            "OTHER_VAR": "ignored",
        }

        config = ConfigurationManager(path, environ=environ).load()

        assert config.daemon.max_sleep_seconds == 42
        assert config.daemon.min_sleep_seconds == 1

    def test_invalid_value_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("api:\n  max_notes: 20000\n")

        with pytest.raises(ConfigurationError, match="api.max_notes") as exc_info:
            ConfigurationManager(path, environ={}).load()
        assert exc_info.value.exit_code == ExitCode.FATAL_CONFIGURATION

    def test_invalid_yaml_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("api: [unclosed\n")
        with pytest.raises(ConfigurationError):
            ConfigurationManager(path, environ={}).load()

    def test_non_mapping_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            ConfigurationManager(path, environ={}).load()

    def test_save_then_load(self, tmp_path: Path) -> None:
        manager = ConfigurationManager(tmp_path / "nested" / "config.yaml", environ={})
        manager.save(NoteSyncConfig(retry={"max_attempts": 3}))

        reloaded = ConfigurationManager(manager.config_path, environ={}).load()

        assert reloaded.retry.max_attempts == 3

    def test_reload_keeps_previous_on_error(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("api:\n  max_notes: 100\n")
        manager = ConfigurationManager(path, environ={})
        manager.load()
        path.write_text("api:\n  max_notes: -1\n")

        with pytest.raises(ConfigurationError):
            manager.reload()
        assert manager.config.api.max_notes == 100

    def test_validate_reports_errors(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("tickets:\n  lease_seconds: 1\n  poll_interval_seconds: 5\nextra_key: 1\n")

        errors = ConfigurationManager(path, environ={}).validate()

        assert len(errors) == 2
        assert any(e.startswith("extra_key") for e in errors)

    def test_validate_missing_file(self, tmp_path: Path) -> None:
        errors = ConfigurationManager(environ={}).validate(tmp_path / "absent.yaml")
        assert errors == [f"Configuration file not found: {tmp_path / 'absent.yaml'}"]

    def test_validate_valid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("version: 1\n")
        assert ConfigurationManager(path, environ={}).validate() == []
