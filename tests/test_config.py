"""Tests for configuration loading."""

import os

import pytest

from dppsync.config import Config, load_config
from dppsync.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Make sure no DPPSYNC_ variables leak in from the environment."""
    for name in list(os.environ):
        if name.startswith("DPPSYNC_"):
            monkeypatch.delenv(name)


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults_without_file(self):
        """Test that no path yields the default configuration."""
        config = load_config()

        assert config == Config()
        assert config.sync.backend == "relay"
        assert config.sync.push_batch_size == 50
        assert config.server.port == 8889

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test that a nonexistent path is not an error."""
        config = load_config(tmp_path / "missing.yaml")

        assert config == Config()

    def test_yaml_sections(self, tmp_path):
        """Test reading every section from YAML."""
        path = tmp_path / "config.yaml"
        path.write_text(
            """
client:
  name: laptop
  db_path: /tmp/laptop.db
sync:
  server_url: http://relay:8889
  access_token: abc
  push_batch_size: 10
  sync_interval_seconds: 60
sheets:
  spreadsheet_id: sheet-123
  page_size: 25
server:
  port: 9000
  access_token: relay-secret
"""
        )

        config = load_config(path)

        assert config.client.name == "laptop"
        assert config.client.db_path == "/tmp/laptop.db"
        assert config.sync.server_url == "http://relay:8889"
        assert config.sync.access_token == "abc"
        assert config.sync.push_batch_size == 10
        assert config.sync.sync_interval_seconds == 60
        # Unset keys keep their defaults
        assert config.sync.max_pull_loops == 100
        assert config.sheets.spreadsheet_id == "sheet-123"
        assert config.sheets.page_size == 25
        assert config.sheets.sheet_title == "Operations"
        assert config.server.port == 9000
        assert config.server.access_token == "relay-secret"
        assert config.server.host == "0.0.0.0"

    def test_empty_file(self, tmp_path):
        """Test that an empty YAML file yields defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path) == Config()

    def test_env_overrides(self, tmp_path, monkeypatch):
        """Test that DPPSYNC_ variables win over the file."""
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  server_url: http://file\n  enabled: true\n")
        monkeypatch.setenv("DPPSYNC_SYNC_SERVER_URL", "http://env")
        monkeypatch.setenv("DPPSYNC_SYNC_ENABLED", "no")
        monkeypatch.setenv("DPPSYNC_SYNC_INTERVAL", "42")
        monkeypatch.setenv("DPPSYNC_SYNC_BACKEND", "sheets")
        monkeypatch.setenv("DPPSYNC_SHEETS_SPREADSHEET_ID", "env-sheet")
        monkeypatch.setenv("DPPSYNC_SERVER_PORT", "7000")
        monkeypatch.setenv("DPPSYNC_SERVER_ACCESS_TOKEN", "tok")

        config = load_config(path)

        assert config.sync.server_url == "http://env"
        assert config.sync.enabled is False
        assert config.sync.sync_interval_seconds == 42
        assert config.sync.backend == "sheets"
        assert config.sheets.spreadsheet_id == "env-sheet"
        assert config.server.port == 7000
        assert config.server.access_token == "tok"

    def test_unknown_backend(self, tmp_path):
        """Test that an unsupported backend is rejected."""
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  backend: carrier-pigeon\n")

        with pytest.raises(ConfigurationError, match="carrier-pigeon"):
            load_config(path)

    def test_invalid_batch_size(self, tmp_path):
        """Test that a zero batch size is rejected."""
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  push_batch_size: 0\n")

        with pytest.raises(ConfigurationError):
            load_config(path)
