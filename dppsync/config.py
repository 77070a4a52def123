"""Configuration loading for dppsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

BACKENDS = ("relay", "sheets")


@dataclass
class ClientConfig:
    name: str = "dppsync-client"
    db_path: str = "~/.dppsync/client.db"


@dataclass
class SyncConfig:
    """Configuration for the client-side sync engine."""

    enabled: bool = True
    server_url: str = ""  # Base URL of the relay server
    access_token: str | None = None
    backend: str = "relay"  # "relay" or "sheets"
    sync_interval_seconds: int = 300
    push_batch_size: int = 50
    max_pull_loops: int = 100
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    timeout: float = 30.0


@dataclass
class SheetsConfig:
    """Configuration for the spreadsheet backend."""

    spreadsheet_id: str = ""
    credentials_file: str | None = None  # Service account JSON
    sheet_title: str = "Operations"
    max_retries: int = 3
    base_delay: float = 1.0
    page_size: int = 100


@dataclass
class ServerConfig:
    """Configuration for the relay server."""

    host: str = "0.0.0.0"
    port: int = 8889
    db_path: str = "~/.dppsync/relay.db"
    access_token: str | None = None  # Require X-Access-Token when set
    page_size: int = 1000


@dataclass
class Config:
    client: ClientConfig = field(default_factory=ClientConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    sheets: SheetsConfig = field(default_factory=SheetsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with DPPSYNC_ prefix."""
    return os.environ.get(f"DPPSYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Client overrides
    if name := _get_env("CLIENT_NAME"):
        config.client.name = name
    if db_path := _get_env("CLIENT_DB_PATH"):
        config.client.db_path = db_path

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _is_true(sync_enabled)
    if server_url := _get_env("SYNC_SERVER_URL"):
        config.sync.server_url = server_url
    if token := _get_env("SYNC_ACCESS_TOKEN"):
        config.sync.access_token = token
    if backend := _get_env("SYNC_BACKEND"):
        config.sync.backend = backend
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.sync.sync_interval_seconds = int(sync_interval)
    if timeout := _get_env("SYNC_TIMEOUT"):
        config.sync.timeout = float(timeout)

    # Sheets overrides
    if spreadsheet_id := _get_env("SHEETS_SPREADSHEET_ID"):
        config.sheets.spreadsheet_id = spreadsheet_id
    if credentials := _get_env("SHEETS_CREDENTIALS_FILE"):
        config.sheets.credentials_file = credentials

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if server_db := _get_env("SERVER_DB_PATH"):
        config.server.db_path = server_db
    if server_token := _get_env("SERVER_ACCESS_TOKEN"):
        config.server.access_token = server_token

    return config


def _validate(config: Config) -> None:
    if config.sync.backend not in BACKENDS:
        raise ConfigurationError(
            f"Unknown sync backend {config.sync.backend!r}, expected one of {', '.join(BACKENDS)}"
        )
    if config.sync.push_batch_size < 1:
        raise ConfigurationError("sync.push_batch_size must be at least 1")
    if config.server.page_size < 1:
        raise ConfigurationError("server.page_size must be at least 1")


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.

    Raises:
        ConfigurationError: If a setting has an unsupported value.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse client config
            if "client" in data:
                client_data = data["client"]
                config.client = ClientConfig(
                    name=client_data.get("name", config.client.name),
                    db_path=client_data.get("db_path", config.client.db_path),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    server_url=sync_data.get("server_url", config.sync.server_url),
                    access_token=sync_data.get("access_token"),
                    backend=sync_data.get("backend", config.sync.backend),
                    sync_interval_seconds=sync_data.get(
                        "sync_interval_seconds", config.sync.sync_interval_seconds
                    ),
                    push_batch_size=sync_data.get(
                        "push_batch_size", config.sync.push_batch_size
                    ),
                    max_pull_loops=sync_data.get(
                        "max_pull_loops", config.sync.max_pull_loops
                    ),
                    retry_max_attempts=sync_data.get(
                        "retry_max_attempts", config.sync.retry_max_attempts
                    ),
                    retry_base_delay=sync_data.get(
                        "retry_base_delay", config.sync.retry_base_delay
                    ),
                    timeout=sync_data.get("timeout", config.sync.timeout),
                )

            # Parse sheets config
            if "sheets" in data:
                sheets_data = data["sheets"]
                config.sheets = SheetsConfig(
                    spreadsheet_id=sheets_data.get(
                        "spreadsheet_id", config.sheets.spreadsheet_id
                    ),
                    credentials_file=sheets_data.get("credentials_file"),
                    sheet_title=sheets_data.get("sheet_title", config.sheets.sheet_title),
                    max_retries=sheets_data.get("max_retries", config.sheets.max_retries),
                    base_delay=sheets_data.get("base_delay", config.sheets.base_delay),
                    page_size=sheets_data.get("page_size", config.sheets.page_size),
                )

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    db_path=server_data.get("db_path", config.server.db_path),
                    access_token=server_data.get("access_token"),
                    page_size=server_data.get("page_size", config.server.page_size),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    _validate(config)
    return config
