"""Configuration loading for campsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .records import RECORD_TYPES


@dataclass
class ClientConfig:
    """Configuration for the device-side sync client."""

    user_id: str = ""
    server_url: str = ""
    db_path: str = "~/.campsync/local.db"
    record_types: list[str] = field(default_factory=lambda: list(RECORD_TYPES))
    sync_interval_seconds: int = 60
    batch_size: int = 100  # records per push request
    retry_max_attempts: int = 3
    timeout_seconds: float = 30.0


@dataclass
class ServerConfig:
    """Configuration for the sync server."""

    host: str = "0.0.0.0"
    port: int = 8000
    db_path: str = ""  # empty: backing store not configured, answer 503
    max_batch_size: int = 500
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class LoggingConfig:
    level: str = "info"
    json: bool = False


@dataclass
class Config:
    client: ClientConfig = field(default_factory=ClientConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with CAMPSYNC_ prefix."""
    return os.environ.get(f"CAMPSYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Client overrides
    if user_id := _get_env("USER_ID"):
        config.client.user_id = user_id
    if server_url := _get_env("SERVER_URL"):
        config.client.server_url = server_url
    if db_path := _get_env("LOCAL_DB_PATH"):
        config.client.db_path = db_path
    if interval := _get_env("SYNC_INTERVAL"):
        config.client.sync_interval_seconds = int(interval)
    if batch_size := _get_env("SYNC_BATCH_SIZE"):
        config.client.batch_size = int(batch_size)

    # Server overrides
    if server_db := _get_env("SERVER_DB_PATH"):
        config.server.db_path = server_db
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    # Logging overrides
    if level := _get_env("LOG_LEVEL"):
        config.logging.level = level.lower()
    if log_json := _get_env("LOG_JSON"):
        config.logging.json = _is_true(log_json)

    return config


def _parse_record_types(names: list[str]) -> list[str]:
    unknown = [name for name in names if name not in RECORD_TYPES]
    if unknown:
        raise ValueError(
            f"Unknown record types in config: {', '.join(unknown)} "
            f"(expected some of {', '.join(RECORD_TYPES)})"
        )
    return list(names)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse client config
            if "client" in data:
                client_data = data["client"] or {}
                config.client = ClientConfig(
                    user_id=client_data.get("user_id", config.client.user_id),
                    server_url=client_data.get("server_url", config.client.server_url),
                    db_path=client_data.get("db_path", config.client.db_path),
                    record_types=_parse_record_types(
                        client_data.get("record_types", config.client.record_types)
                    ),
                    sync_interval_seconds=client_data.get(
                        "sync_interval_seconds", config.client.sync_interval_seconds
                    ),
                    batch_size=client_data.get("batch_size", config.client.batch_size),
                    retry_max_attempts=client_data.get(
                        "retry_max_attempts", config.client.retry_max_attempts
                    ),
                    timeout_seconds=client_data.get(
                        "timeout_seconds", config.client.timeout_seconds
                    ),
                )

            # Parse server config
            if "server" in data:
                server_data = data["server"] or {}
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    db_path=server_data.get("db_path", config.server.db_path),
                    max_batch_size=server_data.get(
                        "max_batch_size", config.server.max_batch_size
                    ),
                    cors_origins=server_data.get(
                        "cors_origins", config.server.cors_origins
                    ),
                )

            # Parse logging config
            if "logging" in data:
                log_data = data["logging"] or {}
                config.logging = LoggingConfig(
                    level=log_data.get("level", config.logging.level),
                    json=log_data.get("json", config.logging.json),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    if config.client.batch_size < 1:
        raise ValueError("client.batch_size must be at least 1")

    return config
