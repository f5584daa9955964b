"""Application configuration settings."""

from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigurationError


class LoggingConfig(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="RELAY_LOG_")

    level: str = Field(default="INFO", description="Log level")
    file_path: Optional[str] = Field(default=None, description="Log file path")
    json_format: bool = Field(default=False, description="Use JSON log format")


class ProtocolConfig(BaseSettings):
    """JSON-RPC handshake settings."""

    model_config = SettingsConfigDict(env_prefix="RELAY_PROTOCOL_")

    protocol_version: str = Field(
        default="2024-11-05", description="MCP protocol version sent in initialize"
    )
    client_name: str = Field(default="mcp-relay", description="Client identity name")
    attempt_budget: int = Field(
        default=20, ge=1, description="Lines read per response before giving up"
    )
    line_wait: float = Field(
        default=0.3, gt=0, description="Seconds to wait for a single line"
    )
    initialize_timeout: float = Field(
        default=15.0, gt=0, description="Initialize phase timeout in seconds"
    )
    list_timeout: float = Field(
        default=10.0, gt=0, description="tools/list phase timeout in seconds"
    )
    call_timeout: float = Field(
        default=30.0, gt=0, description="tools/call phase timeout in seconds"
    )
    stream_limit: int = Field(
        default=16 * 1024 * 1024, description="Maximum length of a single line"
    )


class ProcessConfig(BaseSettings):
    """Supervised process settings."""

    model_config = SettingsConfigDict(env_prefix="RELAY_PROCESS_")

    stop_timeout: float = Field(
        default=5.0, gt=0, description="Seconds to wait after SIGTERM before SIGKILL"
    )
    kill_tree: bool = Field(
        default=True, description="Terminate child processes of a server too"
    )
    pid_file: str = Field(
        default="relay.pid", description="Pid file of the running supervisor"
    )
    refresh_interval: float = Field(
        default=5.0, gt=0, description="Seconds between store checks by the supervisor"
    )


class StorageConfig(BaseSettings):
    """Definition store settings."""

    model_config = SettingsConfigDict(env_prefix="RELAY_STORAGE_")

    path: str = Field(default="relay.db", description="SQLite database path")


class SecretsConfig(BaseSettings):
    """Secret vault settings."""

    model_config = SettingsConfigDict(env_prefix="RELAY_SECRETS_")

    backend: Literal["keyring", "memory"] = Field(
        default="keyring", description="Vault backend"
    )
    policy: Literal["fail_open", "fail_closed"] = Field(
        default="fail_open",
        description="What to do when a secret is missing from the vault",
    )
    service_prefix: str = Field(
        default="mcp-relay.server", description="Keyring service name prefix"
    )


class RelaySettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    process: ProcessConfig = Field(default_factory=ProcessConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)

    data_dir: str = Field(
        default=str(Path.home() / ".mcp-relay"), description="Data directory path"
    )

    def get_database_path(self) -> Path:
        """Get the database file path."""
        if Path(self.storage.path).is_absolute():
            return Path(self.storage.path)
        return Path(self.data_dir) / self.storage.path

    def get_pid_file_path(self) -> Path:
        """Get the supervisor pid file path."""
        if Path(self.process.pid_file).is_absolute():
            return Path(self.process.pid_file)
        return Path(self.data_dir) / self.process.pid_file

    def get_log_file_path(self) -> Optional[Path]:
        """Get the log file path if configured."""
        if self.logging.file_path:
            return Path(self.logging.file_path)
        return None


def load_settings(config_file: Optional[Union[str, Path]] = None) -> RelaySettings:
    """Build settings from defaults, environment and an optional YAML file.

    Sections in the YAML file (``logging``, ``protocol``, ``process``,
    ``storage``, ``secrets``) override the matching settings groups.
    """
    if not config_file:
        return RelaySettings()

    path = Path(config_file)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data: Dict[str, Any] = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(
            f"Cannot read configuration file: {path}",
            suggestion="Check that the file exists and is readable",
        ) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid configuration file: {e}",
            suggestion="Check YAML syntax and file format",
        ) from e

    if not isinstance(data, dict):
        raise ConfigurationError(
            "Configuration file must contain a mapping at the top level",
            details={"file": str(path)},
        )

    try:
        return RelaySettings(**data)
    except ValidationError as e:
        raise ConfigurationError(
            "Configuration file failed validation",
            details={"file": str(path), "errors": e.errors()},
        ) from e
