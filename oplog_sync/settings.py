"""
Configuration for oplog-sync.

Uses Pydantic Settings for validation and environment variable loading.
Values come from the JSON config file first, then ``OPLOG_SYNC_*``
environment variables (or a .env file), then defaults.
"""

import json
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = "oplog-sync.json"

# Config file keys written in camelCase by existing configs
_KEY_ALIASES = {
    "fieldCase": "field_case",
    "logLevel": "log_level",
    "metricsPort": "metrics_port",
}


class TailSettings(BaseSettings):
    """Oplog tailing and reconnection settings."""

    model_config = SettingsConfigDict(
        env_prefix="OPLOG_SYNC_TAIL_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    max_await_time_ms: int = Field(default=1000, description="Server-side await per getMore on the tailing cursor")
    retry_interval: float = Field(default=1.0, description="Seconds between polls of an idle tailing cursor")
    max_empty_retries: int = Field(default=1024, description="Idle polls before the session is recycled")
    progress_interval: int = Field(default=1000, description="Log the processed count every N entries")

    reconnect_delay: float = Field(default=1.0, description="Base delay before reopening a tail session")
    reconnect_backoff: float = Field(default=2.0, description="Delay multiplier for consecutive empty sessions")
    max_reconnect_delay: float = Field(default=60.0, description="Upper bound for the reconnect delay")

    import_batch_size: int = Field(default=1000, description="Cursor batch size during the initial import")
    on_gap: Literal["fail", "warn"] = Field(
        default="fail",
        description="What to do when the checkpoint is older than the retained oplog"
    )

    @field_validator("max_await_time_ms", "max_empty_retries", "progress_interval", "import_batch_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("retry_interval", "reconnect_delay", "max_reconnect_delay")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @field_validator("reconnect_backoff")
    @classmethod
    def validate_backoff(cls, v: float) -> float:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class Settings(BaseSettings):
    """Main settings: source, target, collection mappings and ambient options."""

    model_config = SettingsConfigDict(
        env_prefix="OPLOG_SYNC_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    src: str = Field(default="mongodb://localhost:27017/test", description="Source MongoDB URL (must name a database)")
    dist: str = Field(default="mysql://localhost/test?user=root", description="Target database URL")
    collections: Dict[str, Any] = Field(default_factory=dict, description="Collection -> field mapping")

    prefix: str = Field(default="", description="Prefix for target table names")
    field_case: Literal["", "snake", "camel"] = Field(default="", description="Column name case")
    inclusions: str = Field(default="", description="Character class kept in string values")
    exclusions: str = Field(default="", description="Character class removed from string values")

    replay_inserts_as_replace: bool = Field(
        default=True,
        description="Re-issue an insert as a replace when the primary key already exists"
    )

    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=True, description="Emit JSON log lines")
    metrics_port: Optional[int] = Field(default=None, description="Expose Prometheus metrics on this port")

    tail: TailSettings = Field(default_factory=TailSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    @field_validator("field_case", mode="before")
    @classmethod
    def validate_field_case(cls, v: Optional[str]) -> str:
        return (v or "").lower()


def load_settings(path: Union[str, Path] = DEFAULT_CONFIG_PATH) -> Settings:
    """
    Load settings from a JSON config file.

    Args:
        path: Config file path

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not valid JSON or fails validation
    """
    with open(path, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Config {path} must contain a JSON object")
    values = {_KEY_ALIASES.get(key, key): value for key, value in data.items()}
    if isinstance(values.get("tail"), dict):
        # keys the file leaves out still come from OPLOG_SYNC_TAIL_* or defaults
        values["tail"] = {**TailSettings().model_dump(), **values["tail"]}
    return Settings(**values)
