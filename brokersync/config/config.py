"""
Configuration models for the broker sync engine.

One pydantic-settings model per concern, assembled from config.yaml.
"""
import os
import re
from pathlib import Path
from typing import List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from brokersync.config.dotenv_loader import load_dotenv_files


class BrokerConfig(BaseSettings):
    """Broker REST API connection."""
    model_config = SettingsConfigDict(extra="ignore")

    base_url: str = "https://api.remarkets.primary.com.ar"
    username: Optional[str] = None
    password: Optional[str] = None
    # Account *name*; resolved from /rest/accounts when not set
    account_id: Optional[str] = None

    token_refresh_window_seconds: int = Field(default=60, ge=0, le=3600)
    session_hours: float = Field(default=8.0, gt=0.0, le=24.0)
    request_timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")

    @field_validator("username", "password", "account_id")
    @classmethod
    def drop_unresolved_placeholders(cls, v: Optional[str]) -> Optional[str]:
        # "${BROKER_USERNAME}" left behind by from_yaml when the variable is unset
        if v is None or not v.strip() or v.strip().startswith("$"):
            return None
        return v.strip()


class SyncConfig(BaseSettings):
    """Retry, backoff and pagination behaviour for a sync pass."""
    model_config = SettingsConfigDict(extra="ignore")

    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay_seconds: float = Field(default=2.0, ge=0.0, le=60.0)
    max_delay_seconds: float = Field(default=30.0, ge=0.0, le=600.0)
    # Retries stop once this much time has passed since the first attempt of a page
    max_window_seconds: float = Field(default=300.0, ge=1.0, le=3600.0)
    jitter_ratio: float = Field(default=0.25, ge=0.0, le=1.0)
    default_rate_limit_seconds: float = Field(default=60.0, ge=1.0, le=3600.0)
    default_trading_day: str = "today"

    @model_validator(mode="after")
    def validate_delays(self) -> "SyncConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class ProcessingConfig(BaseSettings):
    """Normalization and consolidation settings."""
    model_config = SettingsConfigDict(extra="ignore")

    market_timezone: str = "America/Argentina/Buenos_Aires"
    executed_statuses: List[str] = Field(default_factory=lambda: ["FILLED", "PARTIALLY_FILLED"])
    report_decimals: int = Field(default=4, ge=0, le=10)
    # Replace the broker portion of the baseline for the synced trading day
    replace_source_window: bool = True

    @field_validator("market_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown market_timezone {v!r}") from e
        return v

    @field_validator("executed_statuses")
    @classmethod
    def upper_statuses(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("executed_statuses must not be empty")
        return [s.strip().upper() for s in v]


class StorageConfig(BaseSettings):
    """Committed operation store."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str = "sqlite:///data/operations.db"


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "test", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """
        Read a YAML file, expand environment references, apply overrides.

        Raises:
            FileNotFoundError: yaml_path does not exist
            pydantic.ValidationError: a value is out of range
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        data = yaml.safe_load(expand_env_vars(yaml_path.read_text(encoding="utf-8"))) or {}
        apply_env_overrides(data)
        return cls(**data)


# ${VAR} or ${VAR:-default}; unset variables without a default stay literal
_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

# Environment variables that win over the file, by dotted config path
ENV_OVERRIDES = {
    "ENVIRONMENT": "environment",
    "DATABASE_URL": "storage.database_url",
    "BROKER_BASE_URL": "broker.base_url",
    "BROKER_ACCOUNT": "broker.account_id",
}


def expand_env_vars(text: str) -> str:
    def substitute(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        value = os.environ.get(name)
        if value is not None:
            return value
        return default if default is not None else match.group(0)

    return _ENV_REF.sub(substitute, text)


def apply_env_overrides(data: dict) -> dict:
    for var, dotted in ENV_OVERRIDES.items():
        value = os.getenv(var)
        if not value:
            continue
        *parents, leaf = dotted.split(".")
        node = data
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[leaf] = value
    return data


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load dotenv files, then the YAML config (the packaged config.yaml by default).
    """
    load_dotenv_files()
    return Config.from_yaml(config_path or Path(__file__).parent / "config.yaml")
