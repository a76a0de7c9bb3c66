"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (PDSCOUNT__ESTIMATOR__MODE=fast)
  2. pdscount.yaml          (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; every field has a default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("pdscount")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "cache.db")


def _find_config_file() -> str | None:
    """Return the path of the first pdscount.yaml found, or None."""
    candidates = [
        Path("pdscount.yaml"),
        Path(platformdirs.user_config_dir("pdscount")) / "pdscount.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class ClientSettings(BaseModel):
    timeout_seconds: float = 30.0
    max_connections: int = 50
    max_keepalive_connections: int = 10
    user_agent: str = "pdscount/1.0"
    # Reject loopback/private hosts before any request is made
    block_private_hosts: bool = True


class EstimatorSettings(BaseModel):
    """Page budget and fleet fan-out knobs. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    # "fastest": sum of the sampled pages, flagged as a lower bound when all were full.
    # "fast": more pages, extrapolated by fast_multiplier when all were full.
    mode: Literal["fastest", "fast"] = "fastest"
    page_limit: int = Field(default=1000, ge=1, le=1000)
    fastest_pages: int = Field(default=2, ge=1)
    fast_pages: int = Field(default=10, ge=1)
    fast_multiplier: int = Field(default=2, ge=1)

    umbrella_host: str = "bsky.social"
    relay_url: str = "https://relay1.us-west.bsky.network"
    fleet_suffix: str = ".bsky.network"
    fleet_concurrency: int = Field(default=40, ge=1)
    fleet_member_source: Literal["directory", "listing"] = "directory"
    directory_limit: int = Field(default=1000, ge=1, le=1000)
    directory_max_pages: int = Field(default=50, ge=1)

    @property
    def page_cap(self) -> int:
        return self.fast_pages if self.mode == "fast" else self.fastest_pages


class AuthSettings(BaseModel):
    """Credentials for the relay login. Both unset means anonymous listing."""

    username: str | None = None
    password: SecretStr | None = None

    @property
    def configured(self) -> bool:
        return bool(self.username) and self.password is not None


class CacheSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_prefix: str = "pds_data:"
    ttl_seconds: int = 6 * 60 * 60
    # Advertised to HTTP clients via Cache-Control
    dynamic_ttl_seconds: int = 60 * 60
    db_path: str = _DEFAULT_DB_PATH
    cleanup_interval_hours: int = 6


class RefresherSettings(BaseModel):
    enabled: bool = True
    known_hosts: list[str] = ["bsky.social", "pds.witchcraft.systems"]
    interval_hours: float = 6


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: PDSCOUNT__SERVER__PORT=9090
        env_prefix="PDSCOUNT__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    client: ClientSettings = ClientSettings()
    estimator: EstimatorSettings = EstimatorSettings()
    auth: AuthSettings = AuthSettings()
    cache: CacheSettings = CacheSettings()
    refresher: RefresherSettings = RefresherSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
