"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (GRAVPROXY__CACHE__ALIVE_SECONDS=3600)
  2. gravproxy.yaml         (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; all fields have sensible defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_CACHE_DIR = str(Path(platformdirs.user_cache_dir("gravproxy")) / "avatars")

URL_PLACEHOLDER = "{}"


def _find_config_file() -> str | None:
    """Return the path of the first gravproxy.yaml found, or None."""
    candidates = [
        Path("gravproxy.yaml"),
        Path(platformdirs.user_config_dir("gravproxy")) / "gravproxy.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class CacheSettings(BaseModel):
    path: str = _DEFAULT_CACHE_DIR
    alive_seconds: int = 86400
    max_entries: int = 500
    cleanup_interval_seconds: int = 3600


class UpstreamSettings(BaseModel):
    url_template: str = "https://www.gravatar.com/avatar/{}"
    timeout_seconds: float = 10.0
    max_image_bytes: int = 256 * 1024
    user_agent: str = "gravproxy/1.0"

    @field_validator("url_template")
    @classmethod
    def _require_placeholder(cls, value: str) -> str:
        if URL_PLACEHOLDER not in value:
            raise ValueError(f"url_template must contain the key placeholder {URL_PLACEHOLDER!r}")
        return value


class RateLimitSettings(BaseModel):
    max_requests: int = 1000
    recovery_seconds: float = 60.0


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: GRAVPROXY__SERVER__PORT=9090
        env_prefix="GRAVPROXY__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    cache: CacheSettings = CacheSettings()
    upstream: UpstreamSettings = UpstreamSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()
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
