"""Application configuration for the Coxy image proxy."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import Field, HttpUrl, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ONE_YEAR_SECONDS = 60 * 60 * 24 * 365


class ConfigurationError(RuntimeError):
    """Raised when required settings are missing or inconsistent at startup."""


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class ResolverStrategy(str, Enum):
    STRAIGHT = "straight"
    SHARDED_BY_ID = "sharded-by-id"


class ShardedFallback(str, Enum):
    PASSTHROUGH = "passthrough"
    REJECT = "reject"


class AuthMode(str, Enum):
    NONE = "none"
    OAUTH1 = "oauth1"


class ProxySettings(BaseSettings):
    """Runtime settings for the image proxy service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    cache_base: Path = env_field(..., "COXY_CACHE_BASE")
    target_base: HttpUrl = env_field(..., "COXY_TARGET_BASE")
    user_agent: str = env_field(..., "COXY_USER_AGENT")
    resolver: ResolverStrategy = env_field(ResolverStrategy.STRAIGHT, "COXY_RESOLVER")
    sharded_fallback: ShardedFallback = env_field(ShardedFallback.PASSTHROUGH, "COXY_SHARDED_FALLBACK")
    path_marker: str = env_field("images/", "COXY_PATH_MARKER")
    shard_marker: str = env_field("discogs-images", "COXY_SHARD_MARKER")
    cache_ttl_seconds: int = env_field(ONE_YEAR_SECONDS, "COXY_CACHE_TTL_SECONDS")
    connect_timeout_seconds: float = env_field(3.0, "COXY_CONNECT_TIMEOUT")
    read_timeout_seconds: float = env_field(3.0, "COXY_READ_TIMEOUT")
    rate_limit_header_prefix: str = env_field("x-ratelimit-", "COXY_RATE_LIMIT_HEADER_PREFIX")
    auth_mode: AuthMode = env_field(AuthMode.NONE, "COXY_AUTH_MODE")
    oauth_consumer_key: Optional[str] = env_field(None, "COXY_OAUTH_CONSUMER_KEY")
    oauth_consumer_secret: Optional[SecretStr] = env_field(None, "COXY_OAUTH_CONSUMER_SECRET")
    credentials_path: Path = env_field(Path("./coxy-credentials.json"), "COXY_CREDENTIALS_PATH")
    metrics_token: Optional[SecretStr] = env_field(None, "COXY_METRICS_TOKEN")
    log_level: str = env_field("INFO", "COXY_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "COXY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "COXY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "COXY_OTEL_SAMPLER_RATIO")

    @field_validator("resolver", mode="before")
    @classmethod
    def _normalize_resolver(cls, value):
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "discogs":
                return ResolverStrategy.SHARDED_BY_ID
            return normalized
        return value

    @field_validator("user_agent")
    @classmethod
    def _require_user_agent(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("user agent must not be blank")
        return value

    @field_validator("cache_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value < 0:
            raise ValueError("cache TTL must not be negative")
        return value

    @property
    def target_base_url(self) -> str:
        return str(self.target_base).rstrip("/")


def load_settings(**overrides) -> ProxySettings:
    """Build settings from the environment, failing startup on invalid configuration."""
    try:
        return ProxySettings(**overrides)
    except ValidationError as exc:
        missing = sorted(
            str(error["loc"][0]) for error in exc.errors() if error.get("type") == "missing" and error.get("loc")
        )
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}") from exc
        raise ConfigurationError(f"Invalid settings: {exc}") from exc
