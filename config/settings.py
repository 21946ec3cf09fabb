"""Configuration management using pydantic-settings."""
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Listener
    host: str = "0.0.0.0"
    port: int = 3000
    service_name: str = "media-api-proxy"

    # Upstream origins
    api_base_url: str = "https://api.themoviedb.org"
    media_base_url: str = "https://image.tmdb.org"

    # Requests under this prefix are streamed from the media origin
    media_path_prefix: str = "/t/p/"

    # Query parameter carrying the client credential (scrubbed and redacted)
    credential_query_param: str = "api_key"

    # Cache settings
    cache_ttl_seconds: int = 600
    max_cache_entries: int = 1000
    max_cache_body_bytes: int = 1024 * 1024

    # Upstream behaviour
    upstream_forward_all_headers: bool = False
    upstream_keep_alive: bool = False
    upstream_timeout_seconds: float = 30.0

    # Request coalescing
    cache_miss_singleflight: bool = False
    coalesce_timeout_seconds: float = 30.0

    # Logging
    access_log_sample_rate: float = 1.0
    log_level: str = "INFO"

    @field_validator(
        "port",
        "cache_ttl_seconds",
        "max_cache_entries",
        "max_cache_body_bytes",
        mode="before",
    )
    @classmethod
    def _positive_int_or_default(cls, value: Any, info) -> int:
        """Invalid or non-positive numbers fall back to the field default."""
        default = cls.model_fields[info.field_name].default
        try:
            parsed = int(str(value).strip())
        except (TypeError, ValueError):
            return default
        return parsed if parsed > 0 else default

    @field_validator("upstream_timeout_seconds", "coalesce_timeout_seconds", mode="before")
    @classmethod
    def _positive_float_or_default(cls, value: Any, info) -> float:
        default = cls.model_fields[info.field_name].default
        try:
            parsed = float(str(value).strip())
        except (TypeError, ValueError):
            return default
        return parsed if parsed > 0 else default

    @field_validator(
        "upstream_forward_all_headers",
        "upstream_keep_alive",
        "cache_miss_singleflight",
        mode="before",
    )
    @classmethod
    def _flag(cls, value: Any) -> bool:
        """Only "true" turns a flag on; anything else leaves it off."""
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() == "true"

    @field_validator("access_log_sample_rate", mode="before")
    @classmethod
    def _clamp_sample_rate(cls, value: Any) -> float:
        try:
            rate = float(str(value).strip())
        except (TypeError, ValueError):
            return 1.0
        return min(max(rate, 0.0), 1.0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
