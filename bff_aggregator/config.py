"""
Application configuration using Pydantic Settings
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BFF_",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = Field(default="BFFAggregator", description="Application name")
    app_env: str = Field(default="development", description="Environment")
    debug: bool = Field(default=False, description="Debug mode")
    bff_prefix: str = Field(default="/bff", description="Aggregate endpoints prefix")
    ops_prefix: str = Field(default="/ops", description="Operational endpoints prefix")

    # Catalog (profiles, plans, services)
    catalog_path: str = Field(
        default="config/catalog.json",
        description="Path to the JSON catalog loaded at startup",
    )

    # Client identification
    client_profile_header: str = Field(default="X-Client-Profile")
    default_profile: str | None = Field(
        default=None,
        description="Profile used when the request does not name one",
    )
    request_id_header: str = Field(default="X-Request-ID")

    # Headers forwarded verbatim to upstream services
    forward_headers: List[str] = Field(
        default=["authorization", "x-request-id", "accept-language"]
    )

    # Upstream defaults (used when a service does not override them)
    default_timeout_ms: int = Field(default=2000, ge=1)
    default_max_in_flight: int = Field(default=64, ge=1)
    default_admission_wait_ms: int = Field(default=250, ge=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console", description="json or console")

    # CORS
    cors_origins: List[str] = Field(
        default=["http://localhost:4200", "http://localhost:3000"]
    )

    @field_validator("cors_origins", "forward_headers", mode="before")
    @classmethod
    def parse_list(cls, v):
        if isinstance(v, str):
            import json
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("forward_headers")
    @classmethod
    def lowercase_headers(cls, v: List[str]) -> List[str]:
        return [header.lower() for header in v]


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()
