"""
Configuration management using Pydantic Settings.
Loads environment variables and provides centralized constants.
"""

import logging
from functools import lru_cache
from typing import Annotated, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)


def _split_csv(value: object) -> object:
    """Turn ``"a, b,,c"`` into ``["a", "b", "c"]``; lists pass through."""
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # GitHub identity
    github_username: str = Field(
        default="",
        description="GitHub user served by GET / (required at request time)",
    )
    github_token: Optional[str] = Field(
        default=None,
        description="Personal access token; raises the upstream rate limit",
    )
    include_private: bool = Field(
        default=False,
        description="Include private repositories owned by the token holder",
    )

    # Cache
    cache_ttl_seconds: int = Field(
        default=3600,
        ge=1,
        description="Seconds a snapshot stays fresh",
    )
    cache_dir: str = Field(
        default="./cache",
        description="Directory holding one persisted record per cache key",
    )

    # Scheduled refresh
    target_usernames: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Ordered usernames refreshed by the scheduler (comma-separated)",
    )
    refresh_hours: Annotated[list[int], NoDecode] = Field(
        default_factory=lambda: [0, 12],
        description="Wall-clock hours of the recurring refresh triggers",
    )
    refresh_timezone: str = Field(
        default="Asia/Tokyo",
        description="IANA timezone the refresh hours are expressed in",
    )
    refresh_key_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Pause between keys within one refresh pass",
    )

    # HTTP server
    allowed_origins: str = Field(
        default="*",
        description="CORS origins, '*' or a comma-separated list",
    )
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3086, ge=1, le=65535, description="Bind port")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("github_username", "github_token")
    @classmethod
    def strip_identity(cls, v: Optional[str]) -> Optional[str]:
        """Strip whitespace; a blank token counts as no token."""
        if v is None:
            return None
        return v.strip()

    @field_validator("target_usernames", mode="before")
    @classmethod
    def split_usernames(cls, v: object) -> object:
        """Accept a comma-separated string and drop duplicate names."""
        v = _split_csv(v)
        if isinstance(v, list):
            seen: list[str] = []
            for name in v:
                name = str(name).strip()
                if name and name not in seen:
                    seen.append(name)
            return seen
        return v

    @field_validator("refresh_hours", mode="before")
    @classmethod
    def split_hours(cls, v: object) -> object:
        return _split_csv(v)

    @field_validator("refresh_hours")
    @classmethod
    def validate_hours(cls, v: list[int]) -> list[int]:
        """Ensure every refresh hour is a valid wall-clock hour."""
        for hour in v:
            if not 0 <= hour <= 23:
                raise ValueError(f"REFRESH_HOURS entries must be 0-23, got {hour}")
        return sorted(set(v))

    @field_validator("refresh_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure the timezone names a known IANA zone."""
        v = v.strip()
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"REFRESH_TIMEZONE is not a known timezone: {v!r}") from exc
        return v

    @model_validator(mode="after")
    def default_targets(self) -> "Settings":
        """Refresh the served user when no explicit target list is given."""
        if not self.target_usernames and self.github_username:
            self.target_usernames = [self.github_username]
        if self.github_token == "":
            self.github_token = None
        return self

    @property
    def cors_origins(self) -> list[str]:
        """CORS origins as the list FastAPI's middleware expects."""
        if self.allowed_origins.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings singleton

    Raises:
        ValidationError: If environment variables are invalid
    """
    return Settings()


# Singleton instance for import
settings = get_settings()
