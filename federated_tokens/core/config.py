"""
Application configuration models and helpers.

Centralizes settings management so the refresh worker, the operator CLI and
the token engine share a consistent configuration surface.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hashed local keys are ``provider_id + "-" + md5`` (33 chars after the id);
# keeping provider ids this short bounds every derived key at 64 characters.
MAX_PROVIDER_ID_LENGTH = 31


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


class ProviderSettings(BaseModel):
    """OAuth client configuration for a single identity provider."""

    provider_type: str = Field(..., description="Adapter family, e.g. 'oauth2' or 'openid'.")
    provider_id: str = Field(..., description="Stable identifier used in local user keys.")
    client_id: str
    client_secret: str
    scope: str = ""
    authorize_url: Optional[str] = None
    token_url: Optional[str] = None
    userinfo_url: Optional[str] = None
    redirect_uri: Optional[str] = None
    active: bool = True

    @field_validator("provider_id")
    @classmethod
    def _check_provider_id(cls, value: str) -> str:
        if not value:
            raise ValueError("provider_id must not be empty")
        if len(value) > MAX_PROVIDER_ID_LENGTH:
            raise ValueError(
                f"provider_id must be at most {MAX_PROVIDER_ID_LENGTH} characters"
            )
        return value

    @field_validator("provider_type")
    @classmethod
    def _normalize_provider_type(cls, value: str) -> str:
        return value.strip().lower()


class RefreshSettings(BaseSettings):
    """Scheduling options for the periodic refresh worker."""

    model_config = SettingsConfigDict(env_prefix="REFRESH_", extra="ignore")

    interval_seconds: float = Field(
        300.0,
        description="Delay between two bulk refresh passes.",
    )
    skip_failed: bool = Field(
        False,
        description="Skip records whose previous refresh attempt failed.",
    )


class SecuritySettings(BaseSettings):
    """Security-related configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    token_encryption_secret: Optional[str] = Field(
        None,
        description=(
            "Secret used to derive the symmetric key for encrypting stored tokens."
        ),
    )


class AppSettings(BaseSettings):
    """Root settings object for the token lifecycle service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    environment: str = Field("development", validation_alias="APP_ENV")
    log_level: str = Field("INFO", validation_alias="APP_LOG_LEVEL")
    token_db_path: str = Field(
        "data/tokens.db",
        validation_alias="TOKEN_DB_PATH",
        description="SQLite database holding token records and legacy identity links.",
    )
    http_timeout_seconds: float = Field(10.0, validation_alias="HTTP_TIMEOUT_SECONDS")
    providers: list[ProviderSettings] = Field(
        default_factory=list,
        validation_alias="PROVIDERS",
        description="JSON list of configured identity providers.",
    )
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)

    @field_validator("providers")
    @classmethod
    def _unique_providers(cls, value: list[ProviderSettings]) -> list[ProviderSettings]:
        seen: set[tuple[str, str]] = set()
        for provider in value:
            key = (provider.provider_type, provider.provider_id)
            if key in seen:
                raise ValueError(
                    f"Provider {provider.provider_type}/{provider.provider_id} configured twice."
                )
            seen.add(key)
        return value


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "MAX_PROVIDER_ID_LENGTH",
    "ProviderSettings",
    "RefreshSettings",
    "SecuritySettings",
    "get_settings",
]
