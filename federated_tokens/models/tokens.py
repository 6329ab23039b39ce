"""
Domain models for federated token persistence.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:  # pragma: no cover
    from federated_tokens.services.provider_config import ProviderConfigService


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TokenRecord(BaseModel):
    """Represents the access/refresh token pair a user holds for one provider."""

    model_config = ConfigDict(validate_assignment=True)

    id: Optional[int] = Field(None, description="Row identifier assigned by the store.")
    uid: str = Field(..., description="Local user key the tokens belong to.")
    provider_type: str
    provider_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    has_failed: bool = False

    @field_validator("expires_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once the access token's expiry has been reached."""
        current = _as_utc(now) if now is not None else datetime.now(timezone.utc)
        return self.expires_at <= current

    def is_orphaned(self, config: "ProviderConfigService") -> bool:
        """True when the issuing provider is no longer configured as active."""
        return not config.is_provider_active(self.provider_type, self.provider_id)


class LegacyIdentityLink(BaseModel):
    """Historical identifier a user was known under before a key migration."""

    uid: str
    identifier: str


class TokenPayload(BaseModel):
    """Token response as returned by a provider's token endpoint."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = Field(None, description="Expiry in epoch seconds.")
    expires_in: Optional[int] = Field(None, description="Lifetime in seconds.")

    def normalized(self, now: Optional[datetime] = None) -> "TokenPayload":
        """Return a copy with ``expires_at`` derived from ``expires_in`` if missing."""
        if self.expires_at is not None or self.expires_in is None:
            return self
        current = _as_utc(now) if now is not None else datetime.now(timezone.utc)
        return self.model_copy(
            update={"expires_at": int(current.timestamp()) + int(self.expires_in)}
        )

    def expires_at_datetime(self) -> Optional[datetime]:
        if self.expires_at is None:
            return None
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


class UserProfile(BaseModel):
    """Subset of the provider's user profile needed to key local accounts."""

    model_config = ConfigDict(extra="ignore")

    identifier: str
    display_name: Optional[str] = None
    email: Optional[str] = None


__all__ = ["LegacyIdentityLink", "TokenPayload", "TokenRecord", "UserProfile"]
