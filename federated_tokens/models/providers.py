"""
Resolved OAuth client configuration handed to identity adapters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ProviderKeys:
    id: str
    secret: str


@dataclass(frozen=True)
class ProviderConfig:
    """Client credentials and endpoints for one configured provider."""

    provider_type: str
    provider_id: str
    keys: ProviderKeys
    scope: str = ""
    authorize_url: Optional[str] = None
    token_url: Optional[str] = None
    userinfo_url: Optional[str] = None
    redirect_uri: Optional[str] = None


__all__ = ["ProviderConfig", "ProviderKeys"]
