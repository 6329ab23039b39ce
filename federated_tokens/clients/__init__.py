"""Expose constructed client wrappers."""

from .identity import (
    AdapterRegistry,
    OAuth2Adapter,
    OpenIDConnectAdapter,
    ProviderType,
)
from .sqlite_store import SQLiteTokenStore

__all__ = [
    "AdapterRegistry",
    "OAuth2Adapter",
    "OpenIDConnectAdapter",
    "ProviderType",
    "SQLiteTokenStore",
]
