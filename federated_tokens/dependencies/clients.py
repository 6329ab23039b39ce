"""
Factory functions providing shared clients and services.
"""

from functools import lru_cache
from typing import Optional

from federated_tokens.clients import AdapterRegistry, SQLiteTokenStore
from federated_tokens.core.config import AppSettings, get_settings
from federated_tokens.services import (
    ProviderConfigService,
    TokenCipherService,
    TokenService,
)


@lru_cache()
def _settings() -> AppSettings:
    """Internal helper to cache settings for client factories."""
    return get_settings()


@lru_cache()
def get_token_cipher_service() -> Optional[TokenCipherService]:
    """Provide the token encryption helper when a secret is configured."""
    secret = _settings().security.token_encryption_secret
    if not secret:
        return None
    return TokenCipherService(secret=secret)


@lru_cache()
def get_token_store() -> SQLiteTokenStore:
    """Provide the shared SQLite token store."""
    return SQLiteTokenStore(
        _settings().token_db_path,
        cipher=get_token_cipher_service(),
    )


@lru_cache()
def get_provider_config_service() -> ProviderConfigService:
    return ProviderConfigService(_settings().providers)


@lru_cache()
def get_adapter_registry() -> AdapterRegistry:
    """Provide the provider-type to adapter mapping."""
    return AdapterRegistry(timeout=_settings().http_timeout_seconds)


@lru_cache()
def get_token_service() -> TokenService:
    """Provide the token lifecycle service wired to the shared clients."""
    return TokenService(
        store=get_token_store(),
        config_service=get_provider_config_service(),
        adapter_registry=get_adapter_registry(),
    )


__all__ = [
    "get_adapter_registry",
    "get_provider_config_service",
    "get_token_cipher_service",
    "get_token_service",
    "get_token_store",
]
