"""
Lookup of per-provider OAuth client configuration.
"""

from __future__ import annotations

from typing import Iterable

from federated_tokens.core.config import ProviderSettings
from federated_tokens.models.providers import ProviderConfig, ProviderKeys


class ProviderNotConfiguredError(Exception):
    """Raised when no configuration exists for a provider."""


class ProviderConfigService:
    """Expose configured providers and which of them are currently active."""

    def __init__(self, providers: Iterable[ProviderSettings]) -> None:
        self._providers: dict[tuple[str, str], ProviderSettings] = {
            (provider.provider_type, provider.provider_id): provider
            for provider in providers
        }

    def custom_config(self, provider_type: str, provider_id: str) -> ProviderConfig:
        provider = self._providers.get((provider_type.lower(), provider_id))
        if provider is None:
            raise ProviderNotConfiguredError(
                f"Provider {provider_type}/{provider_id} is not configured."
            )
        return ProviderConfig(
            provider_type=provider.provider_type,
            provider_id=provider.provider_id,
            keys=ProviderKeys(id=provider.client_id, secret=provider.client_secret),
            scope=provider.scope,
            authorize_url=provider.authorize_url,
            token_url=provider.token_url,
            userinfo_url=provider.userinfo_url,
            redirect_uri=provider.redirect_uri,
        )

    def is_provider_active(self, provider_type: str, provider_id: str) -> bool:
        provider = self._providers.get((provider_type.lower(), provider_id))
        return provider is not None and provider.active

    def active_providers(self) -> list[tuple[str, str]]:
        return [key for key, provider in self._providers.items() if provider.active]


__all__ = ["ProviderConfigService", "ProviderNotConfiguredError"]
