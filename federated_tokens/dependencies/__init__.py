"""Expose dependency helpers for the worker and scripts."""

from .clients import (
    get_adapter_registry,
    get_provider_config_service,
    get_token_cipher_service,
    get_token_service,
    get_token_store,
)

__all__ = [
    "get_adapter_registry",
    "get_provider_config_service",
    "get_token_cipher_service",
    "get_token_service",
    "get_token_store",
]
