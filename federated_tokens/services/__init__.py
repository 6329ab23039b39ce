"""Service layer exports."""

from .identity_keys import derive_local_user_key
from .provider_config import ProviderConfigService
from .token_cipher import TokenCipherService
from .tokens import RefreshOutcome, RefreshSummary, TokenService

__all__ = [
    "ProviderConfigService",
    "RefreshOutcome",
    "RefreshSummary",
    "TokenCipherService",
    "TokenService",
    "derive_local_user_key",
]
