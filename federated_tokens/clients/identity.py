"""
Identity provider adapters.

Adapters drive the authorization-code handshake, fetch the user profile and
exchange refresh tokens against a provider's token endpoint.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Protocol, Type
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from federated_tokens.models.providers import ProviderConfig
from federated_tokens.models.tokens import TokenPayload, UserProfile


class AdapterError(Exception):
    """Base class for identity adapter failures."""


class AdapterConstructionError(AdapterError):
    """Raised when no adapter can be built for a provider configuration."""


class AuthenticationError(AdapterError):
    """Raised when the provider handshake or profile fetch fails."""


class RefreshTransportError(AdapterError):
    """Raised when the token endpoint cannot be reached or rejects a refresh."""


class ProviderType(str, Enum):
    """Adapter families that can be configured for a provider."""

    CUSTOM_OAUTH2 = "custom_oauth2"
    CUSTOM_OIDC = "custom_oidc"


class IdentityAdapter(Protocol):
    async def authenticate(self) -> None: ...

    async def get_user_profile(self) -> UserProfile: ...

    async def get_access_token(self) -> TokenPayload: ...

    async def refresh_access_token(self, parameters: Dict[str, Any]) -> str: ...


class OAuth2Adapter:
    """Generic OAuth 2.0 authorization-code adapter."""

    IDENTIFIER_FIELDS: tuple[str, ...] = ("id", "sub", "login", "username")

    def __init__(
        self,
        config: ProviderConfig,
        *,
        authorization_code: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not config.token_url:
            raise AdapterConstructionError(
                f"Provider {config.provider_id} has no token_url configured."
            )
        self._config = config
        self._code = authorization_code
        self._timeout = timeout
        self._transport = transport
        self._tokens: Optional[TokenPayload] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def build_authorization_url(self, state: str) -> str:
        """Construct the provider consent URL."""
        if not self._config.authorize_url:
            raise AdapterConstructionError(
                f"Provider {self._config.provider_id} has no authorize_url configured."
            )
        params = {
            "client_id": self._config.keys.id,
            "redirect_uri": self._config.redirect_uri or "",
            "response_type": "code",
            "scope": self._config.scope,
            "state": state,
        }
        return f"{self._config.authorize_url}?{urlencode(params)}"

    async def authenticate(self) -> None:
        """Exchange the authorization code for a token payload."""
        if not self._code:
            raise AuthenticationError("No authorization code supplied for the handshake.")

        payload = {
            "code": self._code,
            "client_id": self._config.keys.id,
            "client_secret": self._config.keys.secret,
            "redirect_uri": self._config.redirect_uri or "",
            "grant_type": "authorization_code",
        }
        try:
            async with self._client() as client:
                response = await client.post(self._config.token_url, data=payload)
        except httpx.HTTPError as exc:
            raise AuthenticationError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            raise AuthenticationError(response.text)

        try:
            tokens = TokenPayload.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AuthenticationError("Incomplete token payload returned by provider.") from exc
        if not tokens.refresh_token:
            raise AuthenticationError("Provider did not issue a refresh token.")
        self._tokens = tokens

    async def get_user_profile(self) -> UserProfile:
        tokens = await self.get_access_token()
        if not self._config.userinfo_url:
            raise AuthenticationError(
                f"Provider {self._config.provider_id} has no userinfo_url configured."
            )
        headers = {"Authorization": f"Bearer {tokens.access_token}"}
        try:
            async with self._client() as client:
                response = await client.get(self._config.userinfo_url, headers=headers)
        except httpx.HTTPError as exc:
            raise AuthenticationError(f"Userinfo endpoint unreachable: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            raise AuthenticationError(response.text)

        try:
            data = response.json()
        except ValueError as exc:
            raise AuthenticationError("Provider returned a malformed profile.") from exc
        identifier = next(
            (str(data[name]) for name in self.IDENTIFIER_FIELDS if data.get(name)),
            None,
        )
        if identifier is None:
            raise AuthenticationError("Provider profile has no usable identifier.")
        return UserProfile(
            identifier=identifier,
            display_name=data.get("name"),
            email=data.get("email"),
        )

    async def get_access_token(self) -> TokenPayload:
        if self._tokens is None:
            raise AuthenticationError("Adapter has not completed authentication.")
        return self._tokens

    async def refresh_access_token(self, parameters: Dict[str, Any]) -> str:
        """POST a refresh grant and return the raw response body."""
        try:
            async with self._client() as client:
                response = await client.post(self._config.token_url, data=parameters)
        except httpx.HTTPError as exc:
            raise RefreshTransportError(str(exc)) from exc

        if response.status_code != httpx.codes.OK:
            raise RefreshTransportError(
                f"Token endpoint returned {response.status_code}: {response.text}"
            )
        return response.text


class OpenIDConnectAdapter(OAuth2Adapter):
    """OpenID Connect adapter; profiles are keyed by the ``sub`` claim."""

    IDENTIFIER_FIELDS = ("sub",)


class AdapterRegistry:
    """Map provider types to the adapter classes that serve them."""

    DEFAULT_ADAPTERS: Dict[ProviderType, Type[OAuth2Adapter]] = {
        ProviderType.CUSTOM_OAUTH2: OAuth2Adapter,
        ProviderType.CUSTOM_OIDC: OpenIDConnectAdapter,
    }

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        adapters: Optional[Dict[ProviderType, Type[OAuth2Adapter]]] = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._adapters = dict(adapters or self.DEFAULT_ADAPTERS)

    def create(
        self,
        provider_type: str,
        config: ProviderConfig,
        *,
        authorization_code: Optional[str] = None,
    ) -> OAuth2Adapter:
        try:
            adapter_cls = self._adapters[ProviderType(provider_type)]
        except (ValueError, KeyError) as exc:
            raise AdapterConstructionError(
                f"No adapter registered for provider type {provider_type!r}."
            ) from exc
        return adapter_cls(
            config,
            authorization_code=authorization_code,
            timeout=self._timeout,
            transport=self._transport,
        )


__all__ = [
    "AdapterConstructionError",
    "AdapterError",
    "AdapterRegistry",
    "AuthenticationError",
    "IdentityAdapter",
    "OAuth2Adapter",
    "OpenIDConnectAdapter",
    "ProviderType",
    "RefreshTransportError",
]
