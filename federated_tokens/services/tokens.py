"""
Lifecycle management for federated access/refresh token pairs.

The service completes provider authentication, keeps exactly one token
record per (user, provider), removes records of deactivated providers and
refreshes expired access tokens.
"""

from __future__ import annotations

import asyncio
import logging
import re
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, Union

from pydantic import ValidationError

from federated_tokens.clients.identity import (
    AdapterConstructionError,
    AdapterRegistry,
    IdentityAdapter,
    RefreshTransportError,
)
from federated_tokens.clients.sqlite_store import (
    MultipleRecordsFoundError,
    RecordNotFoundError,
    StoreError,
)
from federated_tokens.models.tokens import TokenPayload, TokenRecord
from federated_tokens.services.identity_keys import derive_local_user_key
from federated_tokens.services.provider_config import (
    ProviderConfigService,
    ProviderNotConfiguredError,
)


class TokensError(Exception):
    """Base class for token lifecycle failures."""


class NoTokensFoundError(TokensError):
    """Raised when a user holds no tokens for a provider."""


class AmbiguousTokensError(TokensError):
    """Raised when more than one token record exists for a user and provider."""


class TokenStoreError(TokensError):
    """Raised when reading from the token store fails."""


class TokenOperationError(TokensError):
    """Raised when writing to or deleting from the token store fails."""


class AdapterUnavailableError(TokensError):
    """Raised when no identity adapter can be built for a token record."""


class TokenStore(Protocol):
    def find(self, uid: str, provider_id: str) -> TokenRecord: ...

    def find_all(self) -> list[TokenRecord]: ...

    def insert(self, record: TokenRecord) -> TokenRecord: ...

    def update(self, record: TokenRecord) -> TokenRecord: ...

    def delete(self, record: TokenRecord) -> None: ...

    def get_legacy_identifiers(self, uid: str) -> list[str]: ...


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"
    STORE_FAULT = "store_fault"


@dataclass(frozen=True)
class LookupResult:
    """Outcome of a token lookup; only ``FOUND`` carries a record."""

    status: LookupStatus
    record: Optional[TokenRecord] = None
    detail: str = ""


class RefreshOutcome(str, Enum):
    """What a refresh pass did with a single token record."""

    REFRESHED = "refreshed"
    FAILED = "failed"
    NOT_EXPIRED = "not_expired"
    SKIPPED = "skipped"
    DELETED = "deleted"
    ERRORED = "errored"


@dataclass
class RefreshSummary:
    """Per-outcome counters for one bulk refresh pass."""

    counts: dict[RefreshOutcome, int] = field(
        default_factory=lambda: {outcome: 0 for outcome in RefreshOutcome}
    )

    def add(self, outcome: RefreshOutcome) -> None:
        self.counts[outcome] += 1

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def __getitem__(self, outcome: RefreshOutcome) -> int:
        return self.counts[outcome]


PayloadLike = Union[TokenPayload, Mapping[str, Any]]


class TokenService:
    """Persist, look up and refresh federated tokens."""

    def __init__(
        self,
        store: TokenStore,
        config_service: ProviderConfigService,
        adapter_registry: AdapterRegistry,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._store = store
        self._config = config_service
        self._adapters = adapter_registry
        self._logger = logger or logging.getLogger(__name__)
        # Entries disappear once no pending save holds the lock.
        self._key_locks: weakref.WeakValueDictionary[
            tuple[str, str], asyncio.Lock
        ] = weakref.WeakValueDictionary()

    async def authenticate(
        self, adapter: IdentityAdapter, provider_type: str, provider_id: str
    ) -> str:
        """Complete the provider handshake and store the issued tokens.

        Returns the local user key derived from the provider profile. Provider
        ids too long to bound the key raise ``ValueError`` before anything is
        stored.
        """
        await adapter.authenticate()

        profile = await adapter.get_user_profile()
        uid = derive_local_user_key(profile.identifier, provider_id)

        tokens = await adapter.get_access_token()
        await self.save_tokens(tokens, uid, provider_type, provider_id)
        self._logger.info(
            "Linked provider account",
            extra={"uid": uid, "provider_id": provider_id},
        )
        return uid

    def _find(self, key: str, provider_id: str) -> LookupResult:
        try:
            record = self._store.find(key, provider_id)
        except RecordNotFoundError:
            return LookupResult(LookupStatus.NOT_FOUND)
        except MultipleRecordsFoundError as exc:
            return LookupResult(LookupStatus.AMBIGUOUS, detail=str(exc))
        except StoreError as exc:
            return LookupResult(LookupStatus.STORE_FAULT, detail=str(exc))
        return LookupResult(LookupStatus.FOUND, record=record)

    def lookup(self, uid: str, provider_id: str) -> LookupResult:
        """Find tokens by uid, falling back to the user's legacy identifiers."""
        result = self._find(uid, provider_id)
        if result.status is not LookupStatus.NOT_FOUND:
            return result

        try:
            identifiers = self._store.get_legacy_identifiers(uid)
        except StoreError as exc:
            return LookupResult(LookupStatus.STORE_FAULT, detail=str(exc))

        # Legacy identifiers carry the provider id as prefix; the first match wins.
        prefix = re.compile(re.escape(provider_id))
        for identifier in identifiers:
            if prefix.match(identifier):
                return self._find(identifier, provider_id)
        return result

    def get(self, uid: str, provider_id: str) -> TokenRecord:
        """Return a user's tokens for a single provider."""
        result = self.lookup(uid, provider_id)
        if result.status is LookupStatus.FOUND and result.record is not None:
            return result.record
        if result.status is LookupStatus.NOT_FOUND:
            raise NoTokensFoundError(f"Could not find tokens for uid {uid}.")
        if result.status is LookupStatus.AMBIGUOUS:
            raise AmbiguousTokensError(
                "There should be only one set of tokens per user, but we found multiple!"
            )
        raise TokenStoreError(result.detail)

    def _key_lock(self, uid: str, provider_id: str) -> asyncio.Lock:
        lock = self._key_locks.get((uid, provider_id))
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[(uid, provider_id)] = lock
        return lock

    async def save_tokens(
        self,
        payload: PayloadLike,
        uid: str,
        provider_type: str,
        provider_id: str,
    ) -> TokenRecord:
        """Insert or update the token record for ``(uid, provider_id)``.

        Malformed payloads and every store fault, including one during the
        initial lookup, surface as ``TokenOperationError``;
        ``AmbiguousTokensError`` propagates unchanged.
        """
        try:
            tokens = (
                payload
                if isinstance(payload, TokenPayload)
                else TokenPayload.model_validate(dict(payload))
            )
        except ValidationError as exc:
            raise TokenOperationError(f"Malformed token payload: {exc}") from exc

        tokens = tokens.normalized()
        expires_at = tokens.expires_at_datetime()
        if expires_at is None:
            raise TokenOperationError("Token payload carries no expiry.")

        async with self._key_lock(uid, provider_id):
            try:
                existing = self.get(uid, provider_id)
            except NoTokensFoundError:
                existing = None
            except TokenStoreError as exc:
                raise TokenOperationError(str(exc)) from exc

            try:
                if existing is not None:
                    existing.access_token = tokens.access_token
                    if tokens.refresh_token:
                        existing.refresh_token = tokens.refresh_token
                    existing.expires_at = expires_at
                    existing.provider_type = provider_type
                    existing.provider_id = provider_id
                    existing.has_failed = False
                    return self._store.update(existing)

                if not tokens.refresh_token:
                    raise TokenOperationError(
                        f"Cannot store tokens for {uid} without a refresh token."
                    )
                record = TokenRecord(
                    uid=uid,
                    provider_type=provider_type,
                    provider_id=provider_id,
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    expires_at=expires_at,
                    has_failed=False,
                )
                return self._store.insert(record)
            except StoreError as exc:
                raise TokenOperationError(str(exc)) from exc

    async def refresh_all_tokens(self, skip_failed: bool = False) -> RefreshSummary:
        """Refresh every token pair whose access token has expired.

        Orphaned tokens are deleted instead of refreshed. Records that cannot
        get an adapter are logged and skipped so the remaining batch proceeds.
        """
        summary = RefreshSummary()
        try:
            all_tokens = self._store.find_all()
        except StoreError as exc:
            raise TokenStoreError(str(exc)) from exc

        if not all_tokens:
            self._logger.info("No tokens in database.")
            return summary

        for tokens in all_tokens:
            if skip_failed and tokens.has_failed:
                self._logger.debug(
                    "Skipping tokens that failed to refresh before",
                    extra={"uid": tokens.uid},
                )
                summary.add(RefreshOutcome.SKIPPED)
                continue

            if self.delete_orphaned_tokens(tokens):
                summary.add(RefreshOutcome.DELETED)
                continue

            try:
                outcome = await self._refresh_expired_tokens(tokens)
            except AdapterUnavailableError:
                self._logger.error(
                    "Could not build adapter for tokens",
                    extra={"uid": tokens.uid, "provider_id": tokens.provider_id},
                    exc_info=True,
                )
                outcome = RefreshOutcome.ERRORED
            summary.add(outcome)

        self._logger.info(
            "Token refresh pass finished",
            extra={outcome.value: count for outcome, count in summary.counts.items()},
        )
        return summary

    async def refresh_user_tokens(
        self, uid: str, provider_id: str
    ) -> Optional[RefreshOutcome]:
        """Refresh a user's tokens for one provider if the access token expired.

        Returns ``None`` when the user never linked the provider.
        """
        try:
            tokens = self.get(uid, provider_id)
        except NoTokensFoundError:
            return None
        return await self._refresh_expired_tokens(tokens)

    async def _refresh_expired_tokens(self, tokens: TokenRecord) -> RefreshOutcome:
        if tokens.is_expired():
            return await self._refresh_tokens(tokens)
        self._logger.info("Token has not yet expired", extra={"uid": tokens.uid})
        return RefreshOutcome.NOT_EXPIRED

    async def _refresh_tokens(self, tokens: TokenRecord) -> RefreshOutcome:
        """Exchange the refresh token without checking expiry; failures are recorded."""
        try:
            config = self._config.custom_config(tokens.provider_type, tokens.provider_id)
            adapter = self._adapters.create(tokens.provider_type, config)
        except (ProviderNotConfiguredError, AdapterConstructionError) as exc:
            raise AdapterUnavailableError(str(exc)) from exc

        self._logger.info("Trying to refresh token", extra={"uid": tokens.uid})
        parameters = {
            "client_id": config.keys.id,
            "client_secret": config.keys.secret,
            "grant_type": "refresh_token",
            "refresh_token": tokens.refresh_token,
            "scope": config.scope,
        }
        try:
            response = await adapter.refresh_access_token(parameters)
            payload = TokenPayload.model_validate_json(response).normalized()
        except (RefreshTransportError, ValidationError):
            self._logger.info(
                "Refreshing token failed", extra={"uid": tokens.uid}, exc_info=True
            )
            self._mark_failed(tokens)
            return RefreshOutcome.FAILED

        if payload.expires_at is None:
            self._logger.info(
                "Refresh response carries no expiry", extra={"uid": tokens.uid}
            )
            self._mark_failed(tokens)
            return RefreshOutcome.FAILED

        self._logger.info("Saving refreshed token", extra={"uid": tokens.uid})
        await self.save_tokens(
            payload, tokens.uid, tokens.provider_type, tokens.provider_id
        )
        return RefreshOutcome.REFRESHED

    def _mark_failed(self, tokens: TokenRecord) -> None:
        tokens.has_failed = True
        try:
            self._store.update(tokens)
        except StoreError as exc:
            raise TokenOperationError(str(exc)) from exc

    def delete_orphaned_tokens(self, tokens: TokenRecord) -> bool:
        """Delete tokens issued by a provider that is no longer active.

        Returns whether the tokens had to be deleted.
        """
        if not tokens.is_orphaned(self._config):
            return False
        try:
            self._store.delete(tokens)
        except StoreError as exc:
            raise TokenOperationError(str(exc)) from exc
        self._logger.warning(
            "Deleted orphaned provider key",
            extra={"uid": tokens.uid, "provider_id": tokens.provider_id},
        )
        return True


__all__ = [
    "AdapterUnavailableError",
    "AmbiguousTokensError",
    "LookupResult",
    "LookupStatus",
    "NoTokensFoundError",
    "RefreshOutcome",
    "RefreshSummary",
    "TokenOperationError",
    "TokenService",
    "TokenStore",
    "TokenStoreError",
    "TokensError",
]
