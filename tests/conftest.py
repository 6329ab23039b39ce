"""Pytest configuration and fakes shared across the suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest

try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

from federated_tokens.clients.identity import AdapterConstructionError, RefreshTransportError
from federated_tokens.clients.sqlite_store import (
    MultipleRecordsFoundError,
    RecordNotFoundError,
    StoreError,
)
from federated_tokens.core.config import ProviderSettings
from federated_tokens.models.providers import ProviderConfig
from federated_tokens.models.tokens import TokenRecord
from federated_tokens.services.provider_config import ProviderConfigService
from federated_tokens.services.tokens import TokenService


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO-powered tests to run against asyncio backend only."""
    return "asyncio"


class FakeTokenStore:
    """In-memory token store that records every write."""

    def __init__(self) -> None:
        self.records: list[TokenRecord] = []
        self.legacy: dict[str, list[str]] = {}
        self.writes: list[tuple[str, TokenRecord]] = []
        self.failing: set[str] = set()
        self._next_id = 1

    def _check(self, operation: str) -> None:
        if operation in self.failing:
            raise StoreError(f"{operation} failed")

    def seed(self, record: TokenRecord) -> TokenRecord:
        """Add a record without uniqueness checks or write tracking."""
        stored = record.model_copy(update={"id": self._next_id})
        self._next_id += 1
        self.records.append(stored)
        return stored.model_copy()

    def find(self, uid: str, provider_id: str) -> TokenRecord:
        self._check("find")
        matches = [
            r for r in self.records if r.uid == uid and r.provider_id == provider_id
        ]
        if not matches:
            raise RecordNotFoundError(uid)
        if len(matches) > 1:
            raise MultipleRecordsFoundError(uid)
        return matches[0].model_copy()

    def find_all(self) -> list[TokenRecord]:
        self._check("find_all")
        return [record.model_copy() for record in self.records]

    def insert(self, record: TokenRecord) -> TokenRecord:
        self._check("insert")
        stored = self.seed(record)
        self.writes.append(("insert", stored))
        return stored

    def update(self, record: TokenRecord) -> TokenRecord:
        self._check("update")
        for index, existing in enumerate(self.records):
            if existing.id == record.id:
                self.records[index] = record.model_copy()
                self.writes.append(("update", record.model_copy()))
                return record
        raise RecordNotFoundError(str(record.id))

    def delete(self, record: TokenRecord) -> None:
        self._check("delete")
        self.records = [r for r in self.records if r.id != record.id]
        self.writes.append(("delete", record.model_copy()))

    def get_legacy_identifiers(self, uid: str) -> list[str]:
        self._check("get_legacy_identifiers")
        return list(self.legacy.get(uid, []))

    def for_key(self, uid: str, provider_id: str) -> list[TokenRecord]:
        return [r for r in self.records if r.uid == uid and r.provider_id == provider_id]


class FakeRefreshAdapter:
    def __init__(self, response: Optional[str], error: Optional[Exception]) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def refresh_access_token(self, parameters: dict[str, Any]) -> str:
        self.calls.append(parameters)
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response


class FakeAdapterRegistry:
    """Hands out refresh adapters with a canned response or error."""

    def __init__(self) -> None:
        self.response: Optional[str] = (
            '{"access_token": "a2", "refresh_token": "r2", "expires_in": 3600}'
        )
        self.error: Optional[Exception] = None
        self.broken_types: set[str] = set()
        self.created: list[FakeRefreshAdapter] = []

    def fail_with_transport_error(self) -> None:
        self.error = RefreshTransportError("token endpoint returned 500")

    @property
    def calls(self) -> list[dict[str, Any]]:
        return [call for adapter in self.created for call in adapter.calls]

    def create(self, provider_type: str, config: ProviderConfig, **_: Any) -> FakeRefreshAdapter:
        if provider_type in self.broken_types:
            raise AdapterConstructionError(f"unknown type {provider_type}")
        adapter = FakeRefreshAdapter(self.response, self.error)
        self.created.append(adapter)
        return adapter


def make_provider(
    provider_id: str = "github",
    provider_type: str = "custom_oauth2",
    active: bool = True,
) -> ProviderSettings:
    return ProviderSettings(
        provider_type=provider_type,
        provider_id=provider_id,
        client_id=f"{provider_id}-client",
        client_secret=f"{provider_id}-secret",
        scope="openid profile",
        token_url=f"https://{provider_id}.example.com/token",
        userinfo_url=f"https://{provider_id}.example.com/userinfo",
        active=active,
    )


def make_record(
    uid: str = "github-alice",
    provider_id: str = "github",
    provider_type: str = "custom_oauth2",
    expires_in: timedelta = timedelta(hours=1),
    has_failed: bool = False,
    access_token: str = "a1",
    refresh_token: str = "r1",
) -> TokenRecord:
    return TokenRecord(
        uid=uid,
        provider_type=provider_type,
        provider_id=provider_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) + expires_in,
        has_failed=has_failed,
    )


@pytest.fixture
def store() -> FakeTokenStore:
    return FakeTokenStore()


@pytest.fixture
def registry() -> FakeAdapterRegistry:
    return FakeAdapterRegistry()


@pytest.fixture
def providers() -> list[ProviderSettings]:
    return [make_provider("github"), make_provider("gitlab")]


@pytest.fixture
def config_service(providers: list[ProviderSettings]) -> ProviderConfigService:
    return ProviderConfigService(providers)


@pytest.fixture
def token_service(
    store: FakeTokenStore,
    config_service: ProviderConfigService,
    registry: FakeAdapterRegistry,
) -> TokenService:
    return TokenService(
        store=store,
        config_service=config_service,
        adapter_registry=registry,  # type: ignore[arg-type]
    )


@pytest.fixture
def record_factory() -> Callable[..., TokenRecord]:
    return make_record
