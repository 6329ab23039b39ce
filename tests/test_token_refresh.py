from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from federated_tokens.services.provider_config import ProviderConfigService
from federated_tokens.services.tokens import (
    AdapterUnavailableError,
    RefreshOutcome,
    TokenOperationError,
    TokenService,
    TokenStoreError,
)

from conftest import make_provider

EXPIRED = timedelta(seconds=-1)


@pytest.mark.asyncio
async def test_refresh_all_with_empty_store_writes_nothing(token_service, store) -> None:
    summary = await token_service.refresh_all_tokens(skip_failed=False)

    assert summary.total == 0
    assert store.writes == []


@pytest.mark.asyncio
async def test_expired_tokens_are_refreshed(token_service, store, registry, record_factory) -> None:
    store.seed(record_factory(expires_in=EXPIRED, has_failed=True))
    before = datetime.now(timezone.utc)

    summary = await token_service.refresh_all_tokens()

    assert summary[RefreshOutcome.REFRESHED] == 1
    [record] = store.records
    assert record.access_token == "a2"
    assert record.refresh_token == "r2"
    assert record.has_failed is False
    assert before + timedelta(seconds=3599) <= record.expires_at
    assert record.expires_at <= datetime.now(timezone.utc) + timedelta(seconds=3601)
    assert registry.calls == [
        {
            "client_id": "github-client",
            "client_secret": "github-secret",
            "grant_type": "refresh_token",
            "refresh_token": "r1",
            "scope": "openid profile",
        }
    ]


@pytest.mark.asyncio
async def test_transport_failure_only_marks_record_failed(
    token_service, store, registry, record_factory
) -> None:
    original = store.seed(record_factory(expires_in=EXPIRED))
    registry.fail_with_transport_error()

    summary = await token_service.refresh_all_tokens()

    assert summary[RefreshOutcome.FAILED] == 1
    [record] = store.records
    assert record.has_failed is True
    assert record.access_token == original.access_token
    assert record.refresh_token == original.refresh_token
    assert record.expires_at == original.expires_at


@pytest.mark.asyncio
async def test_unparsable_refresh_response_marks_record_failed(
    token_service, store, registry, record_factory
) -> None:
    store.seed(record_factory(expires_in=EXPIRED))
    registry.response = "<html>maintenance</html>"

    summary = await token_service.refresh_all_tokens()

    assert summary[RefreshOutcome.FAILED] == 1
    assert store.records[0].has_failed is True
    assert store.records[0].access_token == "a1"


@pytest.mark.asyncio
async def test_refresh_response_without_expiry_marks_records_failed(
    token_service, store, registry, record_factory
) -> None:
    store.seed(record_factory(uid="github-alice", expires_in=EXPIRED))
    store.seed(record_factory(uid="github-bob", expires_in=EXPIRED))
    registry.response = '{"access_token": "a2", "token_type": "bearer"}'

    summary = await token_service.refresh_all_tokens()

    assert summary[RefreshOutcome.FAILED] == 2
    assert len(registry.calls) == 2
    for record in store.records:
        assert record.has_failed is True
        assert record.access_token == "a1"
        assert record.refresh_token == "r1"


@pytest.mark.asyncio
async def test_fractional_expires_in_marks_record_failed(
    token_service, store, registry, record_factory
) -> None:
    original = store.seed(record_factory(expires_in=EXPIRED))
    registry.response = '{"access_token": "a2", "refresh_token": "r2", "expires_in": 3599.5}'

    summary = await token_service.refresh_all_tokens()

    assert summary[RefreshOutcome.FAILED] == 1
    [record] = store.records
    assert record.has_failed is True
    assert record.access_token == "a1"
    assert record.expires_at == original.expires_at


@pytest.mark.asyncio
async def test_transport_failure_does_not_stop_the_batch(
    token_service, store, registry, record_factory
) -> None:
    store.seed(record_factory(uid="github-alice", expires_in=EXPIRED))
    store.seed(record_factory(uid="github-bob", expires_in=EXPIRED))
    registry.fail_with_transport_error()

    summary = await token_service.refresh_all_tokens()

    assert summary[RefreshOutcome.FAILED] == 2
    assert all(record.has_failed for record in store.records)


@pytest.mark.asyncio
async def test_skip_failed_never_refreshes_failed_records(
    token_service, store, registry, record_factory
) -> None:
    store.seed(record_factory(uid="github-alice", expires_in=EXPIRED, has_failed=True))
    store.seed(record_factory(uid="github-bob", expires_in=EXPIRED))

    summary = await token_service.refresh_all_tokens(skip_failed=True)

    assert summary[RefreshOutcome.SKIPPED] == 1
    assert summary[RefreshOutcome.REFRESHED] == 1
    assert [call["refresh_token"] for call in registry.calls] == ["r1"]
    alice = store.for_key("github-alice", "github")[0]
    assert alice.access_token == "a1"
    assert alice.has_failed is True


@pytest.mark.asyncio
async def test_failed_records_are_retried_without_skip_failed(
    token_service, store, registry, record_factory
) -> None:
    store.seed(record_factory(expires_in=EXPIRED, has_failed=True))

    await token_service.refresh_all_tokens(skip_failed=False)

    assert len(registry.calls) == 1


@pytest.mark.asyncio
async def test_unexpired_records_are_left_untouched(
    token_service, store, registry, record_factory
) -> None:
    store.seed(record_factory(expires_in=timedelta(minutes=5)))

    summary = await token_service.refresh_all_tokens()

    assert summary[RefreshOutcome.NOT_EXPIRED] == 1
    assert registry.calls == []
    assert store.writes == []


@pytest.mark.asyncio
async def test_orphaned_records_are_deleted_without_refresh(
    store, registry, record_factory
) -> None:
    config = ProviderConfigService(
        [make_provider("github"), make_provider("gitlab", active=False)]
    )
    service = TokenService(store, config, registry)  # type: ignore[arg-type]
    store.seed(record_factory(uid="gitlab-alice", provider_id="gitlab", expires_in=EXPIRED))
    store.seed(record_factory(uid="old-alice", provider_id="bitbucket", expires_in=EXPIRED))
    store.seed(record_factory(uid="github-alice", expires_in=EXPIRED))

    summary = await service.refresh_all_tokens()

    assert summary[RefreshOutcome.DELETED] == 2
    assert summary[RefreshOutcome.REFRESHED] == 1
    assert [record.uid for record in store.records] == ["github-alice"]
    assert [call["client_id"] for call in registry.calls] == ["github-client"]


@pytest.mark.asyncio
async def test_orphan_deletion_failure_aborts_the_pass(
    token_service, store, registry, record_factory
) -> None:
    store.seed(record_factory(uid="old-alice", provider_id="bitbucket"))
    store.seed(record_factory(uid="github-alice", expires_in=EXPIRED))
    store.failing.add("delete")

    with pytest.raises(TokenOperationError):
        await token_service.refresh_all_tokens()
    assert registry.calls == []


@pytest.mark.asyncio
async def test_unknown_adapter_type_is_logged_and_batch_continues(
    store, registry, record_factory
) -> None:
    config = ProviderConfigService(
        [make_provider("github"), make_provider("legacy", provider_type="saml")]
    )
    service = TokenService(store, config, registry)  # type: ignore[arg-type]
    registry.broken_types.add("saml")
    store.seed(
        record_factory(uid="legacy-alice", provider_id="legacy", provider_type="saml", expires_in=EXPIRED)
    )
    store.seed(record_factory(uid="github-alice", expires_in=EXPIRED))

    summary = await service.refresh_all_tokens()

    assert summary[RefreshOutcome.ERRORED] == 1
    assert summary[RefreshOutcome.REFRESHED] == 1
    legacy = store.for_key("legacy-alice", "legacy")[0]
    assert legacy.has_failed is False
    assert legacy.access_token == "a1"


@pytest.mark.asyncio
async def test_listing_failure_is_surfaced(token_service, store) -> None:
    store.failing.add("find_all")

    with pytest.raises(TokenStoreError):
        await token_service.refresh_all_tokens()


@pytest.mark.asyncio
async def test_refresh_user_tokens_without_record_is_a_no_op(token_service, store) -> None:
    assert await token_service.refresh_user_tokens("github-nobody", "github") is None
    assert store.writes == []


@pytest.mark.asyncio
async def test_refresh_user_tokens_refreshes_expired_record(
    token_service, store, record_factory
) -> None:
    store.seed(record_factory(expires_in=EXPIRED))

    outcome = await token_service.refresh_user_tokens("github-alice", "github")

    assert outcome is RefreshOutcome.REFRESHED
    assert store.records[0].access_token == "a2"


@pytest.mark.asyncio
async def test_refresh_user_tokens_surfaces_adapter_failures(
    store, registry, record_factory
) -> None:
    config = ProviderConfigService([make_provider("legacy", provider_type="saml")])
    service = TokenService(store, config, registry)  # type: ignore[arg-type]
    registry.broken_types.add("saml")
    store.seed(
        record_factory(uid="legacy-alice", provider_id="legacy", provider_type="saml", expires_in=EXPIRED)
    )

    with pytest.raises(AdapterUnavailableError):
        await service.refresh_user_tokens("legacy-alice", "legacy")


@pytest.mark.asyncio
async def test_refresh_user_tokens_skips_unexpired_record(
    token_service, store, registry, record_factory
) -> None:
    store.seed(record_factory())

    outcome = await token_service.refresh_user_tokens("github-alice", "github")

    assert outcome is RefreshOutcome.NOT_EXPIRED
    assert registry.calls == []
