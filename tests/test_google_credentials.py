from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

import db
from core.errors import AuthExpired, AuthRequired, NetworkFailure
from core.google_credentials import CredentialManager, GoogleOAuthProvider
from core.snapshot import format_instant

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _manager(store, provider) -> CredentialManager:
    return CredentialManager(store, provider, lookahead_seconds=300, clock=lambda: NOW)


async def _seed_session(store, expires_in: timedelta, refresh_token="refresh-1") -> None:
    await store.set_setting(db.ACCESS_TOKEN_KEY, "stored-token")
    await store.set_setting(db.TOKEN_EXPIRY_KEY, format_instant(NOW + expires_in))
    if refresh_token:
        await store.set_setting(db.REFRESH_TOKEN_KEY, refresh_token)


@pytest.mark.asyncio
async def test_interactive_authorization_persists_the_credential(store, provider):
    manager = _manager(store, provider)

    credential = await manager.authorize(interactive=True)

    assert provider.calls == [(True, None)]
    assert manager.is_authorized
    assert credential.expires_at == NOW + timedelta(seconds=3600)
    assert await store.get_setting(db.ACCESS_TOKEN_KEY) == "token-1"
    assert await store.get_setting(db.TOKEN_EXPIRY_KEY) == format_instant(credential.expires_at)
    assert await store.get_setting(db.REFRESH_TOKEN_KEY) == "refresh-1"


@pytest.mark.asyncio
async def test_missing_lifetime_defaults_to_one_hour(store, provider):
    provider.expires_in = None
    manager = _manager(store, provider)

    credential = await manager.authorize(interactive=True)

    assert credential.expires_at == NOW + timedelta(hours=1)


@pytest.mark.asyncio
async def test_silent_authorization_without_session_never_prompts(store, provider):
    manager = _manager(store, provider)

    with pytest.raises(AuthRequired):
        await manager.authorize(interactive=False)

    assert provider.calls == []


@pytest.mark.asyncio
async def test_token_expiring_in_three_minutes_is_renewed_once(store, provider):
    await _seed_session(store, timedelta(minutes=3))
    manager = _manager(store, provider)
    assert await manager.load()
    assert manager.is_expiring_soon()

    seen = []

    async def operation(token: str) -> str:
        seen.append(token)
        return "done"

    results = await asyncio.gather(manager.call(operation), manager.call(operation))

    assert results == ["done", "done"]
    assert provider.calls == [(False, "refresh-1")]
    assert seen == ["token-1", "token-1"]
    assert not manager.is_expiring_soon()


@pytest.mark.asyncio
async def test_fresh_token_is_used_without_renewal(store, provider):
    await _seed_session(store, timedelta(minutes=30))
    manager = _manager(store, provider)
    await manager.load()

    assert await manager.ensure_fresh() == "stored-token"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_unauthorized_call_raises_auth_required(store, provider):
    manager = _manager(store, provider)

    async def operation(token: str) -> None:
        raise AssertionError("must not run")

    with pytest.raises(AuthRequired) as excinfo:
        await manager.call(operation)

    assert "sign in" in str(excinfo.value)


@pytest.mark.asyncio
async def test_rejected_token_is_renewed_and_retried_once(store, provider):
    await _seed_session(store, timedelta(minutes=30))
    manager = _manager(store, provider)
    await manager.load()
    seen = []

    async def operation(token: str) -> str:
        seen.append(token)
        if token == "stored-token":
            raise AuthExpired("401")
        return "ok"

    assert await manager.call(operation) == "ok"
    assert seen == ["stored-token", "token-1"]
    assert provider.calls == [(False, "refresh-1")]


@pytest.mark.asyncio
async def test_second_rejection_signs_out(store, provider):
    await _seed_session(store, timedelta(minutes=30))
    await store.set_setting(db.FOLDER_ID_KEY, "folder-1")
    manager = _manager(store, provider)
    await manager.load()
    invalidated = []
    manager.add_invalidation_listener(lambda: invalidated.append(True))

    async def operation(token: str) -> None:
        raise AuthExpired("401")

    with pytest.raises(AuthRequired) as excinfo:
        await manager.call(operation)

    assert str(excinfo.value) == "Authorization expired. Please sign in again."
    assert not manager.is_authorized
    assert invalidated == [True]
    for key in (db.ACCESS_TOKEN_KEY, db.TOKEN_EXPIRY_KEY, db.REFRESH_TOKEN_KEY, db.FOLDER_ID_KEY):
        assert await store.get_setting(key) is None


@pytest.mark.asyncio
async def test_renewal_rejected_by_google_signs_out_on_401(store, provider):
    await _seed_session(store, timedelta(minutes=30))
    manager = _manager(store, provider)
    await manager.load()
    provider.error = AuthRequired("revoked")

    async def operation(token: str) -> None:
        raise AuthExpired("401")

    with pytest.raises(AuthRequired):
        await manager.call(operation)

    assert await store.get_setting(db.ACCESS_TOKEN_KEY) is None


@pytest.mark.asyncio
async def test_network_failure_during_proactive_renewal_keeps_current_token(store, provider):
    await _seed_session(store, timedelta(minutes=2))
    manager = _manager(store, provider)
    await manager.load()
    provider.error = NetworkFailure("offline")

    assert await manager.ensure_fresh() == "stored-token"
    assert manager.is_authorized


@pytest.mark.asyncio
async def test_load_keeps_expired_token_when_session_can_renew(store, provider):
    await _seed_session(store, timedelta(minutes=-5))
    manager = _manager(store, provider)

    assert await manager.load() is True
    assert await manager.ensure_fresh() == "token-1"


@pytest.mark.asyncio
async def test_load_discards_expired_token_without_session(store, provider):
    await _seed_session(store, timedelta(minutes=-5), refresh_token=None)
    manager = _manager(store, provider)

    assert await manager.load() is False
    assert await store.get_setting(db.ACCESS_TOKEN_KEY) is None
    assert await store.get_setting(db.TOKEN_EXPIRY_KEY) is None


@pytest.mark.asyncio
async def test_load_without_stored_token(store, provider):
    manager = _manager(store, provider)

    assert await manager.load() is False
    assert not manager.is_authorized


def test_google_provider_requires_client_id():
    with pytest.raises(ValueError):
        GoogleOAuthProvider("")


def test_google_provider_refuses_silent_request_without_session():
    provider = GoogleOAuthProvider("client-id.apps.googleusercontent.com")

    with pytest.raises(AuthRequired):
        provider.request_token(interactive=False, refresh_token=None)
