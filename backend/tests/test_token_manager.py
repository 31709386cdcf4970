import asyncio

import httpx
import pytest

from booksync.services.credential_store import CredentialStore
from booksync.services.errors import AuthError, NetworkError
from booksync.services.token_manager import TokenManager, looks_like_grant_code


GRANT_CODE = "1000." + "a" * 32 + "." + "b" * 32


class OAuthServer:
    """Scripted OAuth token endpoint for httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.refresh_response = (200, {"access_token": "fresh-token", "expires_in": 3600})
        self.exchange_response = (200, {"access_token": "code-token", "refresh_token": "issued-refresh", "expires_in": 3600})
        self.delay = 0.0

    def grant_types(self):
        return [r.url.params["grant_type"] for r in self.requests]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if request.url.params["grant_type"] == "refresh_token":
            status, body = self.refresh_response
        else:
            status, body = self.exchange_response
        return httpx.Response(status, json=body)


@pytest.fixture
def oauth():
    return OAuthServer()


@pytest.fixture
def store(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def manager(store, oauth):
    return TokenManager(store, transport=httpx.MockTransport(oauth.handler), margin_seconds=300)


@pytest.fixture
def connected(manager):
    manager.save_credentials("client-1", "secret-1", "refresh-1", "eu")
    return manager


@pytest.mark.asyncio
async def test_cached_token_is_used_outside_margin(connected, oauth):
    connected.save_access_token("cached", 3600)

    assert await connected.get_access_token() == "cached"
    assert oauth.requests == []


@pytest.mark.asyncio
async def test_token_inside_margin_is_refreshed(connected, oauth, store):
    connected.save_access_token("nearly-expired", 200)

    token = await connected.get_access_token()

    assert token == "fresh-token"
    assert oauth.grant_types() == ["refresh_token"]
    assert oauth.requests[0].url.host == "accounts.zoho.eu"
    assert store.load().access_token == "fresh-token"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(connected, oauth):
    oauth.delay = 0.01

    tokens = await asyncio.gather(*(connected.get_access_token() for _ in range(5)))

    assert tokens == ["fresh-token"] * 5
    assert len(oauth.requests) == 1


@pytest.mark.asyncio
async def test_force_refresh_skips_when_token_already_rotated(connected, oauth):
    connected.save_access_token("rotated", 3600)

    assert await connected.force_refresh("stale") == "rotated"
    assert oauth.requests == []

    assert await connected.force_refresh("rotated") == "fresh-token"
    assert len(oauth.requests) == 1


@pytest.mark.asyncio
async def test_rejected_refresh_token_is_terminal(connected, oauth, store):
    oauth.refresh_response = (400, {"error": "invalid_code"})

    with pytest.raises(AuthError) as excinfo:
        await connected.get_access_token()

    assert excinfo.value.code == "refresh_denied"
    assert excinfo.value.retryable is False
    creds = store.load()
    assert "invalid_code" in creds.refresh_error
    assert creds.access_token is None


@pytest.mark.asyncio
async def test_oauth_server_error_is_retryable(connected, oauth):
    oauth.refresh_response = (503, {})

    with pytest.raises(NetworkError) as excinfo:
        await connected.refresh_access_token()

    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_not_configured_raises_auth_error(manager, oauth):
    with pytest.raises(AuthError) as excinfo:
        await manager.get_access_token()

    assert excinfo.value.code == "not_configured"
    assert oauth.requests == []


@pytest.mark.asyncio
async def test_connect_with_refresh_token(manager, oauth, store):
    result = await manager.connect("client-1", "secret-1", "existing-refresh", "us")

    assert result.mode == "refresh_token"
    assert oauth.grant_types() == ["refresh_token"]
    creds = store.load()
    assert creds.refresh_token == "existing-refresh"
    assert creds.access_token == "fresh-token"


@pytest.mark.asyncio
async def test_connect_falls_back_to_grant_code(manager, oauth, store):
    # The OAuth server reports errors in a 200 body.
    oauth.refresh_response = (200, {"error": "invalid_code"})

    result = await manager.connect("client-1", "secret-1", GRANT_CODE, "in")

    assert result.mode == "grant_code"
    assert oauth.grant_types() == ["refresh_token", "authorization_code"]
    creds = store.load()
    assert creds.refresh_token == "issued-refresh"
    assert creds.access_token == "code-token"
    assert creds.datacenter == "in"


@pytest.mark.asyncio
async def test_connect_rejects_value_that_is_neither(manager, oauth):
    oauth.refresh_response = (400, {"error": "invalid_code"})

    with pytest.raises(AuthError) as excinfo:
        await manager.connect("client-1", "secret-1", "garbage", "us")

    assert excinfo.value.code == "invalid_credentials"
    assert oauth.grant_types() == ["refresh_token"]
    assert manager.has_credentials() is False


@pytest.mark.asyncio
async def test_grant_code_without_refresh_token(manager, oauth):
    oauth.refresh_response = (400, {"error": "invalid_code"})
    oauth.exchange_response = (200, {"access_token": "only-access", "expires_in": 3600})

    with pytest.raises(AuthError) as excinfo:
        await manager.connect("client-1", "secret-1", GRANT_CODE, "us")

    assert excinfo.value.code == "missing_refresh_token"
    assert manager.has_credentials() is False


@pytest.mark.asyncio
async def test_connect_rejects_unknown_datacenter(manager, oauth):
    with pytest.raises(ValueError):
        await manager.connect("client-1", "secret-1", "refresh", "mars")
    assert oauth.requests == []


def test_grant_code_shape():
    assert looks_like_grant_code(GRANT_CODE)
    assert looks_like_grant_code("  " + GRANT_CODE.upper() + " ")
    assert not looks_like_grant_code("1000.abc.def")
    assert not looks_like_grant_code("")
