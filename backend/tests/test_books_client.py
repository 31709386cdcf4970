import httpx
import pytest

from booksync.services import books_operations as ops
from booksync.services.books_client import BooksClient
from booksync.services.credential_store import CredentialStore
from booksync.services.errors import AuthError, NetworkError, NotFoundError, RateLimitError, ValidationError
from booksync.services.rate_limiter import RateLimiter
from booksync.services.token_manager import TokenManager


class FakeRemote:
    """Routes OAuth and API requests; API responses are popped from a script."""

    def __init__(self):
        self.api_requests = []
        self.token_requests = []
        self.script = []
        self.default = httpx.Response(200, json={"code": 0, "message": "success", "invoice": {"invoice_id": "1"}})

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v2/token":
            self.token_requests.append(request)
            return httpx.Response(200, json={"access_token": f"token-{len(self.token_requests)}", "expires_in": 3600})
        self.api_requests.append(request)
        if self.script:
            return self.script.pop(0)
        return self.default


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def sleeper():
    return FakeSleep()


@pytest.fixture
def client(session_factory, remote, sleeper):
    store = CredentialStore(session_factory)
    store.save_credentials("client-1", "secret-1", "refresh-1", "us")
    store.set_organization_id("org-42")
    transport = httpx.MockTransport(remote.handler)
    manager = TokenManager(store, transport=transport)
    manager.save_access_token("token-0", 3600)
    return BooksClient(
        manager,
        transport=transport,
        rate_limiter=RateLimiter(100, 30),
        sleep=sleeper,
        max_rate_limit_retries=2,
        rate_limit_base_delay=1.0,
    )


@pytest.mark.asyncio
async def test_request_unwraps_result_and_scopes_organization(client, remote):
    invoice = await client.request(ops.get_invoice("1"))

    assert invoice == {"invoice_id": "1"}
    sent = remote.api_requests[0]
    assert sent.url.host == "www.zohoapis.com"
    assert sent.url.path == "/books/v3/invoices/1"
    assert sent.url.params["organization_id"] == "org-42"
    assert sent.headers["Authorization"] == "Zoho-oauthtoken token-0"


@pytest.mark.asyncio
async def test_unauthorized_refreshes_once_and_retries(client, remote):
    remote.script = [httpx.Response(401, json={"code": 57, "message": "unauthorized"})]

    invoice = await client.request(ops.get_invoice("1"))

    assert invoice == {"invoice_id": "1"}
    assert len(remote.token_requests) == 1
    assert [r.headers["Authorization"] for r in remote.api_requests] == [
        "Zoho-oauthtoken token-0",
        "Zoho-oauthtoken token-1",
    ]


@pytest.mark.asyncio
async def test_second_unauthorized_raises_auth_error(client, remote):
    remote.script = [httpx.Response(401, json={}), httpx.Response(401, json={})]

    with pytest.raises(AuthError):
        await client.request(ops.get_invoice("1"))

    assert len(remote.api_requests) == 2
    assert len(remote.token_requests) == 1


@pytest.mark.asyncio
async def test_rate_limit_backs_off_then_gives_up(client, remote, sleeper):
    remote.script = [httpx.Response(429, json={}) for _ in range(3)]

    with pytest.raises(RateLimitError) as excinfo:
        await client.request(ops.list_organizations())

    assert excinfo.value.retryable is True
    assert sleeper.delays == [1.0, 2.0]
    assert len(remote.api_requests) == 3


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after(client, remote, sleeper):
    remote.script = [httpx.Response(429, headers={"Retry-After": "7"}, json={})]

    await client.request(ops.get_invoice("1"))

    assert sleeper.delays == [7.0]


@pytest.mark.asyncio
@pytest.mark.parametrize("status, body, error_type", [
    (500, {"message": "oops"}, NetworkError),
    (503, {}, NetworkError),
    (404, {"code": 1002, "message": "Invoice does not exist"}, NotFoundError),
    (400, {"code": 1001, "message": "Invalid value"}, ValidationError),
    (200, {"code": 4000, "message": "Business rule"}, ValidationError),
])
async def test_error_classification(client, remote, status, body, error_type):
    remote.script = [httpx.Response(status, json=body)]

    with pytest.raises(error_type):
        await client.request(ops.get_invoice("1"))


@pytest.mark.asyncio
async def test_raw_request_returns_whole_payload(client, remote):
    remote.default = httpx.Response(200, json={"code": 0, "customfields": [{"customfield_id": "cf1"}]})

    payload = await client.raw_request("GET", "/settings/fields", params={"entity": "invoice"})

    assert payload["customfields"] == [{"customfield_id": "cf1"}]
    assert remote.api_requests[0].url.params["entity"] == "invoice"


@pytest.mark.asyncio
async def test_local_rate_limiter_refuses_long_waits():
    ticks = [0.0]
    limiter = RateLimiter(2, max_wait_seconds=5, clock=lambda: ticks[0])

    await limiter.acquire()
    await limiter.acquire()

    with pytest.raises(RateLimitError):
        await limiter.acquire()

    ticks[0] = 60.0
    await limiter.acquire()


@pytest.mark.asyncio
async def test_local_rate_limiter_waits_for_a_slot():
    ticks = [0.0]
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)
        ticks[0] += seconds

    limiter = RateLimiter(1, max_wait_seconds=30, clock=lambda: ticks[0], sleep=fake_sleep)
    await limiter.acquire()
    ticks[0] = 40.0
    await limiter.acquire()

    assert slept == [20.0]
