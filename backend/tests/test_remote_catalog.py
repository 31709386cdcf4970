import pytest

from booksync.services.cache import TTLCache
from booksync.services.connection_health import ConnectionHealth
from booksync.services.credential_store import CredentialStore
from booksync.services.errors import NetworkError
from booksync.services.remote_catalog import RemoteCatalog


class PagedItems:
    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    async def request(self, operation, context=None):
        self.calls.append((operation.name, operation.params))
        if operation.name == "organizations.list":
            return [{"organization_id": 555, "name": "Demo"}]
        page = operation.params["page"]
        return {
            "items": self.pages[page - 1],
            "page_context": {"has_more_page": page < len(self.pages)},
        }

    async def raw_request(self, method, path, params=None, body=None, context=None):
        self.calls.append((path, params))
        return {"customfields": [
            {"customfield_id": "cf1", "label": "VAT", "is_custom_field": True},
            {"customfield_id": "sys", "label": "System", "is_custom_field": False},
        ]}


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_ttl_cache_expires_entries():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    cache.set("k", "v")

    assert cache.get("k") == "v"
    assert "k" in cache
    clock.now = 10.0
    assert cache.get("k") is None
    assert "k" not in cache


@pytest.mark.asyncio
async def test_items_are_paged_and_cached():
    client = PagedItems([
        [{"item_id": "1", "name": "A", "sku": "A-1", "unit": "pcs"}],
        [{"item_id": "2", "name": "B", "sku": None}],
    ])
    clock = FakeClock()
    catalog = RemoteCatalog(client, TTLCache(3600, clock=clock))

    items = await catalog.get_items()
    again = await catalog.get_items()

    assert [i.item_id for i in items] == ["1", "2"]
    assert again == items
    assert len(client.calls) == 2

    catalog.invalidate()
    await catalog.get_items()
    assert len(client.calls) == 4


@pytest.mark.asyncio
async def test_custom_fields_skip_system_fields():
    client = PagedItems([])
    catalog = RemoteCatalog(client, TTLCache(3600))

    fields = await catalog.get_custom_fields("invoice")

    assert [f["customfield_id"] for f in fields] == ["cf1"]
    assert client.calls == [("/settings/fields", {"entity": "invoice"})]


class StubTokenManager:
    def __init__(self, store):
        self.store = store

    def has_credentials(self):
        return True


@pytest.mark.asyncio
async def test_health_check_picks_first_organization(session_factory):
    store = CredentialStore(session_factory)
    health = ConnectionHealth(PagedItems([]), StubTokenManager(store), TTLCache(300))

    assert await health.test_connection() is True
    assert health.last_result["organization_id"] == "555"
    assert store.load().organization_id == "555"
    assert await health.is_healthy() is True


@pytest.mark.asyncio
async def test_health_check_reports_errors(session_factory):
    class Down(PagedItems):
        async def request(self, operation, context=None):
            raise NetworkError("Could not reach the accounting API")

    health = ConnectionHealth(Down([]), StubTokenManager(CredentialStore(session_factory)), TTLCache(300))

    assert await health.test_connection() is False
    assert "Could not reach" in health.last_result["error"]
