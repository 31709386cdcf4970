import httpx
import pytest

from booksync.config import settings
from booksync.workers.retry_worker import trigger_retry_tick


@pytest.fixture(autouse=True)
def _worker_settings(monkeypatch):
    monkeypatch.setattr(settings, "WEB_APP_URL", "https://sync.example.com/")
    monkeypatch.setattr(settings, "INTERNAL_API_KEY", "s3cret")


@pytest.mark.asyncio
async def test_trigger_posts_internal_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"attempted": 2, "succeeded": 1, "failed": 1, "skipped_reason": None})

    result = await trigger_retry_tick(transport=httpx.MockTransport(handler))

    assert result["status"] == "completed"
    assert result["attempted"] == 2
    assert str(seen[0].url) == "https://sync.example.com/api/sync/internal/retry-tick"
    assert b"s3cret" in seen[0].content


@pytest.mark.asyncio
async def test_trigger_reports_http_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"detail": "invalid_internal_api_key"})

    result = await trigger_retry_tick(transport=httpx.MockTransport(handler))

    assert result["status"] == "error"
    assert "HTTP 401" in result["error"]


@pytest.mark.asyncio
async def test_trigger_requires_configuration(monkeypatch):
    monkeypatch.setattr(settings, "WEB_APP_URL", None)

    result = await trigger_retry_tick()

    assert result == {"status": "error", "error": "WEB_APP_URL not configured", "timestamp": result["timestamp"]}
