"""
Retry Worker (API Proxy Mode)

Scheduler that delegates each retry tick to the web app's internal endpoint.
The web app owns the credentials and the per-order locks, so the tick runs
there and this process only keeps time.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from booksync.config import settings
from booksync.utils.logger import logger


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


async def trigger_retry_tick(transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, Any]:
    """Call POST /api/sync/internal/retry-tick and summarize the outcome."""
    web_app_url = (settings.WEB_APP_URL or "").rstrip("/")
    internal_api_key = settings.INTERNAL_API_KEY or ""

    if not web_app_url:
        logger.error("[retry-worker] WEB_APP_URL not configured")
        return {"status": "error", "error": "WEB_APP_URL not configured", "timestamp": _timestamp()}
    if not internal_api_key:
        logger.error("[retry-worker] INTERNAL_API_KEY not configured")
        return {"status": "error", "error": "INTERNAL_API_KEY not configured", "timestamp": _timestamp()}

    endpoint = f"{web_app_url}/api/sync/internal/retry-tick"
    try:
        async with httpx.AsyncClient(timeout=300.0, transport=transport) as client:
            response = await client.post(endpoint, json={"internal_api_key": internal_api_key})
    except httpx.HTTPError as e:
        logger.error("[retry-worker] request failed: %s", e, exc_info=True)
        return {"status": "error", "error": str(e), "timestamp": _timestamp()}

    if response.status_code != 200:
        error_msg = f"HTTP {response.status_code}: {response.text}"
        logger.error("[retry-worker] API call failed: %s", error_msg)
        return {"status": "error", "error": error_msg, "timestamp": _timestamp()}

    data = response.json()
    logger.info(
        "[retry-worker] tick done: attempted=%s succeeded=%s failed=%s skipped=%s",
        data.get("attempted", 0),
        data.get("succeeded", 0),
        data.get("failed", 0),
        data.get("skipped_reason"),
    )
    return {"status": "completed", **data, "timestamp": _timestamp()}


async def run_retry_worker_loop(interval_seconds: Optional[int] = None):
    interval = interval_seconds or settings.RETRY_WORKER_INTERVAL_SECONDS
    logger.info("Retry worker loop started (every %s seconds)", interval)

    while True:
        try:
            result = await trigger_retry_tick()
            logger.info("Retry cycle completed: %s", result.get("status"))
        except Exception as e:
            logger.error("Retry worker loop error: %s", str(e))

        await asyncio.sleep(interval)


if __name__ == "__main__":
    asyncio.run(run_retry_worker_loop())
