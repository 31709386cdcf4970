from __future__ import annotations

import time
from typing import Any, Dict, Optional

from booksync.services import books_operations as ops
from booksync.services.books_client import BooksClient
from booksync.services.cache import TTLCache
from booksync.services.errors import BooksSyncError
from booksync.services.token_manager import TokenManager
from booksync.utils.logger import logger


class ConnectionHealth:
    def __init__(self, client: BooksClient, token_manager: TokenManager, cache: TTLCache):
        self.client = client
        self.token_manager = token_manager
        self.cache = cache
        self.last_result: Dict[str, Any] = {}

    async def check(self) -> Dict[str, Any]:
        """Round-trip to the organizations endpoint.

        When no organization is configured yet, the first one returned is
        stored so later calls are scoped to it.
        """
        start_time = time.time()
        if not self.token_manager.has_credentials():
            return {"connected": False, "error": "Accounting connection is not configured"}
        try:
            organizations = await self.client.request(ops.list_organizations(), {"check": "connection"}) or []
        except BooksSyncError as exc:
            logger.warning("[connection_health] check failed: %s", exc.message)
            return {"connected": False, "error": exc.message, "error_type": type(exc).__name__}

        store = self.token_manager.store
        organization_id: Optional[str] = store.load().organization_id
        if not organization_id and organizations:
            organization_id = str(organizations[0].get("organization_id"))
            store.set_organization_id(organization_id)
            logger.info("[connection_health] organization %s selected", organization_id)

        return {
            "connected": True,
            "organization_id": organization_id,
            "response_time_ms": int((time.time() - start_time) * 1000),
        }

    async def test_connection(self) -> bool:
        result = await self.check()
        self.last_result = result
        self.cache.set("healthy", result["connected"])
        return result["connected"]

    async def is_healthy(self) -> bool:
        """Cached variant for the retry tick."""

        async def _load() -> bool:
            return (await self.check())["connected"]

        return await self.cache.get_or_load("healthy", _load)

    def invalidate(self) -> None:
        self.cache.invalidate()
