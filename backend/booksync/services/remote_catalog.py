from __future__ import annotations

from typing import Any, Dict, List

from booksync.models.orders import RemoteItem
from booksync.services import books_operations as ops
from booksync.services.books_client import BooksClient
from booksync.services.cache import TTLCache
from booksync.utils.logger import logger


ITEMS_PER_PAGE = 200
MAX_ITEM_PAGES = 50


class RemoteCatalog:
    """Remote items and custom-field definitions, cached behind a TTLCache.

    Entries are loaded on first use and kept until the TTL lapses or
    :meth:`invalidate` is called from the "refresh" action.
    """

    def __init__(self, client: BooksClient, cache: TTLCache):
        self.client = client
        self.cache = cache

    async def get_items(self, force_refresh: bool = False) -> List[RemoteItem]:
        if force_refresh:
            self.cache.invalidate("items")
        return await self.cache.get_or_load("items", self._load_items)

    async def _load_items(self) -> List[RemoteItem]:
        items: List[RemoteItem] = []
        page = 1
        while page <= MAX_ITEM_PAGES:
            payload = await self.client.request(ops.list_items(page=page, per_page=ITEMS_PER_PAGE))
            for raw in payload.get("items") or []:
                items.append(RemoteItem.model_validate(raw))
            if not (payload.get("page_context") or {}).get("has_more_page"):
                break
            page += 1
        logger.info("[remote_catalog] loaded %s remote items", len(items))
        return items

    async def get_custom_fields(self, entity: str, force_refresh: bool = False) -> List[Dict[str, Any]]:
        key = ("custom_fields", entity)
        if force_refresh:
            self.cache.invalidate(key)

        async def _load() -> List[Dict[str, Any]]:
            payload = await self.client.raw_request("GET", "/settings/fields", params={"entity": entity})
            fields = payload.get("fields") or payload.get("customfields") or []
            return [f for f in fields if f.get("is_custom_field", True)]

        return await self.cache.get_or_load(key, _load)

    def invalidate(self) -> None:
        self.cache.invalidate()
