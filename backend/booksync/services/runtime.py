"""Wiring of the sync services.

Routers and workers share one :class:`SyncRuntime` per process. Tests build
their own with an in-memory session factory and a fake transport.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from booksync.config import settings
from booksync.models_sqlalchemy import SessionLocal
from booksync.services.books_client import BooksClient
from booksync.services.bulk_sync import BulkSyncService
from booksync.services.cache import TTLCache
from booksync.services.connection_health import ConnectionHealth
from booksync.services.credential_store import CredentialStore
from booksync.services.mapping_repository import (
    CONTACT_FIELD,
    INVOICE_FIELD,
    FieldMappingRepository,
    ItemMappingRepository,
)
from booksync.services.notifications import NotificationQueue, Sender, log_sender
from booksync.services.order_store import OrderStore
from booksync.services.remote_catalog import RemoteCatalog
from booksync.services.retry_scheduler import RetryScheduler
from booksync.services.sync_engine import OrderSyncEngine
from booksync.services.sync_settings import SyncSettingsService
from booksync.services.sync_state import SyncStateRepository
from booksync.services.token_manager import TokenManager


@dataclass
class SyncRuntime:
    credential_store: CredentialStore
    token_manager: TokenManager
    client: BooksClient
    order_store: OrderStore
    state_repo: SyncStateRepository
    settings_service: SyncSettingsService
    notifications: NotificationQueue
    item_mappings: ItemMappingRepository
    invoice_field_mappings: FieldMappingRepository
    contact_field_mappings: FieldMappingRepository
    catalog: RemoteCatalog
    health: ConnectionHealth
    engine: OrderSyncEngine
    retry_scheduler: RetryScheduler
    bulk: BulkSyncService


def build_runtime(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sender: Sender = log_sender,
) -> SyncRuntime:
    credential_store = CredentialStore(session_factory)
    token_manager = TokenManager(credential_store, transport=transport)
    client = BooksClient(token_manager, transport=transport)
    order_store = OrderStore(session_factory)
    state_repo = SyncStateRepository(session_factory)
    settings_service = SyncSettingsService(session_factory)
    notifications = NotificationQueue(settings_service, session_factory, sender)
    item_mappings = ItemMappingRepository(order_store.list_products, session_factory)
    invoice_field_mappings = FieldMappingRepository(INVOICE_FIELD, session_factory)
    contact_field_mappings = FieldMappingRepository(CONTACT_FIELD, session_factory)
    catalog = RemoteCatalog(client, TTLCache(settings.REMOTE_CACHE_TTL_SECONDS))
    health = ConnectionHealth(client, token_manager, TTLCache(settings.CONNECTION_HEALTH_TTL_SECONDS))

    engine = OrderSyncEngine(
        client=client,
        order_store=order_store,
        state_repo=state_repo,
        item_mappings=item_mappings,
        invoice_field_mappings=invoice_field_mappings,
        contact_field_mappings=contact_field_mappings,
        settings_service=settings_service,
        notifications=notifications,
    )
    retry_scheduler = RetryScheduler(
        engine=engine,
        state_repo=state_repo,
        settings_service=settings_service,
        notifications=notifications,
        token_manager=token_manager,
        health=health,
    )
    bulk = BulkSyncService(engine, order_store)

    return SyncRuntime(
        credential_store=credential_store,
        token_manager=token_manager,
        client=client,
        order_store=order_store,
        state_repo=state_repo,
        settings_service=settings_service,
        notifications=notifications,
        item_mappings=item_mappings,
        invoice_field_mappings=invoice_field_mappings,
        contact_field_mappings=contact_field_mappings,
        catalog=catalog,
        health=health,
        engine=engine,
        retry_scheduler=retry_scheduler,
        bulk=bulk,
    )


_runtime: Optional[SyncRuntime] = None


def get_runtime() -> SyncRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime
