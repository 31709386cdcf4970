import asyncio
import itertools
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from booksync.models.orders import BillingAddress, Order, OrderLineItem
from booksync.models_sqlalchemy import Base
from booksync.models_sqlalchemy import models  # noqa: F401
from booksync.services.mapping_repository import (
    CONTACT_FIELD,
    INVOICE_FIELD,
    FieldMappingRepository,
    ItemMappingRepository,
)
from booksync.services.notifications import NotificationQueue
from booksync.services.order_store import OrderStore
from booksync.services.sync_engine import OrderSyncEngine
from booksync.services.sync_settings import SyncSettingsService
from booksync.services.sync_state import SyncStateRepository


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test; StaticPool keeps one shared connection."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


class FakeBooks:
    """In-memory stand-in for ``BooksClient.request``.

    Dispatches on ``Operation.name`` and keeps just enough remote state
    (contacts, invoices, payments, credit notes) for the sync engine.
    ``fail`` maps an operation name to an exception raised on every call.
    """

    def __init__(self):
        self.calls = []
        self.contacts = []
        self.invoices = {}
        self.payments = []
        self.credit_notes = []
        self.fail = {}
        self.delay = 0.0
        self._ids = itertools.count(1)

    def count(self, name):
        return self.calls.count(name)

    async def request(self, operation, context=None):
        self.calls.append(operation.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if operation.name in self.fail:
            raise self.fail[operation.name]
        handler = getattr(self, "_" + operation.name.replace(".", "_"))
        return handler(operation)

    def _path_id(self, operation):
        return operation.path.split("/")[2]

    def _contacts_list(self, op):
        email = (op.params or {}).get("email")
        return [c for c in self.contacts if c.get("email") == email]

    def _contacts_create(self, op):
        contact = dict(op.body)
        contact["contact_id"] = f"c-{next(self._ids)}"
        contact["email"] = op.body["contact_persons"][0]["email"]
        self.contacts.append(contact)
        return contact

    def _contacts_get(self, op):
        contact_id = self._path_id(op)
        return dict(next(c for c in self.contacts if c["contact_id"] == contact_id))

    def _contacts_update(self, op):
        contact_id = self._path_id(op)
        contact = next(c for c in self.contacts if c["contact_id"] == contact_id)
        contact.update(op.body)
        return dict(contact)

    def _invoices_list(self, op):
        params = op.params or {}
        return [
            inv for inv in self.invoices.values()
            if inv["reference_number"] == params.get("reference_number")
            and inv["customer_id"] == params.get("customer_id")
        ]

    def _invoices_create(self, op):
        n = next(self._ids)
        body = op.body
        total = sum(line["rate"] * line["quantity"] for line in body["line_items"])
        total += body.get("shipping_charge", 0) - body.get("discount", 0)
        invoice = {
            "invoice_id": f"inv-{n}",
            "invoice_number": body.get("invoice_number") or f"INV-{n:05d}",
            "reference_number": body["reference_number"],
            "customer_id": body["customer_id"],
            "status": "draft",
            "total": total,
            "balance": total,
            "line_items": body["line_items"],
        }
        self.invoices[invoice["invoice_id"]] = invoice
        return dict(invoice)

    def _invoices_mark_sent(self, op):
        self.invoices[self._path_id(op)]["status"] = "sent"
        return {"code": 0}

    def _invoices_get(self, op):
        return dict(self.invoices[self._path_id(op)])

    def _invoices_void(self, op):
        self.invoices[self._path_id(op)]["status"] = "void"
        return {"code": 0}

    def _customerpayments_create(self, op):
        n = next(self._ids)
        payment = {"payment_id": f"pay-{n}", "payment_number": str(n), **op.body}
        self.payments.append(payment)
        for applied in op.body["invoices"]:
            invoice = self.invoices[applied["invoice_id"]]
            invoice["balance"] = round(invoice["balance"] - applied["amount_applied"], 2)
            if invoice["balance"] <= 0:
                invoice["status"] = "paid"
        return payment

    def _creditnotes_create(self, op):
        note = {"creditnote_id": f"cn-{next(self._ids)}", **op.body}
        self.credit_notes.append(note)
        return note

    def _creditnotes_apply(self, op):
        return {"code": 0}

    def _creditnotes_refund(self, op):
        return {"creditnote_refund_id": f"cnr-{next(self._ids)}"}


@pytest.fixture
def books():
    return FakeBooks()


@pytest.fixture
def order_store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def state_repo(session_factory):
    return SyncStateRepository(session_factory)


@pytest.fixture
def settings_service(session_factory):
    return SyncSettingsService(session_factory)


@pytest.fixture
def sent_notifications():
    return []


@pytest.fixture
def notifications(settings_service, session_factory, sent_notifications):
    return NotificationQueue(settings_service, session_factory, sender=sent_notifications.append)


@pytest.fixture
def item_mappings(order_store, session_factory):
    return ItemMappingRepository(order_store.list_products, session_factory)


@pytest.fixture
def engine(books, order_store, state_repo, settings_service, notifications, item_mappings, session_factory):
    return OrderSyncEngine(
        client=books,
        order_store=order_store,
        state_repo=state_repo,
        item_mappings=item_mappings,
        invoice_field_mappings=FieldMappingRepository(INVOICE_FIELD, session_factory),
        contact_field_mappings=FieldMappingRepository(CONTACT_FIELD, session_factory),
        settings_service=settings_service,
        notifications=notifications,
    )


@pytest.fixture
def make_order(order_store):
    """Build an order, push it into the order store and return it."""

    def _make(
        order_id="1001",
        number=None,
        currency="USD",
        email="jane@example.com",
        paid=False,
        refunds=None,
        **extra,
    ):
        order = Order(
            id=order_id,
            number=number or order_id,
            status="processing",
            currency=currency,
            created_at=datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
            billing=BillingAddress(first_name="Jane", last_name="Doe", email=email, country="US"),
            line_items=[
                OrderLineItem(product_id="p1", name="Widget", sku="W-1", quantity=2, subtotal=40.0, total=40.0),
            ],
            shipping_total=10.0,
            total=50.0,
            payment_method="stripe",
            transaction_id="ch_123",
            date_paid=datetime(2024, 5, 1, 10, 5, tzinfo=timezone.utc) if paid else None,
            refunds=refunds or [],
            **extra,
        )
        order_store.upsert_order(order)
        return order

    return _make
