"""Per-order synchronization state machine.

An order moves through ``unsynced -> draft -> submitted -> paid``; refunds add
credit notes on top of whatever invoice state exists, and a failed attempt
sets an error flag that the next successful attempt clears.

Which remote action runs is decided by a :class:`SyncAction`, either resolved
from the configured order-status triggers or chosen directly by a manual
"sync now" / "sync as draft" request.

Idempotency rules:

- ``invoice_id`` present => never create another invoice. A submit on an
  existing draft only marks that same invoice as sent.
- ``payment_id`` present => never record another payment.
- every refund id gets at most one credit note.
- a voided invoice is never voided again, and an invoice with a recorded
  payment is never voided.

Remote ids are persisted the moment the remote call returns, so a failure
later in the same attempt (say, the payment after a fresh invoice) cannot
lead to a duplicate on the retry. All work for one order runs under a
per-order lock.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from booksync.models.orders import Order
from booksync.models.sync import APPLY_PAYMENT, VOID_INVOICE, SyncAction, SyncState, SyncStatus
from booksync.services.books_client import BooksClient
from booksync.services.contacts import ContactService
from booksync.services.errors import BooksSyncError, NotFoundError, ValidationError
from booksync.services.invoices import InvoiceService
from booksync.services.mapping_repository import FieldMappingRepository, ItemMappingRepository
from booksync.services.notifications import NotificationQueue
from booksync.services.order_store import OrderStore
from booksync.services.payments import PaymentService
from booksync.services.refunds import RefundService
from booksync.services.sync_settings import SyncSettingsService
from booksync.services.sync_state import SyncStateRepository
from booksync.utils.logger import logger


@dataclass
class SyncResult:
    order_id: str
    success: bool
    action: Optional[SyncAction] = None
    status: SyncStatus = SyncStatus.unsynced
    invoice_id: Optional[str] = None
    message: str = ""
    skipped: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    retryable: Optional[bool] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "success": self.success,
            "action": self.action.value if self.action else None,
            "status": self.status.value,
            "invoice_id": self.invoice_id,
            "message": self.message,
            "skipped": self.skipped,
            "error": self.error,
            "error_type": self.error_type,
            "retryable": self.retryable,
            "warnings": list(self.warnings),
        }


class OrderLockRegistry:
    """One ``asyncio.Lock`` per order id, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, order_id: str):
        key = str(order_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def is_locked(self, order_id: str) -> bool:
        lock = self._locks.get(str(order_id))
        return bool(lock and lock.locked())


Handler = Callable[[Order], Awaitable[SyncResult]]


class OrderSyncEngine:
    def __init__(
        self,
        *,
        client: BooksClient,
        order_store: OrderStore,
        state_repo: SyncStateRepository,
        item_mappings: ItemMappingRepository,
        invoice_field_mappings: FieldMappingRepository,
        contact_field_mappings: FieldMappingRepository,
        settings_service: SyncSettingsService,
        notifications: NotificationQueue,
        locks: Optional[OrderLockRegistry] = None,
    ):
        self.order_store = order_store
        self.state_repo = state_repo
        self.settings_service = settings_service
        self.notifications = notifications
        self.locks = locks or OrderLockRegistry()
        self.contacts = ContactService(client, contact_field_mappings)
        self.invoices = InvoiceService(client, item_mappings, invoice_field_mappings)
        self.payments = PaymentService(client)
        self.refunds = RefundService(client)

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------
    def get_sync_status(self, order_id: str) -> SyncState:
        return self.state_repo.get(order_id)

    async def sync_order(self, order_id: str, as_draft: bool = False, *, is_retry: bool = False) -> SyncResult:
        action = SyncAction.CREATE_DRAFT if as_draft else SyncAction.CREATE_AND_SUBMIT
        return await self.run_action(order_id, action, is_retry=is_retry)

    async def handle_status_change(self, order_id: str, new_status: str) -> Optional[SyncResult]:
        triggers = self.settings_service.get_triggers()
        if triggers.voids_invoice(new_status):
            logger.info("[sync_engine] order %s status=%s -> %s", order_id, new_status, VOID_INVOICE)
            return await self.void_invoice(order_id)
        action = triggers.resolve(new_status)
        if action is None:
            logger.info("[sync_engine] order %s status=%s has no trigger", order_id, new_status)
            return None
        logger.info("[sync_engine] order %s status=%s -> %s", order_id, new_status, action.value)
        return await self.run_action(order_id, action)

    async def run_action(self, order_id: str, action: SyncAction, *, is_retry: bool = False) -> SyncResult:
        if action is SyncAction.CREATE_DRAFT:
            handler = self._create_draft
        elif action is SyncAction.CREATE_AND_SUBMIT:
            handler = self._create_and_submit
        else:
            handler = self._create_credit_notes
        return await self._attempt(order_id, action, handler, operation=action.value, is_retry=is_retry)

    async def apply_payment(self, order_id: str, *, is_retry: bool = False) -> SyncResult:
        return await self._attempt(order_id, None, self._apply_payment, operation=APPLY_PAYMENT, is_retry=is_retry)

    async def process_refunds(self, order_id: str) -> SyncResult:
        return await self.run_action(order_id, SyncAction.CREATE_CREDIT_NOTE)

    async def void_invoice(self, order_id: str, *, is_retry: bool = False) -> SyncResult:
        """Void the remote invoice of a cancelled order unless a payment was recorded."""
        return await self._attempt(order_id, None, self._void_invoice, operation=VOID_INVOICE, is_retry=is_retry)

    async def retry_order(self, order_id: str) -> SyncResult:
        """Re-run the operation that last failed, counting it as a retry."""
        state = self.state_repo.get(order_id)
        operation = state.last_operation or SyncAction.CREATE_AND_SUBMIT.value
        if operation == APPLY_PAYMENT:
            return await self.apply_payment(order_id, is_retry=True)
        if operation == VOID_INVOICE:
            return await self.void_invoice(order_id, is_retry=True)
        return await self.run_action(order_id, SyncAction(operation), is_retry=True)

    # ------------------------------------------------------------------
    # Attempt bookkeeping
    # ------------------------------------------------------------------
    async def _attempt(
        self,
        order_id: str,
        action: Optional[SyncAction],
        handler: Handler,
        *,
        operation: str,
        is_retry: bool,
    ) -> SyncResult:
        order_id = str(order_id)
        async with self.locks.hold(order_id):
            order = self.order_store.get_order(order_id)
            if order is None:
                exc = NotFoundError(f"Order {order_id} is not known to the sync service")
                return SyncResult(
                    order_id=order_id,
                    success=False,
                    action=action,
                    message=exc.message,
                    error=exc.message,
                    error_type=type(exc).__name__,
                    retryable=False,
                )

            self.state_repo.record_attempt(order_id, action, operation=operation, is_retry=is_retry)
            try:
                result = await handler(order)
            except BooksSyncError as exc:
                return self._fail(order, action, operation, exc.message, type(exc).__name__, exc.retryable)
            except Exception as exc:
                logger.error("[sync_engine] unexpected error syncing order %s: %s", order_id, exc, exc_info=True)
                return self._fail(order, action, operation, f"Unexpected error: {exc}", type(exc).__name__, False)

            state = self.state_repo.mark_success(order_id)
            result.action = action
            result.status = state.status
            result.invoice_id = state.invoice_id
            if not result.skipped:
                self.notifications.queue(
                    "success",
                    f"Order #{order.number} synced",
                    result.message,
                    {"order_id": order_id, "invoice_id": state.invoice_id},
                )
            for warning in result.warnings:
                self.notifications.queue("warning", f"Order #{order.number}", warning, {"order_id": order_id})
            return result

    def _fail(
        self,
        order: Order,
        action: Optional[SyncAction],
        operation: str,
        message: str,
        error_type: str,
        retryable: bool,
    ) -> SyncResult:
        state = self.state_repo.mark_failure(order.id, message, retryable=retryable)
        logger.warning(
            "[sync_engine] order %s failed operation=%s retryable=%s error=%s",
            order.id, operation, retryable, message,
        )
        self.notifications.queue(
            "error",
            f"Order #{order.number} failed to sync",
            message,
            {"order_id": order.id, "error_type": error_type, "retryable": retryable},
        )
        return SyncResult(
            order_id=order.id,
            success=False,
            action=action,
            status=state.status,
            invoice_id=state.invoice_id,
            message=message,
            error=message,
            error_type=error_type,
            retryable=retryable,
        )

    # ------------------------------------------------------------------
    # Action handlers (run under the order lock)
    # ------------------------------------------------------------------
    async def _create_draft(self, order: Order) -> SyncResult:
        return await self._sync_invoice(order, submit=False)

    async def _create_and_submit(self, order: Order) -> SyncResult:
        return await self._sync_invoice(order, submit=True)

    async def _sync_invoice(self, order: Order, *, submit: bool) -> SyncResult:
        general = self.settings_service.get_general()
        state = self.state_repo.get(order.id)
        result = SyncResult(order_id=order.id, success=True)

        if state.invoice_voided_at:
            result.message = f"Invoice {state.invoice_number or state.invoice_id} was voided"
            result.skipped = True
        elif state.invoice_id:
            if submit and state.phase is SyncStatus.draft:
                await self.invoices.mark_as_sent(state.invoice_id, order.id)
                state = self.state_repo.update(order.id, phase=SyncStatus.submitted)
                result.message = f"Draft invoice {state.invoice_number or state.invoice_id} submitted"
            else:
                result.message = "Invoice already synced"
                result.skipped = True
        else:
            contact = await self.contacts.find_or_create_contact(
                order, update_existing=general.update_existing_contacts
            )
            self.state_repo.update(order.id, contact_id=contact.contact_id, contact_name=contact.contact_name)

            invoice = await self.invoices.find_by_reference(order, contact.contact_id)
            if invoice is not None:
                remote_status = (invoice.get("status") or "").lower()
                result.message = f"Linked existing invoice {invoice.get('invoice_number')}"
            else:
                invoice = await self.invoices.create(order, contact.contact_id, general)
                remote_status = "draft"
                result.message = f"Invoice {invoice.get('invoice_number')} created"

            if remote_status == "paid":
                phase = SyncStatus.paid
            elif remote_status in ("", "draft"):
                phase = SyncStatus.draft
            else:
                phase = SyncStatus.submitted
            state = self.state_repo.update(
                order.id,
                phase=phase,
                invoice_id=str(invoice["invoice_id"]),
                invoice_number=invoice.get("invoice_number"),
            )

            if submit and phase is SyncStatus.draft:
                await self.invoices.mark_as_sent(state.invoice_id, order.id)
                state = self.state_repo.update(order.id, phase=SyncStatus.submitted)

        if submit and general.auto_apply_payment and order.is_paid and not state.payment_id and state.phase is not SyncStatus.paid:
            payment = await self._apply_payment(order)
            result.warnings.extend(payment.warnings)
            if not payment.skipped:
                result.skipped = False
                result.message = f"{result.message}; {payment.message}" if result.message else payment.message
        return result

    async def _apply_payment(self, order: Order) -> SyncResult:
        state = self.state_repo.get(order.id)
        if not state.invoice_id:
            raise ValidationError(
                f"Order #{order.number} has no invoice yet; sync the order before applying a payment",
                code="missing_invoice",
            )
        if state.payment_id:
            return SyncResult(order_id=order.id, success=True, skipped=True, message="Payment already recorded")

        general = self.settings_service.get_general()
        outcome = await self.payments.apply(order, state.invoice_id, state.contact_id, general)
        if outcome.payment_id:
            self.state_repo.update(
                order.id,
                phase=SyncStatus.paid,
                payment_id=outcome.payment_id,
                payment_number=outcome.payment_number,
            )
        elif outcome.already_paid:
            self.state_repo.update(order.id, phase=SyncStatus.paid)

        return SyncResult(
            order_id=order.id,
            success=True,
            skipped=outcome.skipped,
            message=outcome.message,
            warnings=list(outcome.warnings),
        )

    async def _create_credit_notes(self, order: Order) -> SyncResult:
        state = self.state_repo.get(order.id)
        if not state.invoice_id:
            raise ValidationError(
                f"Order #{order.number} has no invoice; a credit note needs an invoice to refund against",
                code="missing_invoice",
            )

        done = {entry.refund_id for entry in state.refund_entries}
        pending = [r for r in order.refunds if str(r.id) not in done and abs(r.amount) > 0]
        if not pending:
            return SyncResult(order_id=order.id, success=True, skipped=True, message="No new refunds to process")

        general = self.settings_service.get_general()
        result = SyncResult(order_id=order.id, success=True)
        for refund in pending:
            outcome = await self.refunds.create_credit_note(
                order,
                refund,
                invoice_id=state.invoice_id,
                contact_id=state.contact_id,
                general=general,
            )
            self.state_repo.add_refund_entry(
                order.id,
                refund_id=outcome.refund_id,
                credit_note_id=outcome.credit_note_id,
                credit_note_number=outcome.credit_note_number,
                remote_refund_id=outcome.remote_refund_id,
                amount=outcome.amount,
            )
            result.warnings.extend(outcome.warnings)

        result.message = f"{len(pending)} credit note(s) created"
        return result

    async def _void_invoice(self, order: Order) -> SyncResult:
        state = self.state_repo.get(order.id)
        if not state.invoice_id:
            return SyncResult(
                order_id=order.id, success=True, skipped=True, message="Order was never synced; nothing to void"
            )
        if state.invoice_voided_at:
            return SyncResult(order_id=order.id, success=True, skipped=True, message="Invoice already voided")
        if state.payment_id:
            return SyncResult(
                order_id=order.id,
                success=True,
                skipped=True,
                message="Invoice not voided",
                warnings=[
                    f"Cannot void invoice {state.invoice_number or state.invoice_id}: a payment is already "
                    f"applied. Void it manually in the accounting system."
                ],
            )

        await self.invoices.void(state.invoice_id, order.id)
        self.state_repo.update(order.id, invoice_voided_at=datetime.now(timezone.utc))
        return SyncResult(
            order_id=order.id,
            success=True,
            message=f"Invoice {state.invoice_number or state.invoice_id} voided after order cancellation",
        )
