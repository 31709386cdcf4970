from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from booksync.models.orders import Order, OrderRefund
from booksync.models.sync import GeneralSettings
from booksync.services import books_operations as ops
from booksync.services.books_client import BooksClient
from booksync.services.errors import BooksSyncError
from booksync.utils.logger import logger


@dataclass
class CreditNoteOutcome:
    refund_id: str
    credit_note_id: str
    credit_note_number: Optional[str]
    amount: float
    remote_refund_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def credit_note_number_for(order: Order, refund: OrderRefund) -> str:
    return f"CN-{order.number}-{refund.id}"


class RefundService:
    def __init__(self, client: BooksClient):
        self.client = client

    async def create_credit_note(
        self,
        order: Order,
        refund: OrderRefund,
        *,
        invoice_id: str,
        contact_id: str,
        general: GeneralSettings,
    ) -> CreditNoteOutcome:
        """Create the credit note for one refund, then apply and refund it.

        Only creation failures propagate. Applying the note to the invoice and
        recording the cash refund are follow-ups; their failures come back as
        warnings so the credit note id is still recorded.
        """
        context = {"order_id": order.id, "refund_id": refund.id}
        amount = round(abs(refund.amount), 2)
        date = (refund.created_at or order.created_at).date().isoformat()

        data = {
            "customer_id": contact_id,
            "date": date,
            "creditnote_number": credit_note_number_for(order, refund),
            "reference_number": f"Refund for Order #{order.number}",
            "line_items": [{
                "name": f"Refund for order #{order.number}",
                "description": refund.reason or "",
                "quantity": 1,
                "rate": amount,
            }],
        }
        note = await self.client.request(ops.create_credit_note(data), context)
        outcome = CreditNoteOutcome(
            refund_id=str(refund.id),
            credit_note_id=str(note["creditnote_id"]),
            credit_note_number=note.get("creditnote_number"),
            amount=amount,
        )
        logger.info("[refunds] credit note %s created for refund %s", outcome.credit_note_id, refund.id)

        try:
            await self.client.request(ops.apply_credit_note(outcome.credit_note_id, invoice_id, amount), context)
        except BooksSyncError as exc:
            outcome.warnings.append(f"Credit note {outcome.credit_note_id} not applied to invoice: {exc.message}")

        if general.create_cash_refund and general.refund_account_id:
            try:
                remote_refund = await self.client.request(
                    ops.refund_credit_note(outcome.credit_note_id, {
                        "date": date,
                        "amount": amount,
                        "from_account_id": general.refund_account_id,
                        "refund_mode": "cash",
                        "reference_number": f"Refund {refund.id}",
                    }),
                    context,
                )
                if remote_refund:
                    outcome.remote_refund_id = remote_refund.get("creditnote_refund_id")
            except BooksSyncError as exc:
                outcome.warnings.append(f"Cash refund for credit note {outcome.credit_note_id} failed: {exc.message}")

        for warning in outcome.warnings:
            logger.warning("[refunds] order %s: %s", order.id, warning)
        return outcome
