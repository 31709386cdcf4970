from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from booksync.models.orders import Order
from booksync.models.sync import GeneralSettings
from booksync.services import books_operations as ops
from booksync.services.books_client import BooksClient
from booksync.services.errors import ValidationError
from booksync.utils.logger import logger


@dataclass
class PaymentOutcome:
    payment_id: Optional[str] = None
    payment_number: Optional[str] = None
    amount: float = 0.0
    bank_charges: Optional[float] = None
    skipped: bool = False
    # Set when the invoice was found already settled remotely.
    already_paid: bool = False
    message: str = ""
    warnings: List[str] = field(default_factory=list)


def payment_mode_for(order: Order, general: GeneralSettings) -> str:
    method = (order.payment_method or "").lower()
    for key, mode in general.payment_modes.items():
        if method == key or method.startswith(key):
            return mode
    return "Others"


def resolve_bank_charges(order: Order, general: GeneralSettings) -> tuple[Optional[float], List[str]]:
    """Gateway fee expressed in the order currency, or ``None`` with the reason as a warning.

    Bank charges need a deposit account. A fee in another currency is
    converted with the gateway's exchange rate when one is known.
    """
    fee = order.gateway_fee
    if fee is None or not fee.amount or fee.amount <= 0:
        return None, []
    if not general.payment_account_id:
        return None, []

    fee_currency = (fee.currency or "").strip().upper()
    if not fee_currency:
        return None, [f"Gateway fee of {fee.amount} skipped: fee currency unknown"]
    if fee_currency == order.currency:
        return round(fee.amount, 2), []
    if fee.exchange_rate and fee.exchange_rate > 0:
        return round(fee.amount * fee.exchange_rate, 2), []
    return None, [
        f"Gateway fee of {fee.amount} {fee_currency} skipped: order currency is {order.currency} "
        f"and no exchange rate was provided"
    ]


class PaymentService:
    def __init__(self, client: BooksClient):
        self.client = client

    async def apply(self, order: Order, invoice_id: str, contact_id: str, general: GeneralSettings) -> PaymentOutcome:
        context = {"order_id": order.id}
        total = round(float(order.total or 0), 2)
        if total <= 0:
            return PaymentOutcome(skipped=True, message="Order total is zero; no payment recorded")

        invoice = await self.client.request(ops.get_invoice(invoice_id), context)
        status = (invoice.get("status") or "").lower()
        if status in ("void", "draft"):
            raise ValidationError(
                f"Invoice {invoice.get('invoice_number') or invoice_id} is {status}; a payment cannot be applied",
                code=f"invoice_{status}",
            )
        balance = float(invoice.get("balance") or 0)
        if status == "paid" or balance <= 0:
            return PaymentOutcome(skipped=True, already_paid=True, message="Invoice is already paid")

        amount = round(min(total, balance), 2)
        data: Dict[str, Any] = {
            "customer_id": contact_id,
            "date": (order.date_paid or order.created_at).date().isoformat(),
            "amount": amount,
            "invoices": [{"invoice_id": invoice_id, "amount_applied": amount}],
            "payment_mode": payment_mode_for(order, general),
            "reference_number": order.transaction_id or order.number,
        }
        if general.payment_account_id:
            data["account_id"] = general.payment_account_id

        bank_charges, warnings = resolve_bank_charges(order, general)
        for warning in warnings:
            logger.warning("[payments] order %s: %s", order.id, warning)
        if bank_charges:
            data["bank_charges"] = bank_charges

        payment = await self.client.request(ops.create_payment(data), context)
        logger.info("[payments] recorded payment %s on invoice %s", payment.get("payment_id"), invoice_id)
        return PaymentOutcome(
            payment_id=str(payment["payment_id"]),
            payment_number=payment.get("payment_number"),
            amount=amount,
            bank_charges=bank_charges,
            message=f"Payment of {amount} recorded",
            warnings=warnings,
        )
