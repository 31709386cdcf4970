from __future__ import annotations

from typing import Any, Dict, List, Optional

from booksync.models.orders import Order
from booksync.models.sync import GeneralSettings
from booksync.services import books_operations as ops
from booksync.services.books_client import BooksClient
from booksync.services.errors import ValidationError
from booksync.services.mapping_repository import FieldMappingRepository, ItemMappingRepository
from booksync.utils.logger import logger


def _money(value: float) -> float:
    return round(float(value or 0), 2)


class InvoiceService:
    def __init__(
        self,
        client: BooksClient,
        item_mappings: ItemMappingRepository,
        field_mappings: FieldMappingRepository,
    ):
        self.client = client
        self.item_mappings = item_mappings
        self.field_mappings = field_mappings

    def build_line_items(self, order: Order, *, require_mapping: bool = False) -> List[Dict[str, Any]]:
        item_map = self.item_mappings.get_all()
        lines: List[Dict[str, Any]] = []
        unmapped: List[str] = []

        for item in order.line_items:
            quantity = item.quantity or 1
            line: Dict[str, Any] = {
                "name": item.name,
                "quantity": quantity,
                "rate": _money(item.subtotal / quantity),
            }
            if item.sku:
                line["description"] = f"SKU: {item.sku}"
            remote_id = item_map.get(str(item.product_id)) if item.product_id else None
            if remote_id:
                line["item_id"] = remote_id
            elif item.product_id:
                unmapped.append(item.name)
            lines.append(line)

        for fee in order.fees:
            lines.append({"name": fee.name, "quantity": 1, "rate": _money(fee.total)})

        if require_mapping and unmapped:
            raise ValidationError(
                f"Products without an item mapping: {', '.join(unmapped)}",
                code="missing_mapping",
            )
        return lines

    def build_invoice_payload(self, order: Order, contact_id: str, general: GeneralSettings) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "customer_id": contact_id,
            "date": order.created_at.date().isoformat(),
            "reference_number": order.number,
            "line_items": self.build_line_items(order, require_mapping=general.require_item_mapping),
        }
        if general.use_order_number_as_invoice_number:
            data["invoice_number"] = order.number
        if order.shipping_total:
            data["shipping_charge"] = _money(order.shipping_total)
        if order.discount_total:
            data["discount"] = _money(order.discount_total)
            data["discount_type"] = "entity_level"
            data["is_discount_before_tax"] = True
        if order.customer_note:
            data["notes"] = order.customer_note
        custom_fields = self.field_mappings.build_custom_fields(order)
        if custom_fields:
            data["custom_fields"] = custom_fields
        return data

    async def find_by_reference(self, order: Order, contact_id: str) -> Optional[Dict[str, Any]]:
        """Remote invoice already carrying this order number for the same contact."""
        invoices = await self.client.request(
            ops.list_invoices(reference_number=order.number, customer_id=contact_id),
            {"order_id": order.id},
        ) or []
        for invoice in invoices:
            if invoice.get("status") == "void":
                continue
            if str(invoice.get("reference_number")) == str(order.number) and str(invoice.get("customer_id")) == str(contact_id):
                return invoice
        return None

    async def create(self, order: Order, contact_id: str, general: GeneralSettings) -> Dict[str, Any]:
        payload = self.build_invoice_payload(order, contact_id, general)
        invoice = await self.client.request(
            ops.create_invoice(payload, send=False, ignore_auto_number=general.use_order_number_as_invoice_number),
            {"order_id": order.id},
        )
        logger.info("[invoices] created invoice %s for order %s", invoice.get("invoice_id"), order.id)
        return invoice

    async def mark_as_sent(self, invoice_id: str, order_id: str) -> None:
        await self.client.request(ops.mark_invoice_sent(invoice_id), {"order_id": order_id})

    async def void(self, invoice_id: str, order_id: str) -> None:
        await self.client.request(ops.void_invoice(invoice_id), {"order_id": order_id})
        logger.info("[invoices] voided invoice %s for order %s", invoice_id, order_id)

    async def get(self, invoice_id: str, order_id: str) -> Dict[str, Any]:
        return await self.client.request(ops.get_invoice(invoice_id), {"order_id": order_id})
