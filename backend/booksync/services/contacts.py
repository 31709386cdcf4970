from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from booksync.models.orders import Order
from booksync.services import books_operations as ops
from booksync.services.books_client import BooksClient
from booksync.services.errors import ValidationError
from booksync.services.mapping_repository import FieldMappingRepository
from booksync.utils.logger import logger


@dataclass
class ContactRef:
    contact_id: str
    contact_name: str
    currency_code: Optional[str] = None
    created: bool = False


def contact_name_for(order: Order) -> str:
    billing = order.billing
    full_name = f"{billing.first_name} {billing.last_name}".strip()
    return full_name or billing.company.strip() or (billing.email or "").strip()


def check_currency(contact: Dict[str, Any], order: Order) -> None:
    """A contact without a currency accepts any order currency."""
    contact_currency = (contact.get("currency_code") or "").strip().upper()
    if contact_currency and contact_currency != order.currency:
        raise ValidationError(
            f"Currency mismatch: contact '{contact.get('contact_name', '')}' uses {contact_currency} "
            f"but order #{order.number} uses {order.currency}. Update the contact currency in the "
            f"accounting system or use a separate contact for {order.currency} orders.",
            code="currency_mismatch",
            details={"contact_currency": contact_currency, "order_currency": order.currency},
        )


class ContactService:
    def __init__(self, client: BooksClient, field_mappings: FieldMappingRepository):
        self.client = client
        self.field_mappings = field_mappings

    def build_contact_payload(self, order: Order) -> Dict[str, Any]:
        billing = order.billing
        data: Dict[str, Any] = {
            "contact_name": contact_name_for(order),
            "contact_type": "customer",
            "company_name": billing.company or None,
            "billing_address": {
                "address": billing.address_1,
                "street2": billing.address_2,
                "city": billing.city,
                "state": billing.state,
                "zip": billing.postcode,
                "country": billing.country,
                "phone": billing.phone,
            },
            "contact_persons": [{
                "first_name": billing.first_name,
                "last_name": billing.last_name,
                "email": billing.email,
                "phone": billing.phone,
                "is_primary_contact": True,
            }],
        }
        data["currency_code"] = order.currency
        custom_fields = self.field_mappings.build_custom_fields(order)
        if custom_fields:
            data["custom_fields"] = custom_fields
        return {k: v for k, v in data.items() if v is not None}

    async def find_contact_by_email(self, email: str, context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        contacts = await self.client.request(ops.list_contacts(email=email), context) or []
        wanted = email.strip().lower()
        for contact in contacts:
            if (contact.get("email") or "").strip().lower() == wanted:
                return contact
        return contacts[0] if contacts else None

    async def get_contact(self, contact_id: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.client.request(ops.get_contact(contact_id), context)

    async def update_contact(self, contact_id: str, order: Order) -> Dict[str, Any]:
        """Overwrite billing details and contact custom fields from ``order``.

        The contact name and currency are left alone.
        """
        data = self.build_contact_payload(order)
        data.pop("contact_name", None)
        data.pop("currency_code", None)
        updated = await self.client.request(ops.update_contact(contact_id, data), {"order_id": order.id})
        logger.info("[contacts] updated contact %s from order %s", contact_id, order.id)
        return updated

    async def find_or_create_contact(self, order: Order, *, update_existing: bool = False) -> ContactRef:
        email = (order.billing.email or "").strip()
        if not email:
            raise ValidationError(
                f"Order #{order.number} has no billing email; a contact cannot be matched",
                code="missing_email",
            )
        context = {"order_id": order.id}

        existing = await self.find_contact_by_email(email, context)
        if existing is not None:
            # List results can omit the currency; the full record has it.
            if "currency_code" not in existing:
                existing = await self.get_contact(str(existing["contact_id"]), context)
            check_currency(existing, order)
            if update_existing:
                await self.update_contact(str(existing["contact_id"]), order)
            return ContactRef(
                contact_id=str(existing["contact_id"]),
                contact_name=existing.get("contact_name") or contact_name_for(order),
                currency_code=existing.get("currency_code"),
            )

        created = await self.client.request(ops.create_contact(self.build_contact_payload(order)), context)
        logger.info("[contacts] created contact %s for order %s", created.get("contact_id"), order.id)
        return ContactRef(
            contact_id=str(created["contact_id"]),
            contact_name=created.get("contact_name") or contact_name_for(order),
            currency_code=created.get("currency_code"),
            created=True,
        )

