"""Typed operations for the accounting API resources the sync engine uses."""

from __future__ import annotations

from typing import Any, Dict, Optional

from booksync.services.books_client import Operation


# Contacts

def list_contacts(email: Optional[str] = None, page: int = 1) -> Operation:
    return Operation("contacts.list", "GET", "/contacts", params={"email": email, "page": page}, result_key="contacts")


def get_contact(contact_id: str) -> Operation:
    return Operation("contacts.get", "GET", f"/contacts/{contact_id}", result_key="contact")


def create_contact(data: Dict[str, Any]) -> Operation:
    return Operation("contacts.create", "POST", "/contacts", body=data, result_key="contact")


def update_contact(contact_id: str, data: Dict[str, Any]) -> Operation:
    return Operation("contacts.update", "PUT", f"/contacts/{contact_id}", body=data, result_key="contact")


# Invoices

def list_invoices(reference_number: Optional[str] = None, customer_id: Optional[str] = None) -> Operation:
    return Operation(
        "invoices.list",
        "GET",
        "/invoices",
        params={"reference_number": reference_number, "customer_id": customer_id},
        result_key="invoices",
    )


def get_invoice(invoice_id: str) -> Operation:
    return Operation("invoices.get", "GET", f"/invoices/{invoice_id}", result_key="invoice")


def create_invoice(data: Dict[str, Any], *, send: bool = False, ignore_auto_number: bool = False) -> Operation:
    params = {"send": str(send).lower()}
    if ignore_auto_number:
        params["ignore_auto_number_generation"] = "true"
    return Operation("invoices.create", "POST", "/invoices", params=params, body=data, result_key="invoice")


def mark_invoice_sent(invoice_id: str) -> Operation:
    return Operation("invoices.mark_sent", "POST", f"/invoices/{invoice_id}/status/sent")


def void_invoice(invoice_id: str) -> Operation:
    return Operation("invoices.void", "POST", f"/invoices/{invoice_id}/status/void")


# Items

def list_items(page: int = 1, per_page: int = 200) -> Operation:
    return Operation("items.list", "GET", "/items", params={"page": page, "per_page": per_page})


# Customer payments

def create_payment(data: Dict[str, Any]) -> Operation:
    return Operation("customerpayments.create", "POST", "/customerpayments", body=data, result_key="payment")


# Credit notes

def create_credit_note(data: Dict[str, Any], *, ignore_auto_number: bool = True) -> Operation:
    params = {"ignore_auto_number_generation": "true"} if ignore_auto_number else None
    return Operation("creditnotes.create", "POST", "/creditnotes", params=params, body=data, result_key="creditnote")


def apply_credit_note(credit_note_id: str, invoice_id: str, amount: float) -> Operation:
    return Operation(
        "creditnotes.apply",
        "POST",
        f"/creditnotes/{credit_note_id}/invoices",
        body={"invoices": [{"invoice_id": invoice_id, "amount_applied": amount}]},
    )


def refund_credit_note(credit_note_id: str, data: Dict[str, Any]) -> Operation:
    return Operation(
        "creditnotes.refund",
        "POST",
        f"/creditnotes/{credit_note_id}/refunds",
        body=data,
        result_key="creditnote_refund",
    )


# Organizations

def list_organizations() -> Operation:
    return Operation("organizations.list", "GET", "/organizations", result_key="organizations")
