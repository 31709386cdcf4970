from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Literal, Optional
from datetime import datetime
import enum


class SyncStatus(str, enum.Enum):
    unsynced = "unsynced"
    draft = "draft"
    submitted = "submitted"
    paid = "paid"
    refunded = "refunded"
    error = "error"


class SyncAction(str, enum.Enum):
    CREATE_DRAFT = "create_draft"
    CREATE_AND_SUBMIT = "create_and_submit"
    CREATE_CREDIT_NOTE = "create_credit_note"


# Engine operations outside the trigger actions. Recorded as last_operation.
APPLY_PAYMENT = "apply_payment"
VOID_INVOICE = "void_invoice"


class RefundEntryResponse(BaseModel):
    refund_id: str
    credit_note_id: str
    credit_note_number: Optional[str] = None
    remote_refund_id: Optional[str] = None
    amount: float = 0.0
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SyncState(BaseModel):
    order_id: str
    status: SyncStatus
    phase: SyncStatus
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    payment_id: Optional[str] = None
    payment_number: Optional[str] = None
    invoice_voided_at: Optional[datetime] = None
    refund_entries: List[RefundEntryResponse] = Field(default_factory=list)
    last_action: Optional[SyncAction] = None
    last_operation: Optional[str] = None
    last_error: Optional[str] = None
    error_retryable: Optional[bool] = None
    last_attempt_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    retry_count: int = 0
    retry_exhausted: bool = False


class SyncOrderRequest(BaseModel):
    as_draft: bool = False


class BulkSyncRequest(BaseModel):
    """Either an explicit selection or a date range query."""

    order_ids: Optional[List[str]] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    statuses: Optional[List[str]] = None
    as_draft: bool = False
    limit: int = Field(500, ge=1, le=5000)


class RetryPolicy(BaseModel):
    mode: Literal["max_retries", "indefinite", "manual"] = "max_retries"
    max_count: int = Field(5, ge=1)
    backoff_minutes: int = Field(15, ge=1)


class SyncTriggers(BaseModel):
    """Order status that fires each action. ``None`` disables the action.

    ``void_invoice`` is not a :class:`SyncAction`; a cancelled order voids
    its unpaid invoice through its own engine operation.
    """

    sync_draft: Optional[str] = "processing"
    sync_submit: Optional[str] = "completed"
    create_creditnote: Optional[str] = "refunded"
    void_invoice: Optional[str] = "cancelled"

    @staticmethod
    def _normalize(order_status: str) -> str:
        status = (order_status or "").strip().lower()
        if status.startswith("wc-"):
            status = status[3:]
        return status

    def resolve(self, order_status: str) -> Optional[SyncAction]:
        table = {
            self.sync_draft: SyncAction.CREATE_DRAFT,
            self.sync_submit: SyncAction.CREATE_AND_SUBMIT,
            self.create_creditnote: SyncAction.CREATE_CREDIT_NOTE,
        }
        table.pop(None, None)
        return table.get(self._normalize(order_status))

    def voids_invoice(self, order_status: str) -> bool:
        return self.void_invoice is not None and self._normalize(order_status) == self.void_invoice


DEFAULT_PAYMENT_MODES: Dict[str, str] = {
    "paypal": "PayPal",
    "stripe": "Credit Card",
    "bacs": "Bank Transfer",
    "cheque": "Check",
    "cod": "Cash",
}


class GeneralSettings(BaseModel):
    auto_apply_payment: bool = True
    use_order_number_as_invoice_number: bool = False
    require_item_mapping: bool = False
    # Push billing details and contact custom fields onto contacts matched by email.
    update_existing_contacts: bool = False
    # Deposit account for customer payments; also required for bank charges.
    payment_account_id: Optional[str] = None
    create_cash_refund: bool = True
    refund_account_id: Optional[str] = None
    payment_modes: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_PAYMENT_MODES))


class NotificationSettings(BaseModel):
    delivery: Literal["immediate", "digest"] = "immediate"
    digest_interval_minutes: int = Field(5, ge=1)
    enabled_types: List[str] = Field(default_factory=lambda: ["error", "warning", "success", "info"])


class RetryTickResponse(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    waiting: int = 0
    exhausted: int = 0
    skipped_reason: Optional[str] = None


class InternalTickRequest(BaseModel):
    internal_api_key: str
