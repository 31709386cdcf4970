from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime


class BillingAddress(BaseModel):
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    address_1: str = ""
    address_2: str = ""
    city: str = ""
    state: str = ""
    postcode: str = ""
    country: str = ""


class OrderLineItem(BaseModel):
    product_id: Optional[str] = None
    name: str
    sku: Optional[str] = None
    quantity: float = 1
    # Line total before order-level discounts.
    subtotal: float = 0.0
    total: float = 0.0


class OrderFee(BaseModel):
    name: str
    total: float


class OrderRefund(BaseModel):
    id: str
    amount: float
    reason: Optional[str] = None
    created_at: Optional[datetime] = None


class GatewayFee(BaseModel):
    """Processing fee reported by the payment gateway.

    ``exchange_rate`` converts ``currency`` into the order currency when the
    gateway settles in a different currency.
    """

    amount: float
    currency: Optional[str] = None
    exchange_rate: Optional[float] = None


class Order(BaseModel):
    id: str
    number: str
    status: str
    currency: str
    created_at: datetime
    billing: BillingAddress = Field(default_factory=BillingAddress)
    line_items: List[OrderLineItem] = Field(default_factory=list)
    fees: List[OrderFee] = Field(default_factory=list)
    shipping_total: float = 0.0
    discount_total: float = 0.0
    total: float = 0.0
    payment_method: Optional[str] = None
    payment_method_title: Optional[str] = None
    transaction_id: Optional[str] = None
    date_paid: Optional[datetime] = None
    gateway_fee: Optional[GatewayFee] = None
    refunds: List[OrderRefund] = Field(default_factory=list)
    customer_note: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def is_paid(self) -> bool:
        return self.date_paid is not None


class LocalProduct(BaseModel):
    id: str
    name: str
    sku: Optional[str] = None


class RemoteItem(BaseModel):
    item_id: str
    name: str
    sku: Optional[str] = ""
    rate: Optional[float] = None
    status: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class OrderStatusEvent(BaseModel):
    status: str
    # Full snapshot may ride along with the event so no separate upsert is needed.
    order: Optional[Order] = None
