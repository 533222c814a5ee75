"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from order_reconciliation.core.models import CartItem, GatewayKind, ShippingAddress


class ReconcileRequest(BaseModel):
    """Browser return payload, optionally carrying the local cart."""

    gateway_kind: Optional[GatewayKind] = Field(
        default=None, description="Gateway; inferred from the reference fields when omitted"
    )
    reference: Optional[str] = Field(default=None, description="Reference for an explicit gateway")
    session_id: Optional[str] = Field(default=None, description="Stripe checkout session id")
    payment_intent: Optional[str] = Field(default=None, description="Stripe payment intent id")
    token: Optional[str] = Field(default=None, description="PayPal order id")
    cart: Optional[List[CartItem]] = Field(default=None, description="Cart held by the browser")
    customer_id: Optional[str] = Field(default=None, description="Authenticated customer id")
    shipping_address: Optional[ShippingAddress] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "session_id": "cs_test_a1b2c3",
                    "cart": [{"id": "cpu1", "name": "CPU X", "price": 199.99, "quantity": 1}],
                    "customer_id": "user_123",
                }
            ]
        }
    }


class TotalsSchema(BaseModel):
    total_minor: int
    currency: str
    display: str


class LineItemSchema(BaseModel):
    product_id: str
    name: str
    quantity: int
    unit_price: float


class ErrorSchema(BaseModel):
    code: str = Field(..., description="Machine-readable failure reason")
    message: str = Field(..., description="Message to show the customer")


class ReconcileResponse(BaseModel):
    """Display-ready reconciliation outcome."""

    ok: bool
    order_number: Optional[str] = None
    status: Optional[str] = None
    totals: Optional[TotalsSchema] = None
    shipping_address: Optional[Dict[str, Any]] = None
    line_items: Optional[List[LineItemSchema]] = None
    created: Optional[bool] = None
    error: Optional[ErrorSchema] = None


class BankTransferRequestSchema(BaseModel):
    """Checkout by manual bank transfer."""

    amount_minor: int = Field(..., gt=0, description="Order total in minor units")
    currency: str = Field(default="GBP", min_length=3, max_length=3)
    customer_email: str = Field(..., min_length=3, description="Customer email address")
    customer_name: Optional[str] = None
    customer_id: Optional[str] = None
    cart: List[CartItem] = Field(..., min_length=1, description="Items being ordered")
    shipping_address: ShippingAddress

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError("Invalid customer email")
        return v


class BankTransferResponse(ReconcileResponse):
    reference: str = Field(..., description="Reference the customer quotes on the transfer")


class OrderResponse(BaseModel):
    """Read-only order projection."""

    order_number: str
    status: str
    gateway_kind: str
    customer_id: str
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    totals: TotalsSchema
    line_items: List[LineItemSchema]
    shipping_address: Optional[Dict[str, Any]] = None
    source: str
    created_at: str


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed or ignored")
    event_id: Optional[str] = None
    order_number: Optional[str] = None
    created: Optional[bool] = None
    reason: Optional[str] = None


class HealthCheckResponse(BaseModel):
    status: str
    checks: Optional[Dict[str, Any]] = None
