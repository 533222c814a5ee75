"""Domain types shared by the normalizer, reconciler and dispatcher."""
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


class GatewayKind(str, Enum):
    """Payment confirmation paths."""

    CARD_SESSION = "card_session"
    CARD_INTENT = "card_intent"
    WALLET = "wallet"
    BANK_TRANSFER = "bank_transfer"


class PaymentStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class OrderSource(str, Enum):
    """Which writer created an order."""

    FRONT_DOOR = "front_door"
    WEBHOOK = "webhook"
    BANK_TRANSFER = "bank_transfer"


def to_minor(amount: Any) -> int:
    """Convert a major-unit amount to minor units, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major(amount_minor: int) -> float:
    return float(Decimal(amount_minor) / 100)


class ShippingAddress(BaseModel):
    """Structured postal address."""

    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    county: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None


class CartItem(BaseModel):
    """A line of the storefront cart as held by the browser."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    price: float = Field(..., ge=0, description="Unit price in major currency units")
    quantity: int = Field(default=1, ge=1)
    category: Optional[str] = None
    image: Optional[str] = None


class LineItem(BaseModel):
    """A persisted order line."""

    product_id: str
    name: str
    quantity: int = Field(default=1, ge=1)
    unit_price: float = Field(..., ge=0)

    @classmethod
    def from_cart_item(cls, item: CartItem) -> "LineItem":
        return cls(
            product_id=item.id,
            name=item.name,
            quantity=item.quantity,
            unit_price=item.price,
        )

    @property
    def line_total_minor(self) -> int:
        return to_minor(self.unit_price) * self.quantity


class PaymentConfirmation(BaseModel):
    """
    Gateway-independent confirmation of a payment.

    ``(gateway_kind, provider_reference)`` is the idempotency key for order
    creation. ``secondary_reference`` is the underlying payment id when the
    gateway exposes one that the other writer may have indexed instead.
    """

    model_config = ConfigDict(frozen=True)

    gateway_kind: GatewayKind
    provider_reference: str = Field(..., min_length=1)
    amount_minor: int = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    status: PaymentStatus
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_id: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    secondary_reference: Optional[str] = None
    raw_metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def idempotency_key(self) -> "IdempotencyKey":
        return IdempotencyKey(self.gateway_kind, self.provider_reference)


class IdempotencyKey(NamedTuple):
    """``(gateway_kind, provider_reference)`` pair."""

    gateway_kind: GatewayKind
    provider_reference: str


def order_status_for(payment_status: PaymentStatus) -> OrderStatus:
    """Initial order status for a confirmed payment."""
    if payment_status is PaymentStatus.PAID:
        return OrderStatus.PAID
    return OrderStatus.PENDING_PAYMENT


def line_items_total_minor(items: List[LineItem]) -> int:
    return sum(item.line_total_minor for item in items)


CURRENCY_SYMBOLS = {"GBP": "£", "USD": "$", "EUR": "€"}


def currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency.upper(), "")


def format_money(amount_minor: int, currency: str) -> str:
    """Display string such as ``£199.99`` (``SEK 10.00`` without a known symbol)."""
    amount = Decimal(amount_minor) / 100
    symbol = currency_symbol(currency)
    if symbol:
        return f"{symbol}{amount:,.2f}"
    return f"{currency.upper()} {amount:,.2f}"
