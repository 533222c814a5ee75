"""
Order reconciler.

Resolves a payment confirmation into exactly one persisted order. Two
writers call this concurrently (the browser return path and the Stripe
webhook); the store's unique constraint decides which of them creates the
row, and the other receives the winner with created=False.
"""
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from order_reconciliation.config import Settings
from order_reconciliation.core.cart import resolve_line_items
from order_reconciliation.core.models import (
    CartItem,
    OrderSource,
    PaymentConfirmation,
    ShippingAddress,
    line_items_total_minor,
    order_status_for,
)
from order_reconciliation.database.models import Order
from order_reconciliation.database.store import Created, OrderStore, generate_order_number
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

GUEST_IDS = ("", "guest", "anonymous")


class ReconciliationError(Exception):
    """
    Raised when the store failed for a reason other than a lost race.

    The payment itself may have succeeded; callers must say so.
    """

    def __init__(self, message: str, confirmation: PaymentConfirmation):
        super().__init__(message)
        self.confirmation = confirmation


@dataclass(frozen=True)
class ReconciliationResult:
    order: Order
    created: bool


def resolve_customer_id(
    confirmation: PaymentConfirmation, customer_id: Optional[str] = None
) -> str:
    """Authenticated user id when known, else ``guest_<provider_reference>``."""
    for candidate in (
        customer_id,
        confirmation.customer_id,
        confirmation.raw_metadata.get("userId"),
    ):
        if candidate and str(candidate).lower() not in GUEST_IDS:
            return str(candidate)
    return f"guest_{confirmation.provider_reference}"


class OrderReconciler:
    """
    Creates or finds the order for a confirmed payment.

    Args:
        store: Order store enforcing the idempotency key
        settings: Application settings (order number prefix, fallback item)
    """

    def __init__(self, store: OrderStore, settings: Settings):
        self.store = store
        self.settings = settings

    async def reconcile(
        self,
        confirmation: PaymentConfirmation,
        cart_snapshot: Optional[Sequence[CartItem]] = None,
        customer_id: Optional[str] = None,
        shipping_address: Optional[ShippingAddress] = None,
        source: OrderSource = OrderSource.FRONT_DOOR,
    ) -> ReconciliationResult:
        """
        Find or create the order for ``confirmation``.

        Args:
            confirmation: Normalized payment
            cart_snapshot: Cart held by the browser, if any
            customer_id: Authenticated customer, if any
            shipping_address: Address supplied by the browser; the provider's wins
            source: Which writer is calling

        Returns:
            ReconciliationResult: created is True only for the inserting writer

        Raises:
            ReconciliationError: On store failures
        """
        key = confirmation.idempotency_key
        log = logger.bind(
            gateway_kind=key.gateway_kind.value,
            provider_reference=key.provider_reference,
            source=source.value,
        )

        try:
            existing = await self.store.find_by_idempotency_key(key)
            if existing is None and confirmation.secondary_reference:
                existing = await self.store.find_by_secondary_key(confirmation.secondary_reference)
            if existing is not None:
                log.info("order_already_exists", order_number=existing.order_number)
                return ReconciliationResult(order=existing, created=False)

            order = self._build_order(confirmation, cart_snapshot, customer_id, shipping_address, source)
            outcome = await self.store.insert_if_absent(order)
        except SQLAlchemyError as e:
            log.error("reconciliation_store_failed", error=str(e), exc_info=True)
            raise ReconciliationError(f"Order store failure: {e}", confirmation) from e

        if isinstance(outcome, Created):
            metrics.record_order_created(key.gateway_kind.value)
            log.info(
                "order_created",
                order_number=outcome.order.order_number,
                total_minor=outcome.order.total_minor,
                line_items=len(outcome.order.line_items),
            )
            return ReconciliationResult(order=outcome.order, created=True)

        metrics.record_insert_conflict(key.gateway_kind.value)
        log.info("order_created_by_other_writer", order_number=outcome.order.order_number)
        return ReconciliationResult(order=outcome.order, created=False)

    def _build_order(
        self,
        confirmation: PaymentConfirmation,
        cart_snapshot: Optional[Sequence[CartItem]],
        customer_id: Optional[str],
        shipping_address: Optional[ShippingAddress],
        source: OrderSource,
    ) -> Order:
        line_items = resolve_line_items(
            cart_snapshot,
            confirmation.raw_metadata,
            confirmation.amount_minor,
            default_product_id=self.settings.default_item_product_id,
            default_name=self.settings.default_item_name,
        )
        items_total = line_items_total_minor(line_items)
        if items_total != confirmation.amount_minor:
            # Shipping, discounts or a stale cart; the charged amount is authoritative
            logger.info(
                "line_items_total_mismatch",
                items_total=items_total,
                amount_minor=confirmation.amount_minor,
            )

        address = confirmation.shipping_address or shipping_address
        if address is not None and not address.country:
            address = address.model_copy(update={"country": self.settings.default_country})

        return Order(
            order_number=generate_order_number(self.settings.order_number_prefix),
            gateway_kind=confirmation.gateway_kind.value,
            provider_reference=confirmation.provider_reference,
            secondary_reference=confirmation.secondary_reference,
            status=order_status_for(confirmation.status).value,
            customer_id=resolve_customer_id(confirmation, customer_id),
            customer_email=confirmation.customer_email,
            customer_name=confirmation.customer_name,
            line_items=[item.model_dump() for item in line_items],
            shipping_address=address.model_dump() if address is not None else None,
            total_minor=confirmation.amount_minor,
            currency=confirmation.currency.upper(),
            source=source.value,
        )
