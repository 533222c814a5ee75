"""
Gateway normalizer.

Turns a provider reference into a PaymentConfirmation. Only the provider
network call runs through the retry executor; mapping a response is pure and
is shared with the webhook handler.
"""
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import structlog

from order_reconciliation.core.models import (
    GatewayKind,
    PaymentConfirmation,
    PaymentStatus,
    ShippingAddress,
    to_minor,
)
from order_reconciliation.core.retry import RetryExecutor, RetryExhaustedError
from order_reconciliation.database.store import OrderStore
from order_reconciliation.integrations.errors import ProviderError, ProviderNotFoundError
from order_reconciliation.integrations.paypal_client import PayPalClient
from order_reconciliation.integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)


class NormalizationError(Exception):
    """Base exception for confirmations that could not be produced."""

    def __init__(self, message: str, gateway_kind: GatewayKind, reference: str):
        super().__init__(message)
        self.gateway_kind = gateway_kind
        self.reference = reference


class PaymentNotFoundError(NormalizationError):
    """The provider (or the bank transfer store) has no such reference."""


class PaymentNotPaidError(NormalizationError):
    """The payment exists but has not completed."""


class ProviderUnavailable(NormalizationError):
    """The provider could not be asked; the payment may still have succeeded."""


def _get(obj: Optional[Mapping[str, Any]], *path: str) -> Any:
    current: Any = obj
    for key in path:
        if not current:
            return None
        current = current.get(key)
    return current


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may hold an id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def stripe_address(
    address: Optional[Mapping[str, Any]], name: Optional[str] = None
) -> Optional[ShippingAddress]:
    if not address and not name:
        return None
    address = address or {}
    return ShippingAddress(
        name=name,
        line1=address.get("line1"),
        line2=address.get("line2"),
        city=address.get("city"),
        county=address.get("state"),
        postcode=address.get("postal_code"),
        country=address.get("country"),
    )


def confirmation_from_checkout_session(session: Mapping[str, Any]) -> PaymentConfirmation:
    """Map a Stripe checkout session."""
    paid = session.get("status") == "complete" and session.get("payment_status") == "paid"
    if paid:
        status = PaymentStatus.PAID
    elif session.get("status") == "expired":
        status = PaymentStatus.FAILED
    else:
        status = PaymentStatus.PENDING

    shipping = _get(session, "shipping_details") or _get(session, "collected_information", "shipping_details")
    customer = session.get("customer_details") or {}
    if shipping:
        address = stripe_address(shipping.get("address"), shipping.get("name"))
    else:
        address = stripe_address(customer.get("address"), customer.get("name"))

    return PaymentConfirmation(
        gateway_kind=GatewayKind.CARD_SESSION,
        provider_reference=session["id"],
        amount_minor=session.get("amount_total") or 0,
        currency=(session.get("currency") or "gbp").upper(),
        status=status,
        customer_email=customer.get("email") or session.get("customer_email"),
        customer_name=customer.get("name"),
        shipping_address=address,
        secondary_reference=_id_of(session.get("payment_intent")),
        raw_metadata=dict(session.get("metadata") or {}),
    )


def confirmation_from_payment_intent(intent: Mapping[str, Any]) -> PaymentConfirmation:
    """Map a Stripe payment intent."""
    metadata = dict(intent.get("metadata") or {})
    intent_status = intent.get("status")
    if intent_status == "succeeded":
        status = PaymentStatus.PAID
    elif intent_status in ("processing", "requires_capture"):
        status = PaymentStatus.PENDING
    else:
        status = PaymentStatus.FAILED

    shipping = intent.get("shipping") or {}
    return PaymentConfirmation(
        gateway_kind=GatewayKind.CARD_INTENT,
        provider_reference=intent["id"],
        amount_minor=intent.get("amount_received") or intent.get("amount") or 0,
        currency=(intent.get("currency") or "gbp").upper(),
        status=status,
        customer_email=intent.get("receipt_email") or metadata.get("customerEmail"),
        customer_name=shipping.get("name") or metadata.get("customerName"),
        shipping_address=stripe_address(shipping.get("address"), shipping.get("name")),
        secondary_reference=intent["id"],
        raw_metadata=metadata,
    )


def confirmation_from_paypal_order(order: Mapping[str, Any]) -> PaymentConfirmation:
    """Map a captured (or read back) PayPal order."""
    unit = (order.get("purchase_units") or [{}])[0]
    captures = _get(unit, "payments", "captures") or []
    capture = captures[0] if captures else {}

    capture_status = capture.get("status") or ""
    if capture_status == "COMPLETED":
        status = PaymentStatus.PAID
    elif capture_status == "PENDING":
        status = PaymentStatus.PENDING
    else:
        status = PaymentStatus.FAILED

    amount = capture.get("amount") or unit.get("amount") or {}
    payer = order.get("payer") or {}
    payer_name = " ".join(
        part for part in (_get(payer, "name", "given_name"), _get(payer, "name", "surname")) if part
    )
    shipping = unit.get("shipping") or {}
    ship_address = shipping.get("address") or {}
    address = None
    if shipping:
        address = ShippingAddress(
            name=_get(shipping, "name", "full_name"),
            line1=ship_address.get("address_line_1"),
            line2=ship_address.get("address_line_2"),
            city=ship_address.get("admin_area_2"),
            county=ship_address.get("admin_area_1"),
            postcode=ship_address.get("postal_code"),
            country=ship_address.get("country_code"),
        )

    metadata: Dict[str, Any] = {}
    if unit.get("custom_id"):
        metadata["cart"] = unit["custom_id"]

    return PaymentConfirmation(
        gateway_kind=GatewayKind.WALLET,
        provider_reference=order["id"],
        amount_minor=to_minor(amount.get("value") or 0),
        currency=(amount.get("currency_code") or "GBP").upper(),
        status=status,
        customer_email=payer.get("email_address"),
        customer_name=payer_name or None,
        shipping_address=address,
        secondary_reference=capture.get("id"),
        raw_metadata=metadata,
    )


class GatewayNormalizer:
    """
    Produces confirmations for all four gateways.

    Args:
        store: Order store (bank transfer requests)
        executor: Retry executor for provider calls
        stripe_client: Stripe lookups (card_session, card_intent)
        paypal_client: PayPal capture (wallet)
    """

    def __init__(
        self,
        store: OrderStore,
        executor: RetryExecutor,
        stripe_client: Optional[StripeClient] = None,
        paypal_client: Optional[PayPalClient] = None,
    ):
        self.store = store
        self.executor = executor
        self.stripe_client = stripe_client
        self.paypal_client = paypal_client
        self._adapters: Dict[GatewayKind, Callable[[str], Awaitable[PaymentConfirmation]]] = {
            GatewayKind.CARD_SESSION: self.card_session,
            GatewayKind.CARD_INTENT: self.card_intent,
            GatewayKind.WALLET: self.wallet,
            GatewayKind.BANK_TRANSFER: self.bank_transfer,
        }

    async def normalize(self, gateway_kind: GatewayKind, reference: str) -> PaymentConfirmation:
        """
        Fetch and validate a payment.

        Raises:
            PaymentNotFoundError: Unknown reference
            PaymentNotPaidError: Payment did not complete
            ProviderUnavailable: Provider could not be reached after retries
        """
        confirmation = await self._adapters[gateway_kind](reference)
        logger.info(
            "payment_normalized",
            gateway_kind=gateway_kind.value,
            reference=reference,
            status=confirmation.status.value,
            amount_minor=confirmation.amount_minor,
        )
        return confirmation

    async def _fetch(
        self,
        gateway_kind: GatewayKind,
        reference: str,
        operation: Callable[[], Awaitable[Mapping[str, Any]]],
        operation_name: str,
    ) -> Mapping[str, Any]:
        try:
            return await self.executor.execute(operation, operation_name=operation_name)
        except RetryExhaustedError as e:
            raise ProviderUnavailable(
                f"Could not confirm payment with provider after {e.attempts} attempts",
                gateway_kind,
                reference,
            ) from e
        except ProviderNotFoundError as e:
            raise PaymentNotFoundError(str(e), gateway_kind, reference) from e
        except ProviderError as e:
            raise ProviderUnavailable(str(e), gateway_kind, reference) from e

    def _require_client(self, client: Any, gateway_kind: GatewayKind, reference: str) -> Any:
        if client is None:
            raise ProviderUnavailable(
                f"No client configured for {gateway_kind.value}", gateway_kind, reference
            )
        return client

    @staticmethod
    def _require_paid(confirmation: PaymentConfirmation) -> PaymentConfirmation:
        if confirmation.status is not PaymentStatus.PAID:
            raise PaymentNotPaidError(
                f"Payment status is {confirmation.status.value}",
                confirmation.gateway_kind,
                confirmation.provider_reference,
            )
        return confirmation

    async def card_session(self, session_id: str) -> PaymentConfirmation:
        client = self._require_client(self.stripe_client, GatewayKind.CARD_SESSION, session_id)
        session = await self._fetch(
            GatewayKind.CARD_SESSION,
            session_id,
            lambda: client.retrieve_checkout_session(session_id),
            "stripe_retrieve_checkout_session",
        )
        return self._require_paid(confirmation_from_checkout_session(session))

    async def card_intent(self, payment_intent_id: str) -> PaymentConfirmation:
        client = self._require_client(self.stripe_client, GatewayKind.CARD_INTENT, payment_intent_id)
        intent = await self._fetch(
            GatewayKind.CARD_INTENT,
            payment_intent_id,
            lambda: client.retrieve_payment_intent(payment_intent_id),
            "stripe_retrieve_payment_intent",
        )
        return self._require_paid(confirmation_from_payment_intent(intent))

    async def wallet(self, order_id: str) -> PaymentConfirmation:
        """Capture the wallet order; a pending capture is accepted."""
        client = self._require_client(self.paypal_client, GatewayKind.WALLET, order_id)
        order = await self._fetch(
            GatewayKind.WALLET,
            order_id,
            lambda: client.capture_order(order_id),
            "paypal_capture_order",
        )
        confirmation = confirmation_from_paypal_order(order)
        if confirmation.status is PaymentStatus.FAILED:
            raise PaymentNotPaidError(
                "Wallet capture did not complete", GatewayKind.WALLET, order_id
            )
        return confirmation

    async def bank_transfer(self, reference: str) -> PaymentConfirmation:
        """Synthesize a pending confirmation from the stored transfer request."""
        request = await self.store.get_bank_transfer_request(reference)
        if request is None:
            raise PaymentNotFoundError(
                f"No bank transfer request {reference}", GatewayKind.BANK_TRANSFER, reference
            )
        return PaymentConfirmation(
            gateway_kind=GatewayKind.BANK_TRANSFER,
            provider_reference=request.reference,
            amount_minor=request.amount_minor,
            currency=request.currency.upper(),
            status=PaymentStatus.PENDING,
            customer_email=request.customer_email,
            customer_name=request.customer_name,
            customer_id=request.customer_id,
            shipping_address=ShippingAddress.model_validate(request.shipping_address),
            raw_metadata={"cart": list(request.cart)},
        )
