"""
Reconciliation front door.

Runs one confirmation pipeline per browser return:

    Idle -> Extracting -> Normalizing -> Reconciling -> Notifying -> Done
                                    \\-> Failed (with a reason)

Steps run strictly in sequence. Every exception is converted into a typed
outcome, so callers always get a Done or Failed result.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import structlog

from order_reconciliation.core.models import (
    CartItem,
    GatewayKind,
    OrderSource,
    ShippingAddress,
    format_money,
)
from order_reconciliation.core.normalizer import (
    GatewayNormalizer,
    PaymentNotFoundError,
    PaymentNotPaidError,
    ProviderUnavailable,
)
from order_reconciliation.core.notifications import DispatchResult, NotificationDispatcher
from order_reconciliation.core.reconciler import OrderReconciler, ReconciliationError
from order_reconciliation.database.models import Order
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class FrontDoorState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    NORMALIZING = "normalizing"
    RECONCILING = "reconciling"
    NOTIFYING = "notifying"
    DONE = "done"
    FAILED = "failed"


class FailureReason(str, Enum):
    NO_PAYMENT_REFERENCE = "no_payment_reference"
    PAYMENT_NOT_FOUND = "payment_not_found"
    PAYMENT_NOT_COMPLETE = "payment_not_complete"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    RECONCILIATION_FAILED = "reconciliation_failed"
    INTERNAL_ERROR = "internal_error"


_BOOKKEEPING_MESSAGE = (
    "Your payment was received, but we could not record your order automatically. "
    "Our team will complete it manually; please contact support with your payment reference."
)

_UNCONFIRMED_MESSAGE = (
    "We could not confirm your payment automatically. Please check your email "
    "for a confirmation or contact support."
)

# Failures in these states happen before any payment is confirmed
PRE_CONFIRMATION_STATES = frozenset(
    {FrontDoorState.IDLE, FrontDoorState.EXTRACTING, FrontDoorState.NORMALIZING}
)

FAILURE_MESSAGES = {
    FailureReason.NO_PAYMENT_REFERENCE: "No payment reference was provided.",
    FailureReason.PAYMENT_NOT_FOUND: (
        "We could not find this payment. If you were charged, please contact support."
    ),
    FailureReason.PAYMENT_NOT_COMPLETE: "Your payment was not completed.",
    FailureReason.PROVIDER_UNAVAILABLE: _UNCONFIRMED_MESSAGE,
    FailureReason.RECONCILIATION_FAILED: _BOOKKEEPING_MESSAGE,
    FailureReason.INTERNAL_ERROR: _BOOKKEEPING_MESSAGE,
}


@dataclass(frozen=True)
class ReturnParams:
    """Reference parameters from a payment return URL."""

    gateway: Optional[GatewayKind] = None
    session_id: Optional[str] = None
    payment_intent: Optional[str] = None
    token: Optional[str] = None
    reference: Optional[str] = None

    def extract(self) -> Optional[Tuple[GatewayKind, str]]:
        """Pick the gateway and reference; an explicit gateway wins over inference."""
        by_gateway = {
            GatewayKind.CARD_SESSION: self.session_id,
            GatewayKind.CARD_INTENT: self.payment_intent,
            GatewayKind.WALLET: self.token,
            GatewayKind.BANK_TRANSFER: self.reference,
        }
        if self.gateway is not None:
            value = by_gateway[self.gateway] or self.reference
            return (self.gateway, value.strip()) if value and value.strip() else None
        for gateway_kind, value in by_gateway.items():
            if value and value.strip():
                return gateway_kind, value.strip()
        return None


@dataclass
class FrontDoorResult:
    state: FrontDoorState
    gateway_kind: Optional[GatewayKind] = None
    reference: Optional[str] = None
    order: Optional[Order] = None
    created: bool = False
    notifications: Optional[DispatchResult] = None
    failure_reason: Optional[FailureReason] = None
    message: Optional[str] = None
    transitions: List[FrontDoorState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is FrontDoorState.DONE

    @property
    def total_display(self) -> Optional[str]:
        if self.order is None:
            return None
        return format_money(self.order.total_minor, self.order.currency)


class ReconciliationFrontDoor:
    """
    Entry point for the browser return page.

    Args:
        normalizer: Gateway normalizer
        reconciler: Order reconciler
        dispatcher: Notification dispatcher
    """

    def __init__(
        self,
        normalizer: GatewayNormalizer,
        reconciler: OrderReconciler,
        dispatcher: NotificationDispatcher,
    ):
        self.normalizer = normalizer
        self.reconciler = reconciler
        self.dispatcher = dispatcher

    async def run(
        self,
        params: ReturnParams,
        cart_snapshot: Optional[Sequence[CartItem]] = None,
        customer_id: Optional[str] = None,
        shipping_address: Optional[ShippingAddress] = None,
    ) -> FrontDoorResult:
        """Run the pipeline; never raises."""
        started = time.perf_counter()
        result = FrontDoorResult(state=FrontDoorState.IDLE, transitions=[FrontDoorState.IDLE])
        try:
            await self._run(result, params, cart_snapshot, customer_id, shipping_address)
        except Exception as e:
            logger.error(
                "front_door_unexpected_error",
                state=result.state.value,
                reference=result.reference,
                error=str(e),
                exc_info=True,
            )
            confirmed = result.state not in PRE_CONFIRMATION_STATES
            self._fail(result, FailureReason.INTERNAL_ERROR)
            if not confirmed:
                result.message = _UNCONFIRMED_MESSAGE

        gateway_label = result.gateway_kind.value if result.gateway_kind else "unknown"
        outcome = "done" if result.ok else result.failure_reason.value
        metrics.record_reconciliation(gateway_label, outcome, time.perf_counter() - started)
        return result

    def _enter(self, result: FrontDoorResult, state: FrontDoorState) -> None:
        result.state = state
        result.transitions.append(state)

    def _fail(self, result: FrontDoorResult, reason: FailureReason) -> FrontDoorResult:
        self._enter(result, FrontDoorState.FAILED)
        result.failure_reason = reason
        result.message = FAILURE_MESSAGES[reason]
        logger.warning(
            "front_door_failed",
            reason=reason.value,
            gateway_kind=result.gateway_kind.value if result.gateway_kind else None,
            reference=result.reference,
        )
        return result

    async def _run(
        self,
        result: FrontDoorResult,
        params: ReturnParams,
        cart_snapshot: Optional[Sequence[CartItem]],
        customer_id: Optional[str],
        shipping_address: Optional[ShippingAddress],
    ) -> FrontDoorResult:
        self._enter(result, FrontDoorState.EXTRACTING)
        extracted = params.extract()
        if extracted is None:
            return self._fail(result, FailureReason.NO_PAYMENT_REFERENCE)
        result.gateway_kind, result.reference = extracted

        self._enter(result, FrontDoorState.NORMALIZING)
        try:
            confirmation = await self.normalizer.normalize(result.gateway_kind, result.reference)
        except PaymentNotFoundError:
            return self._fail(result, FailureReason.PAYMENT_NOT_FOUND)
        except PaymentNotPaidError:
            return self._fail(result, FailureReason.PAYMENT_NOT_COMPLETE)
        except ProviderUnavailable:
            return self._fail(result, FailureReason.PROVIDER_UNAVAILABLE)

        self._enter(result, FrontDoorState.RECONCILING)
        source = (
            OrderSource.BANK_TRANSFER
            if result.gateway_kind is GatewayKind.BANK_TRANSFER
            else OrderSource.FRONT_DOOR
        )
        try:
            reconciled = await self.reconciler.reconcile(
                confirmation,
                cart_snapshot=cart_snapshot,
                customer_id=customer_id,
                shipping_address=shipping_address,
                source=source,
            )
        except ReconciliationError:
            return self._fail(result, FailureReason.RECONCILIATION_FAILED)
        result.order = reconciled.order
        result.created = reconciled.created

        # Notifications go out even when the webhook created the order first
        self._enter(result, FrontDoorState.NOTIFYING)
        try:
            result.notifications = await self.dispatcher.dispatch(reconciled.order)
        except Exception as e:
            logger.error(
                "front_door_notification_error",
                order_number=reconciled.order.order_number,
                error=str(e),
                exc_info=True,
            )

        self._enter(result, FrontDoorState.DONE)
        logger.info(
            "front_door_done",
            gateway_kind=result.gateway_kind.value,
            order_number=reconciled.order.order_number,
            created=reconciled.created,
        )
        return result
