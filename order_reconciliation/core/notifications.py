"""
Notification dispatcher.

Sends the customer confirmation and the business alert for an order. The
two jobs are independent: each runs under its own retry budget and a
failure in one never prevents the other or touches the order itself.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from order_reconciliation.core.models import GatewayKind, OrderStatus, currency_symbol, format_money
from order_reconciliation.core.retry import RetryExecutor, RetryExhaustedError
from order_reconciliation.database.models import Order
from order_reconciliation.database.store import OrderStore
from order_reconciliation.integrations.mail import MailTransport
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class RecipientRole(str, Enum):
    CUSTOMER = "customer"
    BUSINESS = "business"


class NotificationStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class NotificationResult:
    recipient_role: RecipientRole
    status: NotificationStatus
    template: str
    recipient: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.status is NotificationStatus.SENT


@dataclass(frozen=True)
class DispatchResult:
    customer: NotificationResult
    business: NotificationResult


class PaymentState(str, Enum):
    PAID = "paid"
    AWAITING_TRANSFER = "awaiting_transfer"
    PROCESSING = "processing"


TEMPLATES = {
    (RecipientRole.CUSTOMER, PaymentState.PAID): "customer_confirmation",
    (RecipientRole.CUSTOMER, PaymentState.AWAITING_TRANSFER): "customer_awaiting_transfer",
    (RecipientRole.CUSTOMER, PaymentState.PROCESSING): "customer_payment_processing",
    (RecipientRole.BUSINESS, PaymentState.PAID): "business_new_order",
    (RecipientRole.BUSINESS, PaymentState.AWAITING_TRANSFER): "business_awaiting_transfer",
    (RecipientRole.BUSINESS, PaymentState.PROCESSING): "business_payment_pending",
}


def payment_state(order: Order) -> PaymentState:
    if order.status != OrderStatus.PENDING_PAYMENT.value:
        return PaymentState.PAID
    # Transfer instructions only apply to bank transfer orders
    if order.gateway_kind == GatewayKind.BANK_TRANSFER.value:
        return PaymentState.AWAITING_TRANSFER
    return PaymentState.PROCESSING


def select_template(order: Order, role: RecipientRole) -> str:
    return TEMPLATES[(role, payment_state(order))]


def build_context(order: Order) -> Dict[str, Any]:
    """Template context for an order."""
    return {
        "order_number": order.order_number,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "line_items": list(order.line_items or []),
        "total_minor": order.total_minor,
        "currency": order.currency,
        "currency_symbol": currency_symbol(order.currency),
        "total_display": format_money(order.total_minor, order.currency),
        "shipping_address": order.shipping_address or {},
        "payment_reference": order.provider_reference,
        "status": order.status,
    }


class NotificationDispatcher:
    """
    Delivers order notifications through a mail transport.

    Args:
        transport: Mail transport port
        executor: Retry executor applied per recipient
        business_email: Recipient of business alerts
        store: Optional order store for notification logs
    """

    def __init__(
        self,
        transport: MailTransport,
        executor: RetryExecutor,
        business_email: str,
        store: Optional[OrderStore] = None,
    ):
        self.transport = transport
        self.executor = executor
        self.business_email = business_email
        self.store = store

    async def dispatch(self, order: Order) -> DispatchResult:
        """
        Notify the customer and the business about ``order``.

        Never raises for delivery failures; outcomes are in the result.
        """
        customer = await self._dispatch_role(order, RecipientRole.CUSTOMER, order.customer_email)
        business = await self._dispatch_role(order, RecipientRole.BUSINESS, self.business_email)
        logger.info(
            "notifications_dispatched",
            order_number=order.order_number,
            customer_status=customer.status.value,
            business_status=business.status.value,
        )
        return DispatchResult(customer=customer, business=business)

    async def _dispatch_role(
        self, order: Order, role: RecipientRole, recipient: Optional[str]
    ) -> NotificationResult:
        template = select_template(order, role)
        if not recipient:
            logger.warning(
                "notification_skipped_no_recipient",
                order_number=order.order_number,
                recipient_role=role.value,
            )
            result = NotificationResult(role, NotificationStatus.SKIPPED, template)
            metrics.record_notification(role.value, result.status.value)
            return result

        result = await self.send(order, role, recipient, template)
        await self._record(order, result)
        return result

    async def send(
        self, order: Order, role: RecipientRole, recipient: str, template: str
    ) -> NotificationResult:
        """Run one notification job under the retry policy."""
        attempts = 0
        data = build_context(order)

        async def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            return await self.transport.send(recipient, template, data)

        try:
            await self.executor.execute(attempt, operation_name=f"send_{template}")
        except RetryExhaustedError as e:
            result = NotificationResult(
                role, NotificationStatus.FAILED, template, recipient, attempts, str(e.last_error)
            )
        except Exception as e:
            result = NotificationResult(
                role, NotificationStatus.FAILED, template, recipient, attempts, str(e)
            )
        else:
            result = NotificationResult(role, NotificationStatus.SENT, template, recipient, attempts)

        metrics.record_notification(role.value, result.status.value)
        if result.sent:
            logger.info(
                "notification_sent",
                order_number=order.order_number,
                recipient_role=role.value,
                template=template,
                attempts=attempts,
            )
        else:
            logger.error(
                "notification_failed",
                order_number=order.order_number,
                recipient_role=role.value,
                template=template,
                attempts=attempts,
                error=result.error,
            )
        return result

    async def _record(self, order: Order, result: NotificationResult) -> None:
        if self.store is None:
            return
        try:
            await self.store.record_notification(
                order_number=order.order_number,
                recipient_role=result.recipient_role.value,
                recipient=result.recipient,
                template=result.template,
                attempts=result.attempts,
                success=result.sent,
                last_error=result.error,
            )
        except SQLAlchemyError as e:
            # Logging the outcome must never change it
            logger.warning(
                "notification_log_write_failed",
                order_number=order.order_number,
                error=str(e),
            )
