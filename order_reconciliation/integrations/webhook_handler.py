"""
Stripe webhook handler: the server-side order writer.

Implements:
- Webhook signature verification
- Event type routing to registered handlers
- Order creation through the same reconciler as the browser return path
- Notification dispatch that never fails the webhook

Redelivered events need no separate deduplication: the reconciler's
idempotency key turns a repeat into a lookup.
"""
import json
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import stripe
import structlog

from order_reconciliation.config import Settings
from order_reconciliation.core.models import OrderSource, PaymentConfirmation, PaymentStatus
from order_reconciliation.core.normalizer import (
    confirmation_from_checkout_session,
    confirmation_from_payment_intent,
)
from order_reconciliation.core.notifications import NotificationDispatcher
from order_reconciliation.core.reconciler import OrderReconciler, ReconciliationError
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Mapping[str, Any]], Awaitable[Dict[str, Any]]]


class WebhookError(Exception):
    """
    Raised when webhook processing fails.

    Args:
        message: Error message
        status_code: HTTP status the endpoint should answer with
    """

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class WebhookHandler:
    """
    Handles Stripe webhook events.

    Args:
        settings: Application settings (webhook secret)
        reconciler: Order reconciler shared with the front door
        dispatcher: Notification dispatcher
    """

    def __init__(
        self,
        settings: Settings,
        reconciler: OrderReconciler,
        dispatcher: NotificationDispatcher,
    ):
        self.settings = settings
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.event_handlers: Dict[str, EventHandler] = {}

        self.register_handler("checkout.session.completed", self.handle_checkout_session_completed)
        self.register_handler("payment_intent.succeeded", self.handle_payment_intent_succeeded)

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'payment_intent.succeeded')
            handler: Async callable receiving the event's data object
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def verify_signature(
        self, payload: bytes, signature: str, secret: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value
            secret: Optional webhook secret (uses config if not provided)

        Returns:
            Dict[str, Any]: Verified event body

        Raises:
            WebhookError: If the secret is missing or verification fails (status 400)
        """
        webhook_secret = secret or self.settings.stripe_webhook_secret
        if not webhook_secret:
            raise WebhookError("Webhook secret is not configured", status_code=400)
        if not signature:
            raise WebhookError("Missing Stripe-Signature header", status_code=400)

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            stripe.WebhookSignature.verify_header(
                body, signature, webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {e}", status_code=400) from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookError(f"Invalid webhook payload: {e}", status_code=400) from e

        logger.info(
            "webhook_signature_verified", event_id=event.get("id"), event_type=event.get("type")
        )
        return event

    async def process_event(self, event: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Route a verified event to its handler.

        Returns:
            Dict[str, Any]: Processing result with a ``status`` key

        Raises:
            WebhookError: If the order could not be recorded
        """
        event_id = event.get("id")
        event_type = event.get("type", "")
        handler = self.event_handlers.get(event_type)

        if handler is None:
            logger.info("webhook_event_ignored", event_id=event_id, event_type=event_type)
            metrics.record_webhook_event(event_type, "ignored")
            return {"status": "ignored", "event_id": event_id, "event_type": event_type}

        logger.info("processing_webhook_event", event_id=event_id, event_type=event_type)
        try:
            result = await handler(event["data"]["object"])
        except WebhookError:
            metrics.record_webhook_event(event_type, "failed")
            raise

        metrics.record_webhook_event(event_type, result.get("status", "processed"))
        result.setdefault("event_id", event_id)
        return result

    async def handle_checkout_session_completed(self, session: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._record_order(confirmation_from_checkout_session(session))

    async def handle_payment_intent_succeeded(self, intent: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._record_order(confirmation_from_payment_intent(intent))

    async def _record_order(self, confirmation: PaymentConfirmation) -> Dict[str, Any]:
        if confirmation.status is not PaymentStatus.PAID:
            logger.info(
                "webhook_payment_not_paid",
                gateway_kind=confirmation.gateway_kind.value,
                reference=confirmation.provider_reference,
                status=confirmation.status.value,
            )
            return {"status": "ignored", "reason": "not_paid"}

        try:
            reconciled = await self.reconciler.reconcile(
                confirmation, cart_snapshot=None, source=OrderSource.WEBHOOK
            )
        except ReconciliationError as e:
            raise WebhookError(f"Could not record order: {e}") from e

        try:
            await self.dispatcher.dispatch(reconciled.order)
        except Exception as e:
            logger.error(
                "webhook_notification_error",
                order_number=reconciled.order.order_number,
                error=str(e),
                exc_info=True,
            )

        return {
            "status": "processed",
            "order_number": reconciled.order.order_number,
            "created": reconciled.created,
        }
