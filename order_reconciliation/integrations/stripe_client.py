"""
Stripe API client for payment lookups.

Implements:
- Checkout session and payment intent retrieval
- Error classification into transient and permanent provider errors
- Blocking SDK calls moved off the event loop

Retries are owned by the caller's retry executor, so the SDK's own network
retries are disabled.
"""
import asyncio
import json
from typing import Any, Callable, Dict, Mapping, Optional

import stripe
import structlog

from order_reconciliation.config import Settings
from order_reconciliation.integrations.errors import (
    ProviderError,
    ProviderNotFoundError,
    ProviderRequestError,
    ProviderUnavailableError,
)

logger = structlog.get_logger(__name__)


def map_stripe_error(error: Exception) -> ProviderError:
    """
    Classify a Stripe SDK exception.

    Args:
        error: Exception raised by the SDK

    Returns:
        ProviderError: Typed provider error wrapping the original
    """
    status = getattr(error, "http_status", None)
    message = getattr(error, "user_message", None) or str(error)

    if isinstance(error, stripe.APIConnectionError):
        return ProviderUnavailableError(message, status, error)
    if status is not None and status >= 500:
        return ProviderUnavailableError(message, status, error)
    if isinstance(error, stripe.InvalidRequestError) and (
        status == 404 or getattr(error, "code", None) == "resource_missing"
    ):
        return ProviderNotFoundError(message, status, error)
    if isinstance(error, stripe.APIError) and status is None:
        return ProviderUnavailableError(message, status, error)
    return ProviderRequestError(message, status, error)


def to_plain(obj: Any) -> Dict[str, Any]:
    """Plain dict copy of a Stripe object; its string form is the JSON body."""
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return dict(obj)


class StripeClient:
    """
    Thin async wrapper over a per-instance Stripe SDK client.

    Args:
        settings: Application settings holding the secret key
        sdk: Preconfigured ``stripe.StripeClient``; built from settings when omitted
    """

    def __init__(self, settings: Settings, sdk: Optional[stripe.StripeClient] = None):
        self.settings = settings
        if sdk is None and settings.stripe_configured:
            sdk = stripe.StripeClient(
                settings.stripe_secret_key,
                stripe_version=settings.stripe_api_version,
                max_network_retries=0,
            )
        self._sdk = sdk

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            result = await asyncio.to_thread(func, *args)
        except stripe.StripeError as e:
            mapped = map_stripe_error(e)
            logger.warning(
                "stripe_api_error",
                operation=operation,
                error_type=type(mapped).__name__,
                status_code=mapped.status_code,
                error=str(e),
            )
            raise mapped from e
        return to_plain(result)

    def _require_sdk(self) -> stripe.StripeClient:
        if self._sdk is None:
            raise ProviderRequestError("Stripe is not configured")
        return self._sdk

    async def retrieve_checkout_session(self, session_id: str) -> Mapping[str, Any]:
        """Retrieve a checkout session with its payment intent id."""
        sessions = self._require_sdk().v1.checkout.sessions
        return await self._call("retrieve_checkout_session", sessions.retrieve, session_id)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Mapping[str, Any]:
        intents = self._require_sdk().v1.payment_intents
        return await self._call("retrieve_payment_intent", intents.retrieve, payment_intent_id)
