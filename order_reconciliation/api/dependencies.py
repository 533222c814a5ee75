"""
Service wiring for the API.

Each collaborator is constructed once per process and injected into routes
through FastAPI dependencies, so tests can replace any of them with
``app.dependency_overrides``.
"""
from functools import lru_cache

from order_reconciliation.config import get_settings
from order_reconciliation.core.front_door import ReconciliationFrontDoor
from order_reconciliation.core.normalizer import GatewayNormalizer
from order_reconciliation.core.notifications import NotificationDispatcher
from order_reconciliation.core.reconciler import OrderReconciler
from order_reconciliation.core.retry import RetryExecutor, RetryPolicy
from order_reconciliation.database.connection import get_session_factory
from order_reconciliation.database.store import OrderStore
from order_reconciliation.integrations.mail import MailTransport, SmtpMailTransport
from order_reconciliation.integrations.paypal_client import PayPalClient
from order_reconciliation.integrations.stripe_client import StripeClient
from order_reconciliation.integrations.webhook_handler import WebhookHandler
from order_reconciliation.monitoring.health import HealthCheck


@lru_cache()
def get_store() -> OrderStore:
    settings = get_settings()
    return OrderStore(get_session_factory(), order_number_prefix=settings.order_number_prefix)


@lru_cache()
def get_retry_executor() -> RetryExecutor:
    return RetryExecutor(RetryPolicy.from_settings(get_settings()))


@lru_cache()
def get_stripe_client() -> StripeClient:
    return StripeClient(get_settings())


@lru_cache()
def get_paypal_client() -> PayPalClient:
    return PayPalClient.from_settings(get_settings())


@lru_cache()
def get_mail_transport() -> MailTransport:
    return SmtpMailTransport(get_settings())


@lru_cache()
def get_reconciler() -> OrderReconciler:
    return OrderReconciler(get_store(), get_settings())


@lru_cache()
def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(
        transport=get_mail_transport(),
        executor=get_retry_executor(),
        business_email=get_settings().business_email,
        store=get_store(),
    )


@lru_cache()
def get_front_door() -> ReconciliationFrontDoor:
    normalizer = GatewayNormalizer(
        store=get_store(),
        executor=get_retry_executor(),
        stripe_client=get_stripe_client(),
        paypal_client=get_paypal_client(),
    )
    return ReconciliationFrontDoor(normalizer, get_reconciler(), get_dispatcher())


@lru_cache()
def get_webhook_handler() -> WebhookHandler:
    return WebhookHandler(get_settings(), get_reconciler(), get_dispatcher())


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck(get_settings())


def reset_dependencies() -> None:
    """Drop memoized services (after settings or the engine change)."""
    for factory in (
        get_store,
        get_retry_executor,
        get_stripe_client,
        get_paypal_client,
        get_mail_transport,
        get_reconciler,
        get_dispatcher,
        get_front_door,
        get_webhook_handler,
        get_health_check,
    ):
        factory.cache_clear()
