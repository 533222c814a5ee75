"""External integrations: payment providers and mail delivery."""
from .errors import (
    ProviderError,
    ProviderNotFoundError,
    ProviderRequestError,
    ProviderUnavailableError,
)
from .mail import MailDeliveryError, MailTransport, SmtpMailTransport
from .paypal_client import PayPalClient
from .stripe_client import StripeClient

__all__ = [
    "MailDeliveryError",
    "MailTransport",
    "PayPalClient",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderRequestError",
    "ProviderUnavailableError",
    "SmtpMailTransport",
    "StripeClient",
]
