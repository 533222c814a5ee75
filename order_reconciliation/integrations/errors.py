"""Errors raised by payment provider clients."""
from typing import Optional


class ProviderError(Exception):
    """
    Base exception for payment provider failures.

    Subclasses set ``retryable`` to tell the retry executor whether repeating
    the call may succeed.

    Args:
        message: Error message
        status_code: Provider HTTP status, when there was a response
        original_error: Underlying SDK or transport exception
    """

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.original_error = original_error


class ProviderUnavailableError(ProviderError):
    """Connection failure, timeout or 5xx reply."""

    retryable = True


class ProviderNotFoundError(ProviderError):
    """The provider does not know the reference."""


class ProviderRequestError(ProviderError):
    """Any other rejected request (authentication, validation, configuration)."""
