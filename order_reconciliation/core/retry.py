"""
Retry executor for transient network operations.

Wraps an async operation in tenacity with:
- Exponential backoff plus random jitter, capped at a maximum delay
- Error classification into retryable and fatal
- One structured log line per failed attempt
- Injectable sleep so tests can observe the chosen delays
"""
import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception, stop_after_attempt

from order_reconciliation.config import Settings
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ErrorClass(Enum):
    """Classification of errors for retry logic."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, last_error: BaseException, attempts: int):
        """
        Initialize exhaustion error.

        Args:
            last_error: Exception raised by the final attempt
            attempts: Number of attempts made
        """
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


_TRANSIENT_TYPES = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TransportError,
)


def classify_error(error: BaseException) -> ErrorClass:
    """
    Default classifier.

    Network failures and timeouts are retryable. Errors carrying a boolean
    ``retryable`` attribute (provider and mail errors) decide for themselves.
    Everything else is fatal.
    """
    if isinstance(error, _TRANSIENT_TYPES):
        return ErrorClass.RETRYABLE
    retryable = getattr(error, "retryable", None)
    if isinstance(retryable, bool):
        return ErrorClass.RETRYABLE if retryable else ErrorClass.FATAL
    return ErrorClass.FATAL


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters. Delays are in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    max_jitter: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            max_jitter=settings.retry_max_jitter,
        )

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (0-indexed)."""
        jitter = random.uniform(0, self.max_jitter) if self.max_jitter > 0 else 0.0
        return min(self.base_delay * (2 ** retry_number) + jitter, self.max_delay)


class RetryExecutor:
    """
    Executes async operations under a retry policy.

    Args:
        policy: Backoff parameters
        sleep: Awaitable sleep function (defaults to asyncio.sleep)
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.policy.delay_for(retry_state.attempt_number - 1)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        classify: Callable[[BaseException], ErrorClass] = classify_error,
        operation_name: str = "operation",
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails fatally or attempts run out.

        Args:
            operation: Zero-argument coroutine function
            classify: Error classifier
            operation_name: Label used in logs and metrics

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error
            Exception: The original error when it is classified as fatal
        """
        policy = self.policy

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else None
            logger.warning(
                "operation_attempt_failed",
                operation=operation_name,
                attempt=retry_state.attempt_number,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3) if delay is not None else None,
                classification=ErrorClass.RETRYABLE.value,
                error=str(error),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(lambda e: classify(e) is ErrorClass.RETRYABLE),
            before_sleep=before_sleep,
            sleep=self._sleep,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    try:
                        result = await operation()
                    except Exception as e:
                        classification = classify(e)
                        metrics.record_retry_attempt(operation_name, classification.value)
                        # Retried attempts are logged by before_sleep with their delay
                        if (
                            classification is ErrorClass.FATAL
                            or attempt_number >= policy.max_attempts
                        ):
                            logger.warning(
                                "operation_attempt_failed",
                                operation=operation_name,
                                attempt=attempt_number,
                                max_attempts=policy.max_attempts,
                                delay=None,
                                classification=classification.value,
                                error=str(e),
                            )
                        raise
                    log = logger.info if attempt_number > 1 else logger.debug
                    log(
                        "operation_attempt_succeeded",
                        operation=operation_name,
                        attempt=attempt_number,
                    )
                    return result
        except RetryError as e:
            last_attempt = e.last_attempt
            last_error = last_attempt.exception()
            logger.error(
                "operation_retries_exhausted",
                operation=operation_name,
                attempts=last_attempt.attempt_number,
                error=str(last_error),
            )
            raise RetryExhaustedError(last_error, last_attempt.attempt_number) from last_error

        # Unreachable: tenacity either returns through the loop or raises
        raise RuntimeError("retry loop ended without an outcome")
