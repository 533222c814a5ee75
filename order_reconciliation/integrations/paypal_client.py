"""
PayPal REST client for wallet order capture.

Implements:
- Client-credentials OAuth with a cached access token
- Idempotent capture through the PayPal-Request-Id header
- Already-captured orders resolved by reading the order back
- Transport and HTTP failures mapped onto provider errors
"""
import time
from typing import Any, Dict, Optional

import httpx
import structlog

from order_reconciliation.config import Settings
from order_reconciliation.integrations.errors import (
    ProviderError,
    ProviderNotFoundError,
    ProviderRequestError,
    ProviderUnavailableError,
)

logger = structlog.get_logger(__name__)

ALREADY_CAPTURED_ISSUE = "ORDER_ALREADY_CAPTURED"

# Refresh the token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN = 60


class PayPalClient:
    """
    Async PayPal Orders v2 client.

    Args:
        client_id: REST app client id
        secret: REST app secret
        base_url: API base (sandbox or live)
        timeout: Timeout for token and lookup calls (seconds)
        capture_timeout: Timeout for the capture call (seconds)
        http_client: Optional preconfigured httpx client (tests inject a mock transport)
    """

    def __init__(
        self,
        client_id: str,
        secret: str,
        base_url: str,
        timeout: float = 10.0,
        capture_timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.capture_timeout = capture_timeout
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None
    ) -> "PayPalClient":
        return cls(
            client_id=settings.paypal_client_id,
            secret=settings.paypal_secret,
            base_url=settings.paypal_base_url,
            timeout=settings.provider_timeout,
            capture_timeout=settings.wallet_capture_timeout,
            http_client=http_client,
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.secret)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _send(
        self, operation: str, method: str, path: str, timeout: float, **kwargs: Any
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self._http.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("paypal_request_timeout", operation=operation, timeout=timeout)
            raise ProviderUnavailableError(
                f"PayPal {operation} timed out after {timeout}s", original_error=e
            ) from e
        except httpx.TransportError as e:
            logger.warning("paypal_connection_error", operation=operation, error=str(e))
            raise ProviderUnavailableError(
                f"Cannot reach PayPal for {operation}: {e}", original_error=e
            ) from e
        return response

    def _error_for(self, operation: str, response: httpx.Response) -> ProviderError:
        status = response.status_code
        message = f"PayPal {operation} failed with HTTP {status}: {response.text[:200]}"
        if status >= 500:
            return ProviderUnavailableError(message, status)
        if status == 404:
            return ProviderNotFoundError(message, status)
        return ProviderRequestError(message, status)

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        if not self.configured:
            raise ProviderRequestError("PayPal credentials are not configured")

        response = await self._send(
            "oauth",
            "POST",
            "/v1/oauth2/token",
            self.timeout,
            auth=(self.client_id, self.secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if response.status_code != 200:
            raise self._error_for("oauth", response)

        payload = response.json()
        self._access_token = payload["access_token"]
        expires_in = float(payload.get("expires_in", 0))
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        return self._access_token

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._get_access_token()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        """Read an order, including any captures."""
        response = await self._send(
            "get_order",
            "GET",
            f"/v2/checkout/orders/{order_id}",
            self.timeout,
            headers=await self._auth_headers(),
        )
        if response.status_code != 200:
            raise self._error_for("get_order", response)
        return response.json()

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        """
        Capture an approved order.

        Repeated calls for the same order return the existing capture: the
        request id makes PayPal replay the original response, and an
        already-captured reply is resolved by reading the order.

        Raises:
            ProviderUnavailableError: Transport failure, timeout or 5xx
            ProviderNotFoundError: Unknown order id
            ProviderRequestError: Any other rejection
        """
        headers = await self._auth_headers()
        headers["PayPal-Request-Id"] = f"capture-{order_id}"
        response = await self._send(
            "capture_order",
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            self.capture_timeout,
            headers=headers,
        )

        if response.status_code in (200, 201):
            return response.json()

        if response.status_code == 422 and self._is_already_captured(response):
            logger.info("paypal_order_already_captured", order_id=order_id)
            return await self.get_order(order_id)

        raise self._error_for("capture_order", response)

    @staticmethod
    def _is_already_captured(response: httpx.Response) -> bool:
        try:
            body = response.json()
        except ValueError:
            return False
        details = body.get("details") or []
        return any(detail.get("issue") == ALREADY_CAPTURED_ISSUE for detail in details)
