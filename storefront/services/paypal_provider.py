"""
PayPal Payment Provider Implementation.

Client-credentials authentication with a cached bearer token, and
server-side order capture against the PayPal Orders v2 API.
"""

import time
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import httpx
from structlog import get_logger

from storefront.exceptions import CaptureError, GatewayAuthError
from storefront.models.domain import AccessToken, CaptureResult, Payer
from storefront.observability.metrics import metrics

logger = get_logger(__name__)

COMPLETED_STATUS = "COMPLETED"


class TokenCache:
    """
    Holder for one bearer credential.

    Two concurrent callers may both see an expired entry and both refresh;
    the later store wins. No lock is taken.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._token: AccessToken | None = None

    @property
    def token(self) -> AccessToken | None:
        return self._token

    def get(self) -> str | None:
        """Return the cached token while it is unexpired."""
        token = self._token
        if token is not None and self._clock() < token.expires_at:
            return token.value
        return None

    def store(self, value: str, expires_in: float, safety_margin: float) -> AccessToken:
        """Cache a fresh token, expiring safety_margin seconds before the processor's expiry."""
        token = AccessToken(value=value, expires_at=self._clock() + expires_in - safety_margin)
        self._token = token
        return token

    def clear(self) -> None:
        self._token = None


class PayPalProvider:
    """
    PayPal REST API provider.

    Implements the PaymentProvider protocol.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        api_base: str,
        token_cache: TokenCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        token_safety_margin_seconds: float = 60.0,
    ) -> None:
        """
        Initialize PayPal provider.

        Args:
            client_id: PayPal REST app client ID
            client_secret: PayPal REST app secret
            api_base: API root, sandbox or live
            token_cache: Credential cache; a private one is created when omitted
            http_client: Shared HTTP client; created lazily when omitted
            timeout_seconds: Upper bound for every PayPal request
            token_safety_margin_seconds: Refresh this long before the token expires
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base = api_base.rstrip("/")
        self.token_cache = token_cache or TokenCache()
        self.timeout_seconds = timeout_seconds
        self.token_safety_margin_seconds = token_safety_margin_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def get_access_token(self) -> str:
        """
        Return a cached access token, exchanging client credentials when needed.

        Raises:
            GatewayAuthError: If the exchange does not succeed
        """
        cached = self.token_cache.get()
        if cached is not None:
            return cached

        logger.info("requesting_paypal_access_token", api_base=self.api_base)

        try:
            response = await self.http_client.post(
                f"{self.api_base}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            metrics.record_token_exchange("error")
            logger.error(
                "paypal_token_request_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise GatewayAuthError(f"PayPal authentication request failed: {exc}") from exc

        if not response.is_success:
            metrics.record_token_exchange("rejected")
            logger.error(
                "paypal_token_exchange_failed",
                status=response.status_code,
                error=response.text[:500],
            )
            raise GatewayAuthError("Failed to get PayPal access token")

        try:
            data = response.json()
            access_token = str(data["access_token"])
            expires_in = float(data.get("expires_in", 0))
        except (ValueError, KeyError, TypeError) as exc:
            metrics.record_token_exchange("malformed")
            logger.error("paypal_token_response_malformed", error=str(exc))
            raise GatewayAuthError("PayPal token response was malformed") from exc

        if not access_token:
            metrics.record_token_exchange("malformed")
            raise GatewayAuthError("PayPal returned an empty access token")

        token = self.token_cache.store(
            access_token, expires_in, self.token_safety_margin_seconds
        )
        metrics.record_token_exchange("success")
        logger.info("paypal_access_token_refreshed", expires_in=expires_in)

        return token.value

    async def capture_order(self, order_id: str) -> CaptureResult:
        """
        Capture a buyer-approved PayPal order.

        Args:
            order_id: PayPal order ID

        Returns:
            Completed capture details

        Raises:
            GatewayAuthError: If authentication fails
            CaptureError: If PayPal rejects the capture, times out, or the
                order is not COMPLETED
        """
        access_token = await self.get_access_token()
        url = f"{self.api_base}/v2/checkout/orders/{quote(order_id, safe='')}/capture"

        logger.info("capturing_paypal_order", order_id=order_id)

        try:
            response = await self.http_client.post(
                url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            logger.error("paypal_capture_timeout", order_id=order_id)
            raise CaptureError("PayPal capture timed out", order_id) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "paypal_capture_request_failed",
                order_id=order_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise CaptureError(f"PayPal capture request failed: {exc}", order_id) from exc

        data = _json_body(response)

        if not response.is_success:
            message = _error_message(data) or "Failed to capture PayPal order."
            logger.error(
                "paypal_capture_failed",
                order_id=order_id,
                status=response.status_code,
                error=message,
            )
            raise CaptureError(message, order_id, response.status_code)

        status = data.get("status")
        if status != COMPLETED_STATUS:
            logger.error("paypal_capture_not_completed", order_id=order_id, status=status)
            raise CaptureError("Transaction not completed.", order_id, response.status_code)

        result = _parse_capture(order_id, data)

        logger.info(
            "paypal_order_captured",
            order_id=order_id,
            capture_id=result.capture_id,
            amount=result.amount_value,
            currency=result.currency_code,
        )

        return result

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


def _json_body(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON object body; anything else is treated as empty."""
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_message(data: dict[str, Any]) -> str | None:
    """Pick the most useful message out of a PayPal error body."""
    message = data.get("message")
    if isinstance(message, str) and message:
        return message
    details = data.get("details")
    if isinstance(details, list) and details and isinstance(details[0], dict):
        description = details[0].get("description")
        if isinstance(description, str) and description:
            return description
    return None


def _parse_capture(order_id: str, data: dict[str, Any]) -> CaptureResult:
    """Extract the first capture and payer from a COMPLETED order."""
    try:
        capture = data["purchase_units"][0]["payments"]["captures"][0]
        amount = capture["amount"]
        payer = data["payer"]
        name = payer.get("name") or {}
        return CaptureResult(
            order_id=order_id,
            status=str(data["status"]),
            capture_id=str(capture["id"]),
            amount_value=str(amount["value"]),
            currency_code=str(amount.get("currency_code", "")),
            payer=Payer(
                email=str(payer["email_address"]),
                first_name=str(name.get("given_name", "")),
                last_name=str(name.get("surname", "")),
            ),
        )
    except (KeyError, IndexError, TypeError, AttributeError) as exc:
        logger.error("paypal_capture_response_malformed", order_id=order_id, error=str(exc))
        raise CaptureError("PayPal capture response was malformed", order_id) from exc
