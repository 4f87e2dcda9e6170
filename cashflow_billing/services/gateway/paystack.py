"""
Paystack Gateway Client

Thin async wrapper over the two Paystack endpoints the payment flow needs:
- POST /transaction/initialize  (opens a hosted payment page)
- GET  /transaction/verify/{reference}  (the only source of truth for an outcome)

DESIGN DECISION: Only verify is retried.
Verify is a read and can be repeated safely. Initialize creates a gateway
transaction for a reference; repeating it after an ambiguous failure could
leave two open sessions for one attempt, so the caller decides instead.

Errors are split by what the caller should do with them:
- GatewayRejectedError: Paystack answered and said no (4xx, status=false)
- GatewayUnreachableError: we don't know what happened (timeout, network, 5xx)
"""

import json
from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)


logger = structlog.get_logger(__name__)

DEFAULT_PAYSTACK_API_URL = "https://api.paystack.co"


class GatewayError(Exception):
    """Base exception for payment gateway errors."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class GatewayRejectedError(GatewayError):
    """The gateway refused the request."""
    pass


class GatewayUnreachableError(GatewayError):
    """The gateway could not be reached or failed on its side."""
    pass


def _decode_metadata(data: dict[str, Any]) -> dict[str, Any]:
    # Paystack echoes metadata back either as an object or a JSON string
    metadata = data.get("metadata")
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            metadata = {}
    data["metadata"] = metadata if isinstance(metadata, dict) else {}
    return data


class PaystackClient:
    """HTTP client wrapper for the Paystack transaction API."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = DEFAULT_PAYSTACK_API_URL,
        timeout_seconds: float = 10.0,
        verify_attempts: int = 3,
        backoff_seconds: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            secret_key: Paystack secret key (sent as bearer credential)
            base_url: API base URL
            timeout_seconds: Bound for every HTTP call
            verify_attempts: Total attempts for verify on unreachable errors
            backoff_seconds: Base of the exponential wait between attempts
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._verify_attempts = verify_attempts
        self._backoff = backoff_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "PaystackClient":
        """Build a client from PaystackSettings."""
        return cls(
            secret_key=settings.secret_key,
            base_url=settings.api_url,
            timeout_seconds=settings.timeout_seconds,
            verify_attempts=settings.verify_retries,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, headers=headers, json=json_body)
        except httpx.TimeoutException as e:
            logger.warning("paystack_timeout", path=path, error=str(e))
            raise GatewayUnreachableError(f"Paystack request timed out: {e}") from e
        except httpx.TransportError as e:
            logger.warning("paystack_transport_error", path=path, error=str(e))
            raise GatewayUnreachableError(f"Could not reach Paystack: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {"body": response.text}
        if not isinstance(payload, dict):
            payload = {"body": payload}

        message = payload.get("message") or f"Paystack returned HTTP {response.status_code}"

        if response.status_code >= 500:
            logger.warning("paystack_server_error", status_code=response.status_code, path=path)
            raise GatewayUnreachableError(message, status_code=response.status_code, payload=payload)
        if response.status_code >= 400:
            logger.warning(
                "paystack_api_error",
                status_code=response.status_code,
                path=path,
                message=message,
            )
            raise GatewayRejectedError(message, status_code=response.status_code, payload=payload)
        if payload.get("status") is not True:
            logger.warning("paystack_request_refused", path=path, message=message)
            raise GatewayRejectedError(message, status_code=response.status_code, payload=payload)

        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    async def initialize_transaction(
        self,
        email: str,
        amount: int,
        currency: str,
        reference: str,
        callback_url: str,
        metadata: dict[str, Any],
        channels: Optional[list[str]] = None,
        mobile_money: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """
        Open a hosted payment page.

        Args:
            amount: Amount in minor currency units

        Returns:
            Dict with authorization_url, access_code and reference

        Raises:
            GatewayRejectedError, GatewayUnreachableError
        """
        body: dict[str, Any] = {
            "email": email,
            "amount": amount,
            "currency": currency,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata,
        }
        if channels:
            body["channels"] = channels
        if mobile_money:
            body["mobile_money"] = mobile_money

        logger.info("paystack_initialize", reference=reference, currency=currency, amount=amount)
        data = await self._request("POST", "/transaction/initialize", json_body=body)

        if not data.get("authorization_url"):
            raise GatewayRejectedError("Paystack did not return a payment page URL", payload=data)
        return data

    async def verify_transaction(self, reference: str) -> dict[str, Any]:
        """
        Look up the outcome of a transaction.

        Retries on GatewayUnreachableError only.

        Returns:
            The transaction data dict (status, amount, currency, metadata, ...)
        """
        logger.info("paystack_verify", reference=reference)
        # References can arrive from a redirect URL; keep them to one path segment.
        path = f"/transaction/verify/{quote(reference, safe='')}"
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._verify_attempts),
            wait=wait_exponential(
                multiplier=self._backoff,
                min=self._backoff,
                max=5 * self._backoff,
            ),
            retry=retry_if_exception_type(GatewayUnreachableError),
            reraise=True,
        ):
            with attempt:
                data = await self._request("GET", path)
        return _decode_metadata(data)
