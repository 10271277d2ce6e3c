"""
Paystack API client with retry logic and comprehensive error handling.

Implements:
- Transaction initialisation and verification over HTTPS
- Exponential backoff for transient errors on idempotent calls
- Circuit breaker pattern
- Webhook signature computation (HMAC-SHA512 of the raw body)
"""
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from compliance_payments.config import Settings, get_settings
from compliance_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaystackErrorType(Enum):
    """Classification of Paystack errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff
    NOT_FOUND = "not_found"  # Unknown reference


class PaystackError(Exception):
    """Base exception for Paystack-related errors."""

    def __init__(
        self,
        message: str,
        error_type: PaystackErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
        ambiguous: bool = False,
    ):
        """
        Initialize Paystack error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status returned by Paystack, if any
            original_error: Underlying exception
            ambiguous: True when the request may have reached Paystack
                before failing, so its effect is unknown
        """
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error
        self.ambiguous = ambiguous


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, PaystackError) and error.error_type in (
        PaystackErrorType.TRANSIENT,
        PaystackErrorType.RATE_LIMIT,
    )


@dataclass
class InitializedTransaction:
    """Result of a successful transaction initialisation."""

    reference: str
    authorization_url: str
    access_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class CircuitBreaker:
    """
    Circuit breaker for Paystack API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await `func` with circuit breaker protection.

        Only transient failures count against the circuit; a declined or
        unknown transaction says nothing about Paystack's health.

        Raises:
            PaystackError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_half_open")
            else:
                raise PaystackError(
                    "Circuit breaker is open",
                    PaystackErrorType.TRANSIENT,
                )

        try:
            result = await func(*args, **kwargs)
        except PaystackError as e:
            if _is_retryable(e):
                self.on_failure()
            else:
                self.on_success()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


def compute_signature(payload: bytes, secret: str) -> str:
    """
    Compute the signature Paystack sends in `x-paystack-signature`.

    Args:
        payload: Raw request body
        secret: Paystack secret key

    Returns:
        str: Hex-encoded HMAC-SHA512 digest
    """
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


class PaystackClient:
    """
    Async wrapper for the Paystack REST API.

    Features:
    - Automatic retry with exponential backoff (verify only)
    - Circuit breaker pattern
    - Comprehensive error classification
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize Paystack client.

        Args:
            settings: Optional settings (loaded from the environment if not provided)
            transport: Optional httpx transport, used to stub Paystack in tests
        """
        self.settings = settings or get_settings()
        self.circuit_breaker = CircuitBreaker()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(
            "paystack_client_initialized",
            base_url=self.settings.paystack_base_url,
            test_mode=self.settings.is_test_mode,
        )

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the underlying HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.paystack_base_url,
                headers={
                    "Authorization": f"Bearer {self.settings.paystack_secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.settings.paystack_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    @staticmethod
    def _classify_status(status_code: int, message: str = "") -> PaystackErrorType:
        """
        Classify an HTTP error status for retry logic.

        Args:
            status_code: HTTP status code
            message: Paystack error message

        Returns:
            PaystackErrorType: Error classification
        """
        if status_code == 429:
            return PaystackErrorType.RATE_LIMIT
        if status_code == 404 or "not found" in message.lower():
            return PaystackErrorType.NOT_FOUND
        if status_code >= 500:
            return PaystackErrorType.TRANSIENT
        return PaystackErrorType.PERMANENT

    async def _send(self, operation: str, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Send one request and return the decoded JSON body.

        Raises:
            PaystackError: On transport failure, non-2xx status or a non-JSON body
        """
        client = self._get_client()
        start_time = time.time()

        try:
            response = await client.request(method, path, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            metrics.record_paystack_api_error(PaystackErrorType.TRANSIENT.value)
            logger.error("paystack_unreachable", operation=operation, error=str(e))
            raise PaystackError(
                f"Paystack unreachable: {str(e)}", PaystackErrorType.TRANSIENT, original_error=e
            )
        except httpx.HTTPError as e:
            metrics.record_paystack_api_error(PaystackErrorType.TRANSIENT.value)
            logger.error("paystack_request_failed", operation=operation, error=str(e))
            raise PaystackError(
                f"Paystack request failed: {str(e)}",
                PaystackErrorType.TRANSIENT,
                original_error=e,
                ambiguous=True,
            )

        duration = time.time() - start_time
        metrics.record_paystack_api_call(operation, str(response.status_code), duration)

        try:
            body = response.json()
        except ValueError as e:
            body = None
            decode_error: Optional[Exception] = e
        else:
            decode_error = None

        if response.is_error:
            message = body.get("message", "") if isinstance(body, dict) else response.text
            error_type = self._classify_status(response.status_code, message)
            metrics.record_paystack_api_error(error_type.value)
            logger.error(
                "paystack_api_error",
                operation=operation,
                status_code=response.status_code,
                error_type=error_type.value,
                error_message=message,
            )
            raise PaystackError(
                message or f"Paystack returned HTTP {response.status_code}",
                error_type,
                status_code=response.status_code,
            )

        if not isinstance(body, dict):
            logger.error("paystack_invalid_body", operation=operation)
            raise PaystackError(
                "Invalid response from payment provider",
                PaystackErrorType.PERMANENT,
                status_code=response.status_code,
                original_error=decode_error,
            )

        return body

    async def initialize_transaction(
        self,
        amount_minor: int,
        email: str,
        currency: str,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
        callback_url: Optional[str] = None,
    ) -> InitializedTransaction:
        """
        Initialize a transaction and obtain a hosted checkout URL.

        Not retried: a retry after an ambiguous failure could initialise the
        same reference twice.

        Args:
            amount_minor: Amount in the currency's minor unit (kobo, cents)
            email: Customer email
            currency: Upper-cased currency code
            reference: Reference to register with Paystack
            metadata: Optional metadata echoed back in webhooks
            callback_url: Optional post-checkout redirect

        Returns:
            InitializedTransaction: Reference and authorization URL

        Raises:
            PaystackError: If initialisation fails or the response is incomplete
        """
        logger.info(
            "initializing_paystack_transaction",
            amount_minor=amount_minor,
            currency=currency,
            reference=reference,
        )

        payload: Dict[str, Any] = {
            "amount": amount_minor,
            "email": email,
            "currency": currency,
            "reference": reference,
        }
        if metadata:
            payload["metadata"] = metadata
        callback = callback_url or self.settings.paystack_callback_url
        if callback:
            payload["callback_url"] = callback

        body = await self.circuit_breaker.call(
            self._send, "initialize", "POST", "/transaction/initialize", json=payload
        )

        data = body.get("data") or {}
        if not body.get("status") or not data.get("reference") or not data.get("authorization_url"):
            logger.error("paystack_initialize_incomplete_response", reference=reference)
            raise PaystackError(
                "Invalid response from payment provider",
                PaystackErrorType.PERMANENT,
            )

        logger.info(
            "paystack_transaction_initialized",
            reference=data["reference"],
        )

        return InitializedTransaction(
            reference=data["reference"],
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
            raw=data,
        )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def verify_transaction(self, reference: str) -> Dict[str, Any]:
        """
        Verify a transaction by reference.

        Args:
            reference: Transaction reference

        Returns:
            Dict[str, Any]: The `data` object of Paystack's response

        Raises:
            PaystackError: If verification fails
        """
        logger.info("verifying_paystack_transaction", reference=reference)

        body = await self.circuit_breaker.call(
            self._send, "verify", "GET", f"/transaction/verify/{quote(reference, safe='')}"
        )

        data = body.get("data")
        if not isinstance(data, dict):
            data = {}

        logger.info(
            "paystack_transaction_verified",
            reference=reference,
            status=data.get("status"),
        )
        return data

    async def ping(self) -> None:
        """
        Check that Paystack accepts our key.

        Raises:
            PaystackError: If Paystack is unreachable or rejects the key
        """
        await self._send("ping", "GET", "/transaction", params={"perPage": 1})

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
