"""
Paystack webhook handler with signature verification and idempotent updates.

Implements:
- HMAC-SHA512 signature verification over the raw request body
- Event type routing to registered handlers
- Status updates through the compare-and-swap transition, so redelivered and
  concurrent events settle on a single terminal status
"""
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_payments.config import Settings, get_settings
from compliance_payments.core.status import TransactionStatus, normalize_status
from compliance_payments.core.transitions import TransitionOutcome, apply_status_transition
from compliance_payments.integrations.paystack_client import compute_signature
from compliance_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any], AsyncSession], Awaitable[Dict[str, Any]]]

# Status implied by the event type when the payload carries none
_EVENT_STATUS = {
    "charge.success": TransactionStatus.SUCCESS,
    "charge.failed": TransactionStatus.FAILED,
}


class WebhookError(Exception):
    """Raised when a webhook payload can not be processed."""

    pass


class WebhookSignatureError(WebhookError):
    """Raised when the signature header is missing or does not match."""

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


class WebhookReferenceNotFoundError(WebhookError):
    """Raised when an event names a reference we have no transaction for."""

    pass


class WebhookHandler:
    """
    Handles Paystack webhook events.

    Features:
    - Signature verification with the Paystack secret key
    - Event type routing to appropriate handlers
    - Idempotent processing: redelivery of an applied event is a no-op
    """

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize webhook handler.

        Args:
            settings: Optional settings (loaded from the environment if not provided)
        """
        self.settings = settings or get_settings()
        self.event_handlers: Dict[str, EventHandler] = {}

        self.register_handler("charge.success", self.handle_charge_event)
        self.register_handler("charge.failed", self.handle_charge_event)

        logger.info("webhook_handler_initialized")

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Paystack event type (e.g., 'charge.success')
            handler: Async callable taking the event and a database session
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """
        Verify the `x-paystack-signature` header against the raw body.

        Args:
            payload: Raw request body as bytes
            signature: Header value, or None if absent

        Raises:
            WebhookSignatureError: If the header is missing or does not match
        """
        if not signature:
            logger.error("webhook_signature_missing")
            metrics.record_webhook_signature_failure("missing")
            raise WebhookSignatureError("Missing signature", reason="missing")

        expected = compute_signature(payload, self.settings.paystack_secret_key).encode("utf-8")
        received = signature.strip().lower().encode("utf-8")
        if not hmac.compare_digest(expected, received):
            logger.error("webhook_signature_verification_failed")
            metrics.record_webhook_signature_failure("invalid")
            raise WebhookSignatureError("Invalid signature", reason="invalid")

        logger.info("webhook_signature_verified")

    @staticmethod
    def parse_event(payload: bytes) -> Dict[str, Any]:
        """
        Decode a verified webhook body.

        Raises:
            WebhookError: If the body is not a JSON object
        """
        try:
            event = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as e:
            logger.error("webhook_payload_invalid_json", error=str(e))
            raise WebhookError("Invalid JSON payload")

        if not isinstance(event, dict):
            raise WebhookError("Invalid JSON payload")
        return event

    async def process_event(self, event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        """
        Route a verified event to its handler.

        Args:
            event: Decoded webhook body
            db: Database session

        Returns:
            Dict[str, Any]: Response body

        Raises:
            WebhookError: If the payload is unusable
            WebhookReferenceNotFoundError: If the reference is unknown
        """
        start_time = time.time()
        event_type = str(event.get("event") or "unknown")

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info("webhook_event_ignored", event_type=event_type)
            metrics.record_webhook_event(event_type, "ignored", time.time() - start_time)
            return {"message": "Event ignored"}

        logger.info("processing_webhook_event", event_type=event_type)

        try:
            result = await handler(event, db)
        except WebhookReferenceNotFoundError:
            metrics.record_webhook_event(event_type, "not_found", time.time() - start_time)
            raise
        except WebhookError:
            metrics.record_webhook_event(event_type, "invalid", time.time() - start_time)
            raise

        metrics.record_webhook_event(
            event_type, result.pop("outcome", "applied"), time.time() - start_time
        )
        return result

    async def handle_charge_event(self, event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        """
        Handle charge.success and charge.failed.

        Args:
            event: Decoded webhook body
            db: Database session

        Returns:
            Dict[str, Any]: Response body, plus an `outcome` key for metrics
        """
        event_type = event.get("event")
        data = event.get("data")
        if not isinstance(data, dict):
            data = {}

        reference = data.get("reference")
        if not reference or not isinstance(reference, str):
            logger.error("webhook_missing_reference", event_type=event_type)
            raise WebhookError("Missing reference")

        raw_status = data.get("status")
        if raw_status:
            new_status = normalize_status(raw_status)
            implied = _EVENT_STATUS.get(event_type)
            if implied is not None and implied is not new_status:
                logger.warning(
                    "webhook_status_mismatch",
                    event_type=event_type,
                    reference=reference,
                    reported_status=raw_status,
                    normalized_status=new_status.value,
                )
                metrics.record_webhook_status_mismatch(event_type)
        else:
            new_status = _EVENT_STATUS.get(event_type, TransactionStatus.PENDING)

        amount = data.get("amount")
        metadata_patch = {
            "webhook_event": event_type,
            "webhook_received_at": datetime.now(timezone.utc).isoformat(),
            "paid_at": data.get("paid_at"),
            "channel": data.get("channel"),
            "customer": data.get("customer"),
            "amount_confirmed": amount / 100 if isinstance(amount, (int, float)) else None,
            "currency_confirmed": data.get("currency"),
        }

        result = await apply_status_transition(
            db,
            reference=reference,
            new_status=new_status,
            metadata_patch=metadata_patch,
            source="webhook",
        )

        if result.outcome is TransitionOutcome.NOT_FOUND:
            logger.warning("webhook_unknown_reference", reference=reference, event_type=event_type)
            raise WebhookReferenceNotFoundError("Transaction not found")

        if result.outcome is TransitionOutcome.ALREADY_TERMINAL:
            return {
                "message": "Already processed",
                "current_status": result.old_status,
                "outcome": result.outcome.value,
            }

        if result.outcome is TransitionOutcome.UNCHANGED:
            return {
                "message": "Event status unchanged",
                "current_status": result.old_status,
                "outcome": result.outcome.value,
            }

        if result.outcome is TransitionOutcome.LOST_RACE:
            return {
                "message": "Already processed by another request",
                "outcome": result.outcome.value,
            }

        logger.info(
            "webhook_event_processed_successfully",
            event_type=event_type,
            reference=reference,
            old_status=result.old_status,
            new_status=result.new_status,
        )
        return {
            "message": "Webhook processed successfully",
            "reference": reference,
            "old_status": result.old_status,
            "new_status": result.new_status,
            "outcome": result.outcome.value,
        }
