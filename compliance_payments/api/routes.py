"""
API routes for payment processing.
"""
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_payments.core.audit import AuditEventType, AuditSeverity, audit_logger
from compliance_payments.core.errors import (
    PaymentError,
    PaymentGatewayError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from compliance_payments.core.payment_processor import PaymentProcessor
from compliance_payments.core.reconciliation import ReconciliationEngine, ReconciliationError
from compliance_payments.database.connection import get_db
from compliance_payments.integrations.webhook_handler import (
    WebhookError,
    WebhookHandler,
    WebhookReferenceNotFoundError,
    WebhookSignatureError,
)
from compliance_payments.monitoring.health import HealthCheck

from .dependencies import (
    client_ip,
    enforce_payment_rate_limit,
    get_current_user,
    get_health_check,
    get_payment_processor,
    get_reconciliation_engine,
    get_webhook_handler,
    require_admin_token,
)
from .schemas import (
    HealthCheckResponse,
    InitializePaymentRequest,
    InitializePaymentResponse,
    PaymentOperationRequest,
    ReconciliationResponse,
    TransactionListResponse,
    TransactionResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
operations_router = APIRouter(tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def _payment_http_error(operation: str, error: PaymentError) -> HTTPException:
    """Translate a payment exception into the HTTP error returned to the client."""
    if isinstance(error, PaymentValidationError):
        logger.warning(f"api_{operation}_validation_error", error=str(error))
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))

    if isinstance(error, PaymentNotFoundError):
        logger.warning(f"api_{operation}_not_found", error=str(error))
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))

    if isinstance(error, PaymentGatewayError):
        logger.error(f"api_{operation}_gateway_error", error=str(error))
        detail = (
            "Failed to initialize payment" if operation == "initialize" else "Failed to verify payment"
        )
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)

    logger.error(f"api_{operation}_error", error=str(error))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Could not record transaction",
    )


async def _initialize(
    processor: PaymentProcessor,
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: Any,
    currency: Any,
    email: Any,
    metadata: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    logger.info("api_initialize_payment_request", currency=currency, amount=amount)
    try:
        result = await processor.initiate_payment(
            db,
            user_id=user_id,
            amount=amount,
            currency=currency,
            email=email,
            metadata=metadata,
        )
    except PaymentError as e:
        raise _payment_http_error("initialize", e)

    return {
        "transaction": result["transaction"].to_dict(),
        "authorization_url": result["authorization_url"],
    }


async def _verify(
    processor: PaymentProcessor,
    db: AsyncSession,
    user_id: uuid.UUID,
    reference: Any,
) -> Dict[str, Any]:
    logger.info("api_verify_payment_request", reference=reference)
    try:
        transaction = await processor.verify_payment(db, user_id=user_id, reference=reference)
    except PaymentError as e:
        raise _payment_http_error("verify", e)

    return {"transaction": transaction.to_dict()}


@payment_router.post(
    "/initialize",
    response_model=InitializePaymentResponse,
    summary="Initialize a payment",
    description="Create a transaction and return the Paystack checkout URL",
)
async def initialize_payment(
    request: InitializePaymentRequest,
    user_id: uuid.UUID = Depends(enforce_payment_rate_limit),
    processor: PaymentProcessor = Depends(get_payment_processor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Initialize a payment for the authenticated user."""
    return await _initialize(
        processor, db, user_id, request.amount, request.currency, request.email, request.metadata
    )


@payment_router.post(
    "/verify",
    response_model=VerifyPaymentResponse,
    summary="Verify a payment",
    description="Re-check a transaction with Paystack and return its current status",
)
async def verify_payment(
    request: VerifyPaymentRequest,
    user_id: uuid.UUID = Depends(enforce_payment_rate_limit),
    processor: PaymentProcessor = Depends(get_payment_processor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Verify one of the authenticated user's payments."""
    return await _verify(processor, db, user_id, request.reference)


@payment_router.get(
    "",
    response_model=TransactionListResponse,
    summary="List payments",
    description="The authenticated user's most recent transactions, newest first",
)
async def list_payments(
    limit: int = Query(default=10, ge=1, le=100),
    user_id: uuid.UUID = Depends(get_current_user),
    processor: PaymentProcessor = Depends(get_payment_processor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """List the caller's transactions."""
    transactions = await processor.list_transactions(db, user_id=user_id, limit=limit)
    return {"transactions": [tx.to_dict() for tx in transactions]}


@payment_router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a payment",
    description="Retrieve one of the authenticated user's transactions",
)
async def get_payment(
    transaction_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user),
    processor: PaymentProcessor = Depends(get_payment_processor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Get a transaction by ID."""
    try:
        transaction = await processor.get_transaction(
            db, user_id=user_id, transaction_id=transaction_id
        )
    except PaymentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return transaction.to_dict()


@operations_router.post(
    "/payment-operations",
    summary="Payment operations",
    description="Single-endpoint form of initialize and verify, selected by `action`",
)
async def payment_operations(
    request: PaymentOperationRequest,
    user_id: uuid.UUID = Depends(enforce_payment_rate_limit),
    processor: PaymentProcessor = Depends(get_payment_processor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Dispatch on `action`: initialize or verify."""
    if request.action == "initialize":
        result = await _initialize(
            processor,
            db,
            user_id,
            request.amount,
            request.currency,
            request.email,
            request.metadata,
        )
        return InitializePaymentResponse.model_validate(result).model_dump(by_alias=True)

    if request.action == "verify":
        result = await _verify(processor, db, user_id, request.reference)
        return VerifyPaymentResponse.model_validate(result).model_dump()

    logger.warning("api_payment_operations_invalid_action", action=request.action)
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid action")


@webhook_router.post(
    "/paystack",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Paystack webhook endpoint",
    description="Handle Paystack charge events",
)
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(default=None),
    handler: WebhookHandler = Depends(get_webhook_handler),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Handle Paystack webhook events.

    Verifies the signature over the raw body, then applies the event through
    the compare-and-swap status transition.
    """
    body = await request.body()

    try:
        handler.verify_signature(body, x_paystack_signature)
    except WebhookSignatureError as e:
        if e.reason == "invalid":
            await audit_logger.log(
                db,
                AuditEventType.SUSPICIOUS_ACTIVITY,
                AuditSeverity.HIGH,
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent"),
                resource=request.url.path,
                action="webhook_signature_invalid",
                details={"body_length": len(body)},
            )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    try:
        event = handler.parse_event(body)
        logger.info("api_webhook_received", event_type=event.get("event"))
        return await handler.process_event(event, db)

    except WebhookReferenceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    except WebhookError as e:
        logger.warning("api_webhook_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except Exception as e:
        logger.error("api_webhook_unexpected_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Re-verify stale provisional and pending transactions with Paystack",
    dependencies=[Depends(require_admin_token)],
)
async def run_reconciliation(
    older_than_seconds: Optional[int] = Query(default=None, ge=0),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    """
    Run one reconciliation sweep.

    If no threshold is given, RECONCILIATION_STALE_AFTER_SECONDS applies.
    """
    older_than = timedelta(seconds=older_than_seconds) if older_than_seconds is not None else None

    try:
        logger.info("api_reconciliation_started", older_than_seconds=older_than_seconds)
        result = await engine.sweep(older_than=older_than)
        logger.info("api_reconciliation_completed", **result)
        return result

    except ReconciliationError as e:
        logger.error("api_reconciliation_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Reconciliation failed: {str(e)}",
        )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
    description="Kubernetes liveness check endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness check endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
    description="Kubernetes readiness check endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness check endpoint."""
    result = await health_check.readiness()
    if result["status"] != "ready":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
