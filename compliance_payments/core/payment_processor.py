"""
Payment initiation and verification.

Initiation flow:
1. Validate input (no side effects on failure)
2. Persist a provisional transaction under a locally generated reference
3. Call Paystack to initialise the transaction
4. Move the row provisional -> pending with Paystack's reference
5. Return the row and the hosted checkout URL

A row that is left provisional (ambiguous Paystack failure, or a failed write
after step 3) is picked up by the reconciliation sweep.
"""
import math
import re
import time
import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_payments.config import Settings, get_settings
from compliance_payments.core.errors import (
    PaymentGatewayError,
    PaymentNotFoundError,
    PaymentPersistenceError,
    PaymentValidationError,
)
from compliance_payments.core.status import TransactionStatus, is_terminal, normalize_status
from compliance_payments.core.transitions import (
    TransitionOutcome,
    apply_status_transition,
    get_transaction_by_reference,
)
from compliance_payments.database.models import PaymentTransaction
from compliance_payments.integrations.paystack_client import PaystackClient, PaystackError
from compliance_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MIN_AMOUNT = Decimal("0.01")
MAX_AMOUNT = Decimal("10000000")
MAX_REFERENCE_LENGTH = 100
MAX_LIST_LIMIT = 100
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to minor units (kobo, cents), rounding half up."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def generate_reference() -> str:
    """Generate a local transaction reference."""
    return f"cp_{uuid.uuid4().hex}"


class PaymentProcessor:
    """
    Payment lifecycle orchestrator.

    Every status write after creation goes through apply_status_transition,
    so the verifier can never overwrite a status set by a webhook.
    """

    def __init__(
        self,
        paystack_client: Optional[PaystackClient] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment processor.

        Args:
            paystack_client: Optional Paystack client
            settings: Optional settings (loaded from the environment if not provided)
        """
        self.settings = settings or get_settings()
        self.paystack_client = paystack_client or PaystackClient(self.settings)

        logger.info("payment_processor_initialized")

    @staticmethod
    def _validate_payment_request(amount: Any, currency: Any, email: Any) -> Decimal:
        """
        Validate payment request parameters.

        Args:
            amount: Payment amount in major units
            currency: Currency code
            email: Customer email

        Returns:
            Decimal: The amount, rounded to two decimal places

        Raises:
            PaymentValidationError: If validation fails
        """
        if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
            raise PaymentValidationError("Amount must be a number")
        if isinstance(amount, float) and not math.isfinite(amount):
            raise PaymentValidationError("Amount must be a finite number")

        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise PaymentValidationError("Amount must be a number")
        if not value.is_finite():
            raise PaymentValidationError("Amount must be a finite number")

        if value < MIN_AMOUNT or value > MAX_AMOUNT:
            raise PaymentValidationError(
                f"Amount must be between {MIN_AMOUNT} and {MAX_AMOUNT:,}"
            )

        if not isinstance(currency, str) or len(currency) != 3:
            raise PaymentValidationError("Currency must be 3-letter code")

        if not isinstance(email, str) or not EMAIL_PATTERN.match(email):
            raise PaymentValidationError("Email must be a valid email address")

        return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @staticmethod
    def _validate_reference(reference: Any) -> str:
        if not isinstance(reference, str) or not reference.strip():
            raise PaymentValidationError("Reference is required")
        if len(reference) > MAX_REFERENCE_LENGTH:
            raise PaymentValidationError(
                f"Reference must be at most {MAX_REFERENCE_LENGTH} characters"
            )
        return reference

    async def _discard_provisional(self, db: AsyncSession, transaction: PaymentTransaction) -> None:
        """Delete a provisional row whose initialisation Paystack definitively rejected."""
        try:
            await db.delete(transaction)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            # The sweep marks it abandoned once Paystack reports it unknown
            logger.error(
                "provisional_transaction_cleanup_failed",
                reference=transaction.payment_reference,
                error=str(e),
            )
        else:
            logger.info(
                "provisional_transaction_discarded",
                reference=transaction.payment_reference,
            )

    async def initiate_payment(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        amount: Any,
        currency: Any,
        email: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a transaction and obtain a Paystack checkout URL.

        Args:
            db: Database session
            user_id: Authenticated user
            amount: Amount in major units
            currency: 3-letter currency code (any case)
            email: Customer email
            metadata: Optional metadata stored on the row and sent to Paystack

        Returns:
            Dict[str, Any]: `transaction` (PaymentTransaction) and `authorization_url`

        Raises:
            PaymentValidationError: Invalid input
            PaymentGatewayError: Paystack rejected the request or could not be reached
            PaymentPersistenceError: The transaction could not be written
        """
        start_time = time.time()
        currency_code = (
            currency.upper() if isinstance(currency, str) and len(currency) == 3 else "unknown"
        )

        try:
            amount_value = self._validate_payment_request(amount, currency, email)
        except PaymentValidationError as e:
            logger.warning("payment_validation_failed", user_id=str(user_id), error=str(e))
            metrics.record_payment_initialization("invalid", currency_code)
            raise

        reference = generate_reference()
        log = logger.bind(user_id=str(user_id), reference=reference)

        transaction = PaymentTransaction(
            user_id=user_id,
            amount=amount_value,
            currency=currency_code,
            payment_reference=reference,
            provider="paystack",
            status=TransactionStatus.PROVISIONAL.value,
            metadata_=dict(metadata or {}),
        )
        db.add(transaction)
        try:
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            log.error("provisional_transaction_write_failed", error=str(e))
            metrics.record_payment_initialization("persistence_error", currency_code)
            raise PaymentPersistenceError("Failed to create transaction") from e

        log.info("provisional_transaction_created", amount=str(amount_value), currency=currency_code)

        try:
            initialized = await self.paystack_client.initialize_transaction(
                amount_minor=to_minor_units(amount_value),
                email=email,
                currency=currency_code,
                reference=reference,
                metadata=metadata,
            )
        except PaystackError as e:
            log.error(
                "paystack_initialization_failed",
                error=str(e),
                error_type=e.error_type.value,
                ambiguous=e.ambiguous,
            )
            if not e.ambiguous:
                await self._discard_provisional(db, transaction)
            metrics.record_payment_initialization("gateway_error", currency_code)
            raise PaymentGatewayError(str(e), original_error=e) from e

        try:
            result = await apply_status_transition(
                db,
                reference=reference,
                new_status=TransactionStatus.PENDING,
                metadata_patch={"access_code": initialized.access_code}
                if initialized.access_code
                else None,
                source="initialize",
                new_reference=initialized.reference,
            )
        except SQLAlchemyError as e:
            await db.rollback()
            log.error(
                "pending_transition_write_failed",
                paystack_reference=initialized.reference,
                error=str(e),
            )
            metrics.record_payment_initialization("persistence_error", currency_code)
            raise PaymentPersistenceError("Failed to update transaction") from e

        if result.transaction is None:
            log.error("initialized_transaction_missing", outcome=result.outcome.value)
            metrics.record_payment_initialization("persistence_error", currency_code)
            raise PaymentPersistenceError("Transaction disappeared during initialisation")

        if result.outcome is not TransitionOutcome.APPLIED:
            # A webhook or the sweep already moved it on; report the current row
            log.info("initialized_transaction_already_advanced", status=result.transaction.status)

        duration = time.time() - start_time
        metrics.record_payment_initialization("created", currency_code, float(amount_value))
        metrics.record_payment_duration("initialize", duration)

        log.info(
            "payment_initialized",
            paystack_reference=result.transaction.payment_reference,
            duration_seconds=duration,
        )

        return {
            "transaction": result.transaction,
            "authorization_url": initialized.authorization_url,
        }

    async def verify_payment(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        reference: Any,
    ) -> PaymentTransaction:
        """
        Re-check a transaction with Paystack and record the reported status.

        Args:
            db: Database session
            user_id: Authenticated user; only their own transactions are visible
            reference: Transaction reference

        Returns:
            PaymentTransaction: The current row

        Raises:
            PaymentValidationError: Missing or oversized reference
            PaymentNotFoundError: Unknown reference, or owned by another user
            PaymentGatewayError: Paystack could not verify the transaction
        """
        start_time = time.time()
        reference = self._validate_reference(reference)

        transaction = await get_transaction_by_reference(db, reference)
        if transaction is None or transaction.user_id != user_id:
            logger.warning("verify_unknown_reference", reference=reference, user_id=str(user_id))
            raise PaymentNotFoundError("Transaction not found")

        if is_terminal(transaction.status):
            metrics.record_payment_verification(transaction.status)
            return transaction

        try:
            data = await self.paystack_client.verify_transaction(reference)
        except PaystackError as e:
            logger.error(
                "paystack_verification_failed",
                reference=reference,
                error=str(e),
                error_type=e.error_type.value,
            )
            metrics.record_payment_verification("gateway_error")
            raise PaymentGatewayError("Failed to verify payment", original_error=e) from e

        new_status = normalize_status(data.get("status") or "unknown")
        result = await apply_status_transition(
            db,
            reference=reference,
            new_status=new_status,
            metadata_patch=data,
            source="verify",
        )

        if result.transaction is None:
            raise PaymentNotFoundError("Transaction not found")

        metrics.record_payment_verification(result.transaction.status)
        metrics.record_payment_duration("verify", time.time() - start_time)

        logger.info(
            "payment_verified",
            reference=reference,
            outcome=result.outcome.value,
            status=result.transaction.status,
        )
        return result.transaction

    async def get_transaction(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        transaction_id: uuid.UUID,
    ) -> PaymentTransaction:
        """
        Get one of the user's transactions by ID.

        Raises:
            PaymentNotFoundError: Unknown ID, or owned by another user
        """
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.id == transaction_id,
            PaymentTransaction.user_id == user_id,
        )
        result = await db.execute(stmt)
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise PaymentNotFoundError("Transaction not found")
        return transaction

    async def list_transactions(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        limit: int = 10,
    ) -> List[PaymentTransaction]:
        """List the user's most recent transactions, newest first."""
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.user_id == user_id)
            .order_by(PaymentTransaction.created_at.desc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
