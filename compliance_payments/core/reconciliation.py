"""
Reconciliation sweep for transactions Paystack has not settled for us.

Picks up rows that stayed `provisional` (initialisation outcome unknown) or
`pending` (webhook never arrived) for longer than a threshold, re-verifies
them with Paystack, and records the answer through the same compare-and-swap
transition the webhook and verifier use.
"""
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_payments.config import Settings, get_settings
from compliance_payments.core.status import TransactionStatus, normalize_status
from compliance_payments.core.transitions import TransitionOutcome, apply_status_transition
from compliance_payments.database.connection import get_session_factory
from compliance_payments.database.models import PaymentTransaction
from compliance_payments.integrations.paystack_client import (
    PaystackClient,
    PaystackError,
    PaystackErrorType,
)
from compliance_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SWEEPABLE_STATUSES = (TransactionStatus.PROVISIONAL.value, TransactionStatus.PENDING.value)


class ReconciliationError(Exception):
    """Raised when a sweep can not run at all."""

    pass


class ReconciliationEngine:
    """
    Re-verifies stale non-terminal transactions with Paystack.

    Per-row failures are counted and logged; they never abort the sweep.
    """

    def __init__(
        self,
        paystack_client: Optional[PaystackClient] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            paystack_client: Optional Paystack client
            session_factory: Optional session factory (the application's by default)
            settings: Optional settings (loaded from the environment if not provided)
        """
        self.settings = settings or get_settings()
        self.paystack_client = paystack_client or PaystackClient(self.settings)
        self.session_factory = session_factory or get_session_factory()
        logger.info("reconciliation_engine_initialized")

    async def _find_stale_transactions(
        self, db: AsyncSession, cutoff: datetime, limit: int
    ) -> List[PaymentTransaction]:
        """
        Get non-terminal transactions last touched before `cutoff`, oldest first.

        Args:
            db: Database session
            cutoff: Only rows with updated_at before this are returned
            limit: Maximum number of rows

        Returns:
            List[PaymentTransaction]: Stale transactions
        """
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.status.in_(SWEEPABLE_STATUSES),
                PaymentTransaction.updated_at < cutoff,
            )
            .order_by(PaymentTransaction.updated_at.asc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _reconcile_transaction(
        self, db: AsyncSession, reference: str, current_status: str
    ) -> bool:
        """
        Verify one transaction and record Paystack's answer.

        Returns:
            bool: True if the row's status changed

        Raises:
            PaystackError: If Paystack could not answer (other than an
                unknown provisional reference)
        """
        reconciled_at = datetime.now(timezone.utc).isoformat()

        try:
            data: Dict[str, Any] = await self.paystack_client.verify_transaction(reference)
        except PaystackError as e:
            if (
                e.error_type is PaystackErrorType.NOT_FOUND
                and current_status == TransactionStatus.PROVISIONAL.value
            ):
                # Initialisation never reached Paystack
                result = await apply_status_transition(
                    db,
                    reference=reference,
                    new_status=TransactionStatus.ABANDONED,
                    metadata_patch={
                        "reconciled_at": reconciled_at,
                        "reconciliation_note": "unknown to payment provider",
                    },
                    source="sweep",
                )
                return result.outcome is TransitionOutcome.APPLIED
            raise

        new_status = normalize_status(data.get("status") or "unknown")
        if new_status.value == current_status:
            return False

        result = await apply_status_transition(
            db,
            reference=reference,
            new_status=new_status,
            metadata_patch={**data, "reconciled_at": reconciled_at},
            source="sweep",
        )
        return result.outcome is TransitionOutcome.APPLIED

    async def sweep(
        self,
        older_than: Optional[timedelta] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, int]:
        """
        Run one reconciliation pass.

        Args:
            older_than: Staleness threshold (RECONCILIATION_STALE_AFTER_SECONDS by default)
            limit: Maximum rows per pass (RECONCILIATION_BATCH_SIZE by default)

        Returns:
            Dict[str, int]: Counts of `checked`, `updated`, `unchanged` and `errors`

        Raises:
            ReconciliationError: If stale transactions could not be loaded
        """
        start_time = time.time()
        if older_than is None:
            older_than = timedelta(seconds=self.settings.reconciliation_stale_after_seconds)
        limit = limit or self.settings.reconciliation_batch_size
        cutoff = datetime.now(timezone.utc) - older_than

        logger.info("reconciliation_sweep_started", cutoff=cutoff.isoformat(), limit=limit)

        try:
            async with self.session_factory() as db:
                stale = [
                    (tx.payment_reference, tx.status)
                    for tx in await self._find_stale_transactions(db, cutoff, limit)
                ]
        except SQLAlchemyError as e:
            logger.error("reconciliation_query_failed", error=str(e))
            raise ReconciliationError(f"Failed to load stale transactions: {str(e)}")

        summary = {"checked": 0, "updated": 0, "unchanged": 0, "errors": 0}

        for reference, status in stale:
            summary["checked"] += 1
            async with self.session_factory() as db:
                try:
                    changed = await self._reconcile_transaction(db, reference, status)
                except (PaystackError, SQLAlchemyError) as e:
                    await db.rollback()
                    summary["errors"] += 1
                    logger.error(
                        "reconciliation_transaction_failed",
                        reference=reference,
                        status=status,
                        error=str(e),
                    )
                    continue

            if changed:
                summary["updated"] += 1
            else:
                summary["unchanged"] += 1

        duration = time.time() - start_time
        metrics.record_reconciliation_sweep(
            summary["updated"], summary["unchanged"], summary["errors"], duration
        )
        logger.info("reconciliation_sweep_completed", duration_seconds=duration, **summary)

        return summary
