"""
The single write path for transaction status after creation.

Webhooks, client verification and the reconciliation sweep all go through
apply_status_transition. The update is conditioned on the status that was
read, so concurrent writers can not clobber each other and a terminal status
is never overwritten, whichever writer arrives last.
"""
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_payments.core.status import TransactionStatus, is_terminal
from compliance_payments.database.models import PaymentEvent, PaymentTransaction
from compliance_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class TransitionOutcome(str, Enum):
    """Result of a transition attempt. None of these is an error."""

    APPLIED = "applied"
    ALREADY_TERMINAL = "already_terminal"
    LOST_RACE = "lost_race"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"


@dataclass
class TransitionResult:
    """Outcome of apply_status_transition."""

    outcome: TransitionOutcome
    reference: str
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    transaction: Optional[PaymentTransaction] = None


async def get_transaction_by_reference(
    db: AsyncSession, reference: str
) -> Optional[PaymentTransaction]:
    """Load a transaction by reference, bypassing the identity map cache."""
    stmt = (
        select(PaymentTransaction)
        .where(PaymentTransaction.payment_reference == reference)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def compare_and_set_status(
    db: AsyncSession,
    reference: str,
    expected_status: str,
    new_status: TransactionStatus,
    metadata: Optional[Dict[str, Any]],
    new_reference: Optional[str] = None,
) -> int:
    """
    Conditionally write status and metadata.

    Args:
        db: Database session
        reference: Reference of the row to update
        expected_status: Status the row must still have for the write to apply
        new_status: Status to write
        metadata: Full metadata value to write
        new_reference: Optional replacement reference

    Returns:
        int: Number of rows updated (0 when another writer got there first)
    """
    values: Dict[Any, Any] = {
        PaymentTransaction.status: new_status.value,
        PaymentTransaction.metadata_: metadata,
    }
    if new_reference is not None and new_reference != reference:
        values[PaymentTransaction.payment_reference] = new_reference

    stmt = (
        update(PaymentTransaction)
        .where(
            PaymentTransaction.payment_reference == reference,
            PaymentTransaction.status == expected_status,
        )
        .values(values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount


async def apply_status_transition(
    db: AsyncSession,
    reference: str,
    new_status: TransactionStatus,
    metadata_patch: Optional[Dict[str, Any]] = None,
    source: str = "unknown",
    new_reference: Optional[str] = None,
    correlation_id: Optional[uuid.UUID] = None,
) -> TransitionResult:
    """
    Apply a status transition to the transaction identified by `reference`.

    Flow:
    1. Load the row (NOT_FOUND if absent)
    2. Short-circuit if its status is already terminal (ALREADY_TERMINAL),
       or already equals `new_status` (UNCHANGED, nothing is written)
    3. UPDATE ... WHERE status = <status read in step 1>, merging
       `metadata_patch` into the stored metadata
    4. Zero rows updated means a concurrent writer won (LOST_RACE)
    5. Otherwise record a PaymentEvent and commit (APPLIED)

    Args:
        db: Database session
        reference: Transaction reference
        new_status: Canonical status to move to
        metadata_patch: Keys merged over the stored metadata
        source: Writer name for logs, metrics and the event trail
        new_reference: Optional replacement reference (initialisation only)
        correlation_id: Optional correlation ID for tracing

    Returns:
        TransitionResult: Outcome with old/new status and the current row
    """
    correlation_id = correlation_id or uuid.uuid4()

    transaction = await get_transaction_by_reference(db, reference)
    if transaction is None:
        logger.warning(
            "status_transition_unknown_reference",
            reference=reference,
            source=source,
        )
        metrics.record_status_transition(source, TransitionOutcome.NOT_FOUND.value)
        return TransitionResult(outcome=TransitionOutcome.NOT_FOUND, reference=reference)

    current_status = transaction.status
    if is_terminal(current_status):
        logger.info(
            "status_transition_skipped_terminal",
            reference=reference,
            source=source,
            current_status=current_status,
            requested_status=new_status.value,
        )
        metrics.record_status_transition(source, TransitionOutcome.ALREADY_TERMINAL.value)
        return TransitionResult(
            outcome=TransitionOutcome.ALREADY_TERMINAL,
            reference=reference,
            old_status=current_status,
            new_status=current_status,
            transaction=transaction,
        )

    if new_status.value == current_status and new_reference in (None, reference):
        logger.debug(
            "status_transition_unchanged",
            reference=reference,
            source=source,
            status=current_status,
        )
        metrics.record_status_transition(source, TransitionOutcome.UNCHANGED.value)
        return TransitionResult(
            outcome=TransitionOutcome.UNCHANGED,
            reference=reference,
            old_status=current_status,
            new_status=current_status,
            transaction=transaction,
        )

    merged_metadata = {**(transaction.metadata_ or {}), **(metadata_patch or {})}

    rows_updated = await compare_and_set_status(
        db,
        reference=reference,
        expected_status=current_status,
        new_status=new_status,
        metadata=merged_metadata,
        new_reference=new_reference,
    )

    if rows_updated == 0:
        await db.rollback()
        logger.info(
            "status_transition_lost_race",
            reference=reference,
            source=source,
            expected_status=current_status,
            requested_status=new_status.value,
        )
        metrics.record_status_transition(source, TransitionOutcome.LOST_RACE.value)
        current = await get_transaction_by_reference(db, reference)
        return TransitionResult(
            outcome=TransitionOutcome.LOST_RACE,
            reference=reference,
            old_status=current_status,
            new_status=current.status if current else None,
            transaction=current,
        )

    db.add(
        PaymentEvent(
            transaction_id=transaction.id,
            event_type=f"status.{new_status.value}",
            source=source,
            event_data={
                "reference": new_reference or reference,
                "old_status": current_status,
                "new_status": new_status.value,
            },
            correlation_id=correlation_id,
        )
    )
    await db.commit()

    updated = await get_transaction_by_reference(db, new_reference or reference)

    logger.info(
        "status_transition_applied",
        reference=new_reference or reference,
        source=source,
        old_status=current_status,
        new_status=new_status.value,
        correlation_id=str(correlation_id),
    )
    metrics.record_status_transition(source, TransitionOutcome.APPLIED.value)

    return TransitionResult(
        outcome=TransitionOutcome.APPLIED,
        reference=new_reference or reference,
        old_status=current_status,
        new_status=new_status.value,
        transaction=updated,
    )
