"""
Canonical transaction statuses.

Paystack reports statuses as free-form strings ("success", "abandoned",
"ongoing", ...). They are normalised once, on ingestion, so the rest of the
service only ever compares against TransactionStatus members.

State machine:
    PROVISIONAL → PENDING → SUCCESS
         ↓           ↓
     ABANDONED    FAILED / ABANDONED

Terminal states never transition again for the same reference.
"""
from enum import Enum
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class TransactionStatus(str, Enum):
    """Payment transaction lifecycle states."""

    PROVISIONAL = "provisional"  # persisted locally, processor not confirmed yet
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.SUCCESS, TransactionStatus.FAILED, TransactionStatus.ABANDONED}
)

_PROCESSOR_STATUS_MAP = {
    "success": TransactionStatus.SUCCESS,
    "successful": TransactionStatus.SUCCESS,
    "failed": TransactionStatus.FAILED,
    "reversed": TransactionStatus.FAILED,
    "abandoned": TransactionStatus.ABANDONED,
    "pending": TransactionStatus.PENDING,
    "ongoing": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "queued": TransactionStatus.PENDING,
    "unknown": TransactionStatus.PENDING,
}


def normalize_status(raw: Optional[str]) -> TransactionStatus:
    """
    Map a processor-reported status string onto a TransactionStatus.

    Matching is case-insensitive. Missing or unrecognised values map to
    PENDING, which is never terminal, so an unexpected string can not close
    a transaction.
    """
    if raw is None:
        return TransactionStatus.PENDING

    value = str(raw).strip().lower()
    status = _PROCESSOR_STATUS_MAP.get(value)
    if status is None:
        logger.warning("unrecognized_processor_status", raw_status=raw)
        return TransactionStatus.PENDING
    return status


def is_terminal(status: str | TransactionStatus) -> bool:
    """Check whether a stored status value is terminal."""
    try:
        return TransactionStatus(status).is_terminal
    except ValueError:
        # Rows written before normalisation may hold legacy spellings
        return normalize_status(str(status)).is_terminal
