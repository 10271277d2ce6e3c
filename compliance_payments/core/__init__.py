"""Core payment processing logic."""
from .errors import (
    PaymentError,
    PaymentGatewayError,
    PaymentNotFoundError,
    PaymentPersistenceError,
    PaymentValidationError,
)
from .status import TransactionStatus, normalize_status
from .transitions import TransitionOutcome, apply_status_transition
from .payment_processor import PaymentProcessor
from .reconciliation import ReconciliationEngine

__all__ = [
    "PaymentError",
    "PaymentGatewayError",
    "PaymentNotFoundError",
    "PaymentPersistenceError",
    "PaymentProcessor",
    "PaymentValidationError",
    "ReconciliationEngine",
    "TransactionStatus",
    "TransitionOutcome",
    "apply_status_transition",
    "normalize_status",
]
