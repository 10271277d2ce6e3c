"""Exceptions raised by payment processing."""
from typing import Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    pass


class PaymentNotFoundError(PaymentError):
    """Raised when no transaction matches the given reference or ID."""

    pass


class PaymentGatewayError(PaymentError):
    """Raised when Paystack is unreachable or answers with an unexpected shape."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class PaymentPersistenceError(PaymentError):
    """Raised when a transaction could not be written to the database."""

    pass
