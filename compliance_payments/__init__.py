"""Payment transaction lifecycle and Paystack webhook reconciliation service."""

__version__ = "0.1.0"
