"""FastAPI application and routes."""
from .main import app
from .schemas import (
    InitializePaymentRequest,
    InitializePaymentResponse,
    TransactionResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)

__all__ = [
    "app",
    "InitializePaymentRequest",
    "InitializePaymentResponse",
    "TransactionResponse",
    "VerifyPaymentRequest",
    "VerifyPaymentResponse",
]
