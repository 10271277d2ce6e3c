"""
Pydantic schemas for API request/response models.

Amount, currency, email and reference rules live in PaymentProcessor so the
single-endpoint and per-operation routes validate identically; the request
schemas here only fix the JSON shape. Amounts are strict so a JSON string or
boolean is rejected instead of coerced to a number.
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, StrictFloat, StrictInt


class InitializePaymentRequest(BaseModel):
    """Request schema for initialising a payment."""

    amount: Union[StrictInt, StrictFloat] = Field(
        ..., description="Amount in major currency units (0.01 to 10,000,000)"
    )
    currency: str = Field(..., description="3-letter currency code (e.g., NGN)")
    email: str = Field(..., description="Customer email, forwarded to Paystack")
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional metadata stored on the transaction"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": 5000,
                    "currency": "NGN",
                    "email": "ada@example.com",
                    "metadata": {"filing_id": "vat-2025-q1"},
                }
            ]
        }
    }


class VerifyPaymentRequest(BaseModel):
    """Request schema for verifying a payment."""

    reference: str = Field(..., description="Transaction reference (max 100 characters)")

    model_config = {
        "json_schema_extra": {"examples": [{"reference": "cp_5f0c9e0b6b1e4f4b9d8c1c2a3b4d5e6f"}]}
    }


class PaymentOperationRequest(BaseModel):
    """Request schema for the single-endpoint payment operations route."""

    action: str = Field(..., description="Operation to run: initialize or verify")
    amount: Optional[Union[StrictInt, StrictFloat]] = Field(
        default=None, description="Amount (initialize)"
    )
    currency: Optional[str] = Field(default=None, description="Currency code (initialize)")
    email: Optional[str] = Field(default=None, description="Customer email (initialize)")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Metadata (initialize)")
    reference: Optional[str] = Field(default=None, description="Transaction reference (verify)")


class TransactionResponse(BaseModel):
    """A payment transaction."""

    id: str = Field(..., description="Transaction ID")
    user_id: str = Field(..., description="Owning user ID")
    amount: float = Field(..., description="Amount in major currency units")
    currency: str = Field(..., description="Currency code")
    payment_reference: str = Field(..., description="Transaction reference")
    provider: str = Field(..., description="Payment provider")
    status: Literal["provisional", "pending", "success", "failed", "abandoned"] = Field(
        ..., description="Transaction status"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Transaction metadata")
    created_at: Optional[str] = Field(default=None, description="Creation timestamp (ISO 8601)")
    updated_at: Optional[str] = Field(default=None, description="Last update timestamp (ISO 8601)")


class InitializePaymentResponse(BaseModel):
    """Response schema for payment initialisation."""

    transaction: TransactionResponse
    authorization_url: str = Field(
        ...,
        serialization_alias="authorizationUrl",
        description="Paystack hosted checkout URL",
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "transaction": {
                        "id": "123e4567-e89b-12d3-a456-426614174000",
                        "user_id": "0b7c1f0e-6f0a-4a51-9a4e-0f1f2a3b4c5d",
                        "amount": 5000.0,
                        "currency": "NGN",
                        "payment_reference": "cp_5f0c9e0b6b1e4f4b9d8c1c2a3b4d5e6f",
                        "provider": "paystack",
                        "status": "pending",
                        "metadata": {"filing_id": "vat-2025-q1"},
                        "created_at": "2025-01-06T10:00:00+00:00",
                        "updated_at": "2025-01-06T10:00:01+00:00",
                    },
                    "authorizationUrl": "https://checkout.paystack.com/0peioxfhpn",
                }
            ]
        }
    }


class VerifyPaymentResponse(BaseModel):
    """Response schema for payment verification."""

    transaction: TransactionResponse


class TransactionListResponse(BaseModel):
    """Response schema for listing transactions."""

    transactions: List[TransactionResponse]


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    message: str = Field(..., description="Processing result")
    reference: Optional[str] = Field(default=None, description="Transaction reference")
    old_status: Optional[str] = Field(default=None, description="Status before the event")
    new_status: Optional[str] = Field(default=None, description="Status after the event")
    current_status: Optional[str] = Field(
        default=None, description="Terminal status already recorded"
    )


class ReconciliationResponse(BaseModel):
    """Response schema for a reconciliation sweep."""

    checked: int = Field(..., description="Transactions re-verified")
    updated: int = Field(..., description="Transactions whose status changed")
    unchanged: int = Field(..., description="Transactions left as they were")
    errors: int = Field(..., description="Transactions that could not be verified")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")
