"""SQLAlchemy database models for payment transactions."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentTransaction(Base):
    """
    Payment transactions table.

    One row per checkout attempt. `payment_reference` is the key Paystack
    uses in verify responses and webhook events, so it is the idempotency key
    for reconciliation.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_reference: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="paystack")
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('provisional', 'pending', 'success', 'failed', 'abandoned')",
            name="valid_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payment_transactions_user_created", "user_id", "created_at"),
        Index("idx_payment_transactions_status_updated", "status", "updated_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "amount": float(self.amount),
            "currency": self.currency,
            "payment_reference": self.payment_reference,
            "provider": self.provider,
            "status": self.status,
            "metadata": self.metadata_ or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, reference={self.payment_reference}, "
            f"amount={self.amount} {self.currency}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Transaction status change trail.

    One row per applied transition, written in the same database transaction
    as the status update. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        Index("idx_payment_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, transaction_id={self.transaction_id}, "
            f"type={self.event_type}, source={self.source})>"
        )


class AuditLog(Base):
    """Security audit trail: auth failures, forged webhooks, throttled callers."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="low")
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    resource: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="valid_severity",
        ),
    )

    def __repr__(self) -> str:
        """String representation of AuditLog."""
        return f"<AuditLog(id={self.id}, type={self.event_type}, severity={self.severity})>"
