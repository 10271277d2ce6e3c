"""Database package for compliance payments."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    AuditLog,
    Base,
    PaymentEvent,
    PaymentTransaction,
)

__all__ = [
    "AuditLog",
    "Base",
    "PaymentEvent",
    "PaymentTransaction",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
]
