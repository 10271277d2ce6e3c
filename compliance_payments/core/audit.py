"""
Security audit trail.

Rows land in `audit_logs`; high and critical events are also logged at
warning level so they surface in log-based alerting.
"""
import uuid
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_payments.database.models import AuditLog

logger = structlog.get_logger(__name__)


class AuditEventType(str, Enum):
    AUTH_FAILED = "auth_failed"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMITED = "rate_limited"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditLogger:
    """Writes AuditLog rows."""

    async def log(
        self,
        db: AsyncSession,
        event_type: AuditEventType,
        severity: AuditSeverity = AuditSeverity.LOW,
        user_id: Optional[uuid.UUID] = None,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        """
        Persist an audit event and commit it.

        The audit write never changes the outcome of the request being
        audited: database errors are logged and None is returned.

        Args:
            db: Database session
            event_type: Kind of event
            severity: Event severity
            user_id: Acting user, if known
            email: Acting user's email, if known
            ip_address: Client IP address
            user_agent: Client user agent
            resource: Resource the event concerns (e.g. a route)
            action: Action attempted
            details: Free-form context

        Returns:
            Optional[AuditLog]: The stored row, or None if the write failed
        """
        event_type = AuditEventType(event_type)
        severity = AuditSeverity(severity)

        entry = AuditLog(
            event_type=event_type.value,
            severity=severity.value,
            user_id=user_id,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            resource=resource,
            action=action,
            details=details or {},
        )

        try:
            db.add(entry)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(
                "audit_log_write_failed",
                event_type=event_type.value,
                severity=severity.value,
                error=str(e),
            )
            return None

        log_method = (
            logger.warning
            if severity in (AuditSeverity.HIGH, AuditSeverity.CRITICAL)
            else logger.info
        )
        log_method(
            "audit_event",
            event_type=event_type.value,
            severity=severity.value,
            user_id=str(user_id) if user_id else None,
            resource=resource,
            action=action,
            details=details,
        )
        return entry


audit_logger = AuditLogger()
