"""
FastAPI dependencies: services, authentication and rate limiting.

Services are process-wide singletons built lazily from settings; tests swap
them with `app.dependency_overrides`.
"""
import hmac
import math
import uuid
from functools import lru_cache
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_payments.config import Settings, get_settings
from compliance_payments.core.audit import AuditEventType, AuditSeverity, audit_logger
from compliance_payments.core.payment_processor import PaymentProcessor
from compliance_payments.core.rate_limiter import (
    RATE_LIMITS,
    AsyncRateLimiter,
    RateLimiter,
    RateLimitRule,
    RedisRateLimiter,
)
from compliance_payments.core.reconciliation import ReconciliationEngine
from compliance_payments.database.connection import get_db
from compliance_payments.integrations.paystack_client import PaystackClient
from compliance_payments.integrations.webhook_handler import WebhookHandler
from compliance_payments.monitoring.health import HealthCheck
from compliance_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@lru_cache()
def get_paystack_client() -> PaystackClient:
    return PaystackClient(get_settings())


@lru_cache()
def get_payment_processor() -> PaymentProcessor:
    return PaymentProcessor(paystack_client=get_paystack_client())


@lru_cache()
def get_webhook_handler() -> WebhookHandler:
    return WebhookHandler()


@lru_cache()
def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine(paystack_client=get_paystack_client())


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck(paystack_client=get_paystack_client())


@lru_cache()
def get_rate_limiter() -> AsyncRateLimiter:
    """Build the rate limiter selected by RATE_LIMIT_BACKEND."""
    settings = get_settings()
    if settings.rate_limit_backend == "redis":
        return RedisRateLimiter(redis_url=settings.redis_url)
    return RateLimiter()


def client_ip(request: Request) -> Optional[str]:
    """Client IP, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else None)


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> uuid.UUID:
    """
    Authenticate the caller from an `Authorization: Bearer <jwt>` header.

    Tokens are HS256-signed by the auth service; `sub` carries the user ID.

    Returns:
        uuid.UUID: Authenticated user ID

    Raises:
        HTTPException: 401 if the header is missing or the token is invalid
    """
    scheme, _, token = (authorization or "").partition(" ")
    reason: Optional[str] = None
    user_id: Optional[uuid.UUID] = None

    if scheme.lower() != "bearer" or not token:
        reason = "missing_token"
    else:
        try:
            payload = jwt.decode(
                token,
                settings.auth_jwt_secret,
                algorithms=["HS256"],
                audience=settings.auth_jwt_audience,
                options={"require": ["sub", "exp"]},
            )
            user_id = uuid.UUID(str(payload["sub"]))
        except jwt.PyJWTError as e:
            reason = f"invalid_token: {e}"
        except ValueError:
            reason = "invalid_subject"

    if user_id is None:
        logger.warning("authentication_failed", reason=reason, path=request.url.path)
        if reason != "missing_token":
            await audit_logger.log(
                db,
                AuditEventType.AUTH_FAILED,
                AuditSeverity.MEDIUM,
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent"),
                resource=request.url.path,
                action=request.method,
                details={"reason": reason},
            )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    structlog.contextvars.bind_contextvars(user_id=str(user_id))
    return user_id


def payment_rate_rule(settings: Settings) -> RateLimitRule:
    """The payment_operations preset, with any limit or window set in settings applied over it."""
    rule = RATE_LIMITS["payment_operations"]
    return RateLimitRule(
        limit=settings.payment_rate_limit or rule.limit,
        window_ms=(
            settings.payment_rate_window_seconds * 1000
            if settings.payment_rate_window_seconds
            else rule.window_ms
        ),
    )


async def enforce_payment_rate_limit(
    request: Request,
    user_id: uuid.UUID = Depends(get_current_user),
    limiter: AsyncRateLimiter = Depends(get_rate_limiter),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> uuid.UUID:
    """
    Throttle payment operations per user.

    Returns:
        uuid.UUID: Authenticated user ID

    Raises:
        HTTPException: 429 with Retry-After when the user is over budget
    """
    key = f"user:{user_id}"
    rule = payment_rate_rule(settings)

    if await limiter.check(key, rule.limit, rule.window_ms):
        return user_id

    retry_after_ms = await limiter.time_until_reset(key)
    metrics.record_rate_limit_rejection("payment_operations")
    logger.warning("payment_rate_limited", user_id=str(user_id), retry_after_ms=retry_after_ms)
    await audit_logger.log(
        db,
        AuditEventType.RATE_LIMITED,
        AuditSeverity.LOW,
        user_id=user_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        resource=request.url.path,
        action=request.method,
        details={"limit": rule.limit, "window_ms": rule.window_ms},
    )
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Too many requests. Please try again shortly.",
        headers={"Retry-After": str(max(1, math.ceil(retry_after_ms / 1000)))},
    )


async def require_admin_token(
    x_admin_token: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Guard admin endpoints with the X-Admin-Token header.

    Raises:
        HTTPException: 403 when admin access is disabled or the token is wrong
    """
    expected = settings.admin_api_token
    if not expected or not x_admin_token or not hmac.compare_digest(
        expected.encode("utf-8"), x_admin_token.encode("utf-8")
    ):
        logger.warning("admin_access_denied", token_configured=bool(expected))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")