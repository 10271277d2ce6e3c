"""Helpers shared by test modules: access tokens, webhook payloads and signatures."""
import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from compliance_payments.integrations.paystack_client import compute_signature


def make_token(
    user_id: uuid.UUID,
    secret: Optional[str] = None,
    audience: str = "authenticated",
    expires_in: int = 3600,
) -> str:
    """Issue an access token the way the hosted auth service does."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "aud": audience,
        "role": "authenticated",
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, secret or os.environ["AUTH_JWT_SECRET"], algorithm="HS256")


def auth_headers(user_id: uuid.UUID) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def signed_headers(body: bytes, secret: Optional[str] = None) -> Dict[str, str]:
    """Headers for a webhook delivery signed with the Paystack secret key."""
    return {
        "Content-Type": "application/json",
        "x-paystack-signature": compute_signature(
            body, secret or os.environ["PAYSTACK_SECRET_KEY"]
        ),
    }


def charge_event(reference: str, event: str = "charge.success", **data: Any) -> bytes:
    """Serialized Paystack charge event."""
    payload = {
        "event": event,
        "data": {
            "reference": reference,
            "status": "success" if event == "charge.success" else "failed",
            "amount": 500000,
            "currency": "NGN",
            "paid_at": "2025-01-06T10:05:00.000Z",
            "channel": "card",
            "customer": {"email": "ada@example.com", "customer_code": "CUS_test"},
            **data,
        },
    }
    return json.dumps(payload).encode("utf-8")
