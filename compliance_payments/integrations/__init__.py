"""External integrations for payment processing."""
from .paystack_client import PaystackClient, PaystackError, PaystackErrorType
from .webhook_handler import WebhookError, WebhookHandler

__all__ = ["PaystackClient", "PaystackError", "PaystackErrorType", "WebhookError", "WebhookHandler"]
