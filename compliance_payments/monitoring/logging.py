"""
Structured logging configuration.

structlog renders each event as one JSON line on stdout. Two processors run
before rendering:
- AppContext stamps the service name, environment and Paystack mode
  (test/live, read from the secret key prefix) on every event.
- scrub_sensitive_data masks credentials and customer identifiers, including
  inside nested payloads such as a webhook's `customer` object.
"""
import logging
import sys
from typing import Any, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from compliance_payments.config import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "x_paystack_signature",
        "signature",
        "secret_key",
        "paystack_secret_key",
        "token",
        "admin_token",
        "access_code",
        "email",
    }
)

REDACTED = "***REDACTED***"


def _mask(value: Any) -> str:
    # Last 4 characters stay visible so masked values can still be told apart
    if isinstance(value, str) and len(value) > 8:
        return f"***{value[-4:]}"
    return REDACTED


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: _mask(item)
            if str(key).lower().replace("-", "_") in SENSITIVE_KEYS
            else _scrub(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    return value


def scrub_sensitive_data(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Mask sensitive keys anywhere in the event.

    Keys are matched case-insensitively, with dashes read as underscores so
    header names (`X-Paystack-Signature`) are caught too.
    """
    return _scrub(event_dict)


class AppContext:
    """Processor adding fields that are fixed for the life of the process."""

    def __init__(self, settings: Settings) -> None:
        self.fields = {
            "app_name": settings.app_name,
            "app_env": settings.app_env,
            "paystack_mode": (
                "live" if settings.paystack_secret_key.startswith("sk_live_") else "test"
            ),
        }

    def __call__(
        self, logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        for key, value in self.fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def build_processors(settings: Settings) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        AppContext(settings),
        scrub_sensitive_data,
        structlog.processors.JSONRenderer(),
    ]


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root logger from settings.

    Args:
        settings: Defaults to the cached application settings
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # structlog has already rendered the event; stdlib records from libraries
    # go through the JSON formatter so every line on stdout is JSON
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )
