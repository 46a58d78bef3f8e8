"""
Structured logging configuration using structlog.
"""
import logging
from typing import Any, Dict, Optional

import structlog
from app.config import settings

# Payment API keys and webhook signing secrets
SECRET_PREFIXES = ("fsk_", "whsec_")
SECRET_FIELDS = {"api_key", "secret", "signing_secret", "authorization", "url_signing_secret"}


def _mask(value: str) -> str:
    return value[:8] + "..." if len(value) > 8 else "***"


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials before an event is rendered."""
    for key, value in event_dict.items():
        if not isinstance(value, str) or key == "event":
            continue
        if key.lower() in SECRET_FIELDS or value.startswith(SECRET_PREFIXES):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging():
    """
    Configure structured logging for the payment sync service.
    JSON lines with ISO timestamps in production, coloured console output otherwise.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if settings.app_environment == "production":
        processors.append(structlog.processors.TimeStamper(fmt="iso"))
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def bind_sync_context(**context: Any) -> None:
    """Replace the logging context of the current task, skipping empty values."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**{k: v for k, v in context.items() if v is not None})


def current_traceparent() -> Optional[str]:
    """Return the W3C traceparent bound to the current logging context, if any."""
    return structlog.contextvars.get_contextvars().get("traceparent")
