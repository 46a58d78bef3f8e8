"""
Exception hierarchy for payment platform synchronization.
Resource methods raise these; only entry points catch, log, report and re-raise.
"""
from typing import Any, Dict, Optional


class PaymentSyncError(Exception):
    """Base exception for payment synchronization errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"[Payment] {message}")
        self.context: Dict[str, Any] = dict(context or {})


class ConfigurationError(PaymentSyncError):
    """Raised when the gateway is not configured well enough to talk to the remote API."""
    pass


class TransportError(PaymentSyncError):
    """Raised when the remote API cannot be reached."""
    pass


class ResponseError(PaymentSyncError):
    """Raised for non-2xx, empty or unparseable remote responses."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        body: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code
        self.body = body


class IntegrityError(PaymentSyncError):
    """Raised when local and remote state disagree in a way that must never be coerced."""
    pass


class PaymentProcessingError(Exception):
    """User-facing error raised by payment and refund entry points."""

    GENERIC_MESSAGE = (
        "We're sorry, there was a problem while attempting to process your payment. "
        "Please try again later."
    )

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.GENERIC_MESSAGE)
