"""
Slack notification service for error alerts.
Sends formatted payment and sync failure messages to Slack via Incoming Webhooks.
"""

import httpx
import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from app.config import settings
from app.utils.retry import PermanentError, TransientError, retry_with_backoff

logger = structlog.get_logger()


class SlackNotificationService:
    """Service for sending error notifications to Slack."""

    def __init__(self, webhook_url: Optional[str] = None, enabled: Optional[bool] = None):
        """Initialize Slack notification service."""
        self.webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self.enabled = enabled if enabled is not None else settings.slack_alerts_enabled

        logger.debug(
            "SlackNotificationService initialized",
            enabled=self.enabled,
            webhook_url_configured=bool(self.webhook_url),
        )

        # Rate limiting: track last alert time per error key
        # Format: {error_key: last_alert_timestamp}
        self._rate_limit_cache: Dict[str, datetime] = {}
        self._rate_limit_window = timedelta(minutes=5)

    def _get_error_key(self, error_type: str, reference: Optional[str] = None) -> str:
        """
        Generate a unique key for rate limiting.

        Args:
            error_type: Type of error (e.g., 'payment_failure', 'sync_failure')
            reference: Optional entity reference (order, product, webhook)

        Returns:
            Unique error key for rate limiting
        """
        parts = [error_type]
        if reference:
            parts.append(reference)
        return ":".join(parts)

    def _should_send_alert(self, error_key: str) -> bool:
        """
        Check if alert should be sent based on rate limiting.

        Args:
            error_key: Unique error key

        Returns:
            True if alert should be sent, False if rate limited
        """
        now = datetime.now(timezone.utc)
        last_alert = self._rate_limit_cache.get(error_key)

        if last_alert is None or now - last_alert >= self._rate_limit_window:
            self._rate_limit_cache[error_key] = now
            return True

        logger.debug(
            "Slack alert rate limited",
            error_key=error_key,
            last_alert=last_alert.isoformat(),
            window_minutes=5,
        )
        return False

    def _format_error_message(
        self,
        error_type: str,
        error_message: str,
        reference: Optional[str] = None,
        additional_details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Format error message for Slack.

        Args:
            error_type: Type of error
            error_message: Error message
            reference: Optional entity reference
            additional_details: Optional additional details dict

        Returns:
            Formatted Slack message payload
        """
        timestamp = datetime.now(timezone.utc).isoformat()

        lines = [
            "🚨 *Payment Sync Error*",
            f"• Type: `{error_type}`",
        ]

        if reference:
            lines.append(f"• Reference: `{reference}`")

        lines.append(f"• Error: {error_message}")
        lines.append(f"• Time: `{timestamp}`")

        if additional_details:
            details_lines = []
            for key, value in additional_details.items():
                if isinstance(value, dict):
                    value_str = ", ".join(f"{k}: {v}" for k, v in value.items())
                else:
                    value_str = str(value)
                details_lines.append(f"• {key}: `{value_str}`")

            if details_lines:
                lines.append("")
                lines.extend(details_lines)

        return {
            "text": "\n".join(lines),
            "mrkdwn": True,
        }

    @retry_with_backoff(max_attempts=3, initial_delay=1.0, multiplier=2.0, max_delay=10.0)
    async def _post(self, payload: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()

    async def send_error_alert(
        self,
        error_type: str,
        error_message: str,
        reference: Optional[str] = None,
        additional_details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send error alert to Slack.

        Args:
            error_type: Type of error (e.g., 'payment_failure', 'sync_failure')
            error_message: Error message
            reference: Optional entity reference
            additional_details: Optional additional details dict

        Returns:
            True if alert sent successfully, False otherwise
        """
        if not self.enabled:
            logger.debug("Slack alerts disabled, skipping notification", error_type=error_type)
            return False

        if not self.webhook_url:
            logger.warning("Slack webhook URL not configured, skipping notification")
            return False

        error_key = self._get_error_key(error_type, reference)
        if not self._should_send_alert(error_key):
            logger.info(
                "Slack alert rate limited",
                error_type=error_type,
                reference=reference,
                error_key=error_key,
            )
            return False

        payload = self._format_error_message(
            error_type=error_type,
            error_message=error_message,
            reference=reference,
            additional_details=additional_details,
        )

        try:
            await self._post(payload)
        except (TransientError, PermanentError) as e:
            logger.error(
                "Failed to send Slack alert",
                error_type=error_type,
                error=str(e),
                cause=str(e.__cause__) if e.__cause__ else None,
            )
            return False

        logger.info("Slack error alert sent successfully", error_type=error_type, reference=reference)
        return True

    async def send_payment_failure_alert(
        self,
        error_message: str,
        order_id: Optional[int] = None,
        operation: str = "payment",
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send payment or refund failure alert to Slack.

        Args:
            error_message: Error message
            order_id: Optional local order ID
            operation: 'payment' or 'refund'
            context: Optional error context (remote ids, amounts)

        Returns:
            True if alert sent successfully
        """
        return await self.send_error_alert(
            error_type=f"{operation}_failure",
            error_message=error_message,
            reference=f"order-{order_id}" if order_id is not None else None,
            additional_details=context,
        )

    async def send_sync_failure_alert(
        self,
        error_message: str,
        hook: str,
        group: Optional[str] = None,
        retries: int = 0,
    ) -> bool:
        """
        Send sync job failure alert to Slack.

        Args:
            error_message: Error message
            hook: Job hook name (update_product, update_price, update_webhook)
            group: Optional job group key
            retries: Attempts already made

        Returns:
            True if alert sent successfully
        """
        return await self.send_error_alert(
            error_type="sync_failure",
            error_message=error_message,
            reference=group,
            additional_details={"Hook": hook, "Retries": retries},
        )


_slack_service: Optional[SlackNotificationService] = None


def get_slack_service() -> SlackNotificationService:
    """Get or create the shared Slack notification service."""
    global _slack_service
    if _slack_service is None:
        _slack_service = SlackNotificationService()
    return _slack_service
