"""
Payment gateway service.
Entry points used by the store: start a payment, request a refund, and the
availability and dashboard helpers around them.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from app.config import settings
from app.exceptions import IntegrityError, PaymentProcessingError, PaymentSyncError
from app.models.local import LocalOrder
from app.resources.base import Gateway, ResourceAction, resolve
from app.resources.checkout_session import CheckoutSession
from app.resources.refund import CheckoutSessionRefund
from app.resources.webhook import Webhook
from app.services.local_store import LocalStore, get_local_store
from app.services.slack_service import SlackNotificationService, get_slack_service

logger = structlog.get_logger()

SUPPORTED_CURRENCIES = ("USD",)
API_KEY_PREFIX = "fsk_"

REFUND_FAILURE_MESSAGE = (
    "We're sorry, there was a problem while attempting to process the refund. "
    "Please try again later."
)


class PaymentGateway:
    """Service orchestrating checkout sessions, refunds and the webhook subscription."""

    def __init__(
        self,
        store: Optional[LocalStore] = None,
        transport=None,
        slack: Optional[SlackNotificationService] = None,
    ):
        """
        Initialize payment gateway service.

        Args:
            store: Local store, defaults to the configured store
            transport: Optional httpx transport for the remote client
            slack: Slack notifier, defaults to the shared service
        """
        self.store = store or get_local_store()
        self.transport = transport
        self.slack = slack or get_slack_service()

    def gateway(self) -> Gateway:
        """Gateway context built from the current settings and stored options."""
        return Gateway.from_settings(self.store, transport=self.transport)

    def is_available(self, currency: str) -> bool:
        """Whether the gateway can be offered for a cart or order in ``currency``."""
        if currency.upper() not in SUPPORTED_CURRENCIES:
            return False
        return self.store.get_gateway_options().enabled

    @staticmethod
    def validate_api_key(api_key: str) -> str:
        """
        Validate an API key before it is stored.

        Raises:
            ValueError: If the key does not look like a secret key
        """
        api_key = (api_key or "").strip()
        if not api_key.startswith(API_KEY_PREFIX):
            raise ValueError("API key must start with 'fsk_'")
        return api_key

    def transaction_url(self, order: LocalOrder) -> Optional[str]:
        """Dashboard URL of the order's checkout session, if it has one."""
        if not order.transaction_id:
            return None
        gateway = self.gateway()
        test_mode = order.get_meta(gateway.order_meta_key("checkout_session_test_mode"))
        in_test = test_mode == "yes" if test_mode else gateway.test_mode
        dashboard = settings.payment_dashboard_url.rstrip("/")
        return f"{dashboard}{'/test' if in_test else ''}/orders/{order.transaction_id}"

    async def sync_webhook(self, gateway: Gateway) -> None:
        """Ensure the webhook subscription for the gateway's mode is up to date."""
        await resolve(Webhook.from_local(gateway))

    async def process_payment(self, order_id: int) -> Dict[str, Any]:
        """
        Create or reuse the checkout session for an order.

        Args:
            order_id: Local order ID

        Returns:
            ``{"result": "success", "redirect": <hosted checkout URL>, "order_id": ...}``

        Raises:
            PaymentProcessingError: Sanitized failure shown to the customer
        """
        logger.debug("Process payment start", order_id=order_id)
        gateway = self.gateway()

        try:
            order = self.store.get_order(order_id)
            if order is None:
                raise IntegrityError("Order not found", context={"order_id": order_id})

            await self.sync_webhook(gateway)

            checkout_session = CheckoutSession.from_local(gateway, order)
            await resolve(checkout_session)

            order_total = gateway.to_minor_units(order.total)
            if checkout_session.amount_total != order_total:
                raise IntegrityError(
                    "Checkout session amount_total does not equal order total.",
                    context={
                        "checkout_session_id": checkout_session.id(),
                        "order_id": order_id,
                        "order_total": order_total,
                        "amount_total": checkout_session.amount_total,
                    },
                )

            # Reload, the session bookkeeping was saved during resolution
            order = self.store.get_order(order_id) or order
            order.status = "pending"
            order.add_note("Awaiting payment")
            self.store.save_order(order)

            logger.debug(
                "Process payment complete",
                order_id=order_id,
                checkout_session_id=checkout_session.id(),
            )

            return {
                "result": "success",
                "redirect": checkout_session.redirect_url,
                "order_id": order_id,
            }
        except PaymentSyncError as e:
            await self._handle_failure(e, "payment", order_id=order_id)
        finally:
            await gateway.client.close()

    async def process_refund(
        self, order_id: int, amount: Optional[Decimal] = None, reason: Optional[str] = None
    ) -> bool:
        """
        Request a refund for the most recent local refund of an order.

        Args:
            order_id: Local order ID
            amount: Refund amount the store asked for
            reason: Refund reason the store asked for

        Returns:
            True once the refund request was accepted

        Raises:
            PaymentProcessingError: Sanitized failure shown to the merchant
        """
        logger.debug("Process refund start", order_id=order_id, amount=str(amount), reason=reason)
        gateway = self.gateway()

        try:
            refunds = self.store.get_refunds_for_order(order_id)
            if not refunds:
                raise IntegrityError("Unable to retrieve refund", context={"order_id": order_id})

            refund = refunds[0]
            if (amount is not None and Decimal(str(amount)) != refund.amount) or (
                (reason or None) != (refund.reason or None)
            ):
                raise IntegrityError(
                    "Refund amount or reason does not match retrieved refund.",
                    context={
                        "order_id": order_id,
                        "refund_id": refund.id,
                        "amount": str(amount),
                        "refund_amount": str(refund.amount),
                    },
                )

            await self.sync_webhook(gateway)

            checkout_refund = CheckoutSessionRefund.from_local(gateway, refund)
            await checkout_refund.exec(ResourceAction.CREATE)

            logger.info(
                "Process refund complete",
                order_id=order_id,
                refund_id=refund.id,
                checkout_session_id=checkout_refund.id(),
            )
            return True
        except PaymentSyncError as e:
            await self._handle_failure(e, "refund", order_id=order_id)
        finally:
            await gateway.client.close()

    async def _handle_failure(self, error: PaymentSyncError, operation: str, order_id: int) -> None:
        """Log, alert and re-raise a failure in the configured shape."""
        logger.error(
            str(error),
            **{
                **error.context,
                "operation": operation,
                "order_id": order_id,
                "error_type": type(error).__name__,
            },
        )
        await self.slack.send_payment_failure_alert(
            error_message=str(error),
            order_id=order_id,
            operation=operation,
            context=error.context,
        )

        if settings.debug_display_errors:
            raise error

        message = REFUND_FAILURE_MESSAGE if operation == "refund" else None
        raise PaymentProcessingError(message) from error


_payment_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """Get or create the shared payment gateway service (FastAPI dependency)."""
    global _payment_gateway
    if _payment_gateway is None:
        _payment_gateway = PaymentGateway()
    return _payment_gateway
