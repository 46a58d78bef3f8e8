"""
FastAPI router for payment platform webhook endpoints.
Verifies the event signature and applies checkout completion and refund
status events to the local store.
"""
import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from app.exceptions import PaymentSyncError
from app.resources.base import Gateway
from app.resources.checkout_session import CheckoutSession
from app.resources.refund import Refund
from app.resources.webhook import Webhook, WebhookEvent
from app.services.payment_gateway import PaymentGateway, get_payment_gateway
from app.utils.logger import bind_sync_context

logger = structlog.get_logger()

router = APIRouter(tags=["webhooks"])


def verify_signature(
    secret: bytes,
    body: bytes,
    event_id: Optional[str],
    timestamp: Optional[str],
    signature: Optional[str],
) -> bool:
    """
    Verify a payment platform webhook signature.

    Args:
        secret: Decoded signing secret
        body: Raw request body bytes
        event_id: flex-event-id header value
        timestamp: flex-timestamp header value
        signature: flex-signature header value (base64)

    Returns:
        True if signature is valid, False otherwise
    """
    if not event_id or not timestamp or not signature:
        return False

    content = f"{event_id}.{timestamp}.".encode("utf-8") + body
    calculated = hmac.new(secret, content, hashlib.sha256).digest()

    try:
        received = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return False

    # Compare using secure comparison to prevent timing attacks
    return hmac.compare_digest(calculated, received)


def _error(message: str) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"error": message})


def handle(gateway: Gateway, data: Any, context: Dict[str, Any]) -> Optional[JSONResponse]:
    """
    Apply one webhook event to the local store.

    Args:
        gateway: Gateway context of the mode the event arrived on
        data: Decoded event body
        context: Logging context, extended in place

    Returns:
        None on success, otherwise a 422 response describing the problem
    """
    if not isinstance(data, dict) or not data.get("event_type"):
        logger.error("Webhook event missing event_type", **context)
        return _error("Webhook Event missing event_type")

    event_type = data["event_type"]
    context["event_type"] = event_type
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}

    if event_type == WebhookEvent.CHECKOUT_SESSION_COMPLETED.value:
        return _handle_checkout_session_completed(gateway, obj, context)

    if event_type == WebhookEvent.REFUND_UPDATED.value:
        return _handle_refund_updated(gateway, obj, context)

    logger.error("Cannot handle event type", **context)
    return _error(f"Cannot handle webhook of type {event_type}")


def _handle_checkout_session_completed(
    gateway: Gateway, obj: Dict[str, Any], context: Dict[str, Any]
) -> Optional[JSONResponse]:
    if not isinstance(obj.get("checkout_session"), dict):
        logger.error("Webhook event missing checkout session", **context)
        return _error(f"Cannot handle webhook of type {context['event_type']}")

    try:
        received = CheckoutSession.from_remote(gateway, obj["checkout_session"])
    except PaymentSyncError as e:
        logger.error("Invalid checkout session in webhook event", error=str(e), **context)
        return _error("Invalid checkout session")

    context["checkout_session_id"] = received.id()

    order = received.local()
    if order is None:
        logger.error("Order does not exist for the given checkout_session_id", **context)
        return _error("Order does not exist for the given checkout_session_id")

    context["order_id"] = order.id

    # Mark the order paid if nothing else has yet
    if order.is_pending():
        order.payment_complete(received.id())

    received.apply_to(order)
    received.apply_line_items_to(order)
    gateway.store.save_order(order)

    logger.info("Checkout session completed", **context)
    return None


def _handle_refund_updated(
    gateway: Gateway, obj: Dict[str, Any], context: Dict[str, Any]
) -> Optional[JSONResponse]:
    if not isinstance(obj.get("refund"), dict):
        logger.error("Webhook event missing refund", **context)
        return _error(f"Cannot handle webhook of type {context['event_type']}")

    received = Refund.from_remote(gateway, obj["refund"])
    context["remote_refund_id"] = received.id()
    context["refund_status"] = received.status.value if received.status else None

    refund = received.local()
    if refund is None:
        logger.error("Refund does not exist for the given refund metadata", **context)
        return _error("Refund does not exist for the given refund metadata")

    context["refund_id"] = refund.id
    context["order_id"] = refund.order_id

    if received.status is not None and received.status.is_failure():
        gateway.store.delete_refund(refund.id)
        order = gateway.store.get_order(refund.order_id)
        if order is not None:
            order.add_note(
                f"Refund of {refund.amount} {order.currency} was {received.status.value} "
                "by the payment platform and has been removed."
            )
            gateway.store.save_order(order)
        logger.warning("Refund failed remotely, local refund removed", **context)
    else:
        logger.info("Refund status updated", **context)

    return None


async def _receive(request: Request, payment_gateway: PaymentGateway, test_mode: bool) -> Response:
    body = await request.body()
    event_id = request.headers.get("flex-event-id")
    timestamp = request.headers.get("flex-timestamp")
    signature = request.headers.get("flex-signature")
    bind_sync_context(webhook_event_id=event_id, traceparent=request.headers.get("traceparent"))
    context: Dict[str, Any] = {"event_id": event_id, "timestamp": timestamp, "test_mode": test_mode}

    logger.debug("Webhook handle start", **context)

    gateway = payment_gateway.gateway()
    try:
        if gateway.test_mode != test_mode:
            gateway = gateway.with_mode(test_mode)

        webhook = Webhook.from_local(gateway, test_mode)
        try:
            secret = webhook.secret()
        except PaymentSyncError as e:
            logger.warning("Webhook signing secret unavailable", error=str(e), **context)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature",
            ) from e

        if not verify_signature(secret, body, event_id, timestamp, signature):
            logger.warning(
                "Webhook permission check failure",
                signature=signature,
                webhook_id=webhook.id(),
                **context,
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature",
            )

        try:
            data = json.loads(body) if body else None
        except ValueError:
            logger.error("Webhook body is not valid JSON", **context)
            return _error("Invalid JSON body")

        failure = handle(gateway, data, context)
        if failure is not None:
            return failure

        logger.debug("Webhook handle complete", **context)
        return Response(status_code=status.HTTP_200_OK)
    finally:
        await gateway.client.close()


@router.post("/webhooks")
async def receive_webhook(
    request: Request,
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Live mode webhook endpoint."""
    return await _receive(request, payment_gateway, test_mode=False)


@router.post("/test/webhooks")
async def receive_test_webhook(
    request: Request,
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Test mode webhook endpoint."""
    return await _receive(request, payment_gateway, test_mode=True)
