"""
FastAPI router for the checkout return flow.
The hosted checkout redirects the customer here once payment is submitted.
"""
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse

from app.config import settings
from app.exceptions import PaymentSyncError
from app.resources.base import ResourceAction
from app.resources.checkout_components import Status
from app.resources.checkout_session import CheckoutSession
from app.services.payment_gateway import PaymentGateway, get_payment_gateway

logger = structlog.get_logger()

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/{order_id}/complete")
async def complete_order(
    order_id: int,
    token: Optional[str] = Query(None, alias="_token"),
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Refresh the order's checkout session and mark the order paid once the
    session is complete.

    Always redirects: to the home page when the order is unknown, otherwise to
    the order-received page whether or not the refresh succeeded.
    """
    store = payment_gateway.store
    order = store.get_order(order_id)

    if order is None:
        logger.warning("Checkout return for unknown order", order_id=order_id)
        return RedirectResponse(settings.home_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    gateway = payment_gateway.gateway()
    try:
        if order.is_pending() and gateway.verify_order_token(order_id, token):
            try:
                checkout_session = CheckoutSession.from_local(gateway, order)
                await checkout_session.exec(ResourceAction.REFRESH)
            except PaymentSyncError as e:
                logger.error(
                    "Failed to refresh checkout session",
                    order_id=order_id,
                    error=str(e),
                    context=e.context,
                )
            else:
                if checkout_session.status == Status.COMPLETE:
                    # Reload, the webhook may have completed the order meanwhile
                    order = store.get_order(order_id) or order
                    if order.is_pending():
                        order.payment_complete(checkout_session.id())
                        store.save_order(order)
                        logger.info(
                            "Order payment completed on return",
                            order_id=order_id,
                            checkout_session_id=checkout_session.id(),
                        )
                else:
                    logger.info(
                        "Checkout session not complete on return",
                        order_id=order_id,
                        checkout_session_id=checkout_session.id(),
                        status=checkout_session.status.value if checkout_session.status else None,
                    )
        elif order.is_pending():
            logger.warning("Invalid order completion token", order_id=order_id)
    finally:
        await gateway.client.close()

    return RedirectResponse(
        gateway.order_received_url(order_id), status_code=status.HTTP_307_TEMPORARY_REDIRECT
    )
