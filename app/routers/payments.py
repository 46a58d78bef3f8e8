"""
FastAPI router for the store-facing payment operations.
Starts payments and refunds, triggers catalog syncs and applies gateway settings.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel

from app.exceptions import PaymentProcessingError, PaymentSyncError
from app.services.payment_gateway import PaymentGateway, get_payment_gateway
from app.workers.sync_worker import SyncWorker, get_sync_worker

logger = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["payments"])


class PaymentResponse(BaseModel):
    """Response model for a started payment."""

    result: str
    redirect: Optional[str] = None
    order_id: int


class RefundRequest(BaseModel):
    """Request model for a refund of an order's most recent local refund."""

    order_id: int
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


class GatewaySettingsRequest(BaseModel):
    """Request model for updating the gateway settings."""

    enabled: bool
    api_key: Optional[str] = None


class SyncResponse(BaseModel):
    """Jobs enqueued by a sync request."""

    enqueued: List[Dict[str, Any]]


def _jobs(jobs) -> List[Dict[str, Any]]:
    return [{"hook": job.hook, "args": list(job.args), "group": job.group} for job in jobs]


@router.post("/payments/{order_id}", response_model=PaymentResponse)
async def process_payment(
    order_id: int,
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Create or reuse the checkout session of an order and return its redirect URL."""
    order = payment_gateway.store.get_order(order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    if not payment_gateway.is_available(order.currency):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment method is not available for this order",
        )

    try:
        return await payment_gateway.process_payment(order_id)
    except PaymentProcessingError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PaymentSyncError as e:
        # Only surfaced unsanitized when debug error display is enabled
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post("/refunds")
async def process_refund(
    request: RefundRequest,
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Request a refund for the most recent local refund of an order."""
    try:
        await payment_gateway.process_refund(request.order_id, request.amount, request.reason)
    except PaymentProcessingError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PaymentSyncError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return {"success": True, "order_id": request.order_id}


@router.get("/orders/{order_id}/transaction")
async def get_transaction_url(
    order_id: int,
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Dashboard link of an order's checkout session."""
    order = payment_gateway.store.get_order(order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    url = payment_gateway.transaction_url(order)
    if url is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order has no transaction")
    return {"order_id": order_id, "url": url}


@router.post("/products/{product_id}/sync", response_model=SyncResponse)
async def sync_product(
    product_id: int,
    background_tasks: BackgroundTasks,
    worker: SyncWorker = Depends(get_sync_worker),
):
    """Enqueue whatever a product (or variation) needs and drain the queue in the background."""
    local = worker.store.get_product(product_id)
    if local is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    if local.type == "variation":
        jobs = await worker.on_variation_saved(product_id)
    else:
        jobs = await worker.on_product_saved(product_id)

    if jobs:
        background_tasks.add_task(worker.process_sync_queue)

    logger.info("Product sync requested", product_id=product_id, jobs_enqueued=len(jobs))
    return {"enqueued": _jobs(jobs)}


@router.post("/gateway/settings", response_model=SyncResponse)
async def update_gateway_settings(
    request: GatewaySettingsRequest,
    background_tasks: BackgroundTasks,
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
    worker: SyncWorker = Depends(get_sync_worker),
):
    """
    Save the gateway settings.

    Enabling requires a valid API key; switching the gateway on or off enqueues
    the webhook and catalog syncs that follow from it.
    """
    options = payment_gateway.store.get_gateway_options()
    was_enabled = options.enabled

    if request.api_key is not None:
        try:
            options.api_key = payment_gateway.validate_api_key(request.api_key)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if request.enabled and not options.api_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An API key is required to enable the payment method",
        )

    options.enabled = request.enabled
    payment_gateway.store.save_gateway_options(options)

    jobs = await worker.on_gateway_settings_changed(was_enabled, request.enabled)
    if jobs:
        background_tasks.add_task(worker.process_sync_queue)

    logger.info(
        "Gateway settings updated",
        enabled=request.enabled,
        was_enabled=was_enabled,
        jobs_enqueued=len(jobs),
    )
    return {"enqueued": _jobs(jobs)}
