"""
FastAPI application entry point.
Initializes the FastAPI app, configures logging, and includes the checkout
return, webhook and payment operation routes.
"""

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.routers import orders, payments, webhooks
from app.utils.logger import configure_logging

# Configure logging first
configure_logging()
logger = structlog.get_logger()

# Create FastAPI app
app = FastAPI(
    title="Payment Sync Service",
    description="Keeps a store catalog and its orders in sync with the payment platform",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)  # Live and test mode payment platform webhooks
app.include_router(orders.router)  # Checkout return flow
app.include_router(payments.router)  # Store-facing payment operations


@app.on_event("startup")
async def startup_event():
    """Application startup event."""
    logger.info(
        "Payment Sync Service started",
        environment=settings.app_environment,
        store_backend=settings.local_store_backend,
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event."""
    logger.info("Payment Sync Service shutting down")


@app.get("/")
async def root():
    """Root endpoint - also serves as a simple health check."""
    return {
        "status": "healthy",
        "service": "Payment Sync Service",
        "version": "1.0.0",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "store_backend": settings.local_store_backend,
    }


@app.get("/healthz")
async def healthz():
    """Alternative health check endpoint (Kubernetes-style)."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
