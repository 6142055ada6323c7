"""
Fulfillment Backend
FastAPI application entry point

- Checkout (cart -> order) and coupon preview
- Payment confirmation and admin timeline edits
- FedEx shipping: address validation, rates, labels, tracking, pickups
- Background tracking sync
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from starlette.responses import JSONResponse
from sqlalchemy import text

from fulfillment.api.routes import checkout, orders, shipping
from fulfillment.core.config import settings
from fulfillment.core.database import AsyncSessionLocal
from fulfillment.core.exceptions import FulfillmentError
from fulfillment.services.fedex.client import close_carrier_clients
from fulfillment.services.tracking_jobs import tracking_sync_runner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the tracking sync on startup; stop it and close HTTP clients on shutdown."""
    if settings.TRACKING_SYNC_ENABLED:
        await tracking_sync_runner.start()
        logger.info("Tracking sync ENABLED")
    else:
        logger.info("Tracking sync DISABLED via config")

    yield

    await tracking_sync_runner.stop()

    # Close HTTP clients to prevent connection leaks
    await close_carrier_clients()
    logger.info("FedEx HTTP clients closed")


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Order fulfillment and FedEx carrier integration API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)


async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, "error": exc.to_dict()},
    )


app.add_exception_handler(FulfillmentError, fulfillment_error_handler)

app.include_router(checkout.router, prefix="/api", tags=["Checkout"])
app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(shipping.router, prefix="/api", tags=["Shipping"])


@app.get("/health", tags=["Health"])
async def health_check():
    """Returns 503 if database is unreachable."""
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "fedex_environment": settings.FEDEX_ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
