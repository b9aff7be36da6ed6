"""
Checkout Settlement API - Main Application.

FastAPI application receiving gateway payment webhooks and exposing the sale
ledger, health and Prometheus metrics.
"""

import logging

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from api import __version__
from services.config import get_settings
from services.currency_service import build_rate_provider

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Create FastAPI application
app = FastAPI(
    title="Checkout Settlement API",
    description="Settles gateway payment events into the sale ledger and fans out integrations",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

# One rate cache per process, shared by every attribution dispatch
app.state.rate_provider = build_rate_provider()


@app.get("/health", tags=["Health"])
def health_check():
    """
    Health check endpoint.

    Returns the API status and version.
    """
    return {
        "status": "healthy",
        "version": __version__,
        "service": "checkout-settlement-api"
    }


@app.get("/", tags=["Root"])
def root():
    """
    Root endpoint with API information.
    """
    return {
        "message": "Checkout Settlement API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics"
    }


@app.get("/metrics", tags=["Health"])
def metrics():
    """Prometheus exposition of settlement and dispatch counters."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Import and include routers
from api.routers import sales, webhooks

app.include_router(webhooks.router, prefix="/api/v1", tags=["Webhooks"])
app.include_router(sales.router, prefix="/api/v1", tags=["Sales"])
