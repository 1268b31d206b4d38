"""
FastAPI Application Entry Point.

This is the main application file for the Restaurant Loyalty Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from backend.app.core.config import settings
from backend.app.core.redis_client import ping_redis
from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.db.session import engine, Base
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from backend.app.models.user import User
from backend.app.models.restaurant import Restaurant, RestaurantGroup, GroupMembership, GroupJoinRequest
from backend.app.models.account_balance import AccountBalance
from backend.app.models.ledger_transaction import LedgerTransaction
from backend.app.models.topup_package import TopUpPackage
from backend.app.models.plan import Plan
from backend.app.models.payment import Payment
from backend.app.models.subscription import Subscription
from backend.app.models.invoice import Invoice
from backend.app.models.webhook_event import WebhookEvent
from backend.app.models.notification import Notification

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Disposes the engine pool on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Loyalty ledger and subscription billing for restaurants",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "redis": "up" if await ping_redis() else "down",
        "app_name": settings.app_name,
        "version": settings.api_version,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with documentation links."""
    return {
        "message": "Welcome to Restaurant Loyalty Backend API",
        "docs": "/docs",
        "health": "/health",
    }
