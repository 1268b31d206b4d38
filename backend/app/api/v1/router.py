"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import (
    balances, restaurant_balances, restaurant_groups,
    subscriptions, webhooks, admin_billing, notifications
)

router = APIRouter()

# Client ledger endpoints
router.include_router(balances.router)

# Restaurant owner endpoints
router.include_router(restaurant_balances.router)
router.include_router(restaurant_groups.router)
router.include_router(subscriptions.router)

# Payment provider callbacks
router.include_router(webhooks.router)

# Admin endpoints
router.include_router(admin_billing.router)

# Notifications
router.include_router(notifications.router)
