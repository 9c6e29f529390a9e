"""Main API router that includes all endpoint routers."""

from fastapi import APIRouter

from paysync.api.v1 import bookings, payments, reconciliation, webhooks

api_router = APIRouter()

# Bookings
api_router.include_router(bookings.router, prefix="/bookings", tags=["Bookings"])

# Payments
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])

# Webhooks
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])

# Reconciliation
api_router.include_router(reconciliation.router, prefix="/reconciliation", tags=["Reconciliation"])
