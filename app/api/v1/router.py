"""v1 API router."""

from fastapi import APIRouter

from app.api.v1.endpoints import payments, subscriptions

router = APIRouter(prefix="/v1")
router.include_router(subscriptions.router, prefix="/subscriptions", tags=["v1-subscriptions"])
router.include_router(payments.router, prefix="/payments", tags=["v1-payments"])
