from fastapi import APIRouter

from app.api.v1.endpoints import booking, payments, stripe_webhook

api_router = APIRouter()

api_router.include_router(booking.router, prefix="/bookings", tags=["bookings"])
api_router.include_router(payments.router, tags=["payments"])
api_router.include_router(stripe_webhook.router, tags=["webhooks"])
