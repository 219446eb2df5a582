from fastapi import APIRouter, Depends, HTTPException, Response, status
import logging

from app.core.auth import get_current_user
from app.core.exceptions import TutorHubException
from app.core.rate_limit import RateLimitResult, rate_limit
from app.models.user import User
from app.schemas.booking import CheckoutRequest, CheckoutResponse, Envelope
from app.services.booking_service import BookingService, get_booking_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/checkout", response_model=Envelope)
async def create_checkout_session(
    request: CheckoutRequest,
    response: Response,
    current_user: User = Depends(get_current_user),
    limit: RateLimitResult = Depends(rate_limit("checkout", preset="strict")),
    service: BookingService = Depends(get_booking_service)
):
    """Create (or resume) the Stripe Checkout session for an approved booking"""
    response.headers.update(limit.headers)
    try:
        checkout = await service.create_checkout(request.booking_id, current_user)
        return Envelope(data=CheckoutResponse(session_id=checkout.checkout_ref, url=checkout.checkout_url))

    except TutorHubException:
        raise
    except Exception as e:
        logger.error(f"Failed to create checkout for booking {request.booking_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create checkout session"
        )
