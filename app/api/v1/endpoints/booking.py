from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from typing import Optional
import logging
import uuid

from app.core.auth import get_current_user
from app.core.exceptions import TutorHubException
from app.core.rate_limit import RateLimitResult, rate_limit
from app.models.booking import BookingStatus
from app.models.user import User
from app.schemas.booking import (
    BookingCreateRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
    Envelope,
    LessonActionRequest
)
from app.services.booking_service import BookingService, get_booking_service

logger = logging.getLogger(__name__)

router = APIRouter()

_STATUS_MESSAGES = {
    BookingStatus.PENDING: "Booking approved",
    BookingStatus.REJECTED: "Booking rejected",
    BookingStatus.CANCELLED: "Booking cancelled",
}


@router.post("", response_model=Envelope, status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: BookingCreateRequest,
    response: Response,
    current_user: User = Depends(get_current_user),
    limit: RateLimitResult = Depends(rate_limit("create_booking")),
    service: BookingService = Depends(get_booking_service)
):
    """Request a session with a tutor"""
    response.headers.update(limit.headers)
    try:
        booking = await service.create_booking(
            current_user,
            request.tutor_profile_id,
            request.subject,
            request.start_time,
            request.end_time,
            request.notes
        )
        return Envelope(data=BookingResponse.model_validate(booking), message="Booking request sent to tutor")

    except TutorHubException:
        raise
    except Exception as e:
        logger.error(f"Failed to create booking for user {current_user.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create booking"
        )


@router.get("", response_model=Envelope)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service)
):
    """Bookings the current user is a party to"""
    bookings = await service.list_bookings(current_user, status_filter)
    return Envelope(data=[BookingResponse.model_validate(b) for b in bookings])


@router.get("/{booking_id}", response_model=Envelope)
async def get_booking(
    booking_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service)
):
    booking = await service.get_booking_for_party(booking_id, current_user)
    return Envelope(data=BookingResponse.model_validate(booking))


@router.patch("/{booking_id}", response_model=Envelope)
async def update_booking_status(
    booking_id: uuid.UUID,
    request: BookingStatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service)
):
    """Approve, reject or cancel a booking"""
    try:
        booking = await service.update_status(
            booking_id,
            current_user,
            request.status,
            tutor_message=request.tutor_message,
            reason=request.reason
        )
        return Envelope(data=BookingResponse.model_validate(booking), message=_STATUS_MESSAGES.get(booking.status))

    except TutorHubException:
        raise
    except Exception as e:
        logger.error(f"Failed to update booking {booking_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update booking"
        )


@router.post("/{booking_id}/lesson", response_model=Envelope)
async def lesson_action(
    booking_id: uuid.UUID,
    request: LessonActionRequest,
    response: Response,
    current_user: User = Depends(get_current_user),
    limit: RateLimitResult = Depends(rate_limit("lesson_action")),
    service: BookingService = Depends(get_booking_service)
):
    """Meeting link, start/end confirmations, verification, cancel and dispute"""
    response.headers.update(limit.headers)
    try:
        booking = await service.perform_lesson_action(
            booking_id,
            current_user,
            request.action,
            meeting_link=request.meeting_link,
            meeting_notes=request.meeting_notes,
            reason=request.reason
        )
        return Envelope(data=BookingResponse.model_validate(booking), message=f"{request.action.value} recorded")

    except TutorHubException:
        raise
    except Exception as e:
        logger.error(f"Lesson action {request.action.value} failed for booking {booking_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to perform lesson action"
        )
