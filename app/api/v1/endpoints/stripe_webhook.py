from fastapi import APIRouter, Request, HTTPException, status, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select
from typing import Any, Dict, Optional
import logging
import uuid

from app.core.database import get_db
from app.core.exceptions import TutorHubException
from app.models.stripe_models import StripeWebhookEvent
from app.services.booking_service import BookingService, get_booking_service
from app.services.stripe_service import StripeService, get_stripe_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/payments")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
    booking_service: BookingService = Depends(get_booking_service)
):
    """Handle Stripe webhook events with signature verification and idempotency"""
    body = await request.body()
    event = stripe_service.construct_event(body, request.headers.get("stripe-signature"))

    event_id = event.get("id")
    event_type = event.get("type")
    try:
        if event_id:
            existing = await db.execute(
                select(StripeWebhookEvent.id).where(StripeWebhookEvent.stripe_event_id == event_id)
            )
            if existing.scalar_one_or_none():
                logger.info(f"Webhook event {event_id} already processed")
                return {"status": "already_processed"}

        if event_type == "checkout.session.completed":
            booking_id = await handle_checkout_session_completed(event, stripe_service, booking_service)

        elif event_type == "checkout.session.expired":
            booking_id = handle_checkout_session_expired(event)

        elif event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
            booking_id = handle_payment_intent(event)

        else:
            logger.info(f"Unhandled webhook event type {event_type} ({event_id})")
            booking_id = None

        if event_id:
            db.add(StripeWebhookEvent(stripe_event_id=event_id, event_type=event_type, booking_id=booking_id))
            try:
                await db.commit()
            except IntegrityError:
                # A concurrent delivery of the same event got there first
                await db.rollback()
                return {"status": "already_processed"}

        return {"status": "success"}

    except TutorHubException:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.error(f"Webhook {event_type} ({event_id}) processing failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )


async def handle_checkout_session_completed(
    event: Dict[str, Any],
    stripe_service: StripeService,
    booking_service: BookingService
) -> Optional[uuid.UUID]:
    """Handle checkout.session.completed: the student paid into escrow"""
    paid = stripe_service.parse_checkout_completed(event)
    if paid is None:
        return None

    await booking_service.mark_paid(paid)
    return paid.booking_id


def handle_checkout_session_expired(event: Dict[str, Any]) -> Optional[uuid.UUID]:
    """Handle checkout.session.expired: the booking stays PENDING and can be paid again"""
    session = event.get("data", {}).get("object", {})
    booking_id = _booking_id_from_metadata(session)
    logger.info(f"Checkout session {session.get('id')} expired for booking {booking_id}")
    return booking_id


def handle_payment_intent(event: Dict[str, Any]) -> Optional[uuid.UUID]:
    """Handle payment_intent.* events; the booking moves on checkout completion only"""
    intent = event.get("data", {}).get("object", {})
    booking_id = _booking_id_from_metadata(intent)
    if event.get("type") == "payment_intent.payment_failed":
        error = (intent.get("last_payment_error") or {}).get("message")
        logger.warning(f"Payment {intent.get('id')} failed for booking {booking_id}: {error}")
    else:
        logger.info(f"Payment {intent.get('id')} succeeded for booking {booking_id}")
    return booking_id


def _booking_id_from_metadata(obj: Dict[str, Any]) -> Optional[uuid.UUID]:
    booking_id = (obj.get("metadata") or {}).get("booking_id")
    try:
        return uuid.UUID(booking_id) if booking_id else None
    except ValueError:
        return None
