from datetime import datetime
from typing import Optional
import logging

import pytz

from app.core.config import settings
from app.models.booking import Booking
from app.models.user import User
from app.services.email_service import EmailService

logger = logging.getLogger(__name__)


def _format_session_time(booking: Booking, recipient: User) -> str:
    """Session date and time range in the recipient's timezone"""
    try:
        tz = pytz.timezone(recipient.timezone or "UTC")
    except pytz.UnknownTimeZoneError:
        tz = pytz.utc

    start = _as_utc(booking.start_at).astimezone(tz)
    end = _as_utc(booking.end_at).astimezone(tz)
    return f"{start.strftime('%A, %B %d, %Y')} {start.strftime('%H:%M')} - {end.strftime('%H:%M')} ({tz.zone})"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value


def _format_amount(cents: int) -> str:
    return f"${cents / 100:.2f}"


class NotificationService:
    """Best-effort booking emails.

    Every public method swallows and logs its own failures: a lost email must
    never undo or block the booking change that triggered it.
    """

    def __init__(self, email_service: Optional[EmailService] = None):
        self.email_service = email_service or EmailService()

    def _booking_url(self, booking: Booking) -> str:
        return f"{settings.FRONTEND_URL}/bookings/{booking.id}"

    async def _deliver(self, kind: str, booking: Booking, recipient: User, subject: str, body: str) -> None:
        try:
            html = "".join(f"<p>{line}</p>" for line in body.split("\n") if line)
            await self.email_service.send(recipient.email, subject, html, text=body)
        except Exception as e:
            logger.error(f"Error sending {kind} email for booking {booking.id}: {e}")

    async def send_booking_request(self, booking: Booking) -> None:
        """Tell the tutor a student asked for a session"""
        tutor = booking.tutor_profile.user
        student = booking.student
        body = (
            f"Hi {tutor.first_name},\n"
            f"{student.full_name} requested a {booking.subject} session on {_format_session_time(booking, tutor)}.\n"
            f"Review the request: {self._booking_url(booking)}"
        )
        await self._deliver("booking request", booking, tutor, f"New booking request: {booking.subject}", body)

    async def send_booking_approved(self, booking: Booking) -> None:
        """Ask the student to pay for an approved session"""
        student = booking.student
        tutor = booking.tutor_profile.user
        body = (
            f"Hi {student.first_name},\n"
            f"{tutor.full_name} accepted your {booking.subject} session on {_format_session_time(booking, student)}.\n"
            f"Complete your payment of {_format_amount(booking.price_cents)} to confirm: {self._booking_url(booking)}"
        )
        if booking.tutor_message:
            body += f"\nMessage from your tutor: {booking.tutor_message}"
        await self._deliver("booking approved", booking, student, "Your booking was approved - complete payment", body)

    async def send_booking_rejected(self, booking: Booking) -> None:
        student = booking.student
        tutor = booking.tutor_profile.user
        body = (
            f"Hi {student.first_name},\n"
            f"{tutor.full_name} declined your {booking.subject} session on {_format_session_time(booking, student)}."
        )
        if booking.tutor_message:
            body += f"\nMessage from the tutor: {booking.tutor_message}"
        await self._deliver("booking rejected", booking, student, "Your booking request was declined", body)

    async def send_booking_cancelled(self, booking: Booking, cancelled_by: User) -> None:
        """Tell the other party a session was cancelled"""
        tutor = booking.tutor_profile.user
        student = booking.student
        recipient = tutor if cancelled_by.id == student.id else student
        body = (
            f"Hi {recipient.first_name},\n"
            f"{cancelled_by.full_name} cancelled the {booking.subject} session on {_format_session_time(booking, recipient)}."
        )
        if booking.refund_reference:
            body += f"\nA refund of {_format_amount(booking.price_cents)} has been issued."
        await self._deliver("booking cancelled", booking, recipient, "Session cancelled", body)

    async def send_lesson_completed(self, booking: Booking) -> None:
        """Tell the tutor their payout was released"""
        tutor = booking.tutor_profile.user
        body = (
            f"Hi {tutor.first_name},\n"
            f"{booking.student.full_name} verified the {booking.subject} session as complete.\n"
            f"{_format_amount(booking.tutor_earnings_cents)} has been released to your payout account."
        )
        await self._deliver("lesson completed", booking, tutor, "Payment released", body)

    async def send_booking_disputed(self, booking: Booking) -> None:
        for recipient in (booking.student, booking.tutor_profile.user):
            body = (
                f"Hi {recipient.first_name},\n"
                f"A dispute was filed for the {booking.subject} session on {_format_session_time(booking, recipient)}.\n"
                f"Reason: {booking.dispute_reason}\n"
                "Our team will review and contact you."
            )
            await self._deliver("booking disputed", booking, recipient, "Dispute filed", body)


def get_notification_service() -> NotificationService:
    """FastAPI dependency"""
    return NotificationService()
