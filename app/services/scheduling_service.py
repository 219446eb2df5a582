from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
import logging
import uuid

from app.core.config import settings
from app.core.exceptions import NotFoundError, ValidationError
from app.core.timezone_utils import ensure_utc, utcnow
from app.models.booking import Booking, NON_TERMINAL_STATUSES
from app.models.tutor_profile import TutorProfile

logger = logging.getLogger(__name__)


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open overlap: [a) and [b) touching end-to-start do not overlap"""
    return start_a < end_b and start_b < end_a


class SchedulingService:
    """Interval validation and conflict detection for a tutor's calendar"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def validate_interval(self, start_at: datetime, end_at: datetime, now: Optional[datetime] = None) -> None:
        """Reject past, inverted or out-of-bounds session intervals"""
        now = now or utcnow()
        start_at = ensure_utc(start_at)
        end_at = ensure_utc(end_at)

        if start_at <= now:
            raise ValidationError("Cannot book in the past")

        if end_at <= start_at:
            raise ValidationError("End time must be after start time")

        duration = end_at - start_at
        if duration < timedelta(minutes=settings.MIN_SESSION_MINUTES) or duration > timedelta(minutes=settings.MAX_SESSION_MINUTES):
            raise ValidationError(
                f"Session must be between {settings.MIN_SESSION_MINUTES} minutes "
                f"and {settings.MAX_SESSION_MINUTES // 60} hours"
            )

    async def lock_tutor_calendar(self, tutor_profile_id: uuid.UUID) -> None:
        """Serialize booking creation for one tutor until the current transaction ends.

        An UPDATE takes a row lock on PostgreSQL and the database write lock on
        SQLite, so a concurrent creator for the same tutor waits here until
        this transaction commits and then sees its booking in the conflict
        check.
        """
        result = await self.db.execute(
            update(TutorProfile)
            .where(TutorProfile.id == tutor_profile_id)
            .values(booking_lock_version=TutorProfile.booking_lock_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Tutor not found")

    async def has_conflict(
        self,
        tutor_profile_id: uuid.UUID,
        start_at: datetime,
        end_at: datetime,
        exclude_booking_id: Optional[uuid.UUID] = None
    ) -> bool:
        """True if [start_at, end_at) overlaps a non-terminal booking of the tutor"""
        query = select(Booking.id).where(
            Booking.tutor_profile_id == tutor_profile_id,
            Booking.status.in_(NON_TERMINAL_STATUSES),
            Booking.start_at < ensure_utc(end_at),
            Booking.end_at > ensure_utc(start_at)
        )
        if exclude_booking_id is not None:
            query = query.where(Booking.id != exclude_booking_id)

        result = await self.db.execute(query.limit(1))
        conflict_id = result.scalar_one_or_none()
        if conflict_id is not None:
            logger.info(f"Interval {start_at} - {end_at} for tutor {tutor_profile_id} conflicts with booking {conflict_id}")
        return conflict_id is not None
