from fastapi import Depends
from datetime import datetime
from typing import List, Optional
from urllib.parse import urlparse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload
import logging
import uuid

from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import (
    AuthorizationError, NotFoundError, PaymentAmountMismatchError, PaymentError,
    SchedulingConflictError, ValidationError
)
from app.core.pricing import quote_booking
from app.core.timezone_utils import ensure_utc, utcnow
from app.models.audit_log import AuditLog
from app.models.booking import Booking, BookingStatus
from app.models.payment import Payment, PaymentStatus, PaymentType
from app.models.tutor_profile import TutorProfile
from app.models.user import User, UserRole
from app.schemas.booking import LessonAction
from app.services.booking_state_machine import (
    ActorRole, BookingAction, Transition, action_for_status_request, is_terminal, resolve_transition
)
from app.services.notification_service import NotificationService, get_notification_service
from app.services.scheduling_service import SchedulingService
from app.services.stripe_service import CheckoutResult, PaidCheckout, StripeService, get_stripe_service

logger = logging.getLogger(__name__)


# Timestamp each target status stamps on the booking
_STATUS_TIMESTAMPS = {
    BookingStatus.PENDING: "approved_at",
    BookingStatus.IN_PROGRESS: "lesson_started_at",
    BookingStatus.AWAITING_REVIEW: "lesson_ended_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.DISPUTED: "disputed_at",
    BookingStatus.CANCELLED: "cancelled_at",
}

_CONFIRMATION_FLAGS = {
    (BookingAction.CONFIRM_START, ActorRole.STUDENT): ("student_confirmed_start", "tutor_confirmed_start"),
    (BookingAction.CONFIRM_START, ActorRole.TUTOR): ("tutor_confirmed_start", "student_confirmed_start"),
    (BookingAction.CONFIRM_END, ActorRole.STUDENT): ("student_confirmed_end", "tutor_confirmed_end"),
    (BookingAction.CONFIRM_END, ActorRole.TUTOR): ("tutor_confirmed_end", "student_confirmed_end"),
}

_NOT_PAYABLE_MESSAGES = {
    BookingStatus.REQUESTED: "This booking is awaiting tutor approval. You can pay once the tutor accepts your request.",
    BookingStatus.REJECTED: "This booking request was declined by the tutor.",
    BookingStatus.CANCELLED: "This booking has been cancelled.",
}

# Closed before any payment was taken; a payment arriving later is refunded
_CLOSED_UNPAID_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.REJECTED})


def booking_with_parties():
    """Booking query that also loads both parties, as responses and emails need them"""
    return select(Booking).options(
        selectinload(Booking.student),
        selectinload(Booking.tutor_profile).selectinload(TutorProfile.user)
    )


def actor_role_for(booking: Booking, user: User) -> ActorRole:
    if booking.student_id == user.id:
        return ActorRole.STUDENT
    if booking.tutor_profile.user_id == user.id:
        return ActorRole.TUTOR
    raise AuthorizationError("You are not authorized to manage this booking")


def _is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class BookingService:
    """Applies booking lifecycle transitions.

    Every mutation follows the same shape: lock the booking row, validate
    the actor and the edge, run the Stripe side effect if the edge has one,
    mutate, audit, commit. Emails go out after the commit and can never undo
    it.
    """

    def __init__(self, db: AsyncSession, payments: StripeService, notifications: NotificationService):
        self.db = db
        self.payments = payments
        self.notifications = notifications
        self.scheduling = SchedulingService(db)

    # Loading

    async def _get_booking(self, booking_id: uuid.UUID) -> Booking:
        result = await self.db.execute(
            booking_with_parties()
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    async def _lock_booking(self, booking_id: uuid.UUID) -> Booking:
        """Load a booking holding its row lock until commit or rollback.

        SELECT ... FOR UPDATE is a no-op on SQLite, so the lock is taken with
        an UPDATE, which locks on every backend.
        """
        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise NotFoundError("Booking not found")

        result = await self.db.execute(
            booking_with_parties()
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def get_booking_for_party(self, booking_id: uuid.UUID, user: User) -> Booking:
        booking = await self._get_booking(booking_id)
        actor_role_for(booking, user)
        return booking

    async def list_bookings(self, user: User, status: Optional[BookingStatus] = None) -> List[Booking]:
        """Bookings the user is a party to, newest session first"""
        query = booking_with_parties()
        if user.role == UserRole.TUTOR:
            query = query.join(TutorProfile, Booking.tutor_profile_id == TutorProfile.id).where(TutorProfile.user_id == user.id)
        else:
            query = query.where(Booking.student_id == user.id)

        if status:
            query = query.where(Booking.status == status)

        result = await self.db.execute(query.order_by(Booking.start_at.desc()))
        return list(result.scalars().all())

    # Bookkeeping

    def _apply(self, booking: Booking, transition: Transition, now: datetime) -> None:
        booking.status = transition.target
        timestamp_field = _STATUS_TIMESTAMPS.get(transition.target)
        if timestamp_field and getattr(booking, timestamp_field) is None:
            setattr(booking, timestamp_field, now)

    def _audit(self, booking: Booking, action: str, source: Optional[BookingStatus], actor: Optional[User], **extra) -> None:
        diff = {"from": source.value if source else None, "to": booking.status.value}
        diff.update(extra)
        self.db.add(AuditLog(
            actor_user_id=actor.id if actor else None,
            action=action,
            entity="booking",
            entity_id=str(booking.id),
            diff=diff
        ))

    def _record_payment(self, booking: Booking, payment_type: PaymentType, status: PaymentStatus,
                        amount_cents: int, reference: Optional[str] = None, failure_reason: Optional[str] = None) -> None:
        self.db.add(Payment(
            booking_id=booking.id,
            type=payment_type,
            status=status,
            amount_cents=amount_cents,
            stripe_reference=reference,
            failure_reason=failure_reason
        ))

    # Creation

    async def create_booking(
        self,
        student: User,
        tutor_profile_id: uuid.UUID,
        subject: str,
        start_at: datetime,
        end_at: datetime,
        notes: Optional[str] = None
    ) -> Booking:
        """Request a session; the tutor must approve it before payment"""
        if student.role != UserRole.STUDENT:
            raise AuthorizationError("Only students can create bookings")

        if not subject or not subject.strip():
            raise ValidationError("Missing required fields")

        start_at = ensure_utc(start_at)
        end_at = ensure_utc(end_at)
        self.scheduling.validate_interval(start_at, end_at)

        result = await self.db.execute(select(TutorProfile).where(TutorProfile.id == tutor_profile_id))
        tutor_profile = result.scalar_one_or_none()
        if tutor_profile is None:
            raise NotFoundError("Tutor not found")
        if not tutor_profile.profile_complete:
            raise ValidationError("Tutor profile is not complete")

        try:
            await self.scheduling.lock_tutor_calendar(tutor_profile_id)
            if await self.scheduling.has_conflict(tutor_profile_id, start_at, end_at):
                raise SchedulingConflictError()

            price = quote_booking(tutor_profile.hourly_rate_cents, start_at, end_at)
            booking = Booking(
                id=uuid.uuid4(),
                student_id=student.id,
                tutor_profile_id=tutor_profile_id,
                subject=subject.strip(),
                notes=notes,
                start_at=start_at,
                end_at=end_at,
                status=BookingStatus.REQUESTED,
                price_cents=price.price_cents,
                platform_fee_cents=price.platform_fee_cents,
                tutor_earnings_cents=price.tutor_earnings_cents
            )
            self.db.add(booking)
            await self.db.flush()
            self._audit(booking, "create", None, student)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Booking {booking.id} requested by student {student.id} for tutor {tutor_profile_id}")
        booking = await self._get_booking(booking.id)
        await self.notifications.send_booking_request(booking)
        return booking

    # Tutor decisions

    async def update_status(
        self,
        booking_id: uuid.UUID,
        user: User,
        target: BookingStatus,
        tutor_message: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Booking:
        """Apply a status change requested as a target status (approve, reject, cancel)"""
        booking = await self._get_booking(booking_id)
        actor_role_for(booking, user)
        action = action_for_status_request(booking.status, target)

        if action == BookingAction.APPROVE:
            return await self.approve(booking_id, user, tutor_message)
        if action == BookingAction.REJECT:
            return await self.reject(booking_id, user, tutor_message)
        return await self.cancel(booking_id, user, reason)

    async def approve(self, booking_id: uuid.UUID, user: User, tutor_message: Optional[str] = None) -> Booking:
        booking = await self._transition(booking_id, user, BookingAction.APPROVE, tutor_message=tutor_message)
        await self.notifications.send_booking_approved(booking)
        return booking

    async def reject(self, booking_id: uuid.UUID, user: User, tutor_message: Optional[str] = None) -> Booking:
        booking = await self._transition(booking_id, user, BookingAction.REJECT, tutor_message=tutor_message)
        await self.notifications.send_booking_rejected(booking)
        return booking

    async def _transition(self, booking_id: uuid.UUID, user: User, action: BookingAction, **fields) -> Booking:
        """Edge with no side effect beyond the status change and the given fields"""
        try:
            booking = await self._lock_booking(booking_id)
            source = booking.status
            transition = resolve_transition(source, action, actor_role_for(booking, user))

            self._apply(booking, transition, utcnow())
            for name, value in fields.items():
                if value is not None:
                    setattr(booking, name, value)
            self._audit(booking, action.value, source, user)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Booking {booking_id}: {source.value} -> {booking.status.value} by {user.id}")
        return booking

    # Cancellation

    async def cancel(self, booking_id: uuid.UUID, user: User, reason: Optional[str] = None) -> Booking:
        """Cancel before the session starts, refunding a paid booking.

        An unpaid booking's open checkout is expired first. A failed refund
        does not block the cancellation; it is recorded as a failed REFUND
        payment for manual reconciliation.
        """
        try:
            booking = await self._lock_booking(booking_id)
            source = booking.status
            transition = resolve_transition(source, BookingAction.CANCEL, actor_role_for(booking, user))

            if booking.checkout_session_id and not booking.is_paid:
                await self._close_checkout(booking)
            if booking.is_paid and booking.refund_reference is None:
                await self._refund(booking, reason or "Lesson cancelled")

            self._apply(booking, transition, utcnow())
            if reason:
                booking.cancellation_reason = reason
            self._audit(booking, BookingAction.CANCEL.value, source, user, refunded=booking.refund_reference is not None)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Booking {booking_id} cancelled by {user.id} from {source.value}")
        await self.notifications.send_booking_cancelled(booking, user)
        return booking

    async def _close_checkout(self, booking: Booking) -> None:
        """Stop an unpaid booking's checkout from taking payment.

        A session that was paid before it could be expired is adopted as the
        booking's payment, so the cancellation refunds it.
        """
        try:
            checkout = await self.payments.expire_checkout(booking.checkout_session_id)
        except PaymentError as e:
            logger.error(f"Could not expire checkout {booking.checkout_session_id} for booking {booking.id}: {e}")
            return

        if checkout.status == "complete" and checkout.payment_ref:
            logger.warning(f"Checkout {checkout.checkout_ref} for booking {booking.id} was paid before cancellation")
            booking.payment_reference = checkout.payment_ref
            self._record_payment(booking, PaymentType.CHARGE, PaymentStatus.SUCCEEDED, booking.price_cents,
                                 checkout.payment_ref)

    async def _refund(self, booking: Booking, reason: str, amount_cents: Optional[int] = None) -> None:
        amount_cents = booking.price_cents if amount_cents is None else amount_cents
        try:
            refund_ref = await self.payments.refund(booking.id, booking.payment_reference, reason)
        except PaymentError as e:
            logger.error(
                f"Refund failed for booking {booking.id} (payment {booking.payment_reference}); "
                f"requires manual reconciliation: {e}"
            )
            self._record_payment(booking, PaymentType.REFUND, PaymentStatus.FAILED, amount_cents,
                                 booking.payment_reference, failure_reason=str(e))
            return

        booking.refund_reference = refund_ref
        self._record_payment(booking, PaymentType.REFUND, PaymentStatus.SUCCEEDED, amount_cents, refund_ref)

    # Lesson

    async def add_meeting_link(self, booking_id: uuid.UUID, user: User, meeting_link: Optional[str]) -> Booking:
        try:
            booking = await self._lock_booking(booking_id)
            if actor_role_for(booking, user) != ActorRole.TUTOR:
                raise AuthorizationError("Only tutors can add meeting links")
            if not meeting_link:
                raise ValidationError("Meeting link is required")
            if not _is_valid_url(meeting_link):
                raise ValidationError("Please enter a valid URL")
            if is_terminal(booking.status):
                raise ValidationError(f"Cannot add a meeting link to a {booking.status.value} booking")

            booking.meeting_link = meeting_link
            self._audit(booking, "add_meeting_link", booking.status, user)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return booking

    async def perform_lesson_action(
        self,
        booking_id: uuid.UUID,
        user: User,
        action: LessonAction,
        meeting_link: Optional[str] = None,
        meeting_notes: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Booking:
        """Dispatch an action from the lesson page"""
        if action == LessonAction.ADD_MEETING_LINK:
            return await self.add_meeting_link(booking_id, user, meeting_link)
        if action == LessonAction.CONFIRM_START:
            return await self.confirm_start(booking_id, user)
        if action == LessonAction.CONFIRM_END:
            return await self.confirm_end(booking_id, user, meeting_notes)
        if action == LessonAction.VERIFY_COMPLETE:
            return await self.verify_complete(booking_id, user)
        if action == LessonAction.CANCEL:
            return await self.cancel(booking_id, user, reason)
        if action == LessonAction.DISPUTE:
            return await self.dispute(booking_id, user, reason)
        raise ValidationError("Invalid action")

    async def confirm_start(self, booking_id: uuid.UUID, user: User) -> Booking:
        return await self._confirm(booking_id, user, BookingAction.CONFIRM_START)

    async def confirm_end(self, booking_id: uuid.UUID, user: User, meeting_notes: Optional[str] = None) -> Booking:
        return await self._confirm(booking_id, user, BookingAction.CONFIRM_END, meeting_notes=meeting_notes)

    async def _confirm(self, booking_id: uuid.UUID, user: User, action: BookingAction,
                       meeting_notes: Optional[str] = None) -> Booking:
        """Record one party's confirmation; the second one moves the booking on.

        Both flags are read from the locked row after setting the caller's, so
        two simultaneous confirmations serialize and exactly one of them sees
        the pair complete.
        """
        try:
            booking = await self._lock_booking(booking_id)
            source = booking.status
            actor = actor_role_for(booking, user)
            transition = resolve_transition(source, action, actor)
            own_flag, other_flag = _CONFIRMATION_FLAGS[(action, actor)]

            if getattr(booking, own_flag):
                # Already confirmed: accepted, but the pair is not re-evaluated
                await self.db.commit()
                return booking

            setattr(booking, own_flag, True)
            if meeting_notes:
                booking.meeting_notes = meeting_notes
            if getattr(booking, other_flag):
                self._apply(booking, transition, utcnow())

            self._audit(booking, action.value, source, user)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if booking.status != source:
            logger.info(f"Booking {booking_id}: both parties confirmed, {source.value} -> {booking.status.value}")
        return booking

    async def dispute(self, booking_id: uuid.UUID, user: User, reason: Optional[str]) -> Booking:
        try:
            booking = await self._lock_booking(booking_id)
            source = booking.status
            transition = resolve_transition(source, BookingAction.DISPUTE, actor_role_for(booking, user))
            if not reason or not reason.strip():
                raise ValidationError("A reason is required to file a dispute")

            self._apply(booking, transition, utcnow())
            booking.dispute_reason = reason.strip()
            self._audit(booking, BookingAction.DISPUTE.value, source, user)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.warning(f"Booking {booking_id} disputed by {user.id} from {source.value}")
        await self.notifications.send_booking_disputed(booking)
        return booking

    async def verify_complete(self, booking_id: uuid.UUID, user: User) -> Booking:
        """Release escrow to the tutor and complete the booking.

        The booking only becomes COMPLETED once the transfer succeeded; on a
        processor failure it stays AWAITING_REVIEW and the action can be
        retried without risk of paying twice.
        """
        try:
            booking = await self._lock_booking(booking_id)
            source = booking.status
            transition = resolve_transition(source, BookingAction.VERIFY_COMPLETE, actor_role_for(booking, user))

            seller_account = booking.tutor_profile.stripe_account_id
            if not seller_account:
                raise ValidationError("The tutor has not connected a payout account yet")

            try:
                transfer = await self.payments.release_funds(
                    booking.id,
                    booking.payment_reference,
                    seller_account,
                    booking.price_cents,
                    booking.platform_fee_cents
                )
            except PaymentError as e:
                self._record_payment(booking, PaymentType.TRANSFER, PaymentStatus.FAILED, booking.tutor_earnings_cents,
                                     failure_reason=str(e))
                await self.db.commit()
                raise

            now = utcnow()
            booking.transfer_reference = transfer.transfer_ref
            booking.payment_released_at = now
            self._apply(booking, transition, now)
            self._record_payment(booking, PaymentType.TRANSFER, PaymentStatus.SUCCEEDED, transfer.amount_cents,
                                 transfer.transfer_ref)
            self._audit(booking, BookingAction.VERIFY_COMPLETE.value, source, user)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Booking {booking_id} completed, transfer {booking.transfer_reference}")
        await self.notifications.send_lesson_completed(booking)
        return booking

    # Payment

    async def create_checkout(self, booking_id: uuid.UUID, user: User) -> CheckoutResult:
        """Start (or resume) payment for an approved booking"""
        try:
            booking = await self._lock_booking(booking_id)
            if booking.student_id != user.id:
                raise AuthorizationError("Unauthorized - You can only pay for your own bookings")

            if booking.status != BookingStatus.PENDING:
                raise ValidationError(_NOT_PAYABLE_MESSAGES.get(booking.status, "This booking has already been paid for."))

            if booking.checkout_session_id:
                existing = await self.payments.get_checkout(booking.checkout_session_id)
                if existing.status == "open":
                    await self.db.commit()
                    return existing
                if existing.status == "complete":
                    raise ValidationError("This booking has already been paid for. Confirmation is on its way.")

            checkout = await self.payments.create_checkout(
                booking_id=booking.id,
                payer_email=booking.student.email,
                amount_cents=booking.price_cents,
                seller_account=booking.tutor_profile.stripe_account_id,
                description=f"Tutoring Session: {booking.subject}",
                success_url=f"{settings.FRONTEND_URL}/bookings/{booking.id}?success=true",
                cancel_url=f"{settings.FRONTEND_URL}/bookings/{booking.id}?cancelled=true"
            )
            booking.checkout_session_id = checkout.checkout_ref
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return checkout

    async def mark_paid(self, paid: PaidCheckout) -> Optional[Booking]:
        """Confirm a booking from a processor payment notification.

        Replays are no-ops. A payment for a booking cancelled or rejected
        before it was paid is refunded; any other payment for a booking no
        longer PENDING is logged for reconciliation. A paid amount different
        from the booking price is refused.
        """
        try:
            booking = await self._lock_booking(paid.booking_id)
        except NotFoundError:
            logger.warning(f"Payment notification for unknown booking {paid.booking_id}")
            return None

        try:
            if paid.payment_status != "paid":
                logger.info(f"Checkout {paid.checkout_ref} for booking {booking.id} completed with status {paid.payment_status}")
                await self.db.commit()
                return booking

            if booking.status != BookingStatus.PENDING:
                if booking.payment_reference and booking.payment_reference == paid.payment_ref:
                    logger.info(f"Duplicate payment notification for booking {booking.id} ignored")
                elif booking.status in _CLOSED_UNPAID_STATUSES and booking.payment_reference is None and paid.payment_ref:
                    await self._refund_late_payment(booking, paid)
                else:
                    logger.error(
                        f"Payment {paid.payment_ref} received for booking {booking.id} in status "
                        f"{booking.status.value}; requires manual reconciliation"
                    )
                await self.db.commit()
                return booking

            if paid.amount_cents != booking.price_cents or paid.currency != settings.STRIPE_CURRENCY:
                logger.error(
                    f"Paid amount {paid.amount_cents} {paid.currency} for booking {booking.id} does not match "
                    f"price {booking.price_cents} {settings.STRIPE_CURRENCY}"
                )
                raise PaymentAmountMismatchError("Paid amount does not match the booking price")

            source = booking.status
            transition = resolve_transition(source, BookingAction.MARK_PAID, ActorRole.PAYMENT_PROCESSOR)
            booking.payment_reference = paid.payment_ref
            booking.checkout_session_id = paid.checkout_ref
            self._apply(booking, transition, utcnow())
            self._record_payment(booking, PaymentType.CHARGE, PaymentStatus.SUCCEEDED, paid.amount_cents, paid.payment_ref)
            self._audit(booking, BookingAction.MARK_PAID.value, source, None)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Booking {booking.id} confirmed after payment {paid.payment_ref}")
        return booking

    async def _refund_late_payment(self, booking: Booking, paid: PaidCheckout) -> None:
        """Refund a payment that landed after the booking was closed without one"""
        logger.warning(
            f"Payment {paid.payment_ref} received for booking {booking.id} in status "
            f"{booking.status.value}; refunding"
        )
        booking.payment_reference = paid.payment_ref
        self._record_payment(booking, PaymentType.CHARGE, PaymentStatus.SUCCEEDED, paid.amount_cents, paid.payment_ref)
        await self._refund(booking, "Payment received after the booking was closed", paid.amount_cents)
        self._audit(booking, "refund_late_payment", booking.status, None,
                    refunded=booking.refund_reference is not None)


def get_booking_service(
    db: AsyncSession = Depends(get_db),
    payments: StripeService = Depends(get_stripe_service),
    notifications: NotificationService = Depends(get_notification_service)
) -> BookingService:
    """FastAPI dependency"""
    return BookingService(db, payments, notifications)
