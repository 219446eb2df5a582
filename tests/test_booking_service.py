import asyncio
import uuid

import pytest
from sqlalchemy import select

from app.core.exceptions import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    PaymentAmountMismatchError,
    PaymentError,
    SessionInProgressError,
    ValidationError,
)
from app.models import AuditLog, Booking, BookingStatus, Payment, PaymentStatus, PaymentType, TutorProfile
from app.schemas.booking import LessonAction
from app.services.stripe_service import CheckoutResult
from tests.conftest import advance, paid_checkout, slot


async def _payments(db, booking_id):
    result = await db.execute(select(Payment).where(Payment.booking_id == booking_id))
    return list(result.scalars().all())


async def _reload(db, booking_id) -> Booking:
    result = await db.execute(
        select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


# Creation

@pytest.mark.asyncio
async def test_create_booking_computes_money_and_notifies_tutor(requested_booking, notifications, db):
    booking = requested_booking
    assert booking.status == BookingStatus.REQUESTED
    assert booking.price_cents == 5000
    assert booking.platform_fee_cents == 250
    assert booking.tutor_earnings_cents == 4750
    assert booking.notes == "Chapter 4"
    notifications.send_booking_request.assert_awaited_once()

    audit = (await db.execute(select(AuditLog).where(AuditLog.entity_id == str(booking.id)))).scalars().all()
    assert [entry.action for entry in audit] == ["create"]


@pytest.mark.asyncio
async def test_only_students_create_bookings(service, tutor_user, tutor_profile):
    start, end = slot()
    with pytest.raises(AuthorizationError):
        await service.create_booking(tutor_user, tutor_profile.id, "Algebra", start, end)


@pytest.mark.asyncio
async def test_create_booking_for_unknown_or_incomplete_tutor(db, service, student, tutor_profile):
    start, end = slot()
    with pytest.raises(NotFoundError):
        await service.create_booking(student, uuid.uuid4(), "Algebra", start, end)

    tutor_profile.profile_complete = False
    await db.commit()
    with pytest.raises(ValidationError):
        await service.create_booking(student, tutor_profile.id, "Algebra", start, end)


# Tutor decisions

@pytest.mark.asyncio
async def test_approve_sets_pending_and_message(service, requested_booking, tutor_user, notifications):
    booking = await service.update_status(requested_booking.id, tutor_user, BookingStatus.PENDING,
                                          tutor_message="See you then")
    assert booking.status == BookingStatus.PENDING
    assert booking.approved_at is not None
    assert booking.tutor_message == "See you then"
    notifications.send_booking_approved.assert_awaited_once()


@pytest.mark.asyncio
async def test_student_cannot_approve(service, requested_booking, student):
    with pytest.raises(AuthorizationError):
        await service.update_status(requested_booking.id, student, BookingStatus.PENDING)


@pytest.mark.asyncio
async def test_stranger_cannot_touch_booking(service, requested_booking, other_student):
    with pytest.raises(AuthorizationError):
        await service.get_booking_for_party(requested_booking.id, other_student)
    with pytest.raises(AuthorizationError):
        await service.cancel(requested_booking.id, other_student)


@pytest.mark.asyncio
async def test_reject_is_terminal(service, requested_booking, tutor_user, student):
    booking_id = requested_booking.id
    booking = await service.reject(booking_id, tutor_user, "Fully booked that week")
    assert booking.status == BookingStatus.REJECTED

    with pytest.raises(InvalidTransitionError):
        await service.approve(booking_id, tutor_user)
    with pytest.raises(ValidationError):
        await service.create_checkout(booking_id, student)


@pytest.mark.asyncio
async def test_unknown_booking_is_not_found(service, student):
    with pytest.raises(NotFoundError):
        await service.cancel(uuid.uuid4(), student)


# Checkout and payment

@pytest.mark.asyncio
async def test_checkout_requires_approval(service, requested_booking, student):
    with pytest.raises(ValidationError) as exc_info:
        await service.create_checkout(requested_booking.id, student)
    assert "awaiting tutor approval" in exc_info.value.message


@pytest.mark.asyncio
async def test_checkout_for_pending_booking(service, requested_booking, student, tutor_user, payments):
    await service.approve(requested_booking.id, tutor_user)
    checkout = await service.create_checkout(requested_booking.id, student)

    assert checkout.checkout_ref == "cs_test_1"
    kwargs = payments.create_checkout.await_args.kwargs
    assert kwargs["amount_cents"] == 5000
    assert kwargs["seller_account"] == "acct_tutor_1"
    assert kwargs["success_url"].endswith(f"/bookings/{requested_booking.id}?success=true")


@pytest.mark.asyncio
async def test_checkout_reuses_open_session(service, requested_booking, student, tutor_user, payments):
    await service.approve(requested_booking.id, tutor_user)
    await service.create_checkout(requested_booking.id, student)
    again = await service.create_checkout(requested_booking.id, student)

    assert again.checkout_ref == "cs_test_1"
    assert payments.create_checkout.await_count == 1
    payments.get_checkout.assert_awaited_once_with("cs_test_1")


@pytest.mark.asyncio
async def test_checkout_replaced_when_previous_expired(service, requested_booking, student, tutor_user, payments):
    await service.approve(requested_booking.id, tutor_user)
    await service.create_checkout(requested_booking.id, student)
    payments.get_checkout.return_value = CheckoutResult("cs_test_1", None, "expired")
    payments.create_checkout.return_value = CheckoutResult("cs_test_2", "https://checkout.stripe.com/c/cs_test_2", "open")

    checkout = await service.create_checkout(requested_booking.id, student)
    assert checkout.checkout_ref == "cs_test_2"


@pytest.mark.asyncio
async def test_only_owner_pays(service, requested_booking, other_student, tutor_user):
    await service.approve(requested_booking.id, tutor_user)
    with pytest.raises(AuthorizationError):
        await service.create_checkout(requested_booking.id, other_student)


@pytest.mark.asyncio
async def test_mark_paid_confirms_and_records_charge(db, service, requested_booking, tutor_user):
    await service.approve(requested_booking.id, tutor_user)
    booking = await service.mark_paid(paid_checkout(requested_booking))

    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_reference == "pi_test_1"
    payments = await _payments(db, booking.id)
    assert [(p.type, p.status, p.amount_cents) for p in payments] == [
        (PaymentType.CHARGE, PaymentStatus.SUCCEEDED, 5000)
    ]


@pytest.mark.asyncio
async def test_mark_paid_replay_is_noop(db, service, requested_booking, tutor_user):
    await service.approve(requested_booking.id, tutor_user)
    await service.mark_paid(paid_checkout(requested_booking))
    booking = await service.mark_paid(paid_checkout(requested_booking))

    assert booking.status == BookingStatus.CONFIRMED
    assert len(await _payments(db, booking.id)) == 1


@pytest.mark.asyncio
async def test_late_payment_on_cancelled_booking_is_refunded(db, service, requested_booking, student, tutor_user,
                                                             payments):
    await service.approve(requested_booking.id, tutor_user)
    await service.create_checkout(requested_booking.id, student)
    await service.cancel(requested_booking.id, tutor_user, "Sick")
    payments.expire_checkout.assert_awaited_once_with("cs_test_1")

    booking = await service.mark_paid(paid_checkout(requested_booking, payment_ref="pi_late"))

    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_reference == "pi_late"
    assert booking.refund_reference == "re_test_1"
    payments.refund.assert_awaited_once_with(booking.id, "pi_late", "Payment received after the booking was closed")
    assert sorted((p.type.value, p.status.value, p.stripe_reference) for p in await _payments(db, booking.id)) == [
        ("charge", "succeeded", "pi_late"),
        ("refund", "succeeded", "re_test_1"),
    ]

    await service.mark_paid(paid_checkout(requested_booking, payment_ref="pi_late"))
    payments.refund.assert_awaited_once()


@pytest.mark.asyncio
async def test_late_payment_refund_failure_is_recorded(db, service, requested_booking, student, payments):
    await service.cancel(requested_booking.id, student)
    payments.refund.side_effect = PaymentError("Payment processor error during refund")

    booking = await service.mark_paid(paid_checkout(requested_booking, payment_ref="pi_late"))

    assert booking.status == BookingStatus.CANCELLED
    assert booking.refund_reference is None
    assert sorted((p.type.value, p.status.value) for p in await _payments(db, booking.id)) == [
        ("charge", "succeeded"),
        ("refund", "failed"),
    ]


@pytest.mark.asyncio
async def test_cancel_refunds_checkout_paid_before_expiry(db, service, requested_booking, student, tutor_user,
                                                           payments):
    await service.approve(requested_booking.id, tutor_user)
    await service.create_checkout(requested_booking.id, student)
    payments.expire_checkout.return_value = CheckoutResult("cs_test_1", None, "complete", payment_ref="pi_raced")

    booking = await service.cancel(requested_booking.id, student)

    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_reference == "pi_raced"
    assert booking.refund_reference == "re_test_1"
    payments.refund.assert_awaited_once_with(booking.id, "pi_raced", "Lesson cancelled")

    # The completed-checkout notification that follows is a replay
    await service.mark_paid(paid_checkout(requested_booking, payment_ref="pi_raced"))
    payments.refund.assert_awaited_once()
    assert len(await _payments(db, booking.id)) == 2


@pytest.mark.asyncio
async def test_cancel_proceeds_when_checkout_cannot_be_expired(service, requested_booking, student, tutor_user,
                                                                payments):
    await service.approve(requested_booking.id, tutor_user)
    await service.create_checkout(requested_booking.id, student)
    payments.expire_checkout.side_effect = PaymentError("Payment processor error during checkout expiry")

    booking = await service.cancel(requested_booking.id, student)

    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_reference is None
    payments.refund.assert_not_awaited()


@pytest.mark.asyncio
async def test_second_payment_on_confirmed_booking_is_left_alone(db, service, requested_booking, student,
                                                                 tutor_user, payments):
    await advance(service, requested_booking, BookingStatus.CONFIRMED, student, tutor_user)
    booking = await service.mark_paid(paid_checkout(requested_booking, payment_ref="pi_other"))

    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_reference == "pi_test_1"
    payments.refund.assert_not_awaited()
    assert len(await _payments(db, booking.id)) == 1


@pytest.mark.asyncio
async def test_mark_paid_rejects_amount_mismatch(db, service, requested_booking, tutor_user):
    booking_id = requested_booking.id
    short = paid_checkout(requested_booking, amount_cents=100)
    wrong_currency = paid_checkout(requested_booking, currency="eur")
    await service.approve(booking_id, tutor_user)

    with pytest.raises(PaymentAmountMismatchError):
        await service.mark_paid(short)
    with pytest.raises(PaymentAmountMismatchError):
        await service.mark_paid(wrong_currency)

    assert (await _reload(db, booking_id)).status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_mark_paid_unknown_booking(service, requested_booking):
    paid = paid_checkout(requested_booking)
    paid.booking_id = uuid.uuid4()
    assert await service.mark_paid(paid) is None


@pytest.mark.asyncio
async def test_checkout_after_payment_is_refused(service, requested_booking, student, tutor_user):
    await advance(service, requested_booking, BookingStatus.CONFIRMED, student, tutor_user)
    with pytest.raises(ValidationError) as exc_info:
        await service.create_checkout(requested_booking.id, student)
    assert "already been paid" in exc_info.value.message


# Cancellation

@pytest.mark.asyncio
async def test_cancel_unpaid_does_not_refund(service, requested_booking, tutor_user, payments):
    await service.approve(requested_booking.id, tutor_user)
    booking = await service.cancel(requested_booking.id, tutor_user, "Sick")

    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancellation_reason == "Sick"
    assert booking.cancelled_at is not None
    payments.refund.assert_not_awaited()
    payments.expire_checkout.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_paid_refunds_once(db, service, requested_booking, student, tutor_user, payments, notifications):
    await advance(service, requested_booking, BookingStatus.CONFIRMED, student, tutor_user)
    booking = await service.cancel(requested_booking.id, student, "Schedule change")

    assert booking.status == BookingStatus.CANCELLED
    assert booking.refund_reference == "re_test_1"
    payments.refund.assert_awaited_once_with(booking.id, "pi_test_1", "Schedule change")
    refunds = [p for p in await _payments(db, booking.id) if p.type == PaymentType.REFUND]
    assert [(p.status, p.stripe_reference) for p in refunds] == [(PaymentStatus.SUCCEEDED, "re_test_1")]
    notifications.send_booking_cancelled.assert_awaited_once()


@pytest.mark.asyncio
async def test_cancel_proceeds_when_refund_fails(db, service, requested_booking, student, tutor_user, payments):
    await advance(service, requested_booking, BookingStatus.CONFIRMED, student, tutor_user)
    payments.refund.side_effect = PaymentError("Payment processor error during refund")

    booking = await service.cancel(requested_booking.id, tutor_user)

    assert booking.status == BookingStatus.CANCELLED
    assert booking.refund_reference is None
    refunds = [p for p in await _payments(db, booking.id) if p.type == PaymentType.REFUND]
    assert len(refunds) == 1
    assert refunds[0].status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_cannot_cancel_session_in_progress(service, requested_booking, student, tutor_user):
    await advance(service, requested_booking, BookingStatus.IN_PROGRESS, student, tutor_user)
    with pytest.raises(SessionInProgressError):
        await service.cancel(requested_booking.id, student)


@pytest.mark.asyncio
async def test_cancelled_slot_can_be_rebooked(service, requested_booking, student, tutor_profile):
    await service.cancel(requested_booking.id, student)
    booking = await service.create_booking(
        student, tutor_profile.id, "Algebra", requested_booking.start_at, requested_booking.end_at
    )
    assert booking.status == BookingStatus.REQUESTED


# Lesson

@pytest.mark.asyncio
async def test_dual_confirmation_needs_both_parties(service, requested_booking, student, tutor_user):
    await advance(service, requested_booking, BookingStatus.CONFIRMED, student, tutor_user)

    booking = await service.confirm_start(requested_booking.id, student)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.student_confirmed_start is True

    booking = await service.confirm_start(requested_booking.id, student)
    assert booking.status == BookingStatus.CONFIRMED

    booking = await service.confirm_start(requested_booking.id, tutor_user)
    assert booking.status == BookingStatus.IN_PROGRESS
    assert booking.lesson_started_at is not None


@pytest.mark.asyncio
async def test_concurrent_confirmations_converge(make_service, service, requested_booking, student, tutor_user, db):
    await advance(service, requested_booking, BookingStatus.CONFIRMED, student, tutor_user)

    await asyncio.gather(
        make_service().confirm_start(requested_booking.id, student),
        make_service().confirm_start(requested_booking.id, tutor_user),
    )

    booking = await _reload(db, requested_booking.id)
    assert booking.status == BookingStatus.IN_PROGRESS
    assert booking.student_confirmed_start and booking.tutor_confirmed_start


@pytest.mark.asyncio
async def test_confirm_end_stores_notes(service, requested_booking, student, tutor_user):
    await advance(service, requested_booking, BookingStatus.IN_PROGRESS, student, tutor_user)
    await service.confirm_end(requested_booking.id, tutor_user, meeting_notes="Covered quadratics")
    booking = await service.confirm_end(requested_booking.id, student)

    assert booking.status == BookingStatus.AWAITING_REVIEW
    assert booking.meeting_notes == "Covered quadratics"
    assert booking.lesson_ended_at is not None


@pytest.mark.asyncio
async def test_confirm_start_before_payment_is_invalid(service, requested_booking, student, tutor_user):
    await service.approve(requested_booking.id, tutor_user)
    with pytest.raises(InvalidTransitionError):
        await service.confirm_start(requested_booking.id, student)


@pytest.mark.asyncio
async def test_verify_complete_releases_funds(db, service, requested_booking, student, tutor_user, payments, notifications):
    booking = await advance(service, requested_booking, BookingStatus.COMPLETED, student, tutor_user)

    assert booking.transfer_reference == "tr_test_1"
    assert booking.payment_released_at is not None
    assert booking.completed_at is not None
    payments.release_funds.assert_awaited_once_with(booking.id, "pi_test_1", "acct_tutor_1", 5000, 250)
    transfers = [p for p in await _payments(db, booking.id) if p.type == PaymentType.TRANSFER]
    assert [(p.status, p.amount_cents) for p in transfers] == [(PaymentStatus.SUCCEEDED, 4750)]
    notifications.send_lesson_completed.assert_awaited_once()


@pytest.mark.asyncio
async def test_tutor_cannot_verify_own_lesson(service, requested_booking, student, tutor_user):
    await advance(service, requested_booking, BookingStatus.AWAITING_REVIEW, student, tutor_user)
    with pytest.raises(AuthorizationError):
        await service.verify_complete(requested_booking.id, tutor_user)


@pytest.mark.asyncio
async def test_release_failure_keeps_booking_awaiting_review(db, service, requested_booking, student, tutor_user, payments):
    booking_id = requested_booking.id
    await advance(service, requested_booking, BookingStatus.AWAITING_REVIEW, student, tutor_user)
    payments.release_funds.side_effect = PaymentError("Payment processor error during transfer")

    with pytest.raises(PaymentError):
        await service.verify_complete(booking_id, student)

    booking = await _reload(db, booking_id)
    assert booking.status == BookingStatus.AWAITING_REVIEW
    transfers = [p for p in await _payments(db, booking_id) if p.type == PaymentType.TRANSFER]
    assert [p.status for p in transfers] == [PaymentStatus.FAILED]

    payments.release_funds.side_effect = None
    booking = await service.verify_complete(booking_id, student)
    assert booking.status == BookingStatus.COMPLETED


@pytest.mark.asyncio
async def test_verify_without_payout_account(db, service, requested_booking, student, tutor_user, tutor_profile, payments):
    await advance(service, requested_booking, BookingStatus.AWAITING_REVIEW, student, tutor_user)
    profile = (await db.execute(select(TutorProfile).where(TutorProfile.id == tutor_profile.id))).scalar_one()
    profile.stripe_account_id = None
    await db.commit()

    with pytest.raises(ValidationError):
        await service.verify_complete(requested_booking.id, student)
    payments.release_funds.assert_not_awaited()


@pytest.mark.asyncio
async def test_completed_booking_cannot_be_verified_twice(service, requested_booking, student, tutor_user, payments):
    await advance(service, requested_booking, BookingStatus.COMPLETED, student, tutor_user)
    with pytest.raises(InvalidTransitionError):
        await service.verify_complete(requested_booking.id, student)
    assert payments.release_funds.await_count == 1


@pytest.mark.asyncio
async def test_dispute_requires_reason_and_is_terminal(service, requested_booking, student, tutor_user, notifications):
    booking_id = requested_booking.id
    await advance(service, requested_booking, BookingStatus.AWAITING_REVIEW, student, tutor_user)

    with pytest.raises(ValidationError):
        await service.dispute(booking_id, student, "  ")

    booking = await service.dispute(booking_id, student, "Tutor left after ten minutes")
    assert booking.status == BookingStatus.DISPUTED
    assert booking.dispute_reason == "Tutor left after ten minutes"
    notifications.send_booking_disputed.assert_awaited_once()

    with pytest.raises(InvalidTransitionError):
        await service.verify_complete(booking_id, student)


@pytest.mark.asyncio
async def test_add_meeting_link(service, requested_booking, student, tutor_user):
    booking_id = requested_booking.id
    with pytest.raises(AuthorizationError):
        await service.add_meeting_link(booking_id, student, "https://meet.example.com/abc")
    with pytest.raises(ValidationError):
        await service.add_meeting_link(booking_id, tutor_user, "not a url")
    with pytest.raises(ValidationError):
        await service.add_meeting_link(booking_id, tutor_user, None)

    booking = await service.add_meeting_link(booking_id, tutor_user, "https://meet.example.com/abc")
    assert booking.meeting_link == "https://meet.example.com/abc"
    assert booking.status == BookingStatus.REQUESTED


@pytest.mark.asyncio
async def test_meeting_link_refused_on_closed_booking(service, requested_booking, tutor_user):
    booking_id = requested_booking.id
    await service.reject(booking_id, tutor_user)

    with pytest.raises(ValidationError) as exc_info:
        await service.add_meeting_link(booking_id, tutor_user, "https://meet.example.com/abc")
    assert "REJECTED" in exc_info.value.message


@pytest.mark.asyncio
async def test_perform_lesson_action_dispatches(service, requested_booking, student, tutor_user):
    await advance(service, requested_booking, BookingStatus.CONFIRMED, student, tutor_user)

    await service.perform_lesson_action(requested_booking.id, student, LessonAction.CONFIRM_START)
    booking = await service.perform_lesson_action(requested_booking.id, tutor_user, LessonAction.CONFIRM_START)
    assert booking.status == BookingStatus.IN_PROGRESS

    booking = await service.perform_lesson_action(
        requested_booking.id, tutor_user, LessonAction.DISPUTE, reason="Student never joined"
    )
    assert booking.status == BookingStatus.DISPUTED


@pytest.mark.asyncio
async def test_list_bookings_by_party(service, requested_booking, student, other_student, tutor_user):
    assert [b.id for b in await service.list_bookings(student)] == [requested_booking.id]
    assert [b.id for b in await service.list_bookings(tutor_user)] == [requested_booking.id]
    assert await service.list_bookings(other_student) == []
    assert await service.list_bookings(student, BookingStatus.CANCELLED) == []
