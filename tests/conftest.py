from datetime import timedelta
from typing import Optional
from unittest.mock import Mock
import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.auth import create_access_token
from app.core.database import Base, get_db
from app.core.rate_limit import RateLimiter, get_rate_limiter
from app.core.timezone_utils import utcnow
from app.main import app
from app.models import Booking, BookingStatus, TutorProfile, User, UserRole
from app.services.booking_service import BookingService
from app.services.notification_service import NotificationService, get_notification_service
from app.services.stripe_service import (
    CheckoutResult, PaidCheckout, StripeService, TransferResult, get_stripe_service
)


def slot(days: int = 2, hour: int = 15, minutes: int = 60):
    """A future session interval on a whole hour"""
    start = (utcnow() + timedelta(days=days)).replace(hour=hour, minute=0, second=0, microsecond=0)
    return start, start + timedelta(minutes=minutes)


def paid_checkout(booking: Booking, amount_cents: Optional[int] = None, payment_ref: str = "pi_test_1",
                  currency: str = "usd", payment_status: str = "paid") -> PaidCheckout:
    return PaidCheckout(
        booking_id=booking.id,
        checkout_ref="cs_test_1",
        payment_ref=payment_ref,
        amount_cents=booking.price_cents if amount_cents is None else amount_cents,
        currency=currency,
        payment_status=payment_status
    )


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def student(db):
    user = User(
        role=UserRole.STUDENT,
        first_name="Sam",
        last_name="Student",
        email="sam@example.com",
        timezone="America/New_York"
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def other_student(db):
    user = User(role=UserRole.STUDENT, first_name="Olive", last_name="Other", email="olive@example.com")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def tutor_user(db):
    user = User(role=UserRole.TUTOR, first_name="Tara", last_name="Tutor", email="tara@example.com")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def tutor_profile(db, tutor_user):
    profile = TutorProfile(
        user_id=tutor_user.id,
        hourly_rate_cents=5000,
        profile_complete=True,
        stripe_account_id="acct_tutor_1"
    )
    db.add(profile)
    await db.commit()
    return profile


@pytest.fixture
def payments():
    payments = Mock(spec=StripeService)
    payments.create_checkout.return_value = CheckoutResult(
        checkout_ref="cs_test_1", checkout_url="https://checkout.stripe.com/c/cs_test_1", status="open"
    )
    payments.get_checkout.return_value = CheckoutResult(
        checkout_ref="cs_test_1", checkout_url="https://checkout.stripe.com/c/cs_test_1", status="open"
    )
    payments.release_funds.return_value = TransferResult(transfer_ref="tr_test_1", amount_cents=4750)
    payments.expire_checkout.return_value = CheckoutResult(
        checkout_ref="cs_test_1", checkout_url=None, status="expired"
    )
    payments.refund.return_value = "re_test_1"
    return payments


@pytest.fixture
def notifications():
    return Mock(spec=NotificationService)


@pytest_asyncio.fixture
async def service(session_factory, payments, notifications):
    # Own session: a failed action rolls back and expires only the service's objects
    async with session_factory() as session:
        yield BookingService(session, payments, notifications)


@pytest_asyncio.fixture
async def make_service(session_factory, payments, notifications):
    """Services on their own sessions, for concurrent callers"""
    sessions = []

    def _make() -> BookingService:
        session = session_factory()
        sessions.append(session)
        return BookingService(session, payments, notifications)

    yield _make

    for session in sessions:
        await session.close()


@pytest_asyncio.fixture
async def requested_booking(service, student, tutor_profile):
    start, end = slot()
    return await service.create_booking(student, tutor_profile.id, "Algebra", start, end, notes="Chapter 4")


async def advance(service: BookingService, booking: Booking, target: BookingStatus,
                  student: User, tutor: User) -> Booking:
    """Drive a REQUESTED booking through the real lifecycle up to ``target``"""
    steps = [
        (BookingStatus.PENDING, lambda: service.approve(booking.id, tutor)),
        (BookingStatus.CONFIRMED, lambda: service.mark_paid(paid_checkout(booking))),
        (BookingStatus.IN_PROGRESS, lambda: _both(service.confirm_start, booking.id, student, tutor)),
        (BookingStatus.AWAITING_REVIEW, lambda: _both(service.confirm_end, booking.id, student, tutor)),
        (BookingStatus.COMPLETED, lambda: service.verify_complete(booking.id, student)),
    ]
    for status, step in steps:
        if booking.status == target:
            break
        booking = await step()
        assert booking.status == status
    return booking


async def _both(confirm, booking_id: uuid.UUID, student: User, tutor: User) -> Booking:
    await confirm(booking_id, student)
    return await confirm(booking_id, tutor)


@pytest_asyncio.fixture
async def client(session_factory, payments, notifications):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_service] = lambda: payments
    app.dependency_overrides[get_notification_service] = lambda: notifications
    app.dependency_overrides[get_rate_limiter] = lambda: RateLimiter(None, enabled=False)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
