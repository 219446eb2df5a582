from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from app.core.config import settings


@dataclass(frozen=True)
class BookingPrice:
    """Money fields fixed on a booking at creation"""
    price_cents: int
    platform_fee_cents: int
    tutor_earnings_cents: int


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def session_duration(start_at: datetime, end_at: datetime) -> timedelta:
    return end_at - start_at


def calculate_price_cents(hourly_rate_cents: int, start_at: datetime, end_at: datetime) -> int:
    """Hourly rate times session length, rounded to the cent"""
    seconds = Decimal(int(session_duration(start_at, end_at).total_seconds()))
    return _round_cents(Decimal(hourly_rate_cents) * seconds / Decimal(3600))


def calculate_platform_fee(price_cents: int, fee_percentage: Optional[int] = None) -> int:
    """Platform share of a price"""
    if fee_percentage is None:
        fee_percentage = settings.PLATFORM_FEE_PERCENTAGE
    return _round_cents(Decimal(price_cents) * Decimal(fee_percentage) / Decimal(100))


def calculate_tutor_earnings(price_cents: int, fee_percentage: Optional[int] = None) -> int:
    """What the tutor receives once escrow is released"""
    return price_cents - calculate_platform_fee(price_cents, fee_percentage)


def quote_booking(hourly_rate_cents: int, start_at: datetime, end_at: datetime) -> BookingPrice:
    price_cents = calculate_price_cents(hourly_rate_cents, start_at, end_at)
    return BookingPrice(
        price_cents=price_cents,
        platform_fee_cents=calculate_platform_fee(price_cents),
        tutor_earnings_cents=calculate_tutor_earnings(price_cents)
    )
