from datetime import datetime, timedelta, timezone

from app.core.pricing import (
    calculate_platform_fee,
    calculate_price_cents,
    calculate_tutor_earnings,
    quote_booking,
)

START = datetime(2030, 1, 7, 15, 0, tzinfo=timezone.utc)


def test_price_is_rate_times_hours():
    assert calculate_price_cents(5000, START, START + timedelta(hours=1)) == 5000
    assert calculate_price_cents(5000, START, START + timedelta(minutes=90)) == 7500
    assert calculate_price_cents(4500, START, START + timedelta(minutes=30)) == 2250


def test_price_rounds_to_the_cent():
    # 3333 * 45 / 60 = 2499.75
    assert calculate_price_cents(3333, START, START + timedelta(minutes=45)) == 2500


def test_platform_fee_rounds_half_up():
    assert calculate_platform_fee(5000) == 250
    assert calculate_platform_fee(2250) == 113  # 112.5
    assert calculate_platform_fee(1, fee_percentage=50) == 1


def test_earnings_and_fee_add_up_to_price():
    for price in (1, 99, 2250, 5000, 7499, 123457):
        assert calculate_platform_fee(price) + calculate_tutor_earnings(price) == price


def test_quote_booking():
    quote = quote_booking(5000, START, START + timedelta(hours=1))
    assert quote.price_cents == 5000
    assert quote.platform_fee_cents == 250
    assert quote.tutor_earnings_cents == 4750


def test_quote_booking_splits_rounded_fee():
    quote = quote_booking(4500, START, START + timedelta(minutes=30))
    assert quote.platform_fee_cents == 113
    assert quote.tutor_earnings_cents == calculate_tutor_earnings(2250) == 2137
