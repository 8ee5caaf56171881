"""
Tests for revenue reporting.
"""
from decimal import Decimal

import pytest

from src.booking.document import BookingStatus, PaymentPreference
from src.services.revenue_service import counts_as_revenue, summarize_revenue

from conftest import make_booking


@pytest.mark.unit
def test_only_earning_bookings_count():
    assert counts_as_revenue(make_booking(status=BookingStatus.COMPLETED))
    assert not counts_as_revenue(make_booking(status=BookingStatus.CANCELLED))
    assert not counts_as_revenue(make_booking(status=BookingStatus.PAYMENT_RECEIVED))
    assert counts_as_revenue(make_booking(
        status=BookingStatus.PAYMENT_RECEIVED,
        payment_preference=PaymentPreference.PAY_FIRST,
        is_paid_upfront=True,
    ))


@pytest.mark.unit
def test_summarize_revenue():
    bookings = [
        make_booking(status=BookingStatus.COMPLETED, service_category="plumbing"),
        make_booking(
            status=BookingStatus.COMPLETED,
            service_category="cleaning",
            provider_price=Decimal("120"),
            final_amount=Decimal("126"),
        ),
        make_booking(status=BookingStatus.CANCELLED, service_category="plumbing"),
        make_booking(status=BookingStatus.IN_PROGRESS),
    ]

    report = summarize_revenue(bookings, share_pct=Decimal("0.95"))

    assert report.booking_count == 2
    assert report.system_fee_total == Decimal("31")
    assert report.gross_total == Decimal("651")
    assert report.provider_share_total == Decimal("618.45")
    assert report.by_category == {"plumbing": Decimal("25"), "cleaning": Decimal("6")}


@pytest.mark.unit
def test_report_to_dict():
    report = summarize_revenue(
        [make_booking(status=BookingStatus.COMPLETED)], share_pct=Decimal("0.9")
    )
    data = report.to_dict()

    assert data == {
        "booking_count": 1,
        "system_fee_total": "25.00",
        "gross_total": "525.00",
        "provider_share_total": "472.50",
        "currency": "PHP",
        "by_category": {"uncategorized": "25.00"},
    }


@pytest.mark.unit
def test_empty_report():
    data = summarize_revenue([]).to_dict()
    assert data["booking_count"] == 0
    assert data["system_fee_total"] == "0.00"
