"""
Revenue Service for platform revenue reporting.

A pure fold over booking documents: no state of its own. A booking earns
the platform its system fee once it is completed, or once a pay_first
booking has been paid.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from src.booking.document import BookingDocument, BookingStatus, PaymentPreference
from src.booking.pricing import ZERO, provider_share, round_money
from src.lib.logging import get_logger
from src.lib.settings import settings

logger = get_logger(__name__)


@dataclass
class RevenueReport:
    booking_count: int = 0
    system_fee_total: Decimal = ZERO
    gross_total: Decimal = ZERO
    provider_share_total: Decimal = ZERO
    by_category: Dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "booking_count": self.booking_count,
            "system_fee_total": str(round_money(self.system_fee_total)),
            "gross_total": str(round_money(self.gross_total)),
            "provider_share_total": str(round_money(self.provider_share_total)),
            "currency": settings.currency,
            "by_category": {k: str(round_money(v)) for k, v in sorted(self.by_category.items())},
        }


def counts_as_revenue(booking: BookingDocument) -> bool:
    if booking.status is BookingStatus.COMPLETED:
        return True
    return (
        booking.status is BookingStatus.PAYMENT_RECEIVED
        and booking.payment_preference is PaymentPreference.PAY_FIRST
        and booking.is_paid_upfront
    )


def summarize_revenue(
    bookings: Iterable[BookingDocument],
    share_pct: Optional[Decimal] = None,
) -> RevenueReport:
    """
    Fold bookings into a revenue report.

    Args:
        bookings: Any booking documents; non-earning ones are skipped
        share_pct: Provider share of gross (defaults to settings)
    """
    share_pct = settings.provider_share_percentage if share_pct is None else share_pct
    report = RevenueReport()

    for booking in bookings:
        if not counts_as_revenue(booking):
            continue
        gross = booking.final_amount if booking.final_amount is not None else booking.total_amount
        report.booking_count += 1
        report.system_fee_total += booking.system_fee
        report.gross_total += gross
        report.provider_share_total += provider_share(gross, share_pct)
        category = booking.service_category or "uncategorized"
        report.by_category[category] = report.by_category.get(category, ZERO) + booking.system_fee

    logger.info(
        "Revenue summarized",
        extra={"extra_fields": {
            "booking_count": report.booking_count,
            "system_fee_total": str(report.system_fee_total),
        }},
    )
    return report
