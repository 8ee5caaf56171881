"""
Refund Reconciliation Job - settles escrow the gateway left unfinished.

Cancelling a booking with held escrow records a Refund row before calling
the gateway. When that call fails the row stays pending/failed and this
job retries it until it succeeds or runs out of attempts. Releases that
failed after completion are retried the same way.

Captures whose outcome never reached the booking (the process died after
the pay command committed, or the feedback lost every race) leave a
``pending`` settlement that blocks further payment and cancellation. Once
such a settlement is older than ``capture_reconciliation_age_minutes`` the
job asks the gateway what happened and records the answer.

Default schedule: every ``refund_reconciliation_interval_minutes`` minutes.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.booking.document import SettlementStatus
from src.booking.intents import Intent, ReleaseEscrow
from src.jobs.scheduler import with_advisory_lock
from src.lib.db import get_db_context
from src.lib.exceptions import BookingError
from src.lib.logging import get_logger
from src.lib.settings import settings
from src.models.jobs import JobType
from src.services.booking_repository import BookingRepository
from src.services.booking_service import BookingService
from src.services.notification_service import NotificationService, get_notification_service
from src.services.payment_gateway import PaymentGateway, get_payment_gateway

logger = get_logger(__name__)

JOB_ID = "refund_reconciliation"


def _reconcile_captures(
    db: Session,
    service: BookingService,
    cutoff: datetime,
    batch_size: int,
    results: Dict[str, Any],
    notifications: List[Intent],
) -> None:
    for row in BookingRepository.list_bookings_with_pending_capture(db, cutoff, limit=batch_size):
        doc = BookingRepository.to_document(row)
        for pending in doc.settlements:
            if pending.status is not SettlementStatus.PENDING:
                continue
            results["captures_checked"] += 1
            try:
                result, intents = service.reconcile_capture(doc.id, pending.id)
            except BookingError as e:
                logger.warning(
                    f"Capture reconciliation skipped: {e.message}",
                    extra={"extra_fields": {
                        "booking_id": str(doc.id),
                        "settlement_id": pending.id,
                        "code": e.code,
                    }},
                )
                continue

            notifications.extend(intents)
            if result is None or result.pending:
                results["captures_unresolved"] += 1
            elif result.ok:
                results["captures_succeeded"] += 1
            else:
                results["captures_failed"] += 1


def reconcile_escrow(
    db: Session,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[NotificationService] = None,
    now: Optional[datetime] = None,
    batch_size: int = 100,
) -> Dict[str, Any]:
    """
    Resolve stale captures, then retry outstanding refunds and releases once each.

    Args:
        db: Database session
        gateway: Payment gateway (settings-selected by default)
        notifier: Receives notifications produced by reconciled captures
        now: Reference time for the capture age cutoff
        batch_size: Maximum rows looked at per pass

    Returns:
        Counts of what was attempted and how it went
    """
    started_at = datetime.now(timezone.utc)
    now = now or started_at
    service = BookingService(db, gateway=gateway or get_payment_gateway())
    results = {
        "captures_checked": 0,
        "captures_succeeded": 0,
        "captures_failed": 0,
        "captures_unresolved": 0,
        "refunds_attempted": 0,
        "refunds_succeeded": 0,
        "refunds_exhausted": 0,
        "releases_attempted": 0,
        "releases_succeeded": 0,
    }
    notifications: List[Intent] = []

    cutoff = now - timedelta(minutes=settings.capture_reconciliation_age_minutes)
    _reconcile_captures(db, service, cutoff, batch_size, results, notifications)

    for refund in BookingRepository.list_retryable_refunds(
        db, settings.refund_max_attempts, limit=batch_size
    ):
        results["refunds_attempted"] += 1
        if service.attempt_refund(refund):
            results["refunds_succeeded"] += 1
        elif refund.attempts >= settings.refund_max_attempts:
            results["refunds_exhausted"] += 1

    for row in BookingRepository.list_bookings_with_held_escrow(db, limit=batch_size):
        doc = BookingRepository.to_document(row)
        for held in doc.settlements:
            if held.status is not SettlementStatus.HELD:
                continue
            results["releases_attempted"] += 1
            released = service.release_escrow(ReleaseEscrow(
                booking_id=doc.id,
                settlement_id=held.id,
                amount=held.amount,
                external_ref=held.external_ref,
            ))
            if released:
                results["releases_succeeded"] += 1

    if notifier is not None and notifications:
        asyncio.run(notifier.dispatch_all(notifications))

    duration = (datetime.now(timezone.utc) - started_at).total_seconds()
    logger.info(
        "Escrow reconciliation finished",
        extra={"extra_fields": {**results, "duration_seconds": duration}},
    )
    return results


@with_advisory_lock(JOB_ID, JobType.REFUND_RECONCILIATION)
def run_refund_reconciliation() -> Dict[str, Any]:
    """Scheduled entry point."""
    with get_db_context() as db:
        return reconcile_escrow(db, notifier=get_notification_service())


def schedule_refund_reconciliation(scheduler) -> None:
    scheduler.add_interval_job(
        run_refund_reconciliation,
        JOB_ID,
        minutes=settings.refund_reconciliation_interval_minutes,
    )
