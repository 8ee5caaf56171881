"""
Integration tests for BookingService against a real (SQLite) database.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy import update

from src.booking.document import (
    ActorRole,
    BookingStatus,
    PaymentPreference,
    PaymentStatus,
    SettlementStatus,
)
from src.booking.intents import CapturePayment, NotificationEvent, NotifyClient
from src.booking import state_machine
from src.booking.state_machine import Actor
from src.jobs.refund_reconciler import reconcile_escrow
from src.lib.exceptions import (
    GuardViolation,
    InvalidTransition,
    NotFoundException,
    PaymentCaptureFailed,
    Unauthorized,
    VersionConflict,
)
from src.lib.metrics import get_metrics_collector
from src.models.bookings import Booking
from src.models.refunds import Refund, RefundStatus
from src.services.booking_service import BookingService
from src.services.notification_service import NotificationService
from src.services.payment_gateway import ConsolePaymentGateway, GatewayResult

from conftest import DecliningGateway, RecordingProvider

ADMIN = Actor(ActorRole.ADMIN, "admin-1")
CLIENT = Actor(ActorRole.CLIENT, "client-1")
PROVIDER = Actor(ActorRole.PROVIDER, "provider-1")


class FailingReleaseGateway(ConsolePaymentGateway):
    """Declines releases until ``fail_releases`` is switched off."""

    def __init__(self):
        super().__init__()
        self.fail_releases = True

    def release(self, intent):
        if self.fail_releases:
            return GatewayResult(ok=False, reason="payout rail down")
        return super().release(intent)


def submit(service, **kwargs):
    fields = dict(
        client_id="client-1",
        provider_price="500",
        payment_preference=PaymentPreference.PAY_LATER,
    )
    fields.update(kwargs)
    return service.submit(**fields)


def run(service, booking_id, *steps):
    doc = None
    for actor, command, payload in steps:
        doc, _ = service.apply(booking_id, actor, command, payload)
    return doc


def accepted_booking(service, **kwargs):
    doc = submit(service, **kwargs)
    run(service, doc.id, (ADMIN, "approve", {}), (PROVIDER, "accept_job", {}))
    return doc.id


@pytest.mark.integration
def test_submit_prices_and_persists(service):
    doc = submit(service, title="Fix sink", service_category="plumbing")

    assert doc.status is BookingStatus.PENDING
    assert doc.version == 1
    assert doc.system_fee == Decimal("25")
    assert doc.total_amount == Decimal("525")
    assert service.snapshot(doc.id).title == "Fix sink"


@pytest.mark.integration
def test_submit_rejects_bad_price(service):
    with pytest.raises(GuardViolation):
        submit(service, provider_price="-10")


@pytest.mark.integration
def test_unknown_booking(service):
    with pytest.raises(NotFoundException):
        service.snapshot(uuid4())


@pytest.mark.integration
def test_pay_later_cash_lifecycle(service):
    booking_id = accepted_booking(service)
    doc = run(
        service, booking_id,
        (PROVIDER, "mark_traveling", {}),
        (PROVIDER, "mark_arrived", {}),
        (PROVIDER, "start_work", {}),
        (PROVIDER, "mark_work_done", {}),
        (CLIENT, "confirm_completion", {}),
    )
    assert doc.status is BookingStatus.PENDING_PAYMENT
    assert doc.amount_due == Decimal("525")

    doc = run(service, booking_id, (CLIENT, "pay", {"method": "cash"}), (PROVIDER, "confirm_payment", {}))

    assert doc.status is BookingStatus.COMPLETED
    assert doc.final_amount == Decimal("525")
    assert doc.version == 10
    assert get_metrics_collector().get_counter_value(
        "booking_transitions_total",
        {"command": "confirm_payment", "from_status": "payment_received", "to_status": "completed"},
    ) == 1


@pytest.mark.integration
def test_gcash_payment_is_captured_and_released(service, gateway):
    booking_id = accepted_booking(service)
    run(
        service, booking_id,
        (PROVIDER, "mark_traveling", {}),
        (PROVIDER, "mark_arrived", {}),
        (PROVIDER, "start_work", {}),
        (PROVIDER, "mark_work_done", {}),
        (CLIENT, "confirm_completion", {}),
    )

    doc, intents = service.apply(booking_id, CLIENT, "pay", {"method": "gcash", "source_ref": "src_1"})

    assert doc.status is BookingStatus.PAYMENT_RECEIVED
    assert doc.payment_status is PaymentStatus.RELEASED
    assert doc.settlements[0].status is SettlementStatus.RELEASED
    assert [c["operation"] for c in gateway.calls] == ["capture", "release"]
    kinds = [i.kind for i in intents]
    assert kinds[0] == "CapturePayment"
    assert "ReleaseEscrow" in kinds


@pytest.mark.integration
def test_pay_first_with_additional_charge(service):
    booking_id = accepted_booking(service, payment_preference=PaymentPreference.PAY_FIRST)
    doc = run(
        service, booking_id,
        (CLIENT, "pay_upfront", {"method": "gcash", "source_ref": "src_up"}),
        (PROVIDER, "mark_traveling", {}),
        (PROVIDER, "mark_arrived", {}),
        (PROVIDER, "start_work", {}),
        (PROVIDER, "add_charge", {"reason": "extra pipe", "amount": "200"}),
    )
    assert doc.is_paid_upfront
    assert doc.upfront_paid_amount == Decimal("525")

    charge_id = doc.additional_charges[0].id
    doc = run(
        service, booking_id,
        (CLIENT, "approve_charge", {"charge_id": charge_id}),
        (PROVIDER, "mark_work_done", {}),
        (CLIENT, "confirm_completion", {}),
    )
    assert doc.status is BookingStatus.PENDING_PAYMENT
    assert doc.total_amount == Decimal("725")
    assert doc.amount_due == Decimal("200")
    # confirming completion releases the upfront escrow
    assert doc.settlements[0].status is SettlementStatus.RELEASED

    doc = run(service, booking_id, (CLIENT, "pay", {"method": "cash"}))
    assert doc.status is BookingStatus.PAYMENT_RECEIVED
    assert doc.final_amount == Decimal("725")


@pytest.mark.integration
def test_declined_capture_keeps_status(db_session):
    service = BookingService(db_session, gateway=DecliningGateway())
    booking_id = accepted_booking(service, payment_preference=PaymentPreference.PAY_FIRST)
    before = service.snapshot(booking_id)

    with pytest.raises(PaymentCaptureFailed) as exc_info:
        service.apply(booking_id, CLIENT, "pay_upfront", {"method": "gcash", "source_ref": "src_x"})

    exc = exc_info.value
    assert exc.details["reason"] == "insufficient funds"
    assert any(
        isinstance(i, NotifyClient) and i.event is NotificationEvent.PAYMENT_FAILED
        for i in exc.intents
    )

    doc = service.snapshot(booking_id)
    assert doc.status is before.status
    assert not doc.is_paid_upfront
    assert doc.settlements[0].status is SettlementStatus.FAILED
    assert doc.payment_status is PaymentStatus.NONE
    assert get_metrics_collector().get_counter_value(
        "payment_gateway_calls_total", {"operation": "capture", "outcome": "failed"}
    ) == 1

    # the client can try again with another method
    service.gateway = ConsolePaymentGateway()
    doc, _ = service.apply(booking_id, CLIENT, "pay_upfront", {"method": "maya", "source_ref": "src_y"})
    assert doc.is_paid_upfront


@pytest.mark.integration
def test_cancel_with_held_escrow_refunds(service, db_session, gateway):
    booking_id = accepted_booking(service, payment_preference=PaymentPreference.PAY_FIRST)
    doc = run(service, booking_id, (CLIENT, "pay_upfront", {"method": "gcash", "source_ref": "src_1"}))
    assert doc.payment_status is PaymentStatus.HELD

    doc, _ = service.apply(booking_id, CLIENT, "cancel", {"reason": "changed my mind"})

    assert doc.status is BookingStatus.CANCELLED
    assert doc.settlements[0].status is SettlementStatus.REFUNDED
    refund = db_session.query(Refund).filter(Refund.booking_id == booking_id).one()
    assert refund.status is RefundStatus.SUCCEEDED
    assert refund.attempts == 1
    assert refund.amount == Decimal("525")
    assert gateway.calls[-1]["operation"] == "refund"


@pytest.mark.integration
def test_failed_refund_is_retried_by_reconciliation(db_session):
    gateway = DecliningGateway(decline_capture=False, decline_refund=True)
    service = BookingService(db_session, gateway=gateway)
    booking_id = accepted_booking(service, payment_preference=PaymentPreference.PAY_FIRST)
    run(service, booking_id, (CLIENT, "pay_upfront", {"method": "gcash", "source_ref": "src_1"}))

    doc, _ = service.apply(booking_id, CLIENT, "cancel", {"reason": "changed my mind"})

    assert doc.status is BookingStatus.CANCELLED
    assert doc.payment_status is PaymentStatus.HELD
    refund = db_session.query(Refund).filter(Refund.booking_id == booking_id).one()
    assert refund.status is RefundStatus.FAILED
    assert refund.last_error == "gateway unavailable"

    gateway.decline_refund = False
    results = reconcile_escrow(db_session, gateway=gateway)

    assert results["refunds_attempted"] == 1
    assert results["refunds_succeeded"] == 1
    db_session.refresh(refund)
    assert refund.status is RefundStatus.SUCCEEDED
    assert refund.attempts == 2
    assert service.snapshot(booking_id).payment_status is PaymentStatus.REFUNDED


@pytest.mark.integration
def test_failed_release_is_retried_by_reconciliation(db_session):
    gateway = FailingReleaseGateway()
    service = BookingService(db_session, gateway=gateway)
    booking_id = accepted_booking(service, payment_preference=PaymentPreference.PAY_FIRST)
    doc = run(
        service, booking_id,
        (CLIENT, "pay_upfront", {"method": "gcash", "source_ref": "src_1"}),
        (PROVIDER, "mark_traveling", {}),
        (PROVIDER, "mark_arrived", {}),
        (PROVIDER, "start_work", {}),
        (PROVIDER, "mark_work_done", {}),
        (CLIENT, "confirm_completion", {}),
    )
    assert doc.status is BookingStatus.PAYMENT_RECEIVED
    assert doc.payment_status is PaymentStatus.HELD

    gateway.fail_releases = False
    results = reconcile_escrow(db_session, gateway=gateway)

    assert results["releases_attempted"] == 1
    assert results["releases_succeeded"] == 1
    assert service.snapshot(booking_id).payment_status is PaymentStatus.RELEASED


@pytest.mark.integration
def test_stale_expected_version_is_rejected(service):
    doc = submit(service)
    approved, _ = service.apply(doc.id, ADMIN, "approve", expected_version=1)
    assert approved.version == 2

    with pytest.raises(VersionConflict) as exc_info:
        service.apply(doc.id, PROVIDER, "accept_job", expected_version=1)

    assert exc_info.value.details["current_version"] == 2
    assert service.snapshot(doc.id).status is BookingStatus.PENDING


@pytest.mark.integration
def test_concurrent_writer_causes_version_conflict(service, db_session):
    doc = submit(service)
    service.apply(doc.id, ADMIN, "approve")
    real_apply = state_machine.apply

    def racing_apply(*args, **kwargs):
        # Another writer commits between our read and our write
        db_session.execute(
            update(Booking)
            .where(Booking.id == doc.id)
            .values(version=Booking.version + 1)
            .execution_options(synchronize_session=False)
        )
        return real_apply(*args, **kwargs)

    with patch.object(state_machine, "apply", side_effect=racing_apply):
        with pytest.raises(VersionConflict):
            service.apply(doc.id, PROVIDER, "accept_job")

    doc = service.snapshot(doc.id)
    assert doc.status is BookingStatus.PENDING
    assert doc.provider_id is None
    assert get_metrics_collector().get_counter_value(
        "booking_commands_rejected_total", {"command": "accept_job", "error": "version_conflict"}
    ) == 1


@pytest.mark.integration
def test_rejected_command_is_counted(service):
    doc = submit(service)

    with pytest.raises(Unauthorized):
        service.apply(doc.id, CLIENT, "approve")

    assert get_metrics_collector().get_counter_value(
        "booking_commands_rejected_total", {"command": "approve", "error": "unauthorized"}
    ) == 1


@pytest.mark.integration
def test_negotiated_price(service):
    doc = submit(service, is_negotiable=True)
    doc = run(
        service, doc.id,
        (ADMIN, "approve", {}),
        (CLIENT, "send_offer", {"price": "100"}),
        (PROVIDER, "counter", {"price": "140"}),
        (CLIENT, "send_offer", {"price": "120"}),
        (PROVIDER, "accept_offer", {}),
    )

    assert doc.status is BookingStatus.ACCEPTED
    assert doc.provider_id == "provider-1"
    assert doc.provider_price == Decimal("120")
    assert doc.system_fee == Decimal("6")
    assert doc.total_amount == Decimal("126")


@pytest.mark.integration
def test_list_for_provider(service):
    open_booking = submit(service)
    run(service, open_booking.id, (ADMIN, "approve", {}))
    assigned_elsewhere = submit(service)
    run(service, assigned_elsewhere.id, (ADMIN, "approve", {"provider_id": "provider-2"}))
    submit(service)  # not approved yet

    visible = service.list_for_provider("provider-1")

    assert [doc.id for doc in visible] == [open_booking.id]


def completed_booking(service, **kwargs):
    booking_id = accepted_booking(service, **kwargs)
    return run(
        service, booking_id,
        (PROVIDER, "mark_traveling", {}),
        (PROVIDER, "mark_arrived", {}),
        (PROVIDER, "start_work", {}),
        (PROVIDER, "mark_work_done", {}),
        (CLIENT, "confirm_completion", {}),
        (CLIENT, "pay", {"method": "cash"}),
        (PROVIDER, "confirm_payment", {}),
    )


@pytest.mark.integration
def test_record_review(service):
    doc = completed_booking(service)

    with pytest.raises(Unauthorized):
        service.record_review(doc.id, "client-2", 5)
    with pytest.raises(GuardViolation):
        service.record_review(doc.id, "client-1", 6)

    reviewed = service.record_review(doc.id, "client-1", 5, "  great work ")
    assert reviewed.reviewed
    assert reviewed.review_rating == 5
    assert reviewed.review_comment == "great work"

    with pytest.raises(GuardViolation):
        service.record_review(doc.id, "client-1", 4)


@pytest.mark.integration
def test_review_requires_completion(service):
    booking_id = accepted_booking(service)

    with pytest.raises(InvalidTransition):
        service.record_review(booking_id, "client-1", 5)


@pytest.mark.integration
def test_revenue(service):
    completed_booking(service, service_category="plumbing")
    cancelled = submit(service)
    run(service, cancelled.id, (CLIENT, "cancel", {"reason": "no longer needed"}))

    report = service.revenue()

    assert report.booking_count == 1
    assert report.system_fee_total == Decimal("25")
    assert report.gross_total == Decimal("525")
    assert report.by_category == {"plumbing": Decimal("25")}


def awaiting_payment(service):
    booking_id = accepted_booking(service)
    run(
        service, booking_id,
        (PROVIDER, "mark_traveling", {}),
        (PROVIDER, "mark_arrived", {}),
        (PROVIDER, "start_work", {}),
        (PROVIDER, "mark_work_done", {}),
        (CLIENT, "confirm_completion", {}),
    )
    return booking_id


def an_hour_later():
    return datetime.now(timezone.utc) + timedelta(hours=1)


@pytest.mark.integration
def test_capture_never_sent_is_failed_by_reconciliation(service, db_session, gateway):
    booking_id = awaiting_payment(service)
    # The pay command commits, then the process stops before the gateway is called
    service._apply_once(
        booking_id, CLIENT, "pay", {"method": "gcash", "source_ref": "src_1"}, None
    )
    assert service.snapshot(booking_id).payment_status is PaymentStatus.PENDING
    with pytest.raises(GuardViolation):
        service.apply(booking_id, CLIENT, "pay", {"method": "cash"})
    with pytest.raises(GuardViolation):
        service.apply(booking_id, ADMIN, "cancel", {"reason": "stuck"})

    push = RecordingProvider()
    results = reconcile_escrow(
        db_session, gateway=gateway, notifier=NotificationService(push_provider=push), now=an_hour_later()
    )

    assert results["captures_checked"] == 1
    assert results["captures_failed"] == 1
    doc = service.snapshot(booking_id)
    assert doc.status is BookingStatus.PENDING_PAYMENT
    assert doc.payment_status is PaymentStatus.NONE
    assert doc.settlements[0].status is SettlementStatus.FAILED
    assert doc.settlements[0].failure_reason == "no capture on record"
    assert [m["to"] for m in push.sent] == ["client-1"]

    doc, _ = service.apply(booking_id, CLIENT, "pay", {"method": "cash"})
    assert doc.status is BookingStatus.PAYMENT_RECEIVED


@pytest.mark.integration
def test_unrecorded_capture_is_held_and_released_by_reconciliation(service, db_session, gateway):
    booking_id = awaiting_payment(service)
    _, intents = service._apply_once(
        booking_id, CLIENT, "pay", {"method": "gcash", "source_ref": "src_1"}, None
    )
    # The gateway captured, but the outcome never reached the booking
    capture = next(i for i in intents if isinstance(i, CapturePayment))
    assert gateway.capture(capture).ok

    results = reconcile_escrow(db_session, gateway=gateway, now=an_hour_later())

    assert results["captures_succeeded"] == 1
    doc = service.snapshot(booking_id)
    assert doc.status is BookingStatus.PAYMENT_RECEIVED
    assert doc.payment_status is PaymentStatus.RELEASED
    assert [c["operation"] for c in gateway.calls] == ["capture", "release"]
    assert get_metrics_collector().get_counter_value(
        "payment_gateway_calls_total", {"operation": "capture_status", "outcome": "ok"}
    ) == 1

    doc, _ = service.apply(booking_id, PROVIDER, "confirm_payment")
    assert doc.status is BookingStatus.COMPLETED


@pytest.mark.integration
def test_recent_pending_capture_is_left_alone(service, db_session, gateway):
    booking_id = awaiting_payment(service)
    service._apply_once(
        booking_id, CLIENT, "pay", {"method": "gcash", "source_ref": "src_1"}, None
    )

    results = reconcile_escrow(db_session, gateway=gateway)

    assert results["captures_checked"] == 0
    assert service.snapshot(booking_id).payment_status is PaymentStatus.PENDING


@pytest.mark.integration
def test_unresolved_capture_stays_pending(service, db_session):
    booking_id = awaiting_payment(service)
    service._apply_once(
        booking_id, CLIENT, "pay", {"method": "gcash", "source_ref": "src_1"}, None
    )
    gateway = ConsolePaymentGateway()
    gateway.capture_status = lambda intent: GatewayResult(ok=False, pending=True, reason="payment pending")

    results = reconcile_escrow(db_session, gateway=gateway, now=an_hour_later())

    assert results["captures_unresolved"] == 1
    assert service.snapshot(booking_id).payment_status is PaymentStatus.PENDING


@pytest.mark.integration
def test_lost_feedback_race_does_not_fail_the_committed_command(service, db_session, gateway):
    booking_id = awaiting_payment(service)

    with patch.object(
        service, "_feed_back", side_effect=VersionConflict(str(booking_id), 7, 8)
    ):
        doc, _ = service.apply(
            booking_id, CLIENT, "pay", {"method": "gcash", "source_ref": "src_1"}
        )

    assert doc.status is BookingStatus.PENDING_PAYMENT
    assert doc.payment_status is PaymentStatus.PENDING
    assert [c["operation"] for c in gateway.calls] == ["capture"]

    results = reconcile_escrow(db_session, gateway=gateway, now=an_hour_later())

    assert results["captures_succeeded"] == 1
    assert service.snapshot(booking_id).status is BookingStatus.PAYMENT_RECEIVED


@pytest.mark.integration
def test_conflicting_counter_offers_on_the_same_version(service):
    doc = submit(service, is_negotiable=True)
    doc = run(
        service, doc.id,
        (ADMIN, "approve", {}),
        (CLIENT, "send_offer", {"price": "100"}),
    )
    assert doc.status is BookingStatus.PENDING_NEGOTIATION
    seen = doc.version

    countered, _ = service.apply(
        doc.id, PROVIDER, "counter", {"price": "140"}, expected_version=seen
    )
    with pytest.raises(VersionConflict) as exc_info:
        service.apply(
            doc.id, Actor(ActorRole.PROVIDER, "provider-2"), "counter", {"price": "130"},
            expected_version=seen,
        )

    assert exc_info.value.details["current_version"] == seen + 1
    latest = service.snapshot(doc.id)
    assert latest.version == countered.version
    assert latest.provider_id == "provider-1"
    assert latest.counter_offer_total == countered.counter_offer_total


@pytest.mark.integration
def test_same_command_twice_on_the_same_version(service, gateway):
    booking_id = accepted_booking(service, payment_preference=PaymentPreference.PAY_FIRST)
    seen = service.snapshot(booking_id).version
    payload = {"method": "gcash", "source_ref": "src_1"}

    doc, _ = service.apply(booking_id, CLIENT, "pay_upfront", payload, expected_version=seen)
    with pytest.raises(VersionConflict):
        service.apply(booking_id, CLIENT, "pay_upfront", payload, expected_version=seen)

    assert doc.is_paid_upfront
    assert len(service.snapshot(booking_id).settlements) == 1
    assert [c["operation"] for c in gateway.calls] == ["capture"]
    assert get_metrics_collector().get_counter_value(
        "booking_transitions_total",
        {"command": "pay_upfront", "from_status": "accepted", "to_status": "accepted"},
    ) == 1
