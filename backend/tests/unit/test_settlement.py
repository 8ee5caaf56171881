"""
Tests for payment settlement: upfront, pay-later, escrow and refunds.
"""
from decimal import Decimal

import pytest

from src.booking import charges, settlement
from src.booking.document import (
    BookingStatus,
    PaymentMethod,
    PaymentPreference,
    PaymentStatus,
    SettlementPurpose,
    SettlementStatus,
)
from src.booking.intents import (
    CapturePayment,
    NotificationEvent,
    NotifyClient,
    NotifyProvider,
    RefundEscrow,
    ReleaseEscrow,
)
from src.lib.exceptions import GuardViolation, InvalidTransition, PendingChargesUnresolved

from conftest import NOW, make_booking

MINIMUM = Decimal("100")


def pay_first(**overrides):
    fields = dict(
        status=BookingStatus.ACCEPTED,
        provider_id="provider-1",
        admin_approved=True,
        payment_preference=PaymentPreference.PAY_FIRST,
    )
    fields.update(overrides)
    return make_booking(**fields)


def held_upfront(booking):
    booking, intents = settlement.pay_upfront(booking, "gcash", "src_123", NOW, MINIMUM)
    capture = intents[0]
    booking, _ = settlement.capture_succeeded(booking, capture.settlement_id, "pay_abc", NOW)
    return booking


@pytest.mark.unit
def test_derive_payment_status_precedence():
    booking = held_upfront(pay_first())
    assert settlement.derive_payment_status(booking.settlements) is PaymentStatus.HELD
    assert settlement.derive_payment_status(()) is PaymentStatus.NONE


@pytest.mark.unit
def test_upfront_requires_pay_first():
    booking = make_booking(status=BookingStatus.ACCEPTED, provider_id="provider-1")
    with pytest.raises(GuardViolation):
        settlement.pay_upfront(booking, "cash", None, NOW, MINIMUM)


@pytest.mark.unit
def test_unsupported_method():
    with pytest.raises(GuardViolation):
        settlement.pay_upfront(pay_first(), "bitcoin", None, NOW, MINIMUM)


@pytest.mark.unit
def test_cash_upfront_settles_immediately():
    booking, intents = settlement.pay_upfront(pay_first(), "cash", None, NOW, MINIMUM)

    assert booking.is_paid_upfront
    assert booking.upfront_paid_amount == Decimal("525")
    assert booking.payment_method is PaymentMethod.CASH
    assert booking.payment_status is PaymentStatus.RELEASED
    assert booking.settlements[0].status is SettlementStatus.RELEASED
    assert booking.amount_due == Decimal("0")
    assert isinstance(intents[0], NotifyProvider)
    assert intents[0].event is NotificationEvent.UPFRONT_PAYMENT_RECEIVED


@pytest.mark.unit
def test_electronic_upfront_waits_for_capture():
    booking, intents = settlement.pay_upfront(pay_first(), "gcash", "src_123", NOW, MINIMUM)

    assert not booking.is_paid_upfront
    assert booking.payment_status is PaymentStatus.PENDING
    assert len(intents) == 1
    capture = intents[0]
    assert isinstance(capture, CapturePayment)
    assert capture.amount == Decimal("525")
    assert capture.purpose is SettlementPurpose.UPFRONT
    assert capture.source_ref == "src_123"


@pytest.mark.unit
def test_upfront_twice_is_rejected():
    booking, _ = settlement.pay_upfront(pay_first(), "cash", None, NOW, MINIMUM)
    with pytest.raises(InvalidTransition):
        settlement.pay_upfront(booking, "cash", None, NOW, MINIMUM)


@pytest.mark.unit
def test_no_second_payment_while_capture_in_flight():
    booking, _ = settlement.pay_upfront(pay_first(), "gcash", "src_123", NOW, MINIMUM)
    with pytest.raises(GuardViolation):
        settlement.pay_upfront(booking, "cash", None, NOW, MINIMUM)


@pytest.mark.unit
def test_electronic_minimum():
    booking = pay_first(provider_price=Decimal("50"))
    with pytest.raises(GuardViolation):
        settlement.pay_upfront(booking, "maya", "src_1", NOW, MINIMUM)
    # cash has no minimum
    paid, _ = settlement.pay_upfront(booking, "cash", None, NOW, MINIMUM)
    assert paid.is_paid_upfront


@pytest.mark.unit
def test_capture_succeeded_holds_upfront_in_escrow():
    booking = held_upfront(pay_first())

    assert booking.is_paid_upfront
    assert booking.status is BookingStatus.ACCEPTED
    assert booking.payment_status is PaymentStatus.HELD
    assert booking.settlements[0].external_ref == "pay_abc"
    assert booking.amount_paid == Decimal("525")


@pytest.mark.unit
def test_capture_failed_leaves_status_and_allows_retry():
    booking, intents = settlement.pay_upfront(pay_first(), "gcash", "src_123", NOW, MINIMUM)
    failed, notices = settlement.capture_failed(booking, intents[0].settlement_id, "declined", NOW)

    assert failed.status is BookingStatus.ACCEPTED
    assert not failed.is_paid_upfront
    assert failed.settlements[0].status is SettlementStatus.FAILED
    assert failed.settlements[0].failure_reason == "declined"
    assert failed.payment_status is PaymentStatus.NONE
    assert isinstance(notices[0], NotifyClient)
    assert notices[0].event is NotificationEvent.PAYMENT_FAILED

    retried, _ = settlement.pay_upfront(failed, "cash", None, NOW, MINIMUM)
    assert retried.is_paid_upfront
    assert len(retried.settlements) == 2


@pytest.mark.unit
def test_capture_result_for_settled_attempt_is_rejected():
    booking = held_upfront(pay_first())
    with pytest.raises(InvalidTransition):
        settlement.capture_succeeded(booking, booking.settlements[0].id, "pay_again", NOW)
    with pytest.raises(GuardViolation):
        settlement.capture_failed(booking, "missing", "declined", NOW)


@pytest.mark.unit
def test_confirm_completion_blocked_by_pending_charges():
    booking = make_booking(status=BookingStatus.PENDING_COMPLETION, provider_id="provider-1")
    booking = charges.add_charge(booking, "extra pipe", "200", NOW)

    with pytest.raises(PendingChargesUnresolved) as exc_info:
        settlement.confirm_completion(booking, NOW)
    assert exc_info.value.details["charge_ids"] == [booking.additional_charges[0].id]


@pytest.mark.unit
def test_confirm_completion_pay_later_waits_for_payment():
    booking = make_booking(status=BookingStatus.PENDING_COMPLETION, provider_id="provider-1")
    updated, intents = settlement.confirm_completion(booking, NOW)

    assert updated.status is BookingStatus.PENDING_PAYMENT
    assert updated.client_confirmed_at == NOW
    assert intents == []


@pytest.mark.unit
def test_confirm_completion_fully_paid_releases_escrow():
    booking = held_upfront(pay_first()).model_copy(update={"status": BookingStatus.PENDING_COMPLETION})
    updated, intents = settlement.confirm_completion(booking, NOW)

    assert updated.status is BookingStatus.PAYMENT_RECEIVED
    assert updated.final_amount == Decimal("525")
    assert len(intents) == 1
    release = intents[0]
    assert isinstance(release, ReleaseEscrow)
    assert release.amount == Decimal("525")
    assert release.external_ref == "pay_abc"


@pytest.mark.unit
def test_pay_later_cash():
    booking = make_booking(status=BookingStatus.PENDING_PAYMENT, provider_id="provider-1")
    updated, intents = settlement.pay(booking, "cash", None, NOW, MINIMUM)

    assert updated.status is BookingStatus.PAYMENT_RECEIVED
    assert updated.final_amount == Decimal("525")
    assert updated.payment_status is PaymentStatus.RELEASED
    assert updated.settlements[0].purpose is SettlementPurpose.FINAL
    assert [i.event for i in intents] == [NotificationEvent.PAYMENT_RECEIVED]


@pytest.mark.unit
def test_settlement_amounts_are_whole_centavos():
    booking = make_booking(
        status=BookingStatus.PENDING_PAYMENT,
        provider_id="provider-1",
        provider_price=Decimal("333.33"),
    )
    assert booking.total_amount == Decimal("349.9965")

    pending, intents = settlement.pay(booking, "gcash", "src_1", NOW, MINIMUM)
    capture = intents[0]
    assert capture.amount == Decimal("350.00")
    assert pending.settlements[0].amount == capture.amount

    paid, _ = settlement.capture_succeeded(pending, capture.settlement_id, "pay_1", NOW)
    assert paid.final_amount == Decimal("350.00")
    assert paid.amount_due == Decimal("0")


@pytest.mark.unit
def test_pay_after_upfront_covers_only_approved_charges():
    booking, _ = settlement.pay_upfront(pay_first(), "cash", None, NOW, MINIMUM)
    booking = charges.add_charge(booking, "extra pipe", "200", NOW)
    booking = charges.approve_charge(booking, booking.additional_charges[0].id, NOW)
    booking = booking.model_copy(update={"status": BookingStatus.PENDING_COMPLETION})

    booking, _ = settlement.confirm_completion(booking, NOW)
    assert booking.status is BookingStatus.PENDING_PAYMENT
    assert booking.total_amount == Decimal("725")
    assert booking.amount_due == Decimal("200")

    paid, _ = settlement.pay(booking, "gcash", "src_2", NOW, MINIMUM)
    capture = paid.settlements[-1]
    assert capture.purpose is SettlementPurpose.ADDITIONAL
    assert capture.amount == Decimal("200")

    paid, intents = settlement.capture_succeeded(paid, capture.id, "pay_2", NOW)
    assert paid.status is BookingStatus.PAYMENT_RECEIVED
    assert paid.additional_paid_amount == Decimal("200")
    assert paid.final_amount == Decimal("725")
    # the delta is released straight away because completion is confirmed
    assert any(isinstance(i, ReleaseEscrow) and i.settlement_id == capture.id for i in intents)


@pytest.mark.unit
def test_cancel_refunds_only_held_settlements():
    assert settlement.cancel_refund_intents(pay_first()) == []

    booking = held_upfront(pay_first())
    refunds = settlement.cancel_refund_intents(booking)
    assert len(refunds) == 1
    assert isinstance(refunds[0], RefundEscrow)
    assert refunds[0].amount == Decimal("525")
    assert refunds[0].external_ref == "pay_abc"


@pytest.mark.unit
def test_record_release_is_idempotent():
    booking = held_upfront(pay_first())
    settlement_id = booking.settlements[0].id

    released = settlement.record_release(booking, settlement_id, "payout_1", NOW)
    assert released.settlements[0].status is SettlementStatus.RELEASED
    assert released.payment_status is PaymentStatus.RELEASED

    again = settlement.record_release(released, settlement_id, "payout_1", NOW)
    assert again is released

    with pytest.raises(InvalidTransition):
        settlement.record_refund(released, settlement_id, "refund_1", NOW)


@pytest.mark.unit
def test_record_refund():
    booking = held_upfront(pay_first())
    refunded = settlement.record_refund(booking, booking.settlements[0].id, "ref_1", NOW)

    assert refunded.payment_status is PaymentStatus.REFUNDED
    assert refunded.amount_paid == Decimal("0")
