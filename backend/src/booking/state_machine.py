"""
Booking state machine.

``apply`` is a pure function::

    (booking, actor, command, payload, now) -> Transition(booking', intents)

Every command is looked up in RULES by (command, actor role). A rule names
the statuses the command is legal from and the handler that builds the new
document. Checks run in a fixed order so the same bad command always fails
with the same error:

1. terminal booking          -> InvalidTransition
2. unknown command           -> InvalidTransition
3. role has no rule          -> Unauthorized
4. status not allowed        -> InvalidTransition
5. actor is not the party    -> Unauthorized
6. provider before approval  -> GuardViolation
7. handler guards            -> any BookingError
8. result invariants         -> GuardViolation

A raised error means nothing changed. The caller owns versioning,
persistence and executing the returned intents.
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from src.booking import admin_gate, charges, negotiation, settlement
from src.booking.document import (
    COMMITTED_WORK_STATUSES,
    ActorRole,
    BookingDocument,
    BookingStatus,
)
from src.booking.guards import (
    check_invariants,
    require_assigned_provider,
    require_client,
    require_no_payment_in_flight,
    require_not_terminal,
    require_reason,
    require_status,
    require_upfront_paid,
)
from src.booking.intents import Intent, NotificationEvent, NotifyClient, NotifyProvider
from src.booking.pricing import reprice, to_money
from src.lib.exceptions import GuardViolation, InvalidTransition, Unauthorized
from src.lib.settings import settings

DEFAULT_DISCOUNT_REASON = "Easy job discount"


class Command(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    SEND_OFFER = "send_offer"
    COUNTER = "counter"
    ACCEPT_COUNTER = "accept_counter"
    ACCEPT_OFFER = "accept_offer"
    ACCEPT_JOB = "accept_job"
    MARK_TRAVELING = "mark_traveling"
    MARK_ARRIVED = "mark_arrived"
    START_WORK = "start_work"
    MARK_WORK_DONE = "mark_work_done"
    CONFIRM_COMPLETION = "confirm_completion"
    PAY = "pay"
    PAY_UPFRONT = "pay_upfront"
    CAPTURE_SUCCEEDED = "capture_succeeded"
    CAPTURE_FAILED = "capture_failed"
    CONFIRM_PAYMENT = "confirm_payment"
    ADD_CHARGE = "add_charge"
    APPROVE_CHARGE = "approve_charge"
    REJECT_CHARGE = "reject_charge"
    APPLY_DISCOUNT = "apply_discount"


@dataclass(frozen=True)
class Actor:
    role: ActorRole
    id: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    command: Command
    actor: Actor
    from_status: BookingStatus
    booking: BookingDocument
    intents: Tuple[Intent, ...] = ()

    @property
    def to_status(self) -> BookingStatus:
        return self.booking.status


@dataclass(frozen=True)
class Context:
    booking: BookingDocument
    actor: Actor
    payload: Mapping[str, Any]
    now: datetime
    min_electronic_payment: Decimal


Result = Tuple[BookingDocument, List[Intent]]
Handler = Callable[[Context], Result]


@dataclass(frozen=True)
class Rule:
    from_statuses: FrozenSet[BookingStatus]
    handler: Handler
    # Provider may take an unassigned booking with this command
    claims: bool = False


# ----- notifications -----

def _to_client(booking: BookingDocument, event: NotificationEvent, **detail: Any) -> NotifyClient:
    return NotifyClient(booking_id=booking.id, client_id=booking.client_id, event=event, detail=detail)


def _to_provider(booking: BookingDocument, event: NotificationEvent, **detail: Any) -> NotifyProvider:
    return NotifyProvider(booking_id=booking.id, provider_id=booking.provider_id, event=event, detail=detail)


def _move(ctx: Context, status: BookingStatus, **updates: Any) -> BookingDocument:
    updates.update(status=status, updated_at=ctx.now)
    return ctx.booking.model_copy(update=updates)


# ----- admin -----

def _approve(ctx: Context) -> Result:
    return admin_gate.approve(ctx.booking, ctx.payload.get("provider_id"), ctx.now)


def _reject(ctx: Context) -> Result:
    reason = ctx.payload.get("reason")
    return admin_gate.reject(ctx.booking, reason.strip() if isinstance(reason, str) else None, ctx.now)


# ----- negotiation -----

def _send_offer(ctx: Context) -> Result:
    booking, _ = negotiation.propose_offer(
        ctx.booking, ctx.payload.get("price"), ctx.payload.get("note"), ctx.now
    )
    return booking, [
        _to_provider(booking, NotificationEvent.OFFER_RECEIVED, offered_price=booking.offered_price)
    ]


def _counter(ctx: Context) -> Result:
    booking, _ = negotiation.counter_offer(
        ctx.booking, ctx.payload.get("price"), ctx.payload.get("note"), ctx.now
    )
    booking = booking.model_copy(update={"provider_id": booking.provider_id or ctx.actor.id})
    return booking, [
        _to_client(
            booking,
            NotificationEvent.COUNTER_OFFER_RECEIVED,
            counter_offer_price=booking.counter_offer_price,
            note=booking.counter_offer_note,
        )
    ]


def _accept_counter(ctx: Context) -> Result:
    booking, _ = negotiation.accept_counter(ctx.booking, ctx.now)
    return booking, [
        _to_provider(booking, NotificationEvent.COUNTER_OFFER_ACCEPTED, provider_price=booking.provider_price)
    ]


def _accept_offer(ctx: Context) -> Result:
    booking, _ = negotiation.accept_offer(ctx.booking, ctx.actor.id, ctx.now)
    return booking, [
        _to_client(booking, NotificationEvent.JOB_ACCEPTED, provider_price=booking.provider_price)
    ]


# ----- job progress -----

def _accept_job(ctx: Context) -> Result:
    booking = _move(
        ctx,
        BookingStatus.ACCEPTED,
        provider_id=ctx.booking.provider_id or ctx.actor.id,
        accepted_at=ctx.now,
    )
    return booking, [_to_client(booking, NotificationEvent.JOB_ACCEPTED)]


def _mark_traveling(ctx: Context) -> Result:
    booking = _move(ctx, BookingStatus.TRAVELING)
    return booking, [_to_client(booking, NotificationEvent.PROVIDER_TRAVELING)]


def _mark_arrived(ctx: Context) -> Result:
    booking = _move(ctx, BookingStatus.ARRIVED)
    return booking, [_to_client(booking, NotificationEvent.PROVIDER_ARRIVED)]


def _start_work(ctx: Context) -> Result:
    require_upfront_paid(ctx.booking)
    booking = _move(ctx, BookingStatus.IN_PROGRESS, started_at=ctx.now)
    return booking, [_to_client(booking, NotificationEvent.WORK_STARTED)]


def _mark_work_done(ctx: Context) -> Result:
    booking = _move(ctx, BookingStatus.PENDING_COMPLETION, work_done_at=ctx.now)
    return booking, [_to_client(booking, NotificationEvent.WORK_COMPLETED)]


def _confirm_completion(ctx: Context) -> Result:
    booking, intents = settlement.confirm_completion(ctx.booking, ctx.now)
    intents.append(
        _to_provider(
            booking,
            NotificationEvent.COMPLETION_CONFIRMED,
            amount_due=booking.amount_due,
            status=booking.status.value,
        )
    )
    return booking, intents


def _confirm_payment(ctx: Context) -> Result:
    require_no_payment_in_flight(ctx.booking)
    booking = _move(ctx, BookingStatus.COMPLETED, completed_at=ctx.now)
    return booking, [_to_client(booking, NotificationEvent.JOB_COMPLETED)]


# ----- payments -----

def _pay(ctx: Context) -> Result:
    return settlement.pay(
        ctx.booking,
        ctx.payload.get("method"),
        ctx.payload.get("source_ref"),
        ctx.now,
        ctx.min_electronic_payment,
    )


def _pay_upfront(ctx: Context) -> Result:
    return settlement.pay_upfront(
        ctx.booking,
        ctx.payload.get("method"),
        ctx.payload.get("source_ref"),
        ctx.now,
        ctx.min_electronic_payment,
    )


def _capture_succeeded(ctx: Context) -> Result:
    return settlement.capture_succeeded(
        ctx.booking, ctx.payload.get("settlement_id"), ctx.payload.get("reference"), ctx.now
    )


def _capture_failed(ctx: Context) -> Result:
    return settlement.capture_failed(
        ctx.booking, ctx.payload.get("settlement_id"), ctx.payload.get("reason"), ctx.now
    )


# ----- charges and discounts -----

def _add_charge(ctx: Context) -> Result:
    booking = charges.add_charge(
        ctx.booking, ctx.payload.get("reason"), ctx.payload.get("amount"), ctx.now
    )
    charge = booking.additional_charges[-1]
    return booking, [
        _to_client(
            booking,
            NotificationEvent.ADDITIONAL_CHARGE_REQUESTED,
            charge_id=charge.id,
            amount=charge.amount,
            reason=charge.reason,
        )
    ]


def _approve_charge(ctx: Context) -> Result:
    charge_id = ctx.payload.get("charge_id")
    booking = charges.approve_charge(ctx.booking, charge_id, ctx.now)
    return booking, [
        _to_provider(
            booking,
            NotificationEvent.ADDITIONAL_CHARGE_APPROVED,
            charge_id=charge_id,
            total_amount=booking.total_amount,
        )
    ]


def _reject_charge(ctx: Context) -> Result:
    charge_id = ctx.payload.get("charge_id")
    booking = charges.reject_charge(ctx.booking, charge_id, ctx.now, ctx.payload.get("reason"))
    return booking, [
        _to_provider(booking, NotificationEvent.ADDITIONAL_CHARGE_REJECTED, charge_id=charge_id)
    ]


def _apply_discount(ctx: Context) -> Result:
    booking = ctx.booking
    if booking.is_paid_upfront or booking.amount_paid > 0:
        raise GuardViolation("A discount cannot be applied after payment")
    require_no_payment_in_flight(booking)

    amount = to_money(ctx.payload.get("amount"))
    if amount <= 0 or amount >= booking.provider_price:
        raise GuardViolation(
            "Discount must be greater than zero and less than the service price",
            details={"amount": str(amount), "provider_price": str(booking.provider_price)},
        )
    reason = ctx.payload.get("reason")
    reason = reason.strip() if isinstance(reason, str) and reason.strip() else DEFAULT_DISCOUNT_REASON

    updated = reprice(booking, discount_amount=amount, discount_reason=reason, updated_at=ctx.now)
    return updated, [
        _to_client(
            updated,
            NotificationEvent.DISCOUNT_APPLIED,
            discount_amount=amount,
            reason=reason,
            total_amount=updated.total_amount,
        )
    ]


# ----- cancellation -----

def _cancel(ctx: Context) -> Result:
    reason = require_reason(ctx.payload)
    require_no_payment_in_flight(ctx.booking)

    refunds = settlement.cancel_refund_intents(ctx.booking)
    booking = _move(
        ctx,
        BookingStatus.CANCELLED,
        cancelled_by=ctx.actor.role,
        cancellation_reason=reason,
        cancelled_at=ctx.now,
    )
    intents: List[Intent] = list(refunds)
    if ctx.actor.role is not ActorRole.PROVIDER and booking.provider_id is not None:
        intents.append(_to_provider(booking, NotificationEvent.JOB_CANCELLED, reason=reason, by=ctx.actor.role.value))
    if ctx.actor.role is not ActorRole.CLIENT:
        intents.append(_to_client(booking, NotificationEvent.JOB_CANCELLED, reason=reason, by=ctx.actor.role.value))
    return booking, intents


# ----- rule table -----

_S = BookingStatus
_GATE = frozenset({_S.PENDING, _S.PENDING_NEGOTIATION, _S.COUNTER_OFFER})
_ON_SITE = frozenset({_S.ACCEPTED, _S.TRAVELING, _S.ARRIVED})
_CAPTURABLE = _ON_SITE | {_S.PENDING_PAYMENT}

RULES: Dict[Tuple[Command, ActorRole], Rule] = {
    (Command.APPROVE, ActorRole.ADMIN): Rule(_GATE, _approve),
    (Command.REJECT, ActorRole.ADMIN): Rule(_GATE, _reject),
    (Command.CANCEL, ActorRole.ADMIN): Rule(
        _GATE | COMMITTED_WORK_STATUSES | {_S.PENDING_PAYMENT}, _cancel
    ),

    (Command.SEND_OFFER, ActorRole.CLIENT): Rule(frozenset({_S.PENDING, _S.COUNTER_OFFER}), _send_offer),
    (Command.ACCEPT_COUNTER, ActorRole.CLIENT): Rule(frozenset({_S.COUNTER_OFFER}), _accept_counter),
    (Command.CONFIRM_COMPLETION, ActorRole.CLIENT): Rule(
        frozenset({_S.PENDING_COMPLETION}), _confirm_completion
    ),
    (Command.PAY, ActorRole.CLIENT): Rule(frozenset({_S.PENDING_PAYMENT}), _pay),
    (Command.PAY_UPFRONT, ActorRole.CLIENT): Rule(_ON_SITE, _pay_upfront),
    (Command.APPROVE_CHARGE, ActorRole.CLIENT): Rule(COMMITTED_WORK_STATUSES, _approve_charge),
    (Command.REJECT_CHARGE, ActorRole.CLIENT): Rule(COMMITTED_WORK_STATUSES, _reject_charge),
    (Command.CANCEL, ActorRole.CLIENT): Rule(_GATE | {_S.ACCEPTED}, _cancel),

    (Command.COUNTER, ActorRole.PROVIDER): Rule(frozenset({_S.PENDING_NEGOTIATION}), _counter, claims=True),
    (Command.ACCEPT_OFFER, ActorRole.PROVIDER): Rule(
        frozenset({_S.PENDING_NEGOTIATION}), _accept_offer, claims=True
    ),
    (Command.ACCEPT_JOB, ActorRole.PROVIDER): Rule(frozenset({_S.PENDING}), _accept_job, claims=True),
    (Command.MARK_TRAVELING, ActorRole.PROVIDER): Rule(frozenset({_S.ACCEPTED}), _mark_traveling),
    (Command.MARK_ARRIVED, ActorRole.PROVIDER): Rule(frozenset({_S.TRAVELING}), _mark_arrived),
    (Command.START_WORK, ActorRole.PROVIDER): Rule(frozenset({_S.ARRIVED}), _start_work),
    (Command.MARK_WORK_DONE, ActorRole.PROVIDER): Rule(frozenset({_S.IN_PROGRESS}), _mark_work_done),
    (Command.CONFIRM_PAYMENT, ActorRole.PROVIDER): Rule(frozenset({_S.PAYMENT_RECEIVED}), _confirm_payment),
    (Command.ADD_CHARGE, ActorRole.PROVIDER): Rule(COMMITTED_WORK_STATUSES, _add_charge),
    (Command.APPLY_DISCOUNT, ActorRole.PROVIDER): Rule(COMMITTED_WORK_STATUSES, _apply_discount),
    (Command.CANCEL, ActorRole.PROVIDER): Rule(_GATE | _ON_SITE, _cancel),

    (Command.CAPTURE_SUCCEEDED, ActorRole.SYSTEM): Rule(_CAPTURABLE, _capture_succeeded),
    (Command.CAPTURE_FAILED, ActorRole.SYSTEM): Rule(_CAPTURABLE, _capture_failed),
}


def parse_command(command: Any) -> Command:
    try:
        return Command(command)
    except ValueError:
        raise InvalidTransition(f"Unknown command '{command}'", details={"command": str(command)})


def _check_identity(booking: BookingDocument, actor: Actor, rule: Rule) -> None:
    if actor.role is ActorRole.CLIENT:
        require_client(booking, actor.id)
    elif actor.role is ActorRole.PROVIDER:
        require_assigned_provider(booking, actor.id, may_claim=rule.claims)
        admin_gate.ensure_actionable(booking)


def apply(
    booking: BookingDocument,
    actor: Actor,
    command: Any,
    payload: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
    min_electronic_payment: Optional[Decimal] = None,
) -> Transition:
    """Validate ``command`` against ``booking`` and return the resulting transition."""
    require_not_terminal(booking, str(getattr(command, "value", command)))
    cmd = parse_command(command)

    rule = RULES.get((cmd, actor.role))
    if rule is None:
        raise Unauthorized(
            f"{actor.role.value} may not {cmd.value}",
            details={"role": actor.role.value, "command": cmd.value},
        )
    require_status(booking, rule.from_statuses, cmd.value)
    _check_identity(booking, actor, rule)

    ctx = Context(
        booking=booking,
        actor=actor,
        payload=payload or {},
        now=now or datetime.now(timezone.utc),
        min_electronic_payment=(
            settings.min_electronic_payment if min_electronic_payment is None else min_electronic_payment
        ),
    )
    updated, intents = rule.handler(ctx)
    check_invariants(booking, updated)

    return Transition(
        command=cmd,
        actor=actor,
        from_status=booking.status,
        booking=updated,
        intents=tuple(intents),
    )


def allowed_commands(booking: BookingDocument, role: ActorRole) -> List[str]:
    """Commands ``role`` could issue from the booking's current status (ignores payload guards)."""
    if booking.is_terminal:
        return []
    return [
        cmd.value
        for (cmd, rule_role), rule in RULES.items()
        if rule_role is role and booking.status in rule.from_statuses
    ]
