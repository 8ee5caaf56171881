"""
Booking service - hosts the pure booking core.

Owns everything the core does not: loading and saving documents with
optimistic concurrency, executing payment intents against the gateway and
feeding the results back as system commands, and tracking refunds.

Usage:
    service = BookingService(db, gateway=get_payment_gateway())
    doc = service.submit(client_id="c-1", provider_price=Decimal("500"),
                         payment_preference=PaymentPreference.PAY_LATER)
    doc, intents = service.apply(doc.id, Actor(ActorRole.ADMIN, "a-1"), "approve",
                                 expected_version=doc.version)
"""
from collections import deque
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from src.booking import admin_gate, settlement, state_machine
from src.booking.document import (
    ActorRole,
    BookingDocument,
    BookingStatus,
    PaymentPreference,
    SettlementStatus,
)
from src.booking.intents import (
    PAYMENT_INTENTS,
    CapturePayment,
    Intent,
    RefundEscrow,
    ReleaseEscrow,
)
from src.booking.pricing import reprice, to_money
from src.booking.state_machine import Actor, Command
from src.lib.exceptions import (
    BookingError,
    GuardViolation,
    InvalidTransition,
    NotFoundException,
    PaymentCaptureFailed,
    Unauthorized,
    VersionConflict,
)
from src.lib.logging import get_logger
from src.lib.metrics import get_metrics_collector
from src.lib.settings import settings
from src.models.bookings import Booking
from src.models.refunds import Refund, RefundStatus
from src.services.booking_repository import BookingRepository
from src.services.payment_gateway import ConsolePaymentGateway, GatewayResult, PaymentGateway
from src.services.revenue_service import RevenueReport, summarize_revenue


logger = get_logger(__name__)

SYSTEM_ACTOR = Actor(role=ActorRole.SYSTEM, id="payment-gateway")

SETTLEMENT_FACTS = ("released", "refunded")


class BookingService:
    """
    Application service for the booking lifecycle.

    Commands for one booking are serialized through the ``version`` column:
    a write based on a stale read fails with VersionConflict and the caller
    re-reads and retries.
    """

    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGateway] = None,
        clock: Optional[Callable[[], datetime]] = None,
        feedback_attempts: int = 3,
    ):
        """
        Args:
            db: Database session
            gateway: Payment gateway for escrow intents (console by default)
            clock: Source of "now", injectable for tests
            feedback_attempts: Retries when feeding a gateway result back races another writer
        """
        self.db = db
        self.gateway = gateway or ConsolePaymentGateway()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._feedback_retrying = Retrying(
            stop=stop_after_attempt(feedback_attempts),
            retry=retry_if_exception_type(VersionConflict),
            reraise=True,
        )
        self.metrics = get_metrics_collector()

    # ===== Reads =====

    def _load(self, booking_id: UUID) -> Booking:
        row = BookingRepository.get(self.db, booking_id)
        if row is None:
            raise NotFoundException("Booking", str(booking_id))
        return row

    def snapshot(self, booking_id: UUID) -> BookingDocument:
        """Read-only projection of the latest committed booking."""
        return BookingRepository.to_document(self._load(booking_id))

    def list_for_provider(self, provider_id: str) -> List[BookingDocument]:
        """Bookings the admin gate lets this provider see."""
        rows = BookingRepository.list_open_for_providers(self.db, provider_id)
        docs = [BookingRepository.to_document(row) for row in rows]
        return [doc for doc in docs if admin_gate.visible_to_provider(doc, provider_id)]

    def revenue(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> RevenueReport:
        rows = BookingRepository.list_by_status(
            self.db,
            (BookingStatus.COMPLETED, BookingStatus.PAYMENT_RECEIVED),
            start=start,
            end=end,
        )
        return summarize_revenue(BookingRepository.to_document(row) for row in rows)

    # ===== Submission =====

    def submit(
        self,
        client_id: str,
        provider_price: Any,
        payment_preference: PaymentPreference,
        is_negotiable: bool = False,
        provider_id: Optional[str] = None,
        title: Optional[str] = None,
        service_category: Optional[str] = None,
        notes: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        media_urls: Sequence[str] = (),
    ) -> BookingDocument:
        """Create a booking in ``pending`` awaiting admin approval."""
        if not client_id:
            raise GuardViolation("client_id is required", details={"field": "client_id"})
        price = to_money(provider_price, "provider_price")
        now = self.clock()

        doc = reprice(BookingDocument(
            id=uuid4(),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            provider_id=provider_id or None,
            title=title,
            service_category=service_category,
            notes=notes,
            scheduled_at=scheduled_at,
            media_urls=tuple(media_urls),
            status=BookingStatus.PENDING,
            provider_price=price,
            system_fee_percentage=settings.system_fee_percentage,
            payment_preference=PaymentPreference(payment_preference),
            is_negotiable=is_negotiable,
        ))

        row = BookingRepository.new_row(doc)
        self.db.add(row)
        self.db.commit()

        logger.info(
            "Booking submitted",
            extra={"extra_fields": {
                "booking_id": str(row.id),
                "client_id": client_id,
                "total_amount": str(doc.total_amount),
                "payment_preference": doc.payment_preference.value,
            }},
        )
        return BookingRepository.to_document(row)

    # ===== Commands =====

    def _apply_once(
        self,
        booking_id: UUID,
        actor: Actor,
        command: Any,
        payload: Optional[Mapping[str, Any]],
        expected_version: Optional[int],
    ) -> Tuple[BookingDocument, List[Intent]]:
        row = self._load(booking_id)
        current = BookingRepository.to_document(row)
        command_name = str(getattr(command, "value", command))

        if expected_version is not None and expected_version != row.version:
            self.metrics.increment_rejected(command_name, VersionConflict.code)
            raise VersionConflict(str(booking_id), expected_version, row.version)

        try:
            transition = state_machine.apply(
                current, actor, command, payload, now=self.clock()
            )
        except BookingError as exc:
            self.metrics.increment_rejected(command_name, exc.code)
            logger.warning(
                f"Booking command rejected: {exc.message}",
                extra={"extra_fields": {
                    "booking_id": str(booking_id),
                    "actor_role": actor.role.value,
                    "command": command_name,
                    "status": current.status.value,
                    "code": exc.code,
                }},
            )
            raise

        BookingRepository.write_document(row, transition.booking)
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            self.db.expire_all()
            latest = self._load(booking_id)
            self.metrics.increment_rejected(command_name, VersionConflict.code)
            raise VersionConflict(str(booking_id), current.version, latest.version)

        self.metrics.increment_transitions(
            command=transition.command.value,
            from_status=transition.from_status.value,
            to_status=transition.to_status.value,
        )
        logger.info(
            "Booking command applied",
            extra={"extra_fields": {
                "booking_id": str(booking_id),
                "actor_role": actor.role.value,
                "command": transition.command.value,
                "from_status": transition.from_status.value,
                "to_status": transition.to_status.value,
                "version": row.version,
            }},
        )
        return BookingRepository.to_document(row), list(transition.intents)

    def _feed_back(
        self,
        booking_id: UUID,
        command: Command,
        payload: Dict[str, Any],
    ) -> Tuple[BookingDocument, List[Intent]]:
        """Apply a gateway outcome as a system command against the latest version."""
        return self._feedback_retrying(
            self._apply_once, booking_id, SYSTEM_ACTOR, command, payload, None
        )

    def apply(
        self,
        booking_id: UUID,
        actor: Actor,
        command: Any,
        payload: Optional[Mapping[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> Tuple[BookingDocument, List[Intent]]:
        """
        Apply one actor command and execute the payment intents it produced.

        Once the actor's command has committed, a gateway result that cannot
        be recorded (the feedback lost every race) no longer fails the call:
        the settlement stays ``pending`` and ``reconcile_capture`` settles it.

        Returns:
            The latest booking and every intent emitted along the way
            (notifications are left for the caller to dispatch)

        Raises:
            VersionConflict: ``expected_version`` is stale
            PaymentCaptureFailed: the gateway declined; the failed attempt is
                saved and the booking status is unchanged
            BookingError: any other rejected command
        """
        doc, intents = self._apply_once(booking_id, actor, command, payload, expected_version)
        doc, more, failure = self._execute_payment_intents(booking_id, doc, intents)
        emitted: List[Intent] = list(intents) + more

        if failure is not None:
            exc = PaymentCaptureFailed(
                "Payment failed, please try again",
                details={
                    "booking_id": str(booking_id),
                    "reason": failure.reason,
                    "status": doc.status.value,
                    "version": doc.version,
                },
            )
            exc.intents = emitted
            raise exc

        return doc, emitted

    def _execute_payment_intents(
        self,
        booking_id: UUID,
        doc: BookingDocument,
        intents: Sequence[Intent],
    ) -> Tuple[BookingDocument, List[Intent], Optional[GatewayResult]]:
        """
        Run payment intents against the gateway, feeding capture outcomes back.

        Returns:
            The latest booking, intents emitted by the feedback commands, and
            the declined capture result if there was one
        """
        emitted: List[Intent] = []
        pending = deque(i for i in intents if isinstance(i, PAYMENT_INTENTS))
        failure: Optional[GatewayResult] = None

        while pending:
            intent = pending.popleft()
            if isinstance(intent, CapturePayment):
                result = self._call_gateway("capture", self.gateway.capture, intent)
                if not result.ok:
                    failure = result
                doc, more = self._record_capture(booking_id, intent, result)
                emitted.extend(more)
                pending.extend(i for i in more if isinstance(i, PAYMENT_INTENTS))
            elif isinstance(intent, ReleaseEscrow):
                self.release_escrow(intent)
                doc = self.snapshot(booking_id)
            elif isinstance(intent, RefundEscrow):
                self.refund_escrow(intent)
                doc = self.snapshot(booking_id)

        return doc, emitted, failure

    def _record_capture(
        self,
        booking_id: UUID,
        intent: CapturePayment,
        result: GatewayResult,
    ) -> Tuple[BookingDocument, List[Intent]]:
        """Feed a capture outcome back; a lost race leaves the settlement pending."""
        if result.ok:
            command = Command.CAPTURE_SUCCEEDED
            payload = {"settlement_id": intent.settlement_id, "reference": result.reference}
        else:
            command = Command.CAPTURE_FAILED
            payload = {"settlement_id": intent.settlement_id, "reason": result.reason}

        try:
            return self._feed_back(booking_id, command, payload)
        except VersionConflict:
            logger.error(
                "Capture outcome not recorded, left for reconciliation",
                extra={"extra_fields": {
                    "booking_id": str(booking_id),
                    "settlement_id": intent.settlement_id,
                    "captured": result.ok,
                    "reference": result.reference,
                }},
            )
            return self.snapshot(booking_id), []

    def reconcile_capture(
        self,
        booking_id: UUID,
        settlement_id: str,
    ) -> Tuple[Optional[GatewayResult], List[Intent]]:
        """
        Settle a capture whose outcome never reached the booking.

        Asks the gateway what became of the capture and feeds the answer
        back as ``capture_succeeded`` or ``capture_failed``, then runs any
        release the success produced.

        Returns:
            The gateway's answer (None when the settlement is no longer
            pending) and the intents emitted while recording it
        """
        doc = self.snapshot(booking_id)
        pending = doc.settlement(settlement_id)
        if pending is None or pending.status is not SettlementStatus.PENDING:
            return None, []

        intent = CapturePayment(
            booking_id=doc.id,
            settlement_id=pending.id,
            amount=pending.amount,
            method=pending.method,
            purpose=pending.purpose,
            source_ref=pending.source_ref,
        )
        result = self._call_gateway("capture_status", self.gateway.capture_status, intent)
        if result.pending:
            logger.info(
                "Capture still unresolved at the gateway",
                extra={"extra_fields": {
                    "booking_id": str(booking_id),
                    "settlement_id": settlement_id,
                    "reason": result.reason,
                }},
            )
            return result, []

        doc, emitted = self._record_capture(booking_id, intent, result)
        doc, more, _ = self._execute_payment_intents(booking_id, doc, emitted)
        logger.info(
            "Capture reconciled",
            extra={"extra_fields": {
                "booking_id": str(booking_id),
                "settlement_id": settlement_id,
                "captured": result.ok,
                "payment_status": doc.payment_status.value,
            }},
        )
        return result, emitted + more

    # ===== Gateway =====

    def _call_gateway(
        self,
        operation: str,
        call: Callable[[Any], GatewayResult],
        intent: Intent,
    ) -> GatewayResult:
        """Run a gateway call; unexpected errors count as failures, never as success."""
        try:
            result = call(intent)
        except Exception as e:
            logger.error(
                f"Payment gateway {operation} raised: {e}",
                extra={"extra_fields": {"booking_id": str(intent.booking_id)}},
                exc_info=True,
            )
            result = GatewayResult(ok=False, reason="payment gateway error")

        outcome = "ok" if result.ok else "failed"
        self.metrics.increment_gateway_calls(operation=operation, outcome=outcome)
        if not result.ok:
            logger.error(
                f"Payment gateway {operation} failed",
                extra={"extra_fields": {
                    "booking_id": str(intent.booking_id),
                    "gateway": self.gateway.name,
                    "reason": result.reason,
                }},
            )
        return result

    def release_escrow(self, intent: ReleaseEscrow) -> bool:
        """
        Pay held funds out to the provider.

        A failed release leaves the settlement ``held``; the reconciliation
        job retries it.
        """
        result = self._call_gateway("release", self.gateway.release, intent)
        if result.ok:
            self.record_settlement_fact(
                intent.booking_id, intent.settlement_id, "released", result.reference
            )
        return result.ok

    def refund_escrow(self, intent: RefundEscrow) -> Refund:
        """Persist the refund fact first, then try the gateway once."""
        refund = BookingRepository.get_refund_for_settlement(self.db, intent.settlement_id)
        if refund is None:
            refund = Refund(
                booking_id=intent.booking_id,
                settlement_id=intent.settlement_id,
                amount=intent.amount,
                capture_ref=intent.external_ref,
                status=RefundStatus.PENDING,
                attempts=0,
            )
            self.db.add(refund)
            self.db.commit()
        if refund.status is not RefundStatus.SUCCEEDED:
            self.attempt_refund(refund)
        return refund

    def attempt_refund(self, refund: Refund) -> bool:
        intent = RefundEscrow(
            booking_id=refund.booking_id,
            settlement_id=refund.settlement_id,
            amount=Decimal(refund.amount),
            external_ref=refund.capture_ref,
        )
        refund.attempts += 1
        result = self._call_gateway("refund", self.gateway.refund, intent)
        if result.ok:
            refund.status = RefundStatus.SUCCEEDED
            refund.external_ref = result.reference
            refund.last_error = None
        else:
            refund.status = RefundStatus.FAILED
            refund.last_error = result.reason
        self.db.commit()

        if result.ok:
            self.record_settlement_fact(
                refund.booking_id, refund.settlement_id, "refunded", result.reference
            )
        elif refund.attempts >= settings.refund_max_attempts:
            logger.error(
                "Refund exhausted its attempts, manual follow-up required",
                extra={"extra_fields": {
                    "refund_id": str(refund.id),
                    "booking_id": str(refund.booking_id),
                    "attempts": refund.attempts,
                }},
            )
        return result.ok

    # ===== Facts recorded outside the state machine =====

    def record_settlement_fact(
        self,
        booking_id: UUID,
        settlement_id: str,
        fact: str,
        external_ref: Optional[str] = None,
    ) -> BookingDocument:
        """
        Record that escrow was released or refunded.

        Not a status transition: allowed on terminal bookings and idempotent.
        """
        if fact not in SETTLEMENT_FACTS:
            raise GuardViolation("Unknown settlement fact", details={"fact": fact})

        row = self._load(booking_id)
        current = BookingRepository.to_document(row)
        now = self.clock()
        if fact == "released":
            updated = settlement.record_release(current, settlement_id, external_ref, now)
        else:
            updated = settlement.record_refund(current, settlement_id, external_ref, now)

        if updated is current:
            return current
        BookingRepository.write_document(row, updated)
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            self.db.expire_all()
            raise VersionConflict(str(booking_id), current.version, self._load(booking_id).version)

        logger.info(
            f"Escrow {fact}",
            extra={"extra_fields": {
                "booking_id": str(booking_id),
                "settlement_id": settlement_id,
                "payment_status": updated.payment_status.value,
            }},
        )
        return BookingRepository.to_document(row)

    def record_review(
        self,
        booking_id: UUID,
        client_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> BookingDocument:
        """One review per completed booking, by its client."""
        row = self._load(booking_id)
        current = BookingRepository.to_document(row)

        if current.client_id != client_id:
            raise Unauthorized("Only the booking's client may review it")
        if current.status is not BookingStatus.COMPLETED:
            raise InvalidTransition(
                "Only completed bookings can be reviewed",
                details={"status": current.status.value},
            )
        if current.reviewed:
            raise GuardViolation("Booking was already reviewed")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise GuardViolation("Rating must be between 1 and 5", details={"rating": rating})

        updated = current.model_copy(update={
            "reviewed": True,
            "review_rating": rating,
            "review_comment": comment.strip() if comment and comment.strip() else None,
            "updated_at": self.clock(),
        })
        BookingRepository.write_document(row, updated)
        self.db.commit()

        logger.info(
            "Booking reviewed",
            extra={"extra_fields": {"booking_id": str(booking_id), "rating": rating}},
        )
        return BookingRepository.to_document(row)
