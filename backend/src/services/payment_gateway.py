"""
Payment gateway abstraction for executing escrow intents.

The booking core only emits CapturePayment / ReleaseEscrow / RefundEscrow
intents; a gateway here turns them into calls against a real processor and
reports back a GatewayResult. Supports PayMongo (gcash/maya sources) and a
console gateway for development and tests.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.booking.intents import CapturePayment, RefundEscrow, ReleaseEscrow
from src.lib.logging import get_logger
from src.lib.settings import settings


logger = get_logger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    """
    Outcome of a single gateway operation.

    ``pending`` is only set by ``capture_status`` when the processor cannot
    say yet whether a capture went through.
    """
    ok: bool
    reference: Optional[str] = None
    reason: Optional[str] = None
    pending: bool = False


class TransientGatewayError(Exception):
    """Timeouts, connection errors and 5xx responses; safe to retry."""


class PaymentGateway(ABC):
    """
    Abstract base class for payment gateways.

    Implementations never raise for a declined or failed call; they return
    ``GatewayResult(ok=False, reason=...)`` so the caller can feed the
    outcome back into the booking.
    """

    name = "abstract"

    @abstractmethod
    def capture(self, intent: CapturePayment) -> GatewayResult:
        """Capture funds into escrow."""

    @abstractmethod
    def capture_status(self, intent: CapturePayment) -> GatewayResult:
        """
        Look up what became of an earlier capture for the same settlement.

        Used when the capture outcome was never recorded on the booking.
        """

    @abstractmethod
    def release(self, intent: ReleaseEscrow) -> GatewayResult:
        """Release held funds to the provider."""

    @abstractmethod
    def refund(self, intent: RefundEscrow) -> GatewayResult:
        """Return held funds to the client."""


class ConsolePaymentGateway(PaymentGateway):
    """
    Console gateway for development/testing.
    Approves everything and prints the call instead of charging anyone.
    """

    name = "console"

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    def _record(self, operation: str, intent: Any) -> GatewayResult:
        reference = f"console_{operation}_{uuid4().hex[:12]}"
        self.calls.append({
            "operation": operation,
            "booking_id": str(intent.booking_id),
            "settlement_id": intent.settlement_id,
            "amount": intent.amount,
            "reference": reference,
        })
        print("\n" + "=" * 60)
        print(f"💳 {operation.upper()} {intent.amount} {settings.currency} for booking {intent.booking_id}")
        print(f"   ref: {reference}")
        print("=" * 60 + "\n")
        logger.info(f"Console gateway {operation}", extra={"extra_fields": {"reference": reference}})
        return GatewayResult(ok=True, reference=reference)

    def capture(self, intent: CapturePayment) -> GatewayResult:
        return self._record("capture", intent)

    def capture_status(self, intent: CapturePayment) -> GatewayResult:
        for call in self.calls:
            if (
                call["operation"] == "capture"
                and call.get("settlement_id") == intent.settlement_id
                and call.get("reference")
            ):
                return GatewayResult(ok=True, reference=call["reference"])
        return GatewayResult(ok=False, reason="no capture on record")

    def release(self, intent: ReleaseEscrow) -> GatewayResult:
        return self._record("release", intent)

    def refund(self, intent: RefundEscrow) -> GatewayResult:
        return self._record("refund", intent)


def to_centavos(amount: Decimal) -> int:
    """PayMongo amounts are integers in the smallest currency unit."""
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


class PayMongoGateway(PaymentGateway):
    """
    PayMongo REST gateway.

    gcash/maya payments arrive as chargeable sources created by the client
    app; capture turns a source into a payment. PayMongo keeps captured funds
    on the platform account, so release is a ledger operation on our side.
    Transient failures are retried with exponential backoff up to
    ``gateway_max_attempts``; declines are returned immediately.
    """

    name = "paymongo"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        client: Optional[httpx.Client] = None,
        wait=None,
    ):
        self._client = client or httpx.Client(
            base_url=api_base or settings.paymongo_api_base,
            auth=(secret_key or settings.paymongo_secret_key, ""),
            timeout=timeout or settings.gateway_timeout_seconds,
            headers={"Accept": "application/json"},
        )
        self._retrying = Retrying(
            stop=stop_after_attempt(max_attempts or settings.gateway_max_attempts),
            wait=wait if wait is not None else wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(TransientGatewayError),
            reraise=True,
        )

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientGatewayError(f"timeout calling {path}") from exc
        except httpx.TransportError as exc:
            raise TransientGatewayError(f"transport error calling {path}: {exc}") from exc
        if response.status_code >= 500:
            raise TransientGatewayError(f"PayMongo returned {response.status_code} for {path}")
        return response

    def _post(self, path: str, attributes: Dict[str, Any]) -> httpx.Response:
        return self._retrying(self._send, "POST", path, json={"data": {"attributes": attributes}})

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        return self._retrying(self._send, "GET", path, params=params)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            errors = response.json().get("errors") or []
        except ValueError:
            errors = []
        if errors and isinstance(errors[0], dict):
            return errors[0].get("detail") or errors[0].get("code") or "declined"
        return f"HTTP {response.status_code}"

    def capture(self, intent: CapturePayment) -> GatewayResult:
        if not intent.source_ref:
            return GatewayResult(ok=False, reason="missing payment source")

        attributes = {
            "amount": to_centavos(intent.amount),
            "currency": settings.currency,
            "description": f"Booking {intent.booking_id} ({intent.purpose.value})",
            "source": {"id": intent.source_ref, "type": "source"},
            "metadata": {
                "booking_id": str(intent.booking_id),
                "settlement_id": intent.settlement_id,
            },
        }
        try:
            response = self._post("/payments", attributes)
        except TransientGatewayError as exc:
            logger.error(f"PayMongo capture failed after retries: {exc}")
            return GatewayResult(ok=False, reason="payment gateway unavailable")

        if response.status_code >= 400:
            return GatewayResult(ok=False, reason=self._error_detail(response))

        data = response.json().get("data", {})
        status = data.get("attributes", {}).get("status")
        if status != "paid":
            return GatewayResult(ok=False, reference=data.get("id"), reason=f"payment {status}")
        return GatewayResult(ok=True, reference=data.get("id"))

    def _find_payment(self, intent: CapturePayment) -> Optional[Dict[str, Any]]:
        """Payment created for this settlement, if PayMongo lists one."""
        response = self._get("/payments", params={"limit": 100})
        if response.status_code >= 400:
            raise TransientGatewayError(f"PayMongo returned {response.status_code} listing payments")
        for payment in response.json().get("data", []):
            attributes = payment.get("attributes", {})
            metadata = attributes.get("metadata") or {}
            source = attributes.get("source") or {}
            if metadata.get("settlement_id") == intent.settlement_id or source.get("id") == intent.source_ref:
                return payment
        return None

    def capture_status(self, intent: CapturePayment) -> GatewayResult:
        """
        Resolve a capture from its source.

        A source that is still ``chargeable`` was never turned into a payment,
        so the capture counts as failed and the client can pay again.
        """
        if not intent.source_ref:
            return GatewayResult(ok=False, reason="missing payment source")

        try:
            response = self._get(f"/sources/{intent.source_ref}")
            if response.status_code == 404:
                return GatewayResult(ok=False, reason="payment source not found")
            if response.status_code >= 400:
                return GatewayResult(ok=False, pending=True, reason=self._error_detail(response))

            source_status = response.json().get("data", {}).get("attributes", {}).get("status")
            if source_status == "chargeable":
                return GatewayResult(ok=False, reason="payment not captured")
            if source_status == "pending":
                return GatewayResult(ok=False, pending=True, reason="source awaiting authorization")
            if source_status != "consumed":
                return GatewayResult(ok=False, reason=f"source {source_status}")

            payment = self._find_payment(intent)
        except TransientGatewayError as exc:
            logger.warning(f"PayMongo capture status unavailable: {exc}")
            return GatewayResult(ok=False, pending=True, reason="payment gateway unavailable")

        if payment is None:
            return GatewayResult(ok=False, pending=True, reason="no payment found for consumed source")
        status = payment.get("attributes", {}).get("status")
        if status == "paid":
            return GatewayResult(ok=True, reference=payment.get("id"))
        if status == "pending":
            return GatewayResult(ok=False, pending=True, reference=payment.get("id"), reason="payment pending")
        return GatewayResult(ok=False, reference=payment.get("id"), reason=f"payment {status}")

    def release(self, intent: ReleaseEscrow) -> GatewayResult:
        # Provider payouts are settled from the platform balance
        return GatewayResult(ok=True, reference=intent.external_ref)

    def refund(self, intent: RefundEscrow) -> GatewayResult:
        if not intent.external_ref:
            return GatewayResult(ok=False, reason="missing captured payment reference")

        attributes = {
            "amount": to_centavos(intent.amount),
            "payment_id": intent.external_ref,
            "reason": "requested_by_customer",
            "metadata": {
                "booking_id": str(intent.booking_id),
                "settlement_id": intent.settlement_id,
            },
        }
        try:
            response = self._post("/refunds", attributes)
        except TransientGatewayError as exc:
            logger.error(f"PayMongo refund failed after retries: {exc}")
            return GatewayResult(ok=False, reason="payment gateway unavailable")

        if response.status_code >= 400:
            return GatewayResult(ok=False, reason=self._error_detail(response))

        data = response.json().get("data", {})
        status = data.get("attributes", {}).get("status")
        if status not in ("pending", "succeeded"):
            return GatewayResult(ok=False, reference=data.get("id"), reason=f"refund {status}")
        return GatewayResult(ok=True, reference=data.get("id"))

    def close(self) -> None:
        self._client.close()


def get_payment_gateway() -> PaymentGateway:
    """Build the gateway selected by settings."""
    if settings.payment_gateway == "paymongo" and settings.paymongo_secret_key:
        return PayMongoGateway()
    if settings.payment_gateway == "paymongo":
        logger.warning("PAYMONGO_SECRET_KEY not set, falling back to console gateway")
    return ConsolePaymentGateway()
