"""
Shared fixtures.

Tests run against an in-memory SQLite database; the environment is set
before anything under ``src`` reads settings.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PAYMENT_GATEWAY"] = "console"
os.environ["NOTIFICATION_PROVIDER"] = "console"
os.environ["ENABLE_SCHEDULER"] = "false"

from datetime import datetime, timezone
from decimal import Decimal
from typing import List
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from src.api.app import app
from src.api.dependencies import get_gateway, get_notifier
from src.booking.document import BookingDocument, BookingStatus, PaymentPreference
from src.booking.pricing import reprice
from src.lib.db import SessionLocal, drop_db, init_db
from src.lib.jwt import create_access_token
from src.lib.metrics import reset_metrics
from src.services.booking_service import BookingService
from src.services.notification_service import NotificationProvider, NotificationService
from src.services.payment_gateway import ConsolePaymentGateway, GatewayResult


NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def make_booking(**overrides) -> BookingDocument:
    """Build a priced booking document for pure core tests."""
    fields = dict(
        id=uuid4(),
        version=1,
        created_at=NOW,
        updated_at=NOW,
        client_id="client-1",
        status=BookingStatus.PENDING,
        provider_price=Decimal("500"),
        system_fee_percentage=Decimal("0.05"),
        payment_preference=PaymentPreference.PAY_LATER,
    )
    fields.update(overrides)
    return reprice(BookingDocument(**fields))


class DecliningGateway(ConsolePaymentGateway):
    """Console gateway whose captures (and optionally refunds) are declined."""

    name = "declining"

    def __init__(self, decline_capture: bool = True, decline_refund: bool = False):
        super().__init__()
        self.decline_capture = decline_capture
        self.decline_refund = decline_refund

    def capture(self, intent):
        if self.decline_capture:
            self.calls.append({"operation": "capture", "booking_id": str(intent.booking_id)})
            return GatewayResult(ok=False, reason="insufficient funds")
        return super().capture(intent)

    def refund(self, intent):
        if self.decline_refund:
            self.calls.append({"operation": "refund", "booking_id": str(intent.booking_id)})
            return GatewayResult(ok=False, reason="gateway unavailable")
        return super().refund(intent)


class RecordingProvider(NotificationProvider):
    """Push provider that keeps what it was asked to send."""

    def __init__(self):
        self.sent: List[dict] = []

    @property
    def channel(self) -> str:
        return "push"

    async def send(self, to: str, message: str, **kwargs) -> bool:
        self.sent.append({"to": to, "message": message, **kwargs})
        return True


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def tables():
    init_db()
    yield
    drop_db()


@pytest.fixture
def db_session(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return ConsolePaymentGateway()


@pytest.fixture
def service(db_session, gateway):
    return BookingService(db_session, gateway=gateway)


@pytest.fixture
def push_provider():
    return RecordingProvider()


@pytest.fixture
def client(tables, gateway, push_provider):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: NotificationService(push_provider=push_provider)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(actor_id: str, role: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(actor_id, role)}"}
    return _headers
