"""
Notification service for booking events.

Consumes NotifyClient / NotifyProvider intents emitted by the booking core
and delivers them through pluggable providers: push (stub), SMS via Twilio
and a console provider for development. SMS recipients are resolved to
phone numbers through the account service. Delivery is fire-and-forget: a
failed send is logged and counted, never raised back into the booking flow.
"""
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Optional

import httpx

from src.booking.intents import (
    Intent,
    NotificationEvent,
    NotifyClient,
    NotifyProvider,
)
from src.lib.logging import get_logger
from src.lib.metrics import get_metrics_collector
from src.lib.settings import settings


logger = get_logger(__name__)

# Unassigned bookings are announced to every provider on this topic
PROVIDER_TOPIC = "topic:new_jobs"


class NotificationProvider(ABC):
    """
    Abstract base class for notification delivery providers.
    """

    @abstractmethod
    async def send(
        self,
        to: str,
        message: str,
        **kwargs
    ) -> bool:
        """
        Send notification via this provider.

        Args:
            to: Recipient identifier (phone number, account id, topic)
            message: Message content to send
            **kwargs: Provider-specific parameters

        Returns:
            True if sent successfully, False otherwise
        """
        pass

    @property
    @abstractmethod
    def channel(self) -> str:
        """Return the channel this provider supports."""
        pass


class TwilioSMSProvider(NotificationProvider):
    """
    Twilio SMS provider for sending text messages.
    """

    def __init__(self):
        """Initialize Twilio client."""
        from twilio.rest import Client

        self.from_number = settings.twilio_from_number
        self.client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        logger.info("Twilio SMS provider initialized")

    @property
    def channel(self) -> str:
        return "sms"

    async def send(
        self,
        to: str,
        message: str,
        **kwargs
    ) -> bool:
        """
        Send SMS via Twilio.

        Args:
            to: Phone number in E.164 format
            message: SMS text content

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            msg = self.client.messages.create(
                body=message,
                from_=self.from_number,
                to=to,
            )
            logger.info(f"SMS sent via Twilio: {msg.sid}", extra={"extra_fields": {"to": to}})
            return True
        except Exception as e:
            logger.error(f"Failed to send SMS via Twilio: {e}", extra={"extra_fields": {"to": to}})
            return False


class ConsoleSMSProvider(NotificationProvider):
    """
    Console SMS provider for development/testing.
    Prints messages to console instead of sending.
    """

    @property
    def channel(self) -> str:
        return "sms"

    async def send(
        self,
        to: str,
        message: str,
        **kwargs
    ) -> bool:
        print("\n" + "=" * 60)
        print(f"📱 SMS to {to}:")
        print(f"   {message}")
        print("=" * 60 + "\n")
        logger.info("SMS logged to console", extra={"extra_fields": {"to": to}})
        return True


class PushNotificationProvider(NotificationProvider):
    """
    Push notification provider stub.
    Accepts account ids and ``topic:`` recipients.
    """

    @property
    def channel(self) -> str:
        return "push"

    async def send(
        self,
        to: str,
        message: str,
        **kwargs
    ) -> bool:
        title = kwargs.get("title", settings.app_name)
        print("\n" + "=" * 60)
        print(f"🔔 Push Notification to {to}:")
        print(f"   Title: {title}")
        print(f"   Body: {message}")
        print("=" * 60 + "\n")
        logger.info("Push notification stub called", extra={"extra_fields": {"to": to}})
        return True


# (title, body) per event; body is formatted with the intent detail
MESSAGES: Dict[NotificationEvent, tuple] = {
    NotificationEvent.JOB_APPROVED: ("Job approved", "Booking {booking_id} was approved."),
    NotificationEvent.JOB_REJECTED: ("Job rejected", "Booking {booking_id} was not approved."),
    NotificationEvent.OFFER_RECEIVED: ("New offer", "You received an offer of {offered_price}."),
    NotificationEvent.COUNTER_OFFER_RECEIVED: (
        "Counter offer", "The provider proposed {counter_offer_price}."
    ),
    NotificationEvent.COUNTER_OFFER_ACCEPTED: (
        "Counter offer accepted", "Your price of {provider_price} was accepted."
    ),
    NotificationEvent.JOB_ACCEPTED: ("Job accepted", "A provider accepted your booking."),
    NotificationEvent.PROVIDER_TRAVELING: ("On the way", "Your provider is on the way."),
    NotificationEvent.PROVIDER_ARRIVED: ("Provider arrived", "Your provider has arrived."),
    NotificationEvent.WORK_STARTED: ("Work started", "Work on your booking has started."),
    NotificationEvent.WORK_COMPLETED: ("Work done", "The provider marked the job as done. Please confirm."),
    NotificationEvent.COMPLETION_CONFIRMED: ("Completion confirmed", "The client confirmed the job is done."),
    NotificationEvent.ADDITIONAL_CHARGE_REQUESTED: (
        "Additional charge", "Provider requested {amount} for {reason}."
    ),
    NotificationEvent.ADDITIONAL_CHARGE_APPROVED: (
        "Charge approved", "The client approved an additional charge."
    ),
    NotificationEvent.ADDITIONAL_CHARGE_REJECTED: (
        "Charge rejected", "The client rejected an additional charge."
    ),
    NotificationEvent.DISCOUNT_APPLIED: ("Discount applied", "You got a discount of {discount_amount}."),
    NotificationEvent.UPFRONT_PAYMENT_RECEIVED: ("Payment received", "Upfront payment of {amount} received."),
    NotificationEvent.PAYMENT_RECEIVED: ("Payment received", "Payment of {amount} received."),
    NotificationEvent.PAYMENT_FAILED: ("Payment failed", "Your payment did not go through. Please try again."),
    NotificationEvent.JOB_COMPLETED: ("Job completed", "Your booking is complete. Leave a review!"),
    NotificationEvent.JOB_CANCELLED: ("Booking cancelled", "Booking {booking_id} was cancelled."),
}


class _Detail(dict):
    """Missing placeholders render as empty strings."""

    def __missing__(self, key):
        return ""


def render(intent: Intent) -> tuple:
    title, body = MESSAGES.get(intent.event, (settings.app_name, "Booking {booking_id} was updated."))
    detail = _Detail(intent.detail)
    detail["booking_id"] = str(intent.booking_id)
    return title, body.format_map(detail)


class NotificationService:
    """
    Dispatches booking notification intents.

    Handles:
    - Recipient resolution (client, assigned provider, or the provider topic)
    - Push delivery, plus SMS when a phone number can be resolved
    - Metrics and logging for every attempt
    """

    def __init__(
        self,
        push_provider: Optional[NotificationProvider] = None,
        sms_provider: Optional[NotificationProvider] = None,
        phone_lookup: Optional[Callable[[str], Optional[str]]] = None,
    ):
        """
        Args:
            push_provider: Provider for push notifications
            sms_provider: Provider for SMS (used only with ``phone_lookup``)
            phone_lookup: Maps an account id to a phone number, if known
        """
        self.push_provider = push_provider or PushNotificationProvider()
        self.sms_provider = sms_provider
        self.phone_lookup = phone_lookup

    async def dispatch(self, intent: Intent) -> bool:
        """
        Deliver one intent. Non-notification intents are ignored.

        Returns:
            True if at least one channel accepted the message
        """
        if isinstance(intent, NotifyClient):
            audience, recipient = "client", intent.client_id
        elif isinstance(intent, NotifyProvider):
            audience, recipient = "provider", intent.provider_id or PROVIDER_TOPIC
        else:
            return False

        metrics = get_metrics_collector()
        title, body = render(intent)
        delivered = False
        try:
            delivered = await self.push_provider.send(
                recipient, body, title=title, data={"booking_id": str(intent.booking_id)}
            )
            if self.sms_provider and self.phone_lookup and not recipient.startswith("topic:"):
                phone = self.phone_lookup(recipient)
                if phone:
                    delivered = await self.sms_provider.send(phone, f"{title}: {body}") or delivered
        except Exception as e:
            logger.error(
                f"Error sending {intent.event.value} notification: {e}",
                extra={"extra_fields": {"booking_id": str(intent.booking_id), "audience": audience}},
                exc_info=True,
            )
            delivered = False

        metrics.increment_notifications(
            audience=audience,
            event=intent.event.value,
            outcome="sent" if delivered else "failed",
        )
        if not delivered:
            logger.warning(
                "Notification not delivered",
                extra={"extra_fields": {
                    "booking_id": str(intent.booking_id),
                    "audience": audience,
                    "event": intent.event.value,
                }},
            )
        return delivered

    async def dispatch_all(self, intents: Iterable[Intent]) -> int:
        """Deliver every notification intent; returns how many were delivered."""
        sent = 0
        for intent in intents:
            if await self.dispatch(intent):
                sent += 1
        return sent


class AccountPhoneDirectory:
    """
    Resolves account ids to phone numbers through the account service.

    ``GET /accounts/{id}`` is expected to return a JSON object with a
    ``phone`` field in E.164 format. Found numbers are cached for the life
    of the directory; lookups that fail return None so the SMS is skipped.
    """

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.Client] = None):
        headers = {"Accept": "application/json"}
        if settings.account_service_token:
            headers["Authorization"] = f"Bearer {settings.account_service_token}"
        self._client = client or httpx.Client(
            base_url=base_url or settings.account_service_url,
            timeout=settings.account_service_timeout_seconds,
            headers=headers,
        )
        self._cache: Dict[str, str] = {}

    def __call__(self, account_id: str) -> Optional[str]:
        if account_id in self._cache:
            return self._cache[account_id]
        try:
            response = self._client.get(f"/accounts/{account_id}")
        except httpx.HTTPError as e:
            logger.warning(
                f"Account lookup failed: {e}",
                extra={"extra_fields": {"account_id": account_id}},
            )
            return None
        if response.status_code != 200:
            if response.status_code != 404:
                logger.warning(
                    f"Account service returned {response.status_code}",
                    extra={"extra_fields": {"account_id": account_id}},
                )
            return None

        phone = response.json().get("phone")
        if phone:
            self._cache[account_id] = phone
        return phone or None


def get_notification_service(directory_client: Optional[httpx.Client] = None) -> NotificationService:
    """
    Build the NotificationService configured by settings.

    SMS needs both a provider and a way to find phone numbers; without
    ``account_service_url`` notifications go out as push only.
    """
    if not settings.account_service_url:
        logger.info("SMS notifications disabled: ACCOUNT_SERVICE_URL not set")
        return NotificationService()

    sms_provider: Optional[NotificationProvider] = None
    if settings.notification_provider == "twilio" and settings.twilio_account_sid:
        sms_provider = TwilioSMSProvider()
    elif settings.notification_provider == "console":
        sms_provider = ConsoleSMSProvider()
    else:
        logger.warning(
            f"No SMS provider for '{settings.notification_provider}', notifications go out as push only"
        )
        return NotificationService()

    return NotificationService(
        sms_provider=sms_provider,
        phone_lookup=AccountPhoneDirectory(client=directory_client),
    )
