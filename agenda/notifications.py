import logging
from dataclasses import asdict, dataclass
from datetime import date
from typing import Optional

import httpx

from .core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RescheduleNotification:
    """Payload for the external email/WhatsApp sender. No HTML, no delivery state."""
    appointment_id: str
    recipient_email: Optional[str]
    recipient_phone: Optional[str]
    recipient_name: Optional[str]
    business_name: str
    closed_date: str
    original_date: str
    original_time: str
    service_name: str
    service_price_cents: int
    token: str
    confirmation_url: str
    kind: str = "reschedule_required"

    def to_dict(self) -> dict:
        return asdict(self)


def build_confirmation_url(appointment_id: str, token: str) -> str:
    base = get_settings().public_site_url.rstrip("/")
    return f"{base}/appointments/{appointment_id}/reschedule?token={token}"


def format_payload_date(value: date) -> str:
    return value.strftime("%A, %B %-d, %Y")


class NotificationDispatcher:
    """Hands structured payloads to the notification webhook."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.webhook_url = settings.notification_webhook_url if webhook_url is None else webhook_url
        self.api_key = settings.notification_api_key if api_key is None else api_key
        self.timeout_seconds = timeout_seconds or settings.notification_timeout_seconds
        self._transport = transport

    async def dispatch(self, notification: RescheduleNotification) -> bool:
        """Send the payload; returns False when skipped."""
        if not self.webhook_url:
            logger.warning(
                "Notification webhook is not configured; skipping %s for appointment %s",
                notification.kind,
                notification.appointment_id,
            )
            return False

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(self.webhook_url, json=notification.to_dict(), headers=headers)
            response.raise_for_status()

        logger.info("Dispatched %s for appointment %s", notification.kind, notification.appointment_id)
        return True


def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()
