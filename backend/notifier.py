# notifier.py — Outbound player/operator notifications
# send(recipient, purpose, content) is fire-and-forget from the engine's point
# of view: failures surface as DeliveryError and are logged by notify_safely().

import os
import logging
from enum import Enum
from typing import Optional

import httpx

from errors import DeliveryError

logger = logging.getLogger("rankforge.notifier")

MAIL_WEBHOOK_URL = os.getenv("MAIL_WEBHOOK_URL", "")
MAIL_WEBHOOK_TOKEN = os.getenv("MAIL_WEBHOOK_TOKEN", "")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@rankforge.local")
ALL_PLAYERS_EMAIL = os.getenv("ALL_PLAYERS_EMAIL", "")


class NotificationPurpose(str, Enum):
    VERIFY = "verify"
    RESET = "reset"
    RANK_UP = "rank-up"
    TOURNAMENT_UPDATE = "tournament-update"
    ANOMALY_ALERT = "anomaly-alert"
    PROFILE_CHANGED = "profile-changed"


SUBJECTS = {
    NotificationPurpose.VERIFY: "Verify your email",
    NotificationPurpose.RESET: "Password reset request",
    NotificationPurpose.RANK_UP: "Rank up!",
    NotificationPurpose.TOURNAMENT_UPDATE: "Tournament update",
    NotificationPurpose.ANOMALY_ALERT: "Admin alert",
    NotificationPurpose.PROFILE_CHANGED: "Profile updated",
}


class Notifier:
    """Notification dispatcher contract."""

    async def send(self, recipient: str, purpose: NotificationPurpose, content: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LogNotifier(Notifier):
    """Used when no mail relay is configured."""

    async def send(self, recipient: str, purpose: NotificationPurpose, content: str) -> None:
        logger.info(f"[{NotificationPurpose(purpose).value}] → {recipient}: {content}")


class WebhookNotifier(Notifier):
    """Posts messages to an HTTP mail relay."""

    def __init__(self, url: str, token: str = "", timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def send(self, recipient: str, purpose: NotificationPurpose, content: str) -> None:
        if not recipient:
            raise DeliveryError("No recipient address")
        purpose = NotificationPurpose(purpose)
        payload = {
            "to": recipient,
            "subject": SUBJECTS[purpose],
            "text": content,
            "purpose": purpose.value,
        }
        try:
            resp = await self._client.post(self.url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(f"Mail relay rejected {purpose.value} for {recipient}: {e}") from e
        logger.info(f"Notification sent to {recipient} for purpose: {purpose.value}")

    async def close(self) -> None:
        await self._client.aclose()


async def notify_safely(notifier: Notifier, recipient: str,
                        purpose: NotificationPurpose, content: str) -> bool:
    """Send and log failures instead of propagating them."""
    try:
        await notifier.send(recipient, purpose, content)
        return True
    except DeliveryError as e:
        logger.error(f"Notification failed: {e.message}")
        return False
    except Exception as e:
        logger.exception(f"Notifier error for {recipient}: {e}")
        return False


def create_notifier() -> Notifier:
    if MAIL_WEBHOOK_URL:
        return WebhookNotifier(MAIL_WEBHOOK_URL, MAIL_WEBHOOK_TOKEN)
    logger.warning("MAIL_WEBHOOK_URL not set — notifications are logged only")
    return LogNotifier()


class PushChannel:
    """Real-time broadcast side-channel. Default implementation drops events."""

    async def broadcast(self, event_type: str, payload: dict) -> None:
        return None
