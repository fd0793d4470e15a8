"""Outbound notification contract.

Email and SMS delivery are owned by the surrounding application. The
broker only needs something that takes a recipient, a template name and
template data, and reports success or an error.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

from .schemas import NotificationResult
from .utils import mask_token

logger = logging.getLogger(__name__)

TEMPLATE_AUTHORIZATION_REQUEST = "insurance_authorization_request"
TEMPLATE_AUTHORIZATION_REMINDER = "insurance_authorization_reminder"
TEMPLATE_AUTHORIZATION_CONFIRMED = "insurance_authorization_confirmed"


class NotificationSender(Protocol):
    async def send(self, recipient: str, template: str, data: Dict[str, Any]) -> NotificationResult:
        ...


class LoggingNotificationSender:
    """Sender that only logs. Default for development; keeps a record for inspection."""

    def __init__(self, channel: str = "email"):
        self.channel = channel
        self.sent: List[Dict[str, Any]] = []

    async def send(self, recipient: str, template: str, data: Dict[str, Any]) -> NotificationResult:
        self.sent.append({"recipient": recipient, "template": template, "data": data})
        link = data.get("authorization_url")
        logger.info(
            f"[{self.channel}] {template} -> {recipient}"
            + (f" ({link.rsplit('/', 1)[0]}/{mask_token(link.rsplit('/', 1)[-1])})" if link else "")
        )
        return NotificationResult(success=True)


async def deliver(
    sender: Optional[NotificationSender],
    recipient: Optional[str],
    template: str,
    data: Dict[str, Any],
) -> NotificationResult:
    """Send through `sender`, reporting any sender exception as a failed result."""
    if sender is None:
        return NotificationResult(success=False, error="No sender configured")
    if not recipient:
        return NotificationResult(success=False, error="No recipient")
    try:
        return await sender.send(recipient, template, data)
    except Exception as e:
        logger.error(f"Notification {template} failed: {e}")
        return NotificationResult(success=False, error=str(e))
