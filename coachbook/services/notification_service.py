from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..config import get_settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Notification:
    recipient: int | str
    kind: str
    context: dict[str, Any] = field(default_factory=dict)


def notify(recipient: int | str, kind: str, context: dict[str, Any] | None = None) -> None:
    """Deliver a notification. Failures are logged and never raised."""
    settings = get_settings()
    payload = {"recipient": recipient, "kind": kind, "context": context or {}}
    if not settings.notification_webhook_url:
        logger.info("Notification", extra=payload)
        return
    try:
        with httpx.Client(timeout=settings.notification_timeout_sec) as client:
            response = client.post(settings.notification_webhook_url, json=payload)
            response.raise_for_status()
    except httpx.HTTPError:
        logger.exception(
            "Failed to send notification",
            extra={"recipient": recipient, "kind": kind},
        )


def dispatch(notifications: list[Notification]) -> None:
    for notification in notifications:
        notify(notification.recipient, notification.kind, notification.context)


def admin_recipient() -> str:
    return get_settings().admin_notification_recipient
