"""Operator-visible notifications for deployment events."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .config import NotificationLevel

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """A message for operators about a deployment."""

    title: str
    message: str
    level: NotificationLevel = NotificationLevel.INFO
    deployment_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Channel = Callable[[Notification], None]

_LOG_LEVELS = {
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.CRITICAL: logging.CRITICAL,
}


def log_channel(notification: Notification) -> None:
    """Default channel: write the notification to the operator log."""
    logging.getLogger("bluegreen.notifications").log(
        _LOG_LEVELS[notification.level],
        "%s: %s",
        notification.title,
        notification.message,
    )


class Notifier:
    """Fans notifications out to subscribed channels.

    A channel that raises is logged and skipped; delivery to the other
    channels and the deployment itself carry on.
    """

    def __init__(self, channels: Optional[List[Channel]] = None):
        self._channels: List[Channel] = list(channels) if channels is not None else [log_channel]
        self._lock = threading.Lock()
        self._sent = 0
        self._failed = 0

    def subscribe(self, channel: Channel) -> None:
        with self._lock:
            self._channels.append(channel)

    def notify(self, notification: Notification) -> int:
        """Deliver to every channel; return the number of successful deliveries."""
        with self._lock:
            channels = list(self._channels)
        delivered = 0
        for channel in channels:
            try:
                channel(notification)
                delivered += 1
            except Exception:
                logger.error(
                    "Notification channel %r failed for '%s'",
                    channel,
                    notification.title,
                    exc_info=True,
                )
                self._failed += 1
        self._sent += delivered
        return delivered

    def get_stats(self) -> dict:
        return {"sent": self._sent, "failed": self._failed, "channels": len(self._channels)}
