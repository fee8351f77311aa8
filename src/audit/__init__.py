"""Deployment Audit Trail & Operator Notifications."""

from .config import (
    AuditConfig,
    NotificationLevel,
)
from .events import TransitionEvent
from .notifier import (
    Notification,
    Notifier,
    log_channel,
)
from .recorder import AuditRecorder

__all__ = [
    # Config
    "AuditConfig",
    "NotificationLevel",
    # Events
    "TransitionEvent",
    # Notifications
    "Notification",
    "Notifier",
    "log_channel",
    # Core
    "AuditRecorder",
]
