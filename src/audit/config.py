"""Configuration for the deployment audit trail."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class NotificationLevel(str, Enum):
    """Operator-facing importance of a notification."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# Target states that always reach operators, whatever the channel filter.
DEFAULT_NOTIFY_STATES = [
    "switching",
    "completed",
    "error",
    "rolled_back",
]


@dataclass
class AuditConfig:
    """Master configuration for the audit trail."""

    enabled: bool = True
    genesis_hash: str = "genesis"
    log_path: Optional[str] = None  # JSON Lines mirror of the trail
    notify_states: List[str] = field(
        default_factory=lambda: list(DEFAULT_NOTIFY_STATES),
    )
