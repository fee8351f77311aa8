"""Blue-Green Deployment — Configuration."""

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet

logger = logging.getLogger(__name__)


class EnvironmentLabel(enum.Enum):
    """The two parallel deployment targets."""

    BLUE = "blue"
    GREEN = "green"

    @property
    def other(self) -> "EnvironmentLabel":
        return EnvironmentLabel.GREEN if self is EnvironmentLabel.BLUE else EnvironmentLabel.BLUE


class HealthStatus(enum.Enum):
    """Health of an environment's instance pool."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


class DeploymentState(enum.Enum):
    """Lifecycle state of a deployment."""

    IDLE = "idle"
    PROVISIONING = "provisioning"
    HEALTH_CHECKING = "health_checking"
    VALIDATING = "validating"
    SWITCHING = "switching"
    MONITORING = "monitoring"
    DECOMMISSIONING = "decommissioning"
    COMPLETED = "completed"
    ERROR = "error"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


class ValidationStatus(enum.Enum):
    """Status of a validation check."""

    PENDING = "pending"
    PASSING = "passing"
    FAILING = "failing"
    SKIPPED = "skipped"


TERMINAL_STATES: FrozenSet[DeploymentState] = frozenset({
    DeploymentState.COMPLETED,
    DeploymentState.ERROR,
    DeploymentState.ROLLED_BACK,
})

_ERRORABLE = (
    DeploymentState.PROVISIONING,
    DeploymentState.HEALTH_CHECKING,
    DeploymentState.VALIDATING,
    DeploymentState.SWITCHING,
    DeploymentState.MONITORING,
    DeploymentState.DECOMMISSIONING,
    DeploymentState.ROLLING_BACK,
)

TRANSITIONS: Dict[DeploymentState, FrozenSet[DeploymentState]] = {
    DeploymentState.IDLE: frozenset({DeploymentState.PROVISIONING}),
    DeploymentState.PROVISIONING: frozenset({DeploymentState.HEALTH_CHECKING}),
    DeploymentState.HEALTH_CHECKING: frozenset({DeploymentState.VALIDATING}),
    DeploymentState.VALIDATING: frozenset({DeploymentState.SWITCHING}),
    DeploymentState.SWITCHING: frozenset({DeploymentState.MONITORING}),
    DeploymentState.MONITORING: frozenset({DeploymentState.DECOMMISSIONING}),
    DeploymentState.DECOMMISSIONING: frozenset({DeploymentState.COMPLETED}),
    DeploymentState.ERROR: frozenset({DeploymentState.ROLLING_BACK}),
    DeploymentState.ROLLING_BACK: frozenset({DeploymentState.ROLLED_BACK}),
    DeploymentState.COMPLETED: frozenset({DeploymentState.ROLLING_BACK}),
    DeploymentState.ROLLED_BACK: frozenset(),
}
for _state in _ERRORABLE:
    TRANSITIONS[_state] = TRANSITIONS[_state] | {DeploymentState.ERROR}


def can_transition(from_state: DeploymentState, to_state: DeploymentState) -> bool:
    """Return True if the state machine allows ``from_state -> to_state``."""
    return to_state in TRANSITIONS.get(from_state, frozenset())


@dataclass
class HealthPolicy:
    """Readiness policy for an instance pool (target group semantics)."""

    interval_seconds: float = 30.0
    healthy_threshold: int = 2
    unhealthy_threshold: int = 2
    timeout_seconds: float = 300.0

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.healthy_threshold < 1 or self.unhealthy_threshold < 1:
            raise ValueError("thresholds must be at least 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


@dataclass
class DeploymentConfig:
    """Global deployment configuration with sensible defaults."""

    health_policy: HealthPolicy = field(default_factory=HealthPolicy)
    provision_max_attempts: int = 3
    provision_base_delay: float = 5.0
    hold_window_seconds: float = 600.0
    monitor_interval_seconds: float = 30.0
    auto_rollback: bool = True
    error_rate_threshold: float = 0.05
    latency_threshold_ms: float = 500.0
    initial_active_label: EnvironmentLabel = EnvironmentLabel.BLUE

    @classmethod
    def from_settings(cls, settings) -> "DeploymentConfig":
        """Build a config from the environment-driven ``Settings``."""
        return cls(
            health_policy=HealthPolicy(
                interval_seconds=settings.health_interval_seconds,
                healthy_threshold=settings.health_healthy_threshold,
                unhealthy_threshold=settings.health_unhealthy_threshold,
                timeout_seconds=settings.health_timeout_seconds,
            ),
            provision_max_attempts=settings.provision_max_attempts,
            provision_base_delay=settings.provision_base_delay,
            hold_window_seconds=settings.hold_window_seconds,
            monitor_interval_seconds=settings.monitor_interval_seconds,
            auto_rollback=settings.auto_rollback,
            error_rate_threshold=settings.error_rate_threshold,
            latency_threshold_ms=settings.latency_threshold_ms,
            initial_active_label=EnvironmentLabel(settings.initial_active_label),
        )
