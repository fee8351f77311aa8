"""Blue-Green Deployment Orchestration & Rollback."""

from .config import (
    EnvironmentLabel,
    HealthStatus,
    DeploymentState,
    ValidationStatus,
    TERMINAL_STATES,
    TRANSITIONS,
    can_transition,
    HealthPolicy,
    DeploymentConfig,
)
from .exceptions import (
    ErrorSeverity,
    DeploymentError,
    ProvisioningError,
    HealthCheckTimeoutError,
    UnhealthyEnvironmentError,
    ValidationFailureError,
    SwapConflictError,
    RoutingError,
    RollbackError,
    DeploymentInProgressError,
    InvalidTransitionError,
    DeploymentCancelledError,
    RegistryNotInitializedError,
    RollbackRequestedError,
)
from .models import (
    Environment,
    PoolHealth,
    HealthCheckResult,
    Deployment,
)
from .platform import (
    InfrastructureProvider,
    TrafficRouter,
    SmokeTester,
    RollbackTrigger,
    Clock,
)
from .store import (
    StateStore,
    MemoryStateStore,
    SqlStateStore,
)
from .registry import EnvironmentRegistry
from .health import HealthProber
from .validation import (
    ValidationCheck,
    ValidationReport,
    DeploymentValidator,
)
from .rollback import (
    RollbackAction,
    RollbackCoordinator,
    MetricsRollbackTrigger,
)
from .controller import DeploymentController

__all__ = [
    # Config
    "EnvironmentLabel",
    "HealthStatus",
    "DeploymentState",
    "ValidationStatus",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "can_transition",
    "HealthPolicy",
    "DeploymentConfig",
    # Exceptions
    "ErrorSeverity",
    "DeploymentError",
    "ProvisioningError",
    "HealthCheckTimeoutError",
    "UnhealthyEnvironmentError",
    "ValidationFailureError",
    "SwapConflictError",
    "RoutingError",
    "RollbackError",
    "DeploymentInProgressError",
    "InvalidTransitionError",
    "DeploymentCancelledError",
    "RegistryNotInitializedError",
    "RollbackRequestedError",
    # Models
    "Environment",
    "PoolHealth",
    "HealthCheckResult",
    "Deployment",
    # Collaborators
    "InfrastructureProvider",
    "TrafficRouter",
    "SmokeTester",
    "RollbackTrigger",
    "Clock",
    # Persistence
    "StateStore",
    "MemoryStateStore",
    "SqlStateStore",
    # Registry / Health
    "EnvironmentRegistry",
    "HealthProber",
    # Validation
    "ValidationCheck",
    "ValidationReport",
    "DeploymentValidator",
    # Rollback
    "RollbackAction",
    "RollbackCoordinator",
    "MetricsRollbackTrigger",
    # Controller
    "DeploymentController",
]
