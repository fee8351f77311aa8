"""Deployment Exception Hierarchy.

Typed exceptions for every failure the controller distinguishes. The
controller converts them into ``error`` transitions and re-raises, so
callers can catch the whole hierarchy through ``DeploymentError``.
"""

import enum
from typing import Any, Dict, Optional


class ErrorSeverity(enum.Enum):
    """Severity levels for error logging."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DeploymentError(Exception):
    """Base exception for all orchestrator errors."""

    error_code = "DEPLOYMENT_ERROR"
    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
        }


class ProvisioningError(DeploymentError):
    """Raised when the platform fails to allocate staging capacity."""

    error_code = "PROVISIONING_FAILED"

    def __init__(self, message: str = "Failed to provision capacity", attempts: int = 1, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class HealthCheckTimeoutError(DeploymentError, TimeoutError):
    """Raised when no health threshold is reached within the timeout."""

    error_code = "HEALTH_CHECK_TIMEOUT"


class UnhealthyEnvironmentError(DeploymentError):
    """Raised when a pool reports unhealthy past the unhealthy threshold."""

    error_code = "ENVIRONMENT_UNHEALTHY"


class ValidationFailureError(DeploymentError):
    """Raised when smoke tests against the staging environment fail."""

    error_code = "VALIDATION_FAILED"
    severity = ErrorSeverity.MEDIUM


class SwapConflictError(DeploymentError):
    """Raised when a swap is requested while another swap is in flight."""

    error_code = "SWAP_CONFLICT"

    def __init__(self, message: str = "A swap is already in flight", **kwargs):
        super().__init__(message, **kwargs)


class RoutingError(DeploymentError):
    """Raised when the routing collaborator or state store rejects a swap."""

    error_code = "ROUTING_FAILED"


class RollbackError(DeploymentError):
    """Raised when a rollback cannot restore the previous environment."""

    error_code = "ROLLBACK_FAILED"
    severity = ErrorSeverity.CRITICAL


class DeploymentInProgressError(DeploymentError):
    """Raised when a deployment is requested while another is running."""

    error_code = "DEPLOYMENT_IN_PROGRESS"
    severity = ErrorSeverity.LOW


class InvalidTransitionError(DeploymentError):
    """Raised for a state-machine edge that is not allowed."""

    error_code = "INVALID_TRANSITION"


class DeploymentCancelledError(DeploymentError):
    """Raised inside a phase when the operator aborts the deployment."""

    error_code = "DEPLOYMENT_CANCELLED"
    severity = ErrorSeverity.MEDIUM

    def __init__(self, message: str = "Deployment cancelled", **kwargs):
        super().__init__(message, **kwargs)


class RegistryNotInitializedError(DeploymentError):
    """Raised when the registry is read before an active label exists."""

    error_code = "REGISTRY_NOT_INITIALIZED"


class RollbackRequestedError(DeploymentError):
    """Raised in the hold window when an operator or trigger asks for rollback."""

    error_code = "ROLLBACK_REQUESTED"
    severity = ErrorSeverity.MEDIUM
