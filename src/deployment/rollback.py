"""Blue-Green Deployment — Rollback Coordinator."""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .config import DeploymentConfig
from .exceptions import RollbackError, RoutingError, SwapConflictError
from .models import Deployment
from .platform import InfrastructureProvider, RollbackTrigger
from .registry import EnvironmentRegistry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RollbackAction:
    """Record of a rollback operation."""

    rollback_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    deployment_id: str = ""
    from_environment: Optional[str] = None
    to_environment: Optional[str] = None
    reason: str = ""
    triggered_by: str = "auto"
    triggered_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    success: bool = False
    already_rolled_back: bool = False
    swapped: bool = False
    error: Optional[str] = None
    steps_completed: List[str] = field(default_factory=list)


class RollbackCoordinator:
    """Restores the previously active environment after a failed deployment.

    Rollback only restores traffic. Releasing the failed pool is left to
    the controller, which owns the deployment's lifecycle.
    """

    def __init__(self, registry: EnvironmentRegistry, infrastructure: InfrastructureProvider):
        self._registry = registry
        self._infra = infrastructure
        self._actions: Dict[str, RollbackAction] = {}
        self._lock = threading.Lock()

    def rollback(
        self,
        deployment: Deployment,
        reason: str = "",
        triggered_by: str = "auto",
    ) -> RollbackAction:
        """Swap traffic back to the deployment's previous environment.

        Calling this again after a completed rollback is a no-op that
        reports ``already_rolled_back``.

        Raises:
            RollbackError: the previous pool is gone or the swap failed.
        """
        with self._lock:
            action = RollbackAction(
                deployment_id=deployment.deployment_id,
                from_environment=_label(deployment.target_environment),
                to_environment=_label(deployment.previous_environment),
                reason=reason,
                triggered_by=triggered_by,
            )
            self._actions[action.rollback_id] = action

            if deployment.rolled_back:
                action.already_rolled_back = True
                action.success = True
                action.completed_at = _utcnow()
                logger.info(
                    "Deployment %s already rolled back; nothing to do",
                    deployment.deployment_id,
                )
                return action

            logger.warning(
                "Rollback triggered for deployment %s: %s -> %s (reason: %s)",
                deployment.deployment_id,
                action.from_environment,
                action.to_environment,
                reason or "unspecified",
            )

            if deployment.traffic_switched:
                self._restore_traffic(deployment, action)
            else:
                action.steps_completed.append("traffic_not_switched")

            deployment.rolled_back = True
            action.success = True
            action.completed_at = _utcnow()
            logger.info(
                "Rollback %s completed for deployment %s (swapped=%s)",
                action.rollback_id,
                deployment.deployment_id,
                action.swapped,
            )
            return action

    def is_restorable(self, deployment: Deployment) -> bool:
        """Return True if traffic can go back to the pool this deployment replaced.

        The previous label must still hold that exact pool: a later
        deployment may have put a different artifact on it.
        """
        if deployment.rolled_back or not deployment.traffic_switched:
            return True
        if deployment.previous_environment is None:
            return False
        previous = self._registry.get(deployment.previous_environment)
        if not previous.is_provisioned:
            return False
        if (
            deployment.previous_pool_ref is not None
            and previous.instance_pool_ref != deployment.previous_pool_ref
        ):
            return False
        return self._infra.is_provisioned(previous.instance_pool_ref)

    def _restore_traffic(self, deployment: Deployment, action: RollbackAction) -> None:
        if not self.is_restorable(deployment):
            self._fail(
                action,
                f"Previous environment {action.to_environment} no longer holds "
                f"pool {deployment.previous_pool_ref or 'unknown'}",
            )
        previous = self._registry.get(deployment.previous_environment)
        action.steps_completed.append("verify_previous_pool")

        if self._registry.active_label == deployment.previous_environment:
            # Swap committed before a crash was never recorded on the deployment
            action.steps_completed.append("traffic_already_restored")
        else:
            try:
                self._registry.swap()
            except (SwapConflictError, RoutingError) as exc:
                self._fail(action, f"Swap back to {previous.label.value} failed: {exc}", exc)
            action.swapped = True
            action.steps_completed.append("swap_traffic")
        deployment.traffic_switched = False

    def _fail(self, action: RollbackAction, message: str, cause: Optional[Exception] = None) -> None:
        action.error = message
        action.completed_at = _utcnow()
        logger.critical(
            "Rollback %s for deployment %s FAILED, manual intervention required: %s",
            action.rollback_id,
            action.deployment_id,
            message,
        )
        raise RollbackError(
            message,
            details={"deployment_id": action.deployment_id, "rollback_id": action.rollback_id},
        ) from cause

    def list_rollbacks(self, deployment_id: Optional[str] = None) -> List[RollbackAction]:
        """List rollback actions, newest first, optionally filtered by deployment."""
        actions = list(reversed(list(self._actions.values())))
        if deployment_id is not None:
            actions = [a for a in actions if a.deployment_id == deployment_id]
        return actions


class MetricsRollbackTrigger(RollbackTrigger):
    """Requests rollback when live error rate or latency breach thresholds.

    ``metrics`` returns ``(error_rate, latency_ms)`` for the deployment.
    """

    def __init__(
        self,
        metrics: Callable[[Deployment], Tuple[float, float]],
        config: Optional[DeploymentConfig] = None,
    ):
        self._metrics = metrics
        self._config = config or DeploymentConfig()

    def check(self, deployment: Deployment) -> Optional[str]:
        error_rate, latency_ms = self._metrics(deployment)
        reasons = []
        if error_rate > self._config.error_rate_threshold:
            reasons.append(
                f"Error rate {error_rate:.2%} exceeds threshold "
                f"{self._config.error_rate_threshold:.2%}"
            )
        if latency_ms > self._config.latency_threshold_ms:
            reasons.append(
                f"Latency {latency_ms:.0f}ms exceeds threshold "
                f"{self._config.latency_threshold_ms:.0f}ms"
            )
        if reasons:
            combined = "; ".join(reasons)
            logger.warning("Rollback recommended: %s", combined)
            return combined
        return None


def _label(label) -> Optional[str]:
    return label.value if label is not None else None
