"""Blue-Green Deployment — Deployment Controller.

Drives one deployment at a time through the state machine::

    idle -> provisioning -> health_checking -> validating -> switching
         -> monitoring -> decommissioning -> completed

with ``error`` reachable from every active state and
``error -> rolling_back -> rolled_back`` as the rollback path. Every
transition is persisted before the next phase starts, so ``resume()``
after a crash re-enters the phase that was interrupted.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from src.audit import AuditRecorder, NotificationLevel
from src.logging_config import DeploymentContext, PerformanceTimer
from src.resilience import MaxRetriesExceeded, RetryConfig, call_with_retry

from .config import DeploymentConfig, DeploymentState, HealthStatus, can_transition
from .exceptions import (
    DeploymentCancelledError,
    DeploymentError,
    DeploymentInProgressError,
    ErrorSeverity,
    HealthCheckTimeoutError,
    InvalidTransitionError,
    ProvisioningError,
    RollbackError,
    RollbackRequestedError,
    UnhealthyEnvironmentError,
    ValidationFailureError,
)
from .health import HealthProber
from .models import Deployment
from .platform import Clock, InfrastructureProvider, RollbackTrigger, SmokeTester
from .registry import EnvironmentRegistry
from .rollback import RollbackAction, RollbackCoordinator
from .store import StateStore

logger = logging.getLogger(__name__)

_AUTO_ROLLBACK_ERRORS = (HealthCheckTimeoutError, UnhealthyEnvironmentError)
_ALWAYS_ROLLBACK_ERRORS = (DeploymentCancelledError, RollbackRequestedError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentController:
    """Owns the deployment lifecycle from provisioning to cleanup or rollback."""

    def __init__(
        self,
        registry: EnvironmentRegistry,
        infrastructure: InfrastructureProvider,
        smoke_tester: SmokeTester,
        store: StateStore,
        audit: Optional[AuditRecorder] = None,
        config: Optional[DeploymentConfig] = None,
        clock: Optional[Clock] = None,
        prober: Optional[HealthProber] = None,
        rollback_coordinator: Optional[RollbackCoordinator] = None,
        triggers: Optional[List[RollbackTrigger]] = None,
        retry_sleep: Callable[[float], None] = time.sleep,
    ):
        self._registry = registry
        self._infra = infrastructure
        self._smoke_tester = smoke_tester
        self._store = store
        self._audit = audit or AuditRecorder()
        self._config = config or DeploymentConfig()
        self._clock = clock or Clock()
        self._prober = prober or HealthProber(infrastructure, self._clock)
        self._rollback = rollback_coordinator or RollbackCoordinator(registry, infrastructure)
        self._triggers = list(triggers or [])
        self._retry_sleep = retry_sleep

        self._run_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._interrupt = threading.Event()
        self._abort_reason: Optional[str] = None
        self._rollback_reason: Optional[str] = None
        self._current: Optional[Deployment] = None
        self._history: Dict[str, Deployment] = {
            d.deployment_id: d for d in store.list_deployments() if d.is_terminal
        }

        self._handlers = {
            DeploymentState.PROVISIONING: self._provision,
            DeploymentState.HEALTH_CHECKING: self._check_health,
            DeploymentState.VALIDATING: self._validate,
            DeploymentState.SWITCHING: self._switch,
            DeploymentState.MONITORING: self._monitor,
            DeploymentState.DECOMMISSIONING: self._decommission,
            DeploymentState.ROLLING_BACK: self._roll_back,
        }

    # ── Properties ───────────────────────────────────────────────────

    @property
    def config(self) -> DeploymentConfig:
        return self._config

    @property
    def registry(self) -> EnvironmentRegistry:
        return self._registry

    @property
    def audit(self) -> AuditRecorder:
        return self._audit

    @property
    def rollback_coordinator(self) -> RollbackCoordinator:
        return self._rollback

    @property
    def state(self) -> DeploymentState:
        """The controller's state: the running deployment's state, else idle."""
        current = self._current
        if current is None or current.is_terminal:
            return DeploymentState.IDLE
        return current.state

    @property
    def current_deployment(self) -> Optional[Deployment]:
        return self._current

    # ── Operations ───────────────────────────────────────────────────

    def deploy(
        self,
        artifact_version: str,
        artifact_ref: str,
        deployed_by: str = "system",
    ) -> Deployment:
        """Run a full blue-green deployment of ``artifact_ref`` to the staging side.

        Blocks until the deployment reaches a terminal state.

        Raises:
            DeploymentInProgressError: another deployment is running or an
                interrupted one must be resumed first.
            DeploymentError: the subclass describing why the deployment failed.
        """
        if not self._run_lock.acquire(blocking=False):
            raise DeploymentInProgressError(
                "A deployment is already in progress",
                details={"current": self._current.deployment_id if self._current else None},
            )
        try:
            interrupted = self._store.load_in_flight()
            if interrupted is not None:
                raise DeploymentInProgressError(
                    f"Deployment {interrupted.deployment_id} was interrupted in "
                    f"{interrupted.state.value}; resume it first",
                    details={"current": interrupted.deployment_id},
                )
            if not self._registry.is_initialized:
                self._registry.initialize(self._config.initial_active_label)

            active = self._registry.get_active()
            deployment = Deployment(
                artifact_version=artifact_version,
                artifact_ref=artifact_ref,
                target_environment=active.label.other,
                previous_environment=active.label,
                previous_pool_ref=active.instance_pool_ref,
                deployed_by=deployed_by,
                started_at=_utcnow(),
            )
            self._begin(deployment)
            logger.info(
                "Created deployment %s for version %s (%s -> %s)",
                deployment.deployment_id,
                artifact_version,
                active.label.value,
                deployment.target_environment.value,
            )
            self._transition(
                deployment,
                DeploymentState.PROVISIONING,
                f"deploying {artifact_version} to {deployment.target_environment.value}",
            )
            return self._drive(deployment)
        finally:
            self._run_lock.release()

    def resume(self, abort_reason: Optional[str] = None) -> Optional[Deployment]:
        """Continue a deployment interrupted by a crash, if one was persisted.

        The router is first re-pointed at the persisted active label. With
        ``abort_reason`` the deployment is rolled back instead of finished,
        unless it already reached decommissioning.
        """
        if not self._run_lock.acquire(blocking=False):
            raise DeploymentInProgressError("A deployment is already in progress")
        try:
            deployment = self._store.load_in_flight()
            if deployment is None:
                logger.info("No interrupted deployment to resume")
                return None
            logger.warning(
                "Resuming deployment %s from %s%s",
                deployment.deployment_id,
                deployment.state.value,
                " to abort it" if abort_reason else "",
            )
            if self._registry.is_initialized and self._registry.reconcile_routing():
                deployment.metadata["routing_reconciled"] = True
            self._begin(deployment, persist=False)
            if abort_reason is not None:
                self._abort_reason = abort_reason
            return self._drive(deployment)
        finally:
            self._run_lock.release()

    def abort(self, reason: str = "operator abort") -> bool:
        """Signal the running deployment to stop and roll back.

        Returns:
            False if no deployment is running.
        """
        with self._state_lock:
            current = self._current
            if current is None or current.is_terminal:
                return False
            self._abort_reason = reason
            self._interrupt.set()
        logger.warning("Abort requested for deployment %s: %s", current.deployment_id, reason)
        return True

    def request_rollback(self, reason: str = "operator request") -> bool:
        """Ask the running deployment to roll back (honored in the hold window)."""
        with self._state_lock:
            current = self._current
            if current is None or current.is_terminal:
                return False
            self._rollback_reason = reason
            self._interrupt.set()
        logger.warning("Rollback requested for deployment %s: %s", current.deployment_id, reason)
        return True

    def rollback(
        self,
        deployment_id: Optional[str] = None,
        reason: str = "manual rollback",
    ) -> RollbackAction:
        """Manually roll back the latest archived deployment.

        Rolling back a deployment that was already rolled back is a no-op.
        Only the most recent deployment can be rolled back: once a newer
        one has run, the older one's previous pool is gone or replaced.

        Raises:
            InvalidTransitionError: a newer deployment superseded this one.
            RollbackError: the previous environment can no longer be restored.
        """
        if not self._run_lock.acquire(blocking=False):
            raise DeploymentInProgressError("A deployment is in progress; abort it instead")
        try:
            deployment = self._find_archived(deployment_id)
            if not deployment.rolled_back:
                self._ensure_latest(deployment)
            if deployment.rolled_back or not self._rollback.is_restorable(deployment):
                # No-op report, or a CRITICAL RollbackError, without touching state
                return self._rollback.rollback(deployment, reason=reason, triggered_by="operator")
            if not can_transition(deployment.state, DeploymentState.ROLLING_BACK):
                raise InvalidTransitionError(
                    f"Cannot roll back deployment in state {deployment.state.value}"
                )
            deployment.metadata["rollback_triggered_by"] = "operator"
            deployment.error = deployment.error or reason
            self._begin(deployment, persist=False)
            self._transition(deployment, DeploymentState.ROLLING_BACK, reason)
            self._drive(deployment)
            return self._rollback.list_rollbacks(deployment.deployment_id)[0]
        finally:
            self._run_lock.release()

    # ── Queries ──────────────────────────────────────────────────────

    def get_deployment(self, deployment_id: str) -> Optional[Deployment]:
        current = self._current
        if current is not None and current.deployment_id == deployment_id:
            return current
        return self._history.get(deployment_id)

    def history(self, limit: int = 10) -> List[Deployment]:
        """Return archived deployments, newest first."""
        deployments = list(self._history.values())
        deployments.sort(
            key=lambda d: d.started_at or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return deployments[:limit]

    def get_summary(self) -> dict:
        """Return aggregate deployment statistics."""
        archived = list(self._history.values())
        completed = sum(1 for d in archived if d.state == DeploymentState.COMPLETED)
        rolled_back = sum(1 for d in archived if d.state == DeploymentState.ROLLED_BACK)
        failed = sum(1 for d in archived if d.state == DeploymentState.ERROR)
        total = len(archived)
        return {
            "total": total,
            "completed": completed,
            "rolled_back": rolled_back,
            "failed": failed,
            "success_rate": round(completed / total, 4) if total else 0.0,
            "state": self.state.value,
            "active": (
                self._registry.active_label.value if self._registry.is_initialized else None
            ),
        }

    # ── State machine ────────────────────────────────────────────────

    def _begin(self, deployment: Deployment, persist: bool = True) -> None:
        with self._state_lock:
            self._current = deployment
            self._abort_reason = None
            self._rollback_reason = None
            self._interrupt.clear()
            if persist:
                self._store.save_deployment(deployment)

    def _transition(self, deployment: Deployment, to_state: DeploymentState, reason: str = "") -> None:
        with self._state_lock:
            from_state = deployment.state
            if not can_transition(from_state, to_state):
                raise InvalidTransitionError(
                    f"Illegal transition {from_state.value} -> {to_state.value}",
                    details={"deployment_id": deployment.deployment_id},
                )
            deployment.state = to_state
            self._store.save_deployment(deployment)
            self._audit.record_transition(
                deployment.deployment_id,
                from_state.value,
                to_state.value,
                reason,
            )

    def _drive(self, deployment: Deployment) -> Deployment:
        with DeploymentContext(
            deployment_id=deployment.deployment_id,
            artifact_version=deployment.artifact_version,
            operator=deployment.deployed_by,
        ):
            try:
                while not deployment.is_terminal:
                    handler = self._handlers[deployment.state]
                    with PerformanceTimer(deployment.state.value):
                        handler(deployment)
            except Exception as exc:
                self._on_failure(deployment, exc)
                raise
            finally:
                self._archive(deployment)
        return deployment

    def _on_failure(self, deployment: Deployment, exc: Exception) -> None:
        reason = f"{type(exc).__name__}: {exc}"
        if deployment.state == DeploymentState.ROLLING_BACK:
            self._fail_rollback(deployment, exc)
            return
        if not can_transition(deployment.state, DeploymentState.ERROR):
            logger.error("Deployment %s failed in %s: %s", deployment.deployment_id, deployment.state.value, reason)
            return

        deployment.error = reason
        deployment.completed_at = _utcnow()
        if isinstance(exc, DeploymentError) and exc.severity == ErrorSeverity.CRITICAL:
            logger.critical("Deployment %s failed: %s", deployment.deployment_id, reason)
        else:
            logger.error("Deployment %s failed: %s", deployment.deployment_id, reason)
        self._transition(deployment, DeploymentState.ERROR, reason)

        if not self._should_roll_back(exc):
            if isinstance(exc, ValidationFailureError):
                self._audit.alert(
                    deployment.deployment_id,
                    f"Validation failed for {deployment.artifact_version}; "
                    f"staging left provisioned for inspection",
                    NotificationLevel.WARNING,
                )
            return

        deployment.metadata["rollback_triggered_by"] = (
            "operator" if isinstance(exc, _ALWAYS_ROLLBACK_ERRORS) else "auto"
        )
        self._transition(deployment, DeploymentState.ROLLING_BACK, reason)
        try:
            self._roll_back(deployment)
        except Exception as rollback_exc:
            self._fail_rollback(deployment, rollback_exc)
            raise

    def _should_roll_back(self, exc: Exception) -> bool:
        if isinstance(exc, _ALWAYS_ROLLBACK_ERRORS):
            return True
        return self._config.auto_rollback and isinstance(exc, _AUTO_ROLLBACK_ERRORS)

    def _fail_rollback(self, deployment: Deployment, exc: Exception) -> None:
        message = f"Rollback failed, manual intervention required: {exc}"
        deployment.error = message
        deployment.completed_at = _utcnow()
        logger.critical("Deployment %s: %s", deployment.deployment_id, message)
        self._transition(deployment, DeploymentState.ERROR, message)
        self._audit.alert(deployment.deployment_id, message, NotificationLevel.CRITICAL)

    def _archive(self, deployment: Deployment) -> None:
        if not deployment.is_terminal:
            return
        with self._state_lock:
            self._history[deployment.deployment_id] = deployment
            if self._current is deployment:
                self._current = None
            self._interrupt.clear()
        logger.info(
            "Deployment %s archived in state %s",
            deployment.deployment_id,
            deployment.state.value,
        )

    def _check_interrupt(self) -> None:
        if self._rollback_reason is not None:
            raise RollbackRequestedError(self._rollback_reason)
        if self._abort_reason is not None:
            raise DeploymentCancelledError(self._abort_reason)

    def _find_archived(self, deployment_id: Optional[str]) -> Deployment:
        if deployment_id is not None:
            deployment = self._history.get(deployment_id) or self._store.load_deployment(deployment_id)
            if deployment is None:
                raise KeyError(f"Deployment {deployment_id} not found")
            return deployment
        latest = self.history(limit=1)
        if not latest:
            raise KeyError("No deployment to roll back")
        return latest[0]

    def _ensure_latest(self, deployment: Deployment) -> None:
        latest = self.history(limit=1)
        if latest and latest[0].deployment_id != deployment.deployment_id:
            raise InvalidTransitionError(
                f"Deployment {deployment.deployment_id} was superseded by "
                f"{latest[0].deployment_id}; only the latest deployment can be rolled back",
                details={
                    "deployment_id": deployment.deployment_id,
                    "latest": latest[0].deployment_id,
                },
            )

    # ── Phase handlers ───────────────────────────────────────────────

    def _provision(self, deployment: Deployment) -> None:
        self._check_interrupt()
        target = self._registry.get(deployment.target_environment)
        if target.is_provisioned and self._registry.active_label != target.label:
            self._release_leftover(deployment, target)
        retry_config = RetryConfig.for_attempts(
            self._config.provision_max_attempts,
            base_delay=self._config.provision_base_delay,
            retryable_exceptions=(ProvisioningError,),
        )
        try:
            handle = call_with_retry(
                self._infra.provision,
                target,
                deployment.artifact_ref,
                config=retry_config,
                sleep=self._retry_sleep,
            )
        except MaxRetriesExceeded as exc:
            raise ProvisioningError(
                f"Provisioning {target.label.value} failed after "
                f"{exc.attempts + 1} attempts: {exc.last_exception}",
                attempts=exc.attempts + 1,
                details={"environment": target.label.value},
            ) from exc.last_exception

        deployment.staging_handle = handle
        self._registry.update_environment(
            target.label,
            instance_pool_ref=handle,
            health_status=HealthStatus.UNKNOWN,
        )
        self._transition(
            deployment,
            DeploymentState.HEALTH_CHECKING,
            f"capacity acknowledged ({handle})",
        )

    def _release_leftover(self, deployment: Deployment, target) -> None:
        # A staging pool left by an earlier failed deployment is replaced, not reused
        handle = target.instance_pool_ref
        logger.warning(
            "Releasing leftover pool %s on %s before provisioning %s",
            handle,
            target.label.value,
            deployment.artifact_version,
        )
        self._infra.terminate(handle)
        self._registry.update_environment(
            target.label,
            instance_pool_ref=None,
            health_status=HealthStatus.UNKNOWN,
        )
        deployment.metadata["released_pool"] = handle

    def _check_health(self, deployment: Deployment) -> None:
        self._check_interrupt()
        target = self._registry.get(deployment.target_environment)
        try:
            result = self._prober.probe(target, self._config.health_policy, cancel=self._interrupt)
        except HealthCheckTimeoutError:
            last = self._prober.last_result(target.label)
            if last is not None:
                self._registry.update_environment(target.label, health_status=last.status)
            raise
        except DeploymentCancelledError:
            self._check_interrupt()
            raise

        self._registry.update_environment(target.label, health_status=result.status)
        deployment.metadata["health"] = {
            "healthy_count": result.healthy_count,
            "total_count": result.total_count,
            "checks_run": result.checks_run,
        }
        if result.status != HealthStatus.HEALTHY:
            raise UnhealthyEnvironmentError(
                f"{target.label.value} reported unhealthy "
                f"{result.consecutive_fail_streak} times in a row",
                details={"environment": target.label.value},
            )
        self._transition(
            deployment,
            DeploymentState.VALIDATING,
            f"{result.healthy_count}/{result.total_count} healthy",
        )

    def _validate(self, deployment: Deployment) -> None:
        self._check_interrupt()
        target = self._registry.get(deployment.target_environment)
        report = self._smoke_tester.run(target, deployment)
        if not report.passed:
            names = [getattr(c, "name", str(c)) for c in report.failures]
            raise ValidationFailureError(
                f"Smoke tests failed on {target.label.value}: {', '.join(names)}",
                details={"failures": names},
            )
        self._transition(deployment, DeploymentState.SWITCHING, "smoke tests passed")

    def _switch(self, deployment: Deployment) -> None:
        self._check_interrupt()
        if self._registry.active_label == deployment.target_environment:
            logger.info("Traffic already on %s; swap was committed earlier", deployment.target_environment.value)
        else:
            self._registry.swap()
        deployment.traffic_switched = True
        self._transition(
            deployment,
            DeploymentState.MONITORING,
            f"traffic on {deployment.target_environment.value}",
        )

    def _monitor(self, deployment: Deployment) -> None:
        deadline = self._clock.now() + self._config.hold_window_seconds
        while True:
            self._check_interrupt()
            if self._config.auto_rollback:
                for trigger in self._triggers:
                    reason = trigger.check(deployment)
                    if reason:
                        raise RollbackRequestedError(reason)
            remaining = deadline - self._clock.now()
            if remaining <= 0:
                break
            self._clock.wait(min(self._config.monitor_interval_seconds, remaining), self._interrupt)
        self._transition(deployment, DeploymentState.DECOMMISSIONING, "hold window elapsed")

    def _decommission(self, deployment: Deployment) -> None:
        previous = self._registry.get(deployment.previous_environment)
        if previous.is_provisioned:
            self._infra.terminate(previous.instance_pool_ref)
            logger.info("Terminated previous pool %s (%s)", previous.instance_pool_ref, previous.label.value)
        self._registry.update_environment(
            previous.label,
            instance_pool_ref=None,
            health_status=HealthStatus.UNKNOWN,
        )
        deployment.completed_at = _utcnow()
        self._transition(deployment, DeploymentState.COMPLETED, "previous environment released")

    def _roll_back(self, deployment: Deployment) -> None:
        action = self._rollback.rollback(
            deployment,
            reason=deployment.error or "",
            triggered_by=deployment.metadata.get("rollback_triggered_by", "auto"),
        )
        deployment.metadata["rollback_id"] = action.rollback_id
        try:
            self._release_staging(deployment)
        except Exception as exc:
            # Traffic is already restored; a leaked pool is an operator task
            logger.error(
                "Releasing staging pool %s failed: %s",
                deployment.staging_handle,
                exc,
                exc_info=True,
            )
            deployment.metadata["release_error"] = str(exc)
            self._audit.alert(
                deployment.deployment_id,
                f"Staging pool {deployment.staging_handle} could not be released: {exc}",
                NotificationLevel.WARNING,
            )
        deployment.completed_at = _utcnow()
        self._transition(deployment, DeploymentState.ROLLED_BACK, action.reason or "rolled back")

    def _release_staging(self, deployment: Deployment) -> None:
        target = self._registry.get(deployment.target_environment)
        if deployment.staging_handle is None or target.instance_pool_ref != deployment.staging_handle:
            return
        if self._registry.active_label == target.label:
            return
        self._infra.terminate(deployment.staging_handle)
        self._registry.update_environment(
            target.label,
            instance_pool_ref=None,
            health_status=HealthStatus.UNKNOWN,
        )
        logger.info("Released staging pool %s (%s)", deployment.staging_handle, target.label.value)
