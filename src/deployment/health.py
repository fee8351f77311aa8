"""Blue-Green Deployment — Health Prober."""

import logging
import threading
from typing import Dict, Iterator, Optional

from .config import EnvironmentLabel, HealthPolicy, HealthStatus
from .exceptions import DeploymentCancelledError, HealthCheckTimeoutError, UnhealthyEnvironmentError
from .models import Environment, HealthCheckResult
from .platform import Clock, InfrastructureProvider

logger = logging.getLogger(__name__)


class HealthProber:
    """Polls an environment's instance pool until a health threshold is met.

    A check passes when every instance in the pool is healthy and fails
    when none is. A partially healthy (degraded) pool resets both
    streaks, so a pool stuck at 1/2 healthy runs into the timeout.
    """

    def __init__(self, infrastructure: InfrastructureProvider, clock: Optional[Clock] = None):
        self._infra = infrastructure
        self._clock = clock or Clock()
        self._last_results: Dict[EnvironmentLabel, HealthCheckResult] = {}
        self._lock = threading.Lock()

    def checks(
        self,
        environment: Environment,
        policy: HealthPolicy,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[HealthCheckResult]:
        """Yield one result per interval until a threshold is reached.

        Each call starts a fresh sequence with zeroed streaks.

        Raises:
            HealthCheckTimeoutError: no threshold within policy.timeout_seconds.
            DeploymentCancelledError: ``cancel`` was set while polling.
        """
        if not environment.is_provisioned:
            raise UnhealthyEnvironmentError(
                f"Environment {environment.label.value} has no instance pool",
                details={"environment": environment.label.value},
            )

        started = self._clock.now()
        pass_streak = 0
        fail_streak = 0
        checks_run = 0

        while True:
            if cancel is not None and cancel.is_set():
                raise DeploymentCancelledError("Health probing cancelled")

            pool = self._infra.health(environment.instance_pool_ref)
            checks_run += 1
            status = pool.status
            if status == HealthStatus.HEALTHY:
                pass_streak += 1
                fail_streak = 0
            elif status == HealthStatus.UNHEALTHY:
                fail_streak += 1
                pass_streak = 0
            else:
                pass_streak = 0
                fail_streak = 0

            result = HealthCheckResult(
                environment_label=environment.label,
                healthy_count=pool.healthy_count,
                total_count=pool.total_count,
                consecutive_pass_streak=pass_streak,
                consecutive_fail_streak=fail_streak,
                status=status,
                checks_run=checks_run,
            )
            with self._lock:
                self._last_results[environment.label] = result
            logger.debug(
                "Health check %d for %s: %d/%d healthy (pass=%d fail=%d)",
                checks_run,
                environment.label.value,
                pool.healthy_count,
                pool.total_count,
                pass_streak,
                fail_streak,
            )
            yield result

            if pass_streak >= policy.healthy_threshold or fail_streak >= policy.unhealthy_threshold:
                return

            elapsed = self._clock.now() - started
            if elapsed >= policy.timeout_seconds:
                raise HealthCheckTimeoutError(
                    f"{environment.label.value} did not reach a health threshold "
                    f"within {policy.timeout_seconds:.0f}s "
                    f"(last {pool.healthy_count}/{pool.total_count} healthy)",
                    details={
                        "environment": environment.label.value,
                        "healthy_count": pool.healthy_count,
                        "total_count": pool.total_count,
                        "checks_run": checks_run,
                    },
                )

            wait_for = min(policy.interval_seconds, policy.timeout_seconds - elapsed)
            if self._clock.wait(wait_for, cancel):
                raise DeploymentCancelledError("Health probing cancelled")

    def probe(
        self,
        environment: Environment,
        policy: HealthPolicy,
        cancel: Optional[threading.Event] = None,
    ) -> HealthCheckResult:
        """Run a full probing sequence and return its final result.

        The final result's status is HEALTHY when the healthy threshold was
        reached and UNHEALTHY when the unhealthy threshold was reached.
        """
        result = None
        for result in self.checks(environment, policy, cancel):
            pass
        if result.consecutive_pass_streak >= policy.healthy_threshold:
            result.status = HealthStatus.HEALTHY
        else:
            result.status = HealthStatus.UNHEALTHY
        logger.info(
            "Probe of %s finished %s after %d checks (%d/%d healthy)",
            environment.label.value,
            result.status.value,
            result.checks_run,
            result.healthy_count,
            result.total_count,
        )
        return result

    def last_result(self, label: EnvironmentLabel) -> Optional[HealthCheckResult]:
        """Return the most recent result recorded for ``label``."""
        with self._lock:
            return self._last_results.get(label)
