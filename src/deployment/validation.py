"""Blue-Green Deployment — Smoke-test validation."""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .config import ValidationStatus
from .models import Deployment, Environment
from .platform import SmokeTester

logger = logging.getLogger(__name__)

# Check types where a lower measurement is better.
LOWER_IS_BETTER = ("error_rate", "latency")

Measure = Callable[[Environment], float]


@dataclass
class ValidationCheck:
    """A single validation check executed against an environment."""

    check_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    check_type: str = ""
    status: ValidationStatus = ValidationStatus.PENDING
    threshold: Optional[float] = None
    actual_value: Optional[float] = None
    passed: Optional[bool] = None
    message: str = ""
    executed_at: Optional[datetime] = None


@dataclass
class ValidationReport:
    """Outcome of one smoke-test run."""

    deployment_id: str
    environment_label: str
    checks: List[ValidationCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(
            c.status in (ValidationStatus.PASSING, ValidationStatus.SKIPPED)
            for c in self.checks
        )

    @property
    def failures(self) -> List[ValidationCheck]:
        return [c for c in self.checks if c.status == ValidationStatus.FAILING]

    def to_dict(self) -> dict:
        return {
            "deployment_id": self.deployment_id,
            "environment": self.environment_label,
            "passed": self.passed,
            "checks": [
                {
                    "name": c.name,
                    "check_type": c.check_type,
                    "status": c.status.value,
                    "threshold": c.threshold,
                    "actual_value": c.actual_value,
                    "message": c.message,
                }
                for c in self.checks
            ],
        }


@dataclass
class _RegisteredCheck:
    name: str
    check_type: str
    measure: Measure
    threshold: Optional[float] = None


class DeploymentValidator(SmokeTester):
    """Runs registered threshold checks against a staging environment.

    A check whose measurement raises is recorded as failing rather than
    aborting the run, so the report always lists every check.
    """

    def __init__(self):
        self._registered: List[_RegisteredCheck] = []
        self._lock = threading.Lock()

    def add_check(
        self,
        name: str,
        check_type: str,
        measure: Measure,
        threshold: Optional[float] = None,
    ) -> None:
        """Register a check run on every validation."""
        with self._lock:
            self._registered.append(_RegisteredCheck(name, check_type, measure, threshold))
        logger.info("Registered validation check '%s' (%s)", name, check_type)

    def run(self, environment: Environment, deployment: Deployment) -> ValidationReport:
        report = ValidationReport(
            deployment_id=deployment.deployment_id,
            environment_label=environment.label.value,
        )
        with self._lock:
            registered = list(self._registered)

        for entry in registered:
            check = ValidationCheck(
                name=entry.name,
                check_type=entry.check_type,
                threshold=entry.threshold,
            )
            try:
                value = float(entry.measure(environment))
            except Exception as exc:
                logger.warning("Validation check '%s' raised: %s", entry.name, exc)
                check.status = ValidationStatus.FAILING
                check.passed = False
                check.message = f"FAIL: {entry.name} raised {type(exc).__name__}: {exc}"
                check.executed_at = datetime.now(timezone.utc)
                report.checks.append(check)
                continue
            self._evaluate(check, value)
            report.checks.append(check)

        logger.info(
            "Smoke tests for %s on %s: %d/%d passed",
            deployment.deployment_id,
            environment.label.value,
            sum(1 for c in report.checks if c.passed),
            len(report.checks),
        )
        return report

    @staticmethod
    def _evaluate(check: ValidationCheck, actual_value: float) -> None:
        check.actual_value = actual_value
        check.executed_at = datetime.now(timezone.utc)

        if check.threshold is not None:
            if check.check_type in LOWER_IS_BETTER:
                check.passed = actual_value <= check.threshold
            else:
                check.passed = actual_value >= check.threshold
            check.status = (
                ValidationStatus.PASSING if check.passed else ValidationStatus.FAILING
            )
            check.message = (
                f"{'PASS' if check.passed else 'FAIL'}: "
                f"{check.name} actual={actual_value} threshold={check.threshold}"
            )
        else:
            # No threshold: any non-zero measurement counts as up
            check.passed = actual_value > 0
            check.status = (
                ValidationStatus.PASSING if check.passed else ValidationStatus.FAILING
            )
            check.message = f"{'PASS' if check.passed else 'FAIL'}: {check.name}={actual_value}"
