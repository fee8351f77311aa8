"""Blue-Green Deployment — External collaborator interfaces.

The orchestrator never talks to the cloud platform directly; it drives
it through these narrow contracts. ``src.deployment.aws`` implements
them on Auto Scaling Groups, Target Groups and an ALB listener.
"""

import abc
import threading
import time
from typing import Optional

from .models import Deployment, Environment, PoolHealth


class InfrastructureProvider(abc.ABC):
    """Allocates, inspects and releases instance pools."""

    @abc.abstractmethod
    def provision(self, environment: Environment, artifact_ref: str) -> str:
        """Request capacity running ``artifact_ref``; return a pool handle.

        Raises:
            ProvisioningError: the platform refused or failed the request.
        """

    @abc.abstractmethod
    def health(self, handle: str) -> PoolHealth:
        """Return current healthy/total instance counts for the pool."""

    @abc.abstractmethod
    def terminate(self, handle: str) -> None:
        """Release the pool's capacity."""

    def is_provisioned(self, handle: Optional[str]) -> bool:
        return handle is not None


class TrafficRouter(abc.ABC):
    """Points live traffic at one environment."""

    @abc.abstractmethod
    def set_active_target(self, environment: Environment) -> None:
        ...

    def current_target(self) -> Optional[str]:
        """Target group live traffic goes to, or None if the router cannot tell."""
        return None


class SmokeTester(abc.ABC):
    """Validates a healthy staging environment before it takes traffic."""

    @abc.abstractmethod
    def run(self, environment: Environment, deployment: Deployment):
        """Return a report object exposing ``passed`` and ``failures``."""


class RollbackTrigger(abc.ABC):
    """Polled during the hold window; a non-empty reason requests rollback."""

    @abc.abstractmethod
    def check(self, deployment: Deployment) -> Optional[str]:
        ...


class Clock:
    """Time source and interruptible wait for polling loops."""

    def now(self) -> float:
        return time.monotonic()

    def wait(self, seconds: float, cancel: Optional[threading.Event] = None) -> bool:
        """Sleep up to ``seconds``; return True if ``cancel`` was set."""
        if cancel is None:
            time.sleep(seconds)
            return False
        return cancel.wait(seconds)
