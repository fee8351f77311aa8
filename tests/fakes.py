"""In-memory platform doubles for deterministic orchestrator tests."""

import threading
from typing import Callable, Dict, List, Optional

from src.audit import AuditRecorder, Notifier
from src.deployment import (
    DeploymentConfig,
    DeploymentController,
    DeploymentValidator,
    EnvironmentLabel,
    EnvironmentRegistry,
    HealthPolicy,
    InfrastructureProvider,
    MemoryStateStore,
    PoolHealth,
    ProvisioningError,
    RollbackTrigger,
    TrafficRouter,
)
from src.deployment.platform import Clock


class FakeClock(Clock):
    """Virtual time: ``wait`` advances the clock instead of sleeping."""

    def __init__(self, start: float = 0.0):
        self.t = start
        self.waits: List[float] = []
        self.on_wait: Optional[Callable[[float], None]] = None

    def now(self) -> float:
        return self.t

    def wait(self, seconds, cancel=None) -> bool:
        self.waits.append(seconds)
        self.t += seconds
        if self.on_wait is not None:
            self.on_wait(self.t)
        return cancel is not None and cancel.is_set()


class FakeInfrastructure(InfrastructureProvider):
    """Pools that report health from a script of ``PoolHealth`` values.

    ``health_script`` is consumed one entry per check; the last entry
    repeats once the script runs out.
    """

    def __init__(self, health_script=None, provision_failures: int = 0):
        self.health_script: List[PoolHealth] = list(health_script or [PoolHealth(2, 2)])
        self.provision_failures = provision_failures
        self.provision_calls = 0
        self.health_calls = 0
        self.pools: Dict[str, str] = {}
        self.terminated: List[str] = []
        self.fail_terminate = False

    def add_pool(self, handle: str, artifact_ref: str = "image:0") -> str:
        self.pools[handle] = artifact_ref
        return handle

    def provision(self, environment, artifact_ref):
        self.provision_calls += 1
        if self.provision_calls <= self.provision_failures:
            raise ProvisioningError("capacity unavailable")
        handle = f"pool-{environment.label.value}-{self.provision_calls}"
        self.pools[handle] = artifact_ref
        return handle

    def health(self, handle):
        index = min(self.health_calls, len(self.health_script) - 1)
        self.health_calls += 1
        return self.health_script[index]

    def terminate(self, handle):
        if self.fail_terminate:
            raise RuntimeError("terminate refused")
        self.pools.pop(handle, None)
        self.terminated.append(handle)

    def is_provisioned(self, handle):
        return handle in self.pools


class FakeRouter(TrafficRouter):
    """Records every target; can fail or block on demand."""

    def __init__(self):
        self.targets: List[EnvironmentLabel] = []
        self.listener: Optional[str] = None
        self.fail = False
        self.entered = threading.Event()
        self.release: Optional[threading.Event] = None

    def set_active_target(self, environment):
        self.entered.set()
        if self.release is not None:
            self.release.wait(5)
        if self.fail:
            raise ConnectionError("listener update rejected")
        self.targets.append(environment.label)
        self.listener = environment.target_group_ref

    def current_target(self):
        return self.listener


class ScriptedTrigger(RollbackTrigger):
    """Returns ``reason`` from the ``fire_on``-th check onward."""

    def __init__(self, reason: str = "error rate 12%", fire_on: int = 1):
        self.reason = reason
        self.fire_on = fire_on
        self.calls = 0

    def check(self, deployment):
        self.calls += 1
        return self.reason if self.calls >= self.fire_on else None


class RecordingChannel:
    def __init__(self):
        self.notifications = []

    def __call__(self, notification):
        self.notifications.append(notification)

    def levels(self):
        return [n.level for n in self.notifications]


class World:
    """A controller wired to fakes, with blue live on ``pool-blue-0``."""

    def __init__(
        self,
        health_script=None,
        provision_failures: int = 0,
        smoke_passes: bool = True,
        triggers=None,
        store=None,
        **config_overrides,
    ):
        self.clock = FakeClock()
        self.infra = FakeInfrastructure(health_script, provision_failures)
        self.router = FakeRouter()
        self.store = store or MemoryStateStore()
        self.channel = RecordingChannel()
        self.audit = AuditRecorder(notifier=Notifier([self.channel]))
        self.retry_delays: List[float] = []

        self.registry = EnvironmentRegistry(
            self.router,
            self.store,
            target_groups={
                EnvironmentLabel.BLUE: "tg-blue",
                EnvironmentLabel.GREEN: "tg-green",
            },
        )
        if not self.registry.is_initialized:
            self.registry.initialize(EnvironmentLabel.BLUE)
            self.registry.update_environment(
                EnvironmentLabel.BLUE,
                instance_pool_ref=self.infra.add_pool("pool-blue-0"),
            )
        else:
            # Restarted process: the platform still runs the persisted pools
            for label in EnvironmentLabel:
                env = self.registry.get(label)
                if env.instance_pool_ref:
                    self.infra.add_pool(env.instance_pool_ref)

        self.validator = DeploymentValidator()
        self.validator.add_check(
            "homepage",
            "availability",
            lambda env: 1.0 if smoke_passes else 0.0,
        )

        config = DeploymentConfig(
            health_policy=HealthPolicy(
                interval_seconds=30,
                healthy_threshold=2,
                unhealthy_threshold=2,
                timeout_seconds=300,
            ),
            hold_window_seconds=config_overrides.pop("hold_window_seconds", 600),
            monitor_interval_seconds=30,
            **config_overrides,
        )
        self.controller = DeploymentController(
            self.registry,
            self.infra,
            self.validator,
            self.store,
            audit=self.audit,
            config=config,
            clock=self.clock,
            triggers=triggers,
            retry_sleep=self.retry_delays.append,
        )

    def states(self, deployment_id: str) -> List[str]:
        return [e.to_state for e in self.audit.for_deployment(deployment_id)]
