"""Tests for the blue-green deployment orchestrator."""

import threading

import pytest

from src.deployment import (
    Deployment,
    DeploymentCancelledError,
    DeploymentConfig,
    DeploymentController,
    DeploymentError,
    DeploymentInProgressError,
    DeploymentState,
    DeploymentValidator,
    Environment,
    EnvironmentLabel,
    EnvironmentRegistry,
    ErrorSeverity,
    HealthCheckTimeoutError,
    HealthPolicy,
    HealthProber,
    HealthStatus,
    InvalidTransitionError,
    MemoryStateStore,
    MetricsRollbackTrigger,
    PoolHealth,
    ProvisioningError,
    RegistryNotInitializedError,
    RollbackCoordinator,
    RollbackError,
    RollbackRequestedError,
    RoutingError,
    SqlStateStore,
    SwapConflictError,
    TERMINAL_STATES,
    UnhealthyEnvironmentError,
    ValidationFailureError,
    ValidationStatus,
    can_transition,
)
from src.settings import Settings

from fakes import FakeClock, FakeInfrastructure, FakeRouter, ScriptedTrigger, World

BLUE = EnvironmentLabel.BLUE
GREEN = EnvironmentLabel.GREEN

HAPPY_PATH = [
    "provisioning",
    "health_checking",
    "validating",
    "switching",
    "monitoring",
    "decommissioning",
    "completed",
]


class SimulatedCrash(BaseException):
    """Kills the controller mid-phase without running failure handling."""


# ── Config Tests ─────────────────────────────────────────────────────


class TestDeploymentConfig:
    def test_environment_labels(self):
        assert len(EnvironmentLabel) == 2
        assert BLUE.other == GREEN
        assert GREEN.other == BLUE

    def test_deployment_states(self):
        assert len(DeploymentState) == 11
        assert DeploymentState.HEALTH_CHECKING.value == "health_checking"
        assert DeploymentState.ROLLED_BACK.value == "rolled_back"

    def test_terminal_states(self):
        assert TERMINAL_STATES == {
            DeploymentState.COMPLETED,
            DeploymentState.ERROR,
            DeploymentState.ROLLED_BACK,
        }

    def test_happy_path_edges(self):
        states = [DeploymentState.IDLE] + [DeploymentState(s) for s in HAPPY_PATH]
        for a, b in zip(states, states[1:]):
            assert can_transition(a, b), f"{a} -> {b}"

    def test_error_reachable_from_active_states(self):
        for state in (
            DeploymentState.PROVISIONING,
            DeploymentState.HEALTH_CHECKING,
            DeploymentState.VALIDATING,
            DeploymentState.SWITCHING,
            DeploymentState.MONITORING,
            DeploymentState.DECOMMISSIONING,
            DeploymentState.ROLLING_BACK,
        ):
            assert can_transition(state, DeploymentState.ERROR)

    def test_rollback_path(self):
        assert can_transition(DeploymentState.ERROR, DeploymentState.ROLLING_BACK)
        assert can_transition(DeploymentState.ROLLING_BACK, DeploymentState.ROLLED_BACK)
        assert can_transition(DeploymentState.COMPLETED, DeploymentState.ROLLING_BACK)

    def test_illegal_edges(self):
        assert not can_transition(DeploymentState.IDLE, DeploymentState.SWITCHING)
        assert not can_transition(DeploymentState.PROVISIONING, DeploymentState.VALIDATING)
        assert not can_transition(DeploymentState.ROLLED_BACK, DeploymentState.ROLLING_BACK)
        assert not can_transition(DeploymentState.IDLE, DeploymentState.ERROR)

    def test_health_policy_defaults(self):
        policy = HealthPolicy()
        assert policy.interval_seconds == 30
        assert policy.healthy_threshold == 2
        assert policy.unhealthy_threshold == 2
        assert policy.timeout_seconds == 300

    def test_health_policy_rejects_bad_values(self):
        with pytest.raises(ValueError):
            HealthPolicy(interval_seconds=0)
        with pytest.raises(ValueError):
            HealthPolicy(healthy_threshold=0)
        with pytest.raises(ValueError):
            HealthPolicy(timeout_seconds=-1)

    def test_default_config(self):
        cfg = DeploymentConfig()
        assert cfg.provision_max_attempts == 3
        assert cfg.hold_window_seconds == 600
        assert cfg.auto_rollback is True
        assert cfg.initial_active_label == BLUE

    def test_from_settings(self):
        settings = Settings(
            health_interval_seconds=10,
            health_timeout_seconds=120,
            auto_rollback=False,
            initial_active_label="green",
        )
        cfg = DeploymentConfig.from_settings(settings)
        assert cfg.health_policy.interval_seconds == 10
        assert cfg.health_policy.timeout_seconds == 120
        assert cfg.auto_rollback is False
        assert cfg.initial_active_label == GREEN


# ── Exception Tests ──────────────────────────────────────────────────


class TestExceptions:
    def test_hierarchy(self):
        for cls in (
            ProvisioningError,
            HealthCheckTimeoutError,
            ValidationFailureError,
            SwapConflictError,
            RollbackError,
            DeploymentInProgressError,
        ):
            assert issubclass(cls, DeploymentError)

    def test_timeout_is_a_timeout(self):
        assert isinstance(HealthCheckTimeoutError("slow"), TimeoutError)

    def test_to_dict(self):
        exc = RollbackError("pool gone", details={"deployment_id": "d1"})
        data = exc.to_dict()
        assert data["error_code"] == "ROLLBACK_FAILED"
        assert data["severity"] == "critical"
        assert data["details"] == {"deployment_id": "d1"}
        assert exc.severity == ErrorSeverity.CRITICAL

    def test_provisioning_attempts(self):
        exc = ProvisioningError("no capacity", attempts=3)
        assert exc.attempts == 3

    def test_default_messages(self):
        assert str(SwapConflictError()) == "A swap is already in flight"
        assert str(DeploymentCancelledError()) == "Deployment cancelled"


# ── Model Tests ──────────────────────────────────────────────────────


class TestModels:
    def test_pool_health_status(self):
        assert PoolHealth(2, 2).status == HealthStatus.HEALTHY
        assert PoolHealth(0, 2).status == HealthStatus.UNHEALTHY
        assert PoolHealth(1, 2).status == HealthStatus.DEGRADED
        assert PoolHealth(0, 0).status == HealthStatus.UNHEALTHY

    def test_pending_instances_are_not_failures(self):
        assert PoolHealth(0, 2, pending_count=2).status == HealthStatus.DEGRADED

    def test_environment_provisioned(self):
        assert not Environment(label=BLUE).is_provisioned
        assert Environment(label=BLUE, instance_pool_ref="asg-blue").is_provisioned

    def test_deployment_defaults(self):
        d = Deployment(artifact_version="1.4.2")
        assert d.state == DeploymentState.IDLE
        assert len(d.deployment_id) == 36
        assert not d.is_terminal

    def test_deployment_snapshot_restores(self):
        d = Deployment(
            artifact_version="1.4.2",
            artifact_ref="registry/webapp:1.4.2",
            target_environment=GREEN,
            previous_environment=BLUE,
            state=DeploymentState.SWITCHING,
            staging_handle="asg-green",
            metadata={"health": {"checks_run": 2}},
        )
        restored = Deployment.from_dict(d.to_dict())
        assert restored.deployment_id == d.deployment_id
        assert restored.state == DeploymentState.SWITCHING
        assert restored.target_environment == GREEN
        assert restored.metadata == {"health": {"checks_run": 2}}


# ── State Store Tests ────────────────────────────────────────────────


class TestMemoryStateStore:
    def setup_method(self):
        self.store = MemoryStateStore()

    def test_active_label(self):
        assert self.store.load_active_label() is None
        self.store.save_active_label(GREEN)
        assert self.store.load_active_label() == GREEN

    def test_environments_are_copied(self):
        env = Environment(label=BLUE, instance_pool_ref="pool-1")
        self.store.save_environment(env)
        env.instance_pool_ref = "mutated"
        assert self.store.load_environments()[BLUE].instance_pool_ref == "pool-1"

    def test_in_flight(self):
        done = Deployment(state=DeploymentState.COMPLETED)
        running = Deployment(state=DeploymentState.VALIDATING)
        self.store.save_deployment(done)
        assert self.store.load_in_flight() is None
        self.store.save_deployment(running)
        assert self.store.load_in_flight().deployment_id == running.deployment_id


class TestSqlStateStore:
    @pytest.fixture(autouse=True)
    def _store(self, tmp_path):
        self.url = f"sqlite:///{tmp_path / 'state.db'}"
        self.store = SqlStateStore(app_name="webapp", url=self.url)

    def test_active_label_persists_across_instances(self):
        self.store.save_active_label(BLUE)
        self.store.save_active_label(GREEN)
        reopened = SqlStateStore(app_name="webapp", url=self.url)
        assert reopened.load_active_label() == GREEN

    def test_apps_are_isolated(self):
        self.store.save_active_label(GREEN)
        other = SqlStateStore(app_name="billing", url=self.url)
        assert other.load_active_label() is None

    def test_environment_upsert(self):
        self.store.save_environment(Environment(label=GREEN, instance_pool_ref="asg-green"))
        self.store.save_environment(
            Environment(label=GREEN, instance_pool_ref="asg-green", health_status=HealthStatus.HEALTHY)
        )
        envs = self.store.load_environments()
        assert list(envs) == [GREEN]
        assert envs[GREEN].health_status == HealthStatus.HEALTHY

    def test_deployment_snapshots(self):
        d = Deployment(artifact_version="2.0.0", state=DeploymentState.PROVISIONING)
        self.store.save_deployment(d)
        d.state = DeploymentState.HEALTH_CHECKING
        self.store.save_deployment(d)

        loaded = self.store.load_deployment(d.deployment_id)
        assert loaded.state == DeploymentState.HEALTH_CHECKING
        assert len(self.store.list_deployments()) == 1
        assert self.store.load_in_flight().deployment_id == d.deployment_id

        d.state = DeploymentState.ERROR
        self.store.save_deployment(d)
        assert self.store.load_in_flight() is None

    def test_missing_deployment(self):
        assert self.store.load_deployment("nope") is None


# ── Registry Tests ───────────────────────────────────────────────────


class TestEnvironmentRegistry:
    def setup_method(self):
        self.router = FakeRouter()
        self.store = MemoryStateStore()
        self.registry = EnvironmentRegistry(
            self.router,
            self.store,
            initial_active=BLUE,
            target_groups={BLUE: "tg-blue", GREEN: "tg-green"},
        )

    def test_initial_state(self):
        assert self.registry.active_label == BLUE
        assert self.registry.get_active().label == BLUE
        assert self.registry.get_inactive().label == GREEN
        assert self.registry.get(GREEN).target_group_ref == "tg-green"
        assert self.store.load_active_label() == BLUE

    def test_uninitialized_registry(self):
        registry = EnvironmentRegistry(FakeRouter(), MemoryStateStore())
        assert not registry.is_initialized
        with pytest.raises(RegistryNotInitializedError):
            registry.active_label

    def test_initialize_is_noop_once_set(self):
        self.registry.initialize(GREEN)
        assert self.registry.active_label == BLUE

    def test_reads_return_copies(self):
        env = self.registry.get_active()
        env.instance_pool_ref = "hijacked"
        assert self.registry.get_active().instance_pool_ref is None

    def test_update_environment_persists(self):
        self.registry.update_environment(GREEN, instance_pool_ref="asg-green")
        assert self.store.load_environments()[GREEN].instance_pool_ref == "asg-green"

    def test_swap(self):
        new_active = self.registry.swap()
        assert new_active.label == GREEN
        assert self.registry.active_label == GREEN
        assert self.router.targets == [GREEN]
        assert self.store.load_active_label() == GREEN

    def test_state_survives_restart(self):
        self.registry.update_environment(GREEN, instance_pool_ref="asg-green")
        self.registry.swap()
        reloaded = EnvironmentRegistry(FakeRouter(), self.store, initial_active=BLUE)
        assert reloaded.active_label == GREEN
        assert reloaded.get(GREEN).instance_pool_ref == "asg-green"

    def test_concurrent_swap_conflicts(self):
        self.router.release = threading.Event()
        errors = []

        def first_swap():
            try:
                self.registry.swap()
            except Exception as exc:
                errors.append(exc)

        t = threading.Thread(target=first_swap)
        t.start()
        assert self.router.entered.wait(5)

        assert self.registry.swap_in_progress
        with pytest.raises(SwapConflictError):
            self.registry.swap()
        assert self.registry.active_label == BLUE

        self.router.release.set()
        t.join(5)
        assert errors == []
        assert self.registry.active_label == GREEN
        assert self.router.targets == [GREEN]

    def test_router_failure_leaves_registry_unchanged(self):
        self.router.fail = True
        with pytest.raises(RoutingError):
            self.registry.swap()
        assert self.registry.active_label == BLUE
        assert self.store.load_active_label() == BLUE
        assert not self.registry.swap_in_progress

    def test_store_failure_reverts_router(self):
        def refuse(label):
            raise OSError("disk full")

        self.store.save_active_label = refuse
        with pytest.raises(RoutingError):
            self.registry.swap()
        assert self.registry.active_label == BLUE
        assert self.router.targets == [GREEN, BLUE]

    def test_reconcile_repoints_drifted_router(self):
        # Listener moved to green but the store still says blue
        self.router.listener = "tg-green"
        assert self.registry.routed_target() == "tg-green"
        assert self.registry.reconcile_routing() is True
        assert self.router.targets == [BLUE]
        assert self.router.listener == "tg-blue"
        assert self.registry.active_label == BLUE

    def test_reconcile_noop_when_aligned(self):
        self.router.listener = "tg-blue"
        assert self.registry.reconcile_routing() is False
        assert self.router.targets == []

    def test_reconcile_unknown_listener(self):
        assert self.registry.reconcile_routing() is False
        assert self.router.targets == []

    def test_snapshot(self):
        snap = self.registry.snapshot()
        assert snap["active"] == "blue"
        assert snap["swap_in_progress"] is False
        assert set(snap["environments"]) == {"blue", "green"}


# ── Health Prober Tests ──────────────────────────────────────────────


class TestHealthProber:
    def setup_method(self):
        self.clock = FakeClock()
        self.policy = HealthPolicy(
            interval_seconds=30,
            healthy_threshold=2,
            unhealthy_threshold=2,
            timeout_seconds=300,
        )
        self.env = Environment(label=GREEN, instance_pool_ref="pool-green")

    def _prober(self, *script):
        self.infra = FakeInfrastructure(list(script))
        return HealthProber(self.infra, self.clock)

    def test_healthy_within_one_minute(self):
        prober = self._prober(PoolHealth(2, 2))
        result = prober.probe(self.env, self.policy)
        assert result.status == HealthStatus.HEALTHY
        assert result.checks_run == 2
        assert result.consecutive_pass_streak == 2
        assert self.clock.t == 30
        assert self.clock.t <= 60

    def test_degraded_pool_times_out(self):
        prober = self._prober(PoolHealth(1, 2))
        with pytest.raises(HealthCheckTimeoutError) as exc_info:
            prober.probe(self.env, self.policy)
        assert self.clock.t == 300
        # checks at t=0, 30, ..., 300
        assert self.infra.health_calls == 11
        assert exc_info.value.details["healthy_count"] == 1
        assert prober.last_result(GREEN).status == HealthStatus.DEGRADED

    def test_unhealthy_threshold(self):
        prober = self._prober(PoolHealth(0, 2))
        result = prober.probe(self.env, self.policy)
        assert result.status == HealthStatus.UNHEALTHY
        assert result.consecutive_fail_streak == 2
        assert result.checks_run == 2

    def test_flapping_resets_streaks(self):
        prober = self._prober(PoolHealth(2, 2), PoolHealth(0, 2), PoolHealth(2, 2), PoolHealth(2, 2))
        results = list(prober.checks(self.env, self.policy))
        assert [r.consecutive_pass_streak for r in results] == [1, 0, 1, 2]
        assert [r.consecutive_fail_streak for r in results] == [0, 1, 0, 0]

    def test_pending_instances_wait(self):
        prober = self._prober(PoolHealth(0, 2, pending_count=2), PoolHealth(2, 2))
        result = prober.probe(self.env, self.policy)
        assert result.status == HealthStatus.HEALTHY
        assert result.checks_run == 3

    def test_each_probe_starts_fresh(self):
        prober = self._prober(PoolHealth(2, 2))
        prober.probe(self.env, self.policy)
        second = prober.probe(self.env, self.policy)
        assert second.checks_run == 2

    def test_final_wait_is_clamped_to_timeout(self):
        prober = self._prober(PoolHealth(1, 2))
        policy = HealthPolicy(interval_seconds=30, timeout_seconds=45)
        with pytest.raises(HealthCheckTimeoutError):
            prober.probe(self.env, policy)
        assert self.clock.waits == [30, 15]

    def test_unprovisioned_environment(self):
        prober = self._prober(PoolHealth(2, 2))
        with pytest.raises(UnhealthyEnvironmentError):
            prober.probe(Environment(label=GREEN), self.policy)

    def test_cancel(self):
        prober = self._prober(PoolHealth(1, 2))
        cancel = threading.Event()
        self.clock.on_wait = lambda t: cancel.set() if t >= 60 else None
        with pytest.raises(DeploymentCancelledError):
            prober.probe(self.env, self.policy, cancel=cancel)
        assert self.clock.t == 60


# ── Validation Tests ─────────────────────────────────────────────────


class TestDeploymentValidator:
    def setup_method(self):
        self.validator = DeploymentValidator()
        self.env = Environment(label=GREEN, instance_pool_ref="pool-green")
        self.deployment = Deployment(artifact_version="1.0.0")

    def test_all_checks_pass(self):
        self.validator.add_check("error_rate", "error_rate", lambda env: 0.01, threshold=0.05)
        self.validator.add_check("latency", "latency", lambda env: 120.0, threshold=500.0)
        self.validator.add_check("throughput", "throughput", lambda env: 900.0, threshold=500.0)
        report = self.validator.run(self.env, self.deployment)
        assert report.passed
        assert report.failures == []
        assert len(report.checks) == 3

    def test_threshold_breach(self):
        self.validator.add_check("latency", "latency", lambda env: 800.0, threshold=500.0)
        report = self.validator.run(self.env, self.deployment)
        assert not report.passed
        assert report.failures[0].name == "latency"
        assert report.failures[0].status == ValidationStatus.FAILING

    def test_measurement_error_fails_check(self):
        def broken(env):
            raise ConnectionError("connection refused")

        self.validator.add_check("homepage", "availability", broken)
        self.validator.add_check("status", "availability", lambda env: 1.0)
        report = self.validator.run(self.env, self.deployment)
        assert not report.passed
        assert len(report.checks) == 2
        assert "ConnectionError" in report.failures[0].message

    def test_no_checks_passes(self):
        assert self.validator.run(self.env, self.deployment).passed

    def test_report_identifies_run(self):
        self.validator.add_check("up", "availability", lambda env: 1.0)
        report = self.validator.run(self.env, self.deployment)
        assert report.deployment_id == self.deployment.deployment_id
        assert report.environment_label == "green"

    def test_report_to_dict(self):
        self.validator.add_check("up", "availability", lambda env: 0.0)
        data = self.validator.run(self.env, self.deployment).to_dict()
        assert data["passed"] is False
        assert data["checks"][0]["status"] == "failing"


# ── Rollback Coordinator Tests ───────────────────────────────────────


class TestRollbackCoordinator:
    def setup_method(self):
        self.infra = FakeInfrastructure()
        self.router = FakeRouter()
        self.registry = EnvironmentRegistry(self.router, MemoryStateStore(), initial_active=BLUE)
        self.registry.update_environment(BLUE, instance_pool_ref=self.infra.add_pool("pool-blue"))
        self.registry.update_environment(GREEN, instance_pool_ref=self.infra.add_pool("pool-green"))
        self.coordinator = RollbackCoordinator(self.registry, self.infra)
        self.deployment = Deployment(
            artifact_version="2.0.0",
            target_environment=GREEN,
            previous_environment=BLUE,
        )

    def _switch(self):
        self.registry.swap()
        self.deployment.traffic_switched = True

    def test_rollback_after_switch(self):
        self._switch()
        action = self.coordinator.rollback(self.deployment, reason="error spike")
        assert action.success
        assert action.swapped
        assert self.registry.active_label == BLUE
        assert self.deployment.rolled_back
        assert not self.deployment.traffic_switched
        assert "swap_traffic" in action.steps_completed

    def test_rollback_before_switch_does_not_swap(self):
        action = self.coordinator.rollback(self.deployment)
        assert action.success
        assert not action.swapped
        assert self.router.targets == []
        assert action.steps_completed == ["traffic_not_switched"]

    def test_second_rollback_is_noop(self):
        self._switch()
        self.coordinator.rollback(self.deployment)
        again = self.coordinator.rollback(self.deployment)
        assert again.already_rolled_back
        assert again.success
        assert self.router.targets == [GREEN, BLUE]
        assert self.registry.active_label == BLUE

    def test_previous_pool_gone(self):
        self._switch()
        self.infra.terminate("pool-blue")
        with pytest.raises(RollbackError):
            self.coordinator.rollback(self.deployment)
        assert self.registry.active_label == GREEN
        assert not self.deployment.rolled_back
        action = self.coordinator.list_rollbacks(self.deployment.deployment_id)[0]
        assert action.error is not None
        assert not action.success

    def test_previous_label_holds_a_different_pool(self):
        self.deployment.previous_pool_ref = "pool-blue"
        self._switch()
        # A later deployment put another artifact on blue
        self.registry.update_environment(BLUE, instance_pool_ref=self.infra.add_pool("pool-blue-2"))
        assert not self.coordinator.is_restorable(self.deployment)
        with pytest.raises(RollbackError, match="pool-blue"):
            self.coordinator.rollback(self.deployment)
        assert self.registry.active_label == GREEN
        assert self.router.targets == [GREEN]

    def test_same_pool_is_restorable(self):
        self.deployment.previous_pool_ref = "pool-blue"
        self._switch()
        assert self.coordinator.is_restorable(self.deployment)

    def test_router_failure_is_rollback_error(self):
        self._switch()
        self.router.fail = True
        with pytest.raises(RollbackError):
            self.coordinator.rollback(self.deployment)
        assert self.registry.active_label == GREEN

    def test_swap_already_committed(self):
        self._switch()
        # Registry flipped back before the crash, deployment never updated
        self.registry.swap()
        action = self.coordinator.rollback(self.deployment)
        assert not action.swapped
        assert "traffic_already_restored" in action.steps_completed

    def test_list_rollbacks_newest_first(self):
        self.coordinator.rollback(self.deployment)
        self.coordinator.rollback(self.deployment)
        actions = self.coordinator.list_rollbacks(self.deployment.deployment_id)
        assert len(actions) == 2
        assert [a.already_rolled_back for a in actions] == [True, False]
        assert self.coordinator.list_rollbacks("other") == []


class TestMetricsRollbackTrigger:
    def test_within_thresholds(self):
        trigger = MetricsRollbackTrigger(lambda d: (0.01, 100.0))
        assert trigger.check(Deployment()) is None

    def test_error_rate_breach(self):
        trigger = MetricsRollbackTrigger(lambda d: (0.12, 100.0))
        assert "Error rate" in trigger.check(Deployment())

    def test_both_breached(self):
        trigger = MetricsRollbackTrigger(
            lambda d: (0.12, 900.0),
            DeploymentConfig(latency_threshold_ms=300),
        )
        reason = trigger.check(Deployment())
        assert "Error rate" in reason
        assert "Latency" in reason


# ── Controller Tests ─────────────────────────────────────────────────


class TestDeploymentControllerHappyPath:
    def setup_method(self):
        self.world = World()
        self.controller = self.world.controller

    def test_deploy_switches_to_staging(self):
        d = self.controller.deploy("1.4.2", "registry/webapp:1.4.2", deployed_by="alice")
        assert d.state == DeploymentState.COMPLETED
        assert d.target_environment == GREEN
        assert d.previous_environment == BLUE
        assert d.traffic_switched
        assert d.completed_at is not None
        assert self.world.states(d.deployment_id) == HAPPY_PATH
        assert self.world.registry.active_label == GREEN
        assert self.world.router.targets == [GREEN]

    def test_previous_pool_released(self):
        self.controller.deploy("1.4.2", "registry/webapp:1.4.2")
        assert self.world.infra.terminated == ["pool-blue-0"]
        assert not self.world.registry.get(BLUE).is_provisioned
        assert self.world.registry.get(GREEN).health_status == HealthStatus.HEALTHY

    def test_exactly_one_active_label_across_deployments(self):
        for version in ("1.0.0", "1.1.0", "1.2.0"):
            self.controller.deploy(version, f"registry/webapp:{version}")
            active = self.world.registry.get_active()
            inactive = self.world.registry.get_inactive()
            assert active.is_provisioned
            assert not inactive.is_provisioned
            assert self.world.store.load_active_label() == active.label
        assert self.world.registry.active_label == GREEN
        assert self.world.router.targets == [GREEN, BLUE, GREEN]

    def test_controller_idle_after_deploy(self):
        self.controller.deploy("1.4.2", "registry/webapp:1.4.2")
        assert self.controller.state == DeploymentState.IDLE
        assert self.controller.current_deployment is None

    def test_hold_window_runs_to_completion(self):
        self.controller.deploy("1.4.2", "registry/webapp:1.4.2")
        # 30s of health checks plus the 600s hold window
        assert self.world.clock.t == 630

    def test_audit_trail(self):
        d = self.controller.deploy("1.4.2", "registry/webapp:1.4.2")
        assert self.world.audit.verify_integrity()
        assert len(self.world.audit.for_deployment(d.deployment_id)) == 7
        titles = [n.title for n in self.world.channel.notifications]
        assert "Deployment switching" in titles
        assert "Deployment completed" in titles

    def test_history_and_summary(self):
        d = self.controller.deploy("1.4.2", "registry/webapp:1.4.2")
        assert self.controller.get_deployment(d.deployment_id) is d
        assert self.controller.history() == [d]
        summary = self.controller.get_summary()
        assert summary["total"] == 1
        assert summary["completed"] == 1
        assert summary["success_rate"] == 1.0
        assert summary["active"] == "green"

    def test_state_persisted(self):
        d = self.controller.deploy("1.4.2", "registry/webapp:1.4.2")
        assert self.world.store.load_deployment(d.deployment_id).state == DeploymentState.COMPLETED
        assert self.world.store.load_in_flight() is None

    def test_uninitialized_registry_uses_configured_label(self):
        store = MemoryStateStore()
        infra = FakeInfrastructure()
        registry = EnvironmentRegistry(FakeRouter(), store)
        controller = DeploymentController(
            registry,
            infra,
            DeploymentValidator(),
            store,
            config=DeploymentConfig(hold_window_seconds=0),
            clock=FakeClock(),
        )
        d = controller.deploy("1.0.0", "registry/webapp:1.0.0")
        assert d.previous_environment == BLUE
        assert registry.active_label == GREEN


class TestDeploymentControllerFailures:
    def test_health_timeout_rolls_back(self):
        world = World(health_script=[PoolHealth(1, 2)])
        with pytest.raises(HealthCheckTimeoutError):
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")

        d = world.controller.history(1)[0]
        assert d.state == DeploymentState.ROLLED_BACK
        assert d.rolled_back
        assert world.states(d.deployment_id)[-3:] == ["error", "rolling_back", "rolled_back"]
        assert world.clock.t == 300
        assert world.registry.active_label == BLUE
        assert world.router.targets == []
        assert world.infra.terminated == ["pool-green-1"]
        assert len(world.controller.rollback_coordinator.list_rollbacks(d.deployment_id)) == 1

    def test_unhealthy_rolls_back(self):
        world = World(health_script=[PoolHealth(0, 2)])
        with pytest.raises(UnhealthyEnvironmentError):
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        d = world.controller.history(1)[0]
        assert d.state == DeploymentState.ROLLED_BACK
        assert world.registry.get(GREEN).health_status == HealthStatus.UNKNOWN
        assert "pool-blue-0" in world.infra.pools

    def test_no_auto_rollback_stays_in_error(self):
        world = World(health_script=[PoolHealth(0, 2)], auto_rollback=False)
        with pytest.raises(UnhealthyEnvironmentError):
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        d = world.controller.history(1)[0]
        assert d.state == DeploymentState.ERROR
        assert not d.rolled_back
        assert world.registry.get(GREEN).health_status == HealthStatus.UNHEALTHY
        assert "pool-green-1" in world.infra.pools

    def test_validation_failure_keeps_staging(self):
        world = World(smoke_passes=False)
        with pytest.raises(ValidationFailureError) as exc_info:
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        assert exc_info.value.details["failures"] == ["homepage"]

        d = world.controller.history(1)[0]
        assert d.state == DeploymentState.ERROR
        assert not d.rolled_back
        assert world.registry.active_label == BLUE
        assert "pool-green-1" in world.infra.pools
        alerts = [n for n in world.channel.notifications if n.title == "Deployment alert"]
        assert len(alerts) == 1
        assert "Validation failed" in alerts[0].message

    def test_provisioning_retries(self):
        world = World(provision_failures=2)
        d = world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        assert d.state == DeploymentState.COMPLETED
        assert world.infra.provision_calls == 3
        assert len(world.retry_delays) == 2
        assert d.staging_handle == "pool-green-3"

    def test_provisioning_gives_up(self):
        world = World(provision_failures=10)
        with pytest.raises(ProvisioningError) as exc_info:
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        assert exc_info.value.attempts == 3
        assert world.infra.provision_calls == 3
        d = world.controller.history(1)[0]
        assert d.state == DeploymentState.ERROR
        assert world.registry.active_label == BLUE

    def test_routing_failure(self):
        world = World()
        world.router.fail = True
        with pytest.raises(RoutingError):
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        d = world.controller.history(1)[0]
        assert d.state == DeploymentState.ERROR
        assert world.registry.active_label == BLUE

    def test_swap_conflict_is_fatal(self):
        world = World()
        world.registry._swap_lock.acquire()
        try:
            with pytest.raises(SwapConflictError):
                world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        finally:
            world.registry._swap_lock.release()
        d = world.controller.history(1)[0]
        assert d.state == DeploymentState.ERROR
        assert world.registry.active_label == BLUE

    def test_leftover_staging_pool_replaced(self):
        world = World(hold_window_seconds=0)
        broken = [True]
        world.validator.add_check("checkout", "availability", lambda env: 0.0 if broken else 1.0)
        with pytest.raises(ValidationFailureError):
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        assert world.registry.get(GREEN).instance_pool_ref == "pool-green-1"

        broken.clear()
        d = world.controller.deploy("2.0.1", "registry/webapp:2.0.1")
        assert d.state == DeploymentState.COMPLETED
        assert d.staging_handle == "pool-green-2"
        assert d.metadata["released_pool"] == "pool-green-1"
        assert "pool-green-1" not in world.infra.pools
        assert world.infra.terminated == ["pool-green-1", "pool-blue-0"]

    def test_release_failure_is_reported(self):
        world = World(health_script=[PoolHealth(0, 2)])
        world.infra.fail_terminate = True
        with pytest.raises(UnhealthyEnvironmentError):
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        d = world.controller.history(1)[0]
        assert d.state == DeploymentState.ROLLED_BACK
        assert "terminate refused" in d.metadata["release_error"]


class TestDeploymentControllerInterrupts:
    def test_abort_during_health_checks(self):
        world = World(health_script=[PoolHealth(1, 2)])
        controller = world.controller
        aborted = []

        def on_wait(t):
            if t >= 60 and controller.state == DeploymentState.HEALTH_CHECKING and not aborted:
                aborted.append(controller.abort("operator abort"))

        world.clock.on_wait = on_wait
        with pytest.raises(DeploymentCancelledError, match="operator abort"):
            controller.deploy("2.0.0", "registry/webapp:2.0.0")

        assert aborted == [True]
        d = controller.history(1)[0]
        assert d.state == DeploymentState.ROLLED_BACK
        assert d.metadata["rollback_triggered_by"] == "operator"
        assert world.registry.active_label == BLUE

    def test_abort_when_idle(self):
        world = World()
        assert world.controller.abort() is False
        assert world.controller.request_rollback() is False

    def test_rollback_request_in_hold_window(self):
        world = World()
        controller = world.controller

        def on_wait(t):
            if controller.state == DeploymentState.MONITORING and t >= 150:
                controller.request_rollback("customer reports")

        world.clock.on_wait = on_wait
        with pytest.raises(RollbackRequestedError):
            controller.deploy("2.0.0", "registry/webapp:2.0.0")

        d = controller.history(1)[0]
        assert d.state == DeploymentState.ROLLED_BACK
        assert world.registry.active_label == BLUE
        assert world.router.targets == [GREEN, BLUE]
        assert world.infra.terminated == ["pool-green-1"]
        assert "pool-blue-0" in world.infra.pools

    def test_metric_trigger_rolls_back(self):
        trigger = ScriptedTrigger(fire_on=3)
        world = World(triggers=[trigger])
        with pytest.raises(RollbackRequestedError, match="error rate"):
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        d = world.controller.history(1)[0]
        assert d.state == DeploymentState.ROLLED_BACK
        assert d.metadata["rollback_triggered_by"] == "operator"
        assert trigger.calls == 3
        assert world.registry.active_label == BLUE

    def test_triggers_ignored_without_auto_rollback(self):
        trigger = ScriptedTrigger(fire_on=1)
        world = World(triggers=[trigger], auto_rollback=False)
        d = world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        assert d.state == DeploymentState.COMPLETED
        assert trigger.calls == 0

    def test_concurrent_deploy_refused(self):
        world = World()
        controller = world.controller
        refused = []

        def on_wait(t):
            if not refused:
                try:
                    controller.deploy("3.0.0", "registry/webapp:3.0.0")
                except DeploymentInProgressError as exc:
                    refused.append(exc)

        world.clock.on_wait = on_wait
        d = controller.deploy("2.0.0", "registry/webapp:2.0.0")
        assert d.state == DeploymentState.COMPLETED
        assert len(refused) == 1
        assert len(controller.history()) == 1


class TestDeploymentControllerRecovery:
    def test_resume_after_crash(self):
        store = MemoryStateStore()
        first = World(store=store)

        def crash(t):
            if first.controller.state == DeploymentState.HEALTH_CHECKING:
                raise SimulatedCrash()

        first.clock.on_wait = crash
        with pytest.raises(SimulatedCrash):
            first.controller.deploy("2.0.0", "registry/webapp:2.0.0")

        in_flight = store.load_in_flight()
        assert in_flight.state == DeploymentState.HEALTH_CHECKING

        second = World(store=store)
        with pytest.raises(DeploymentInProgressError):
            second.controller.deploy("3.0.0", "registry/webapp:3.0.0")

        d = second.controller.resume()
        assert d.deployment_id == in_flight.deployment_id
        assert d.state == DeploymentState.COMPLETED
        assert second.infra.provision_calls == 0
        assert second.registry.active_label == GREEN
        assert second.router.targets == [GREEN]

    def test_resume_switch_already_committed(self):
        store = MemoryStateStore()
        first = World(store=store)
        first.registry.update_environment(GREEN, instance_pool_ref="pool-green-1")
        first.registry.swap()
        store.save_deployment(Deployment(
            artifact_version="2.0.0",
            target_environment=GREEN,
            previous_environment=BLUE,
            state=DeploymentState.SWITCHING,
            staging_handle="pool-green-1",
        ))

        second = World(store=store)
        d = second.controller.resume()
        assert d.state == DeploymentState.COMPLETED
        assert second.router.targets == []
        assert second.registry.active_label == GREEN
        assert second.infra.terminated == ["pool-blue-0"]

    def test_resume_reconciles_router_first(self):
        store = MemoryStateStore()
        first = World(store=store)
        store.save_deployment(Deployment(
            artifact_version="2.0.0",
            target_environment=GREEN,
            previous_environment=BLUE,
            state=DeploymentState.SWITCHING,
            staging_handle=first.infra.add_pool("pool-green-1"),
        ))
        first.registry.update_environment(GREEN, instance_pool_ref="pool-green-1")

        second = World(store=store)
        # Crash after the listener moved but before the active label was stored
        second.router.listener = "tg-green"
        d = second.controller.resume()
        assert d.state == DeploymentState.COMPLETED
        assert d.metadata["routing_reconciled"] is True
        assert second.router.targets == [BLUE, GREEN]
        assert second.registry.active_label == GREEN

    def test_resume_with_abort_rolls_back(self):
        store = MemoryStateStore()
        first = World(store=store)

        def crash(t):
            if first.controller.state == DeploymentState.HEALTH_CHECKING:
                raise SimulatedCrash()

        first.clock.on_wait = crash
        with pytest.raises(SimulatedCrash):
            first.controller.deploy("2.0.0", "registry/webapp:2.0.0")

        second = World(store=store)
        with pytest.raises(DeploymentCancelledError, match="operator abort"):
            second.controller.resume(abort_reason="operator abort")
        d = second.controller.history(1)[0]
        assert d.state == DeploymentState.ROLLED_BACK
        assert d.metadata["rollback_triggered_by"] == "operator"
        assert second.registry.active_label == BLUE
        assert second.infra.terminated == ["pool-green-1"]
        assert store.load_in_flight() is None

    def test_resume_nothing(self):
        assert World().controller.resume() is None

    def test_history_reloaded(self):
        store = MemoryStateStore()
        first = World(store=store)
        d = first.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        second = World(store=store)
        assert second.controller.history()[0].deployment_id == d.deployment_id

    def test_sql_store_end_to_end(self, tmp_path):
        store = SqlStateStore(url=f"sqlite:///{tmp_path / 'state.db'}")
        world = World(store=store)
        d = world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        assert d.state == DeploymentState.COMPLETED
        restarted = World(store=store)
        assert restarted.registry.active_label == GREEN
        assert restarted.registry.get(GREEN).instance_pool_ref == "pool-green-1"


class TestManualRollback:
    def test_rollback_after_validation_failure(self):
        world = World(smoke_passes=False)
        with pytest.raises(ValidationFailureError):
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")

        action = world.controller.rollback(reason="discard build")
        assert action.success
        assert action.triggered_by == "operator"
        assert not action.swapped
        d = world.controller.history(1)[0]
        assert d.state == DeploymentState.ROLLED_BACK
        assert world.infra.terminated == ["pool-green-1"]

    def test_rollback_twice_is_noop(self):
        world = World(smoke_passes=False)
        with pytest.raises(ValidationFailureError):
            world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        world.controller.rollback()
        events_before = len(world.audit.events)

        again = world.controller.rollback()
        assert again.already_rolled_back
        assert len(world.audit.events) == events_before
        assert world.registry.active_label == BLUE

    def test_rollback_after_decommission_fails(self):
        world = World()
        d = world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        with pytest.raises(RollbackError):
            world.controller.rollback(d.deployment_id)
        assert d.state == DeploymentState.COMPLETED
        assert world.registry.active_label == GREEN

    def test_superseded_deployment_cannot_be_rolled_back(self):
        world = World(hold_window_seconds=0)
        first = world.controller.deploy("2.0.0", "registry/webapp:2.0.0")
        assert first.previous_pool_ref == "pool-blue-0"

        world.validator.add_check("checkout", "availability", lambda env: 0.0)
        with pytest.raises(ValidationFailureError):
            world.controller.deploy("2.1.0", "registry/webapp:2.1.0")
        assert world.registry.get(BLUE).instance_pool_ref == "pool-blue-2"

        with pytest.raises(InvalidTransitionError, match="superseded"):
            world.controller.rollback(first.deployment_id)
        assert first.state == DeploymentState.COMPLETED
        assert world.registry.active_label == GREEN
        assert world.router.targets == [GREEN]
        assert world.infra.terminated == ["pool-blue-0"]
        assert "pool-green-1" in world.infra.pools

        # The failed deployment itself can still be discarded
        action = world.controller.rollback()
        assert action.success
        assert not action.swapped
        assert world.registry.active_label == GREEN
        assert world.infra.terminated == ["pool-blue-0", "pool-blue-2"]

    def test_rollback_unknown_deployment(self):
        world = World()
        with pytest.raises(KeyError):
            world.controller.rollback("missing")
        with pytest.raises(KeyError):
            world.controller.rollback()
