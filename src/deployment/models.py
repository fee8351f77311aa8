"""Blue-Green Deployment — Data models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import DeploymentState, EnvironmentLabel, HealthStatus, TERMINAL_STATES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Environment:
    """One of the two parallel deployment targets."""

    label: EnvironmentLabel
    instance_pool_ref: Optional[str] = None
    target_group_ref: Optional[str] = None
    health_status: HealthStatus = HealthStatus.UNKNOWN

    @property
    def is_provisioned(self) -> bool:
        return self.instance_pool_ref is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label.value,
            "instance_pool_ref": self.instance_pool_ref,
            "target_group_ref": self.target_group_ref,
            "health_status": self.health_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Environment":
        return cls(
            label=EnvironmentLabel(data["label"]),
            instance_pool_ref=data.get("instance_pool_ref"),
            target_group_ref=data.get("target_group_ref"),
            health_status=HealthStatus(data.get("health_status", "unknown")),
        )


@dataclass
class PoolHealth:
    """Raw instance counts reported by the platform for a pool."""

    healthy_count: int = 0
    total_count: int = 0
    pending_count: int = 0  # still registering / in initial health checks

    @property
    def status(self) -> HealthStatus:
        if self.total_count <= 0:
            return HealthStatus.UNHEALTHY
        if self.healthy_count >= self.total_count:
            return HealthStatus.HEALTHY
        if self.healthy_count <= 0 and self.pending_count <= 0:
            return HealthStatus.UNHEALTHY
        return HealthStatus.DEGRADED


@dataclass
class HealthCheckResult:
    """Outcome of one health check in a probing sequence."""

    environment_label: EnvironmentLabel
    timestamp: datetime = field(default_factory=_utcnow)
    healthy_count: int = 0
    total_count: int = 0
    consecutive_pass_streak: int = 0
    consecutive_fail_streak: int = 0
    status: HealthStatus = HealthStatus.UNKNOWN
    checks_run: int = 0

    @property
    def all_healthy(self) -> bool:
        return self.total_count > 0 and self.healthy_count == self.total_count


@dataclass
class Deployment:
    """Represents a single blue-green deployment attempt."""

    deployment_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    artifact_version: str = ""
    artifact_ref: str = ""
    target_environment: Optional[EnvironmentLabel] = None
    previous_environment: Optional[EnvironmentLabel] = None
    state: DeploymentState = DeploymentState.IDLE
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    deployed_by: str = "system"
    staging_handle: Optional[str] = None
    previous_pool_ref: Optional[str] = None
    traffic_switched: bool = False
    rolled_back: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "artifact_version": self.artifact_version,
            "artifact_ref": self.artifact_ref,
            "target_environment": (
                self.target_environment.value if self.target_environment else None
            ),
            "previous_environment": (
                self.previous_environment.value if self.previous_environment else None
            ),
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "deployed_by": self.deployed_by,
            "staging_handle": self.staging_handle,
            "previous_pool_ref": self.previous_pool_ref,
            "traffic_switched": self.traffic_switched,
            "rolled_back": self.rolled_back,
            "error": self.error,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Deployment":
        target = data.get("target_environment")
        previous = data.get("previous_environment")
        return cls(
            deployment_id=data["deployment_id"],
            artifact_version=data.get("artifact_version", ""),
            artifact_ref=data.get("artifact_ref", ""),
            target_environment=EnvironmentLabel(target) if target else None,
            previous_environment=EnvironmentLabel(previous) if previous else None,
            state=DeploymentState(data.get("state", "idle")),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            deployed_by=data.get("deployed_by", "system"),
            staging_handle=data.get("staging_handle"),
            previous_pool_ref=data.get("previous_pool_ref"),
            traffic_switched=data.get("traffic_switched", False),
            rolled_back=data.get("rolled_back", False),
            error=data.get("error"),
            metadata=dict(data.get("metadata") or {}),
        )
