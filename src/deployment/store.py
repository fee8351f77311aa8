"""Blue-Green Deployment — Persisted orchestrator state.

The store keeps the active label, the environment pool refs and a
snapshot of every deployment so that a restarted controller resumes an
interrupted deployment from its last committed state.
"""

import abc
import json
import logging
import threading
from typing import Dict, List, Optional

from sqlalchemy import select

from src.db.base import Base
from src.db.engine import get_sync_engine, get_sync_session_factory
from src.db.models import ActiveEnvironmentRecord, DeploymentSnapshotRecord, EnvironmentPoolRecord

from .config import TERMINAL_STATES, DeploymentState, EnvironmentLabel
from .models import Deployment, Environment

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATES] + [DeploymentState.IDLE.value]


class StateStore(abc.ABC):
    """Persistence contract used by the registry and the controller."""

    @abc.abstractmethod
    def load_active_label(self) -> Optional[EnvironmentLabel]:
        ...

    @abc.abstractmethod
    def save_active_label(self, label: EnvironmentLabel) -> None:
        ...

    @abc.abstractmethod
    def load_environments(self) -> Dict[EnvironmentLabel, Environment]:
        ...

    @abc.abstractmethod
    def save_environment(self, environment: Environment) -> None:
        ...

    @abc.abstractmethod
    def save_deployment(self, deployment: Deployment) -> None:
        ...

    @abc.abstractmethod
    def load_deployment(self, deployment_id: str) -> Optional[Deployment]:
        ...

    @abc.abstractmethod
    def list_deployments(self) -> List[Deployment]:
        ...

    def load_in_flight(self) -> Optional[Deployment]:
        """Return the deployment that was interrupted mid-flight, if any."""
        for deployment in self.list_deployments():
            if not deployment.is_terminal and deployment.state != DeploymentState.IDLE:
                return deployment
        return None


class MemoryStateStore(StateStore):
    """Process-local store. Values are copied in and out."""

    def __init__(self):
        self._active: Optional[EnvironmentLabel] = None
        self._environments: Dict[EnvironmentLabel, dict] = {}
        self._deployments: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def load_active_label(self) -> Optional[EnvironmentLabel]:
        return self._active

    def save_active_label(self, label: EnvironmentLabel) -> None:
        with self._lock:
            self._active = label

    def load_environments(self) -> Dict[EnvironmentLabel, Environment]:
        with self._lock:
            return {
                label: Environment.from_dict(data)
                for label, data in self._environments.items()
            }

    def save_environment(self, environment: Environment) -> None:
        with self._lock:
            self._environments[environment.label] = environment.to_dict()

    def save_deployment(self, deployment: Deployment) -> None:
        with self._lock:
            self._deployments[deployment.deployment_id] = deployment.to_dict()

    def load_deployment(self, deployment_id: str) -> Optional[Deployment]:
        data = self._deployments.get(deployment_id)
        return Deployment.from_dict(data) if data else None

    def list_deployments(self) -> List[Deployment]:
        with self._lock:
            return [Deployment.from_dict(d) for d in self._deployments.values()]


class SqlStateStore(StateStore):
    """SQLAlchemy-backed store, one namespace per application name."""

    def __init__(self, app_name: str = "webapp", url: Optional[str] = None, engine=None):
        self.app_name = app_name
        self._engine = engine or get_sync_engine(url)
        Base.metadata.create_all(self._engine)
        self._session_factory = get_sync_session_factory(self._engine)

    def load_active_label(self) -> Optional[EnvironmentLabel]:
        with self._session_factory() as session:
            record = session.execute(
                select(ActiveEnvironmentRecord).where(
                    ActiveEnvironmentRecord.app_name == self.app_name
                )
            ).scalar_one_or_none()
            return EnvironmentLabel(record.active_label) if record else None

    def save_active_label(self, label: EnvironmentLabel) -> None:
        with self._session_factory() as session:
            record = session.execute(
                select(ActiveEnvironmentRecord).where(
                    ActiveEnvironmentRecord.app_name == self.app_name
                )
            ).scalar_one_or_none()
            if record is None:
                record = ActiveEnvironmentRecord(app_name=self.app_name, active_label=label.value)
                session.add(record)
            else:
                record.active_label = label.value
            session.commit()
        logger.debug("Persisted active label %s for %s", label.value, self.app_name)

    def load_environments(self) -> Dict[EnvironmentLabel, Environment]:
        with self._session_factory() as session:
            records = session.execute(
                select(EnvironmentPoolRecord).where(
                    EnvironmentPoolRecord.app_name == self.app_name
                )
            ).scalars().all()
            return {
                EnvironmentLabel(r.label): Environment.from_dict(json.loads(r.payload))
                for r in records
            }

    def save_environment(self, environment: Environment) -> None:
        payload = json.dumps(environment.to_dict())
        with self._session_factory() as session:
            record = session.execute(
                select(EnvironmentPoolRecord).where(
                    EnvironmentPoolRecord.app_name == self.app_name,
                    EnvironmentPoolRecord.label == environment.label.value,
                )
            ).scalar_one_or_none()
            if record is None:
                session.add(EnvironmentPoolRecord(
                    app_name=self.app_name,
                    label=environment.label.value,
                    payload=payload,
                ))
            else:
                record.payload = payload
            session.commit()

    def save_deployment(self, deployment: Deployment) -> None:
        payload = json.dumps(deployment.to_dict(), default=str)
        with self._session_factory() as session:
            record = session.execute(
                select(DeploymentSnapshotRecord).where(
                    DeploymentSnapshotRecord.deployment_id == deployment.deployment_id
                )
            ).scalar_one_or_none()
            if record is None:
                session.add(DeploymentSnapshotRecord(
                    app_name=self.app_name,
                    deployment_id=deployment.deployment_id,
                    state=deployment.state.value,
                    payload=payload,
                ))
            else:
                record.state = deployment.state.value
                record.payload = payload
            session.commit()

    def load_deployment(self, deployment_id: str) -> Optional[Deployment]:
        with self._session_factory() as session:
            record = session.execute(
                select(DeploymentSnapshotRecord).where(
                    DeploymentSnapshotRecord.app_name == self.app_name,
                    DeploymentSnapshotRecord.deployment_id == deployment_id,
                )
            ).scalar_one_or_none()
            return Deployment.from_dict(json.loads(record.payload)) if record else None

    def list_deployments(self) -> List[Deployment]:
        with self._session_factory() as session:
            records = session.execute(
                select(DeploymentSnapshotRecord)
                .where(DeploymentSnapshotRecord.app_name == self.app_name)
                .order_by(DeploymentSnapshotRecord.id)
            ).scalars().all()
            return [Deployment.from_dict(json.loads(r.payload)) for r in records]

    def load_in_flight(self) -> Optional[Deployment]:
        with self._session_factory() as session:
            record = session.execute(
                select(DeploymentSnapshotRecord)
                .where(
                    DeploymentSnapshotRecord.app_name == self.app_name,
                    DeploymentSnapshotRecord.state.not_in(_TERMINAL_VALUES),
                )
                .order_by(DeploymentSnapshotRecord.id.desc())
            ).scalars().first()
            return Deployment.from_dict(json.loads(record.payload)) if record else None
