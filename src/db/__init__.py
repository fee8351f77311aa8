"""Database package for orchestrator state."""

from src.db.base import Base
from src.db.engine import get_sync_engine, get_sync_session_factory
from src.db.models import (
    ActiveEnvironmentRecord,
    DeploymentSnapshotRecord,
    EnvironmentPoolRecord,
)

__all__ = [
    "Base",
    "get_sync_engine",
    "get_sync_session_factory",
    "ActiveEnvironmentRecord",
    "DeploymentSnapshotRecord",
    "EnvironmentPoolRecord",
]
