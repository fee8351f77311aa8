"""SQLAlchemy ORM models for orchestrator state.

Tables:
- environment_registry: Which label is live, one row per application
- environment_pools: Pool and target group refs per environment label
- deployment_snapshots: Latest snapshot of each deployment (JSON payload)
"""

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, func

from src.db.base import Base


class ActiveEnvironmentRecord(Base):
    __tablename__ = "environment_registry"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_name = Column(String(100), unique=True, nullable=False, index=True)
    active_label = Column(String(10), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class EnvironmentPoolRecord(Base):
    __tablename__ = "environment_pools"
    __table_args__ = (UniqueConstraint("app_name", "label", name="uq_pool_app_label"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_name = Column(String(100), nullable=False, index=True)
    label = Column(String(10), nullable=False)
    payload = Column(Text, nullable=False)  # JSON: Environment.to_dict()
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class DeploymentSnapshotRecord(Base):
    __tablename__ = "deployment_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_name = Column(String(100), nullable=False, index=True)
    deployment_id = Column(String(36), unique=True, nullable=False)
    state = Column(String(20), nullable=False, index=True)
    payload = Column(Text, nullable=False)  # JSON: Deployment.to_dict()
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
