"""Deployment Context Management.

Thread-safe logging context using contextvars for binding the
deployment ID, artifact version and operator to log entries.
"""

from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


_deployment_id_var: ContextVar[str] = ContextVar("deployment_id", default="")
_artifact_version_var: ContextVar[str] = ContextVar("artifact_version", default="")
_operator_var: ContextVar[str] = ContextVar("operator", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def get_deployment_id() -> str:
    """Get the current deployment ID from context."""
    return _deployment_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all context variables as a dictionary for log binding."""
    ctx = {}
    deployment_id = _deployment_id_var.get()
    if deployment_id:
        ctx["deployment_id"] = deployment_id
    version = _artifact_version_var.get()
    if version:
        ctx["artifact_version"] = version
    operator = _operator_var.get()
    if operator:
        ctx["operator"] = operator
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class DeploymentContext:
    """Context manager for deployment-scoped logging context.

    Binds deployment_id, artifact_version and operator to all log
    entries within the context. Restores the outer context on exit so
    contexts can nest (a rollback run inside a deployment run).

    Example:
        with DeploymentContext(deployment_id="abc-123", artifact_version="1.4.2"):
            logger.info("provisioning staging")  # includes deployment_id
    """

    deployment_id: str = ""
    artifact_version: str = ""
    operator: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    _tokens: list = field(default_factory=list, repr=False)

    def __enter__(self) -> "DeploymentContext":
        self._tokens = [
            (_deployment_id_var, _deployment_id_var.set(self.deployment_id)),
            (_artifact_version_var, _artifact_version_var.set(self.artifact_version)),
            (_operator_var, _operator_var.set(self.operator)),
            (_extra_context_var, _extra_context_var.set(self.extra.copy())),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the context."""
        current = _extra_context_var.get()
        updated = {**current, **kwargs}
        _extra_context_var.set(updated)
        self.extra.update(kwargs)
