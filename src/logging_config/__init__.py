"""Structured Logging & Deployment Context.

Provides structured JSON logging, deployment ID propagation,
and phase timing for the orchestrator.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import DeploymentContext, get_context_dict, get_deployment_id
from src.logging_config.performance import PerformanceTimer
from src.logging_config.setup import configure_logging

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "DeploymentContext",
    "PerformanceTimer",
    "configure_logging",
    "get_context_dict",
    "get_deployment_id",
]
