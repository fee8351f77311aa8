"""Centralized settings for the blue-green orchestrator.

Uses pydantic-settings to load from environment variables (prefixed
BLUEGREEN_) with defaults matching the ALB target group defaults used
by the deployment runbook.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Orchestrator settings loaded from environment variables."""

    # --- Application ---
    app_name: str = "webapp"
    initial_active_label: str = "blue"

    # --- State persistence ---
    state_db_url: str = "sqlite:///bluegreen_state.db"

    # --- Health probing (target group defaults) ---
    health_interval_seconds: float = 30.0
    health_healthy_threshold: int = 2
    health_unhealthy_threshold: int = 2
    health_timeout_seconds: float = 300.0

    # --- Deployment lifecycle ---
    provision_max_attempts: int = 3
    provision_base_delay: float = 5.0
    hold_window_seconds: float = 600.0
    monitor_interval_seconds: float = 30.0
    auto_rollback: bool = True
    error_rate_threshold: float = 0.05
    latency_threshold_ms: float = 500.0

    # --- AWS ---
    aws_region: str = "us-east-1"
    listener_arn: str = ""
    launch_template_id: str = ""
    blue_asg_name: str = ""
    green_asg_name: str = ""
    blue_target_group_arn: str = ""
    green_target_group_arn: str = ""
    desired_capacity: int = 2
    drain_timeout_seconds: float = 600.0
    drain_poll_seconds: float = 15.0

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "json"

    model_config = {
        "env_prefix": "BLUEGREEN_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
