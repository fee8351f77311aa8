"""Logging setup for the orchestrator.

Every line carries the bound deployment context (deployment ID, artifact
version, operator). State transitions and phase timings attach
``from_state``/``to_state``/``reason`` and ``duration_ms`` as record
extras; both formatters render them.
"""

import dataclasses
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

from src.logging_config.config import DEFAULT_LOGGING_CONFIG, LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import get_context_dict

# Record extras set by AuditRecorder.record_transition and PerformanceTimer
RECORD_FIELDS = ("from_state", "to_state", "reason", "duration_ms")

THIRD_PARTY_LOGGERS = ("botocore", "boto3", "urllib3", "sqlalchemy.engine")


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in RECORD_FIELDS if hasattr(record, key)}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, for log shipping from CI runners and hosts."""

    def __init__(self, service_name: str = "bluegreen", include_caller: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_caller = include_caller

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service_name,
            "message": record.getMessage(),
        }
        entry.update(get_context_dict())
        entry.update(_record_fields(record))

        if self.include_caller:
            entry["module"] = record.module
            entry["line"] = record.lineno

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable lines for operators running the CLI."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = False):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        level = f"{record.levelname:8s}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        line = f"{timestamp} {level} {record.getMessage()}"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"

        ctx = get_context_dict()
        if ctx:
            line += " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"

        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _apply_env_overrides(config: LoggingConfig) -> LoggingConfig:
    env_level = os.environ.get("BLUEGREEN_LOG_LEVEL", "").upper()
    if env_level in LogLevel.__members__:
        config = dataclasses.replace(config, level=LogLevel(env_level))

    env_format = os.environ.get("BLUEGREEN_LOG_FORMAT", "").lower()
    if env_format in {f.value for f in LogFormat}:
        config = dataclasses.replace(config, format=LogFormat(env_format))
    return config


def configure_logging(config: Optional[LoggingConfig] = None, stream: Optional[TextIO] = None) -> None:
    """Configure the root logger for the orchestrator.

    Call once at startup. ``BLUEGREEN_LOG_LEVEL`` and ``BLUEGREEN_LOG_FORMAT``
    override the level and format of ``config``. Console output is colored
    only when ``stream`` is a terminal.
    """
    config = _apply_env_overrides(config or DEFAULT_LOGGING_CONFIG)
    stream = stream or sys.stdout

    if config.format == LogFormat.JSON:
        formatter: logging.Formatter = StructuredFormatter(
            service_name=config.service_name,
            include_caller=config.include_caller,
        )
    else:
        formatter = ConsoleFormatter(color=getattr(stream, "isatty", lambda: False)())

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.level.value))

    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
