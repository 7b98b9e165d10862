"""
Structured Logging Setup

Consistent logging configuration across the agent services.
Uses JSON format for structured logs in the field, plain text for
development (FEEDER_AGENT_LOG_FORMAT=text).
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any
import json


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    # LogRecord attributes that are not user-supplied extras
    RESERVED = frozenset((
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "service",
        "message", "taskName",
    ))

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in self.RESERVED:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "scheduler", "transport.rest")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for the field, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"feeder_agent.{service_name}")
    logger.setLevel(numeric_level)

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Args:
        service_name: Name of the service

    Returns:
        Logger adapter with service name in all logs
    """
    log_level = os.environ.get("FEEDER_AGENT_LOG_LEVEL", "INFO")
    json_format = os.environ.get("FEEDER_AGENT_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def set_log_level(log_level: str) -> None:
    """Change the level of every agent logger already created (--verbose)"""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    for name, logger in logging.root.manager.loggerDict.items():
        if name.startswith("feeder_agent.") and isinstance(logger, logging.Logger):
            logger.setLevel(numeric_level)
            for handler in logger.handlers:
                handler.setLevel(numeric_level)


def log_device_read(
    logger: logging.LoggerAdapter,
    device_name: str,
    register_count: int,
    elapsed_ms: float,
    success: bool = True,
    error: Any = None,
) -> None:
    """Log a device holding-register read"""
    if success:
        logger.debug(
            f"Read {device_name}: {register_count} registers in {elapsed_ms:.0f}ms",
            extra={"device": device_name, "elapsed_ms": elapsed_ms},
        )
    else:
        logger.warning(
            f"Failed to read {device_name}: {error}",
            extra={"device": device_name, "elapsed_ms": elapsed_ms},
        )
