"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses and loaders
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- clock.py - Timer source for the poll scheduler
- events.py - Transport and presentation events
"""

from .config import (
    AgentConfig,
    DeviceRegister,
    ConnectionTestRequest,
    TransportKind,
    ModbusMode,
    load_agent_config,
    load_device_register,
    load_test_request,
)
from .exceptions import (
    AgentError,
    ConfigError,
    AuthenticationError,
    DeviceError,
    InvalidParametersError,
    CommunicationError,
    ProtocolError,
    TransportError,
    ReportingError,
    ReadErrorKind,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    set_log_level,
    log_device_read,
)
from .clock import Clock, LoopClock, VirtualClock

__all__ = [
    # Config
    "AgentConfig",
    "DeviceRegister",
    "ConnectionTestRequest",
    "TransportKind",
    "ModbusMode",
    "load_agent_config",
    "load_device_register",
    "load_test_request",
    # Exceptions
    "AgentError",
    "ConfigError",
    "AuthenticationError",
    "DeviceError",
    "InvalidParametersError",
    "CommunicationError",
    "ProtocolError",
    "TransportError",
    "ReportingError",
    "ReadErrorKind",
    # Logging
    "setup_logging",
    "get_service_logger",
    "set_log_level",
    "log_device_read",
    # Clock
    "Clock",
    "LoopClock",
    "VirtualClock",
]
