"""
Agent Events

Closed set of messages exchanged between the transport adapters, the
agent session and the presentation layer.

Transport -> session:
    Connected, Authenticated, RegistryChanged, TestRequested, Disconnected

Session -> transport:
    ReadingRecord

Session -> presentation:
    DeviceStateChanged, LogEvent
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from .config import ConnectionTestRequest
from .exceptions import ReadErrorKind


class DeviceState(str, Enum):
    """Live state of a device as shown to the operator"""
    SCHEDULED = "scheduled"
    READING = "reading"
    ERROR = "error"
    INACTIVE = "inactive"


class LogLevel(str, Enum):
    """Operator-facing log levels"""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class AgentDescriptor:
    """Agent identity returned by the backend on authentication"""
    id: str
    name: str
    raw: dict[str, Any] = field(default_factory=dict)


# --- Transport events ---

@dataclass
class Connected:
    pass


@dataclass
class Authenticated:
    agent: AgentDescriptor
    workspaces: list[dict[str, Any]] = field(default_factory=list)
    warning: str | None = None


@dataclass
class RegistryChanged:
    """Full registry snapshot as raw backend records"""
    records: list[dict[str, Any]]


@dataclass
class TestRequested:
    __test__ = False  # not a pytest test class

    request: ConnectionTestRequest


@dataclass
class Disconnected:
    reason: str


TransportEvent = Union[Connected, Authenticated, RegistryChanged, TestRequested, Disconnected]


# --- Presentation notifications ---

@dataclass
class DeviceStateChanged:
    device_id: str
    state: DeviceState
    remaining_seconds: int | None = None


@dataclass
class LogEvent:
    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# --- Upstream reports ---

@dataclass
class ReadingRecord:
    """One poll result, success or failure, as reported upstream"""
    device_id: str
    success: bool
    elapsed_ms: float
    values: list[int] | None = None
    error: str | None = None
    error_kind: ReadErrorKind | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
