"""
Custom Exception Classes for the Feeder Agent

Hierarchical exception structure for error handling across services.
The Modbus layer and the transports raise these; the executor and the
session convert them into structured results and log entries.
"""

from enum import Enum


class ReadErrorKind(str, Enum):
    """Classification of a failed device read"""
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"
    INVALID_PARAMETERS = "invalid_parameters"


class AgentError(Exception):
    """Base exception for all agent errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(AgentError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class AuthenticationError(AgentError):
    """Backend rejected the agent secret"""

    def __init__(self, message: str):
        super().__init__(f"Authentication Error: {message}", recoverable=False)


class DeviceError(AgentError):
    """Device read errors"""

    kind: ReadErrorKind = ReadErrorKind.PROTOCOL_ERROR

    def __init__(
        self,
        message: str,
        host: str | None = None,
        port: int | None = None,
        recoverable: bool = True,
    ):
        self.host = host
        self.port = port
        super().__init__(message, recoverable)


class InvalidParametersError(DeviceError):
    """Malformed device descriptor, raised before any I/O"""

    kind = ReadErrorKind.INVALID_PARAMETERS

    def __init__(self, message: str, host: str | None = None, port: int | None = None):
        super().__init__(f"Invalid parameters: {message}", host, port)


class CommunicationError(DeviceError):
    """Modbus/network communication errors (refused, unreachable, timeout)"""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        port: int | None = None,
        kind: ReadErrorKind = ReadErrorKind.CONNECTION_REFUSED,
    ):
        self.kind = kind
        super().__init__(message, host, port)


class ProtocolError(DeviceError):
    """Device reachable but returned a malformed or exception response"""

    kind = ReadErrorKind.PROTOCOL_ERROR


class TransportError(AgentError):
    """Backend transport failure (unreachable, bad response)"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        self.detail = message
        super().__init__(f"Transport Error: {message}", recoverable=True)


class ReportingError(TransportError):
    """Backend rejected or failed to accept a report"""

    def __init__(self, message: str, operation: str | None = None, status_code: int | None = None):
        self.operation = operation
        super().__init__(message, status_code)
