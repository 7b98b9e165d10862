"""
Configuration Dataclasses

Type-safe configuration structures for the agent.
Agent settings come from a local YAML file plus environment overrides;
the device registry is fetched from the backend and normalized here.
"""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .. import __version__
from .exceptions import ConfigError
from .logging_setup import get_service_logger

logger = get_service_logger("config")

DEFAULT_MODBUS_PORT = 502
DEFAULT_UNIT_ID = 1
DEFAULT_TIMEOUT_MS = 5000
DEFAULT_REGISTER_COUNT = 10
DEFAULT_POLL_INTERVAL_S = 60


class TransportKind(str, Enum):
    """Backend transport flavours"""
    REST = "rest"
    WEBSOCKET = "websocket"


class ModbusMode(str, Enum):
    """Modbus read mode"""
    REAL = "real"
    SIMULATED = "simulated"


@dataclass
class DeviceRegister:
    """One monitored Modbus endpoint and its polling parameters"""
    id: str
    name: str
    ip: str
    port: int = DEFAULT_MODBUS_PORT
    unit_id: int = DEFAULT_UNIT_ID
    start_index: int = 0
    register_count: int = DEFAULT_REGISTER_COUNT
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_S
    active: bool = True
    timeout_ms: int = DEFAULT_TIMEOUT_MS


@dataclass
class ConnectionTestRequest:
    """Remotely requested on-demand connection test"""
    test_id: str
    ip: str
    port: int = DEFAULT_MODBUS_PORT
    unit_id: int = DEFAULT_UNIT_ID
    start_index: int = 0
    register_count: int = 1
    timeout_ms: int = DEFAULT_TIMEOUT_MS


@dataclass
class AgentConfig:
    """Agent-level configuration"""
    backend_url: str = "http://localhost:3001"
    secret: str = ""
    transport: TransportKind = TransportKind.REST
    modbus_mode: ModbusMode = ModbusMode.SIMULATED
    config_poll_interval_s: float = 10.0
    tests_poll_interval_s: float = 5.0
    heartbeat_interval_s: float = 30.0
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    request_timeout_s: float = 10.0
    health_host: str = "127.0.0.1"
    health_port: int = 3002
    version: str = __version__


def _first(data: dict, *keys: str, default: Any = None) -> Any:
    """Return the first key present (and not None) in data"""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# Helper function to load a register from a backend record
def load_device_register(data: dict, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> DeviceRegister:
    """
    Build a DeviceRegister from a raw registry record.

    Accepts snake_case, camelCase and the backend's legacy field names.
    Missing unit id defaults to 1, missing timeout to default_timeout_ms,
    numeric fields are coerced.
    """
    return DeviceRegister(
        id=str(data["id"]),
        name=str(_first(data, "name", "nombre", default="")),
        ip=str(_first(data, "ip", "host", default="")).strip(),
        port=_as_int(_first(data, "port", "puerto"), DEFAULT_MODBUS_PORT),
        unit_id=_as_int(_first(data, "unit_id", "unitId"), DEFAULT_UNIT_ID),
        start_index=_as_int(
            _first(data, "start_index", "startIndex", "indiceInicial"), 0
        ),
        register_count=_as_int(
            _first(data, "register_count", "registerCount", "cantidadRegistros", "cantRegistros"),
            DEFAULT_REGISTER_COUNT,
        ),
        poll_interval_seconds=_as_float(
            _first(data, "poll_interval_seconds", "pollIntervalSeconds", "intervaloSegundos"),
            DEFAULT_POLL_INTERVAL_S,
        ),
        active=_as_bool(_first(data, "active", "activo"), default=True),
        timeout_ms=_as_int(_first(data, "timeout_ms", "timeoutMs"), default_timeout_ms),
    )


def load_test_request(data: dict, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ConnectionTestRequest:
    """Build a ConnectionTestRequest from a pending-test record"""
    test_id = _first(data, "test_id", "testId", "requestId", "id")
    if test_id is None:
        raise ConfigError("Test request without an identifier", recoverable=True)

    return ConnectionTestRequest(
        test_id=str(test_id),
        ip=str(_first(data, "ip", default="")).strip(),
        port=_as_int(_first(data, "port", "puerto"), 0),
        unit_id=_as_int(_first(data, "unit_id", "unitId"), DEFAULT_UNIT_ID),
        start_index=_as_int(
            _first(data, "start_index", "startIndex", "startAddress", "indiceInicial"), 0
        ),
        register_count=_as_int(
            _first(data, "register_count", "registerCount", "count", "cantRegistros"), 1
        ),
        timeout_ms=_as_int(_first(data, "timeout_ms", "timeoutMs"), default_timeout_ms),
    )


def _load_yaml(config_path: str | Path | None) -> dict:
    """Load local configuration from YAML file"""
    if not config_path:
        return {}
    try:
        with open(config_path, "r") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Config file not found: {config_path}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing config: {e}")
        return {}


def load_agent_config(config_path: str | Path | None = None) -> AgentConfig:
    """
    Load AgentConfig from an optional YAML file, then environment overrides.

    YAML layout:
        backend: {url, secret, transport}
        modbus: {mode, timeout_ms}
        polling: {config_interval_s, tests_interval_s, heartbeat_interval_s}
        health: {host, port}

    Raises:
        ConfigError: transport or modbus mode is not recognised
    """
    data = _load_yaml(config_path)
    backend = data.get("backend", {}) or {}
    modbus = data.get("modbus", {}) or {}
    polling = data.get("polling", {}) or {}
    health = data.get("health", {}) or {}

    config = AgentConfig(
        backend_url=os.environ.get("BACKEND_URL") or backend.get("url", "http://localhost:3001"),
        secret=os.environ.get("AGENT_SECRET") or backend.get("secret", ""),
        version=str(data.get("version", __version__)),
    )

    transport = os.environ.get("AGENT_TRANSPORT") or backend.get("transport", "rest")
    mode = os.environ.get("MODBUS_MODE") or modbus.get("mode", "simulated")
    try:
        config.transport = TransportKind(str(transport).lower())
        config.modbus_mode = ModbusMode(str(mode).lower())
    except ValueError as e:
        raise ConfigError(str(e)) from e

    # Environment carries milliseconds, YAML carries seconds
    env_config_ms = os.environ.get("CONFIG_POLL_INTERVAL_MS")
    env_tests_ms = os.environ.get("TESTS_POLL_INTERVAL_MS")
    config.config_poll_interval_s = (
        _as_int(env_config_ms, 10000) / 1000
        if env_config_ms
        else _as_float(polling.get("config_interval_s"), config.config_poll_interval_s)
    )
    config.tests_poll_interval_s = (
        _as_int(env_tests_ms, 5000) / 1000
        if env_tests_ms
        else _as_float(polling.get("tests_interval_s"), config.tests_poll_interval_s)
    )
    config.heartbeat_interval_s = _as_float(
        polling.get("heartbeat_interval_s"), config.heartbeat_interval_s
    )
    config.request_timeout_s = _as_float(
        backend.get("request_timeout_s"), config.request_timeout_s
    )
    config.default_timeout_ms = _as_int(modbus.get("timeout_ms"), config.default_timeout_ms)

    config.health_host = health.get("host", config.health_host)
    config.health_port = _as_int(
        os.environ.get("HEALTH_PORT") or health.get("port"), config.health_port
    )

    return config
