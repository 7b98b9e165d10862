"""
Backend Wire Format

Request/response shapes of the monitoring backend. The backend predates
this agent and keeps its own field names for authentication, registry
and test payloads; both those and the English names are accepted on the
way in. Outgoing reports use the English names.
"""

from typing import Any

from ...common.config import ConnectionTestRequest, load_test_request
from ...common.events import AgentDescriptor, ReadingRecord
from ...common.exceptions import ConfigError
from ...common.logging_setup import get_service_logger
from ..device.executor import ReadOutcome

logger = get_service_logger("transport.wire")


def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def auth_payload(secret: str) -> dict[str, Any]:
    return {"claveSecreta": secret}


def is_success(data: dict) -> bool:
    return bool(_pick(data, "success", "exito", default=False))


def error_message(data: dict, default: str = "unknown error") -> str:
    return str(_pick(data, "error", "message", "mensaje", default=default))


def warning_message(data: dict) -> str | None:
    return _pick(data, "warning", "advertencia")


def parse_agent(data: dict | None) -> AgentDescriptor:
    data = data or {}
    return AgentDescriptor(
        id=str(_pick(data, "id", default="")),
        name=str(_pick(data, "name", "nombre", default="")),
        raw=data,
    )


def parse_workspaces(data: dict) -> list[dict[str, Any]]:
    workspaces = _pick(data, "workspaces", default=None)
    if workspaces is None:
        single = _pick(data, "workspace", default=None)
        return [single] if single else []
    return list(workspaces)


def workspace_name(workspace: dict) -> str:
    return str(_pick(workspace, "name", "nombre", default=workspace.get("id", "")))


def registry_records(payload: Any) -> list[dict[str, Any]]:
    """Extract the register list from a config response"""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        records = _pick(payload, "registers", "registradores", default=[])
        return list(records)
    return []


def registry_toggle(data: dict) -> tuple[str | None, str | None, bool | None]:
    """(agent id, register id, active) from a single-register push"""
    agent_id = _pick(data, "agentId", "agenteId")
    register_id = _pick(data, "registerId", "registradorId")
    active = _pick(data, "active", "activo")
    return (
        str(agent_id) if agent_id is not None else None,
        str(register_id) if register_id is not None else None,
        bool(active) if active is not None else None,
    )


def parse_test_requests(payload: Any, default_timeout_ms: int) -> list[ConnectionTestRequest]:
    """Pending-test list; malformed entries are skipped"""
    if isinstance(payload, dict):
        payload = _pick(payload, "tests", default=[])
    requests = []
    for item in payload or []:
        try:
            requests.append(load_test_request(item, default_timeout_ms))
        except (ConfigError, AttributeError) as e:
            logger.warning(f"Skipping malformed test request {item!r}: {e}")
    return requests


def reading_to_wire(record: ReadingRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "deviceId": record.device_id,
        "success": record.success,
        "elapsedMs": record.elapsed_ms,
        "values": record.values,
        "timestamp": record.timestamp.isoformat(),
    }
    if not record.success:
        payload["error"] = record.error
        payload["errorKind"] = record.error_kind.value if record.error_kind else None
    return payload


def outcome_to_wire(outcome: ReadOutcome) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "success": outcome.success,
        "elapsedMs": outcome.elapsed_ms,
    }
    if outcome.success:
        payload["values"] = [
            {"address": address, "value": value}
            for address, value in (outcome.registers or [])
        ]
    else:
        payload["errorMessage"] = outcome.error
        payload["errorKind"] = outcome.error_kind.value if outcome.error_kind else None
    return payload
