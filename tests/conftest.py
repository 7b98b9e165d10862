# tests/conftest.py
"""Shared pytest fixtures for feeder agent tests.

Scheduling tests run on a VirtualClock so timer cadence can be checked
without wall-clock waits. Modbus I/O is replaced by FakeReader and the
backend by FakeTransport.
"""

import asyncio
from typing import Any

import pytest

from feeder_agent.common.clock import VirtualClock
from feeder_agent.common.config import AgentConfig, ModbusMode
from feeder_agent.common.exceptions import CommunicationError, ReadErrorKind, ReportingError
from feeder_agent.services.transport.base import BackendTransport


# ----------------------------------------------------------------
# Fakes
# ----------------------------------------------------------------
class FakeReader:
    """Stand-in for ModbusReader recording every call.

    Values are the register addresses, so results are easy to assert.
    Reads for ips in `failing` raise CommunicationError. Reads for an ip
    held with hold() block until the returned event is set.
    """

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.failing: set[str] = set()
        self.gates: dict[str, asyncio.Event] = {}

    async def read_holding_registers(self, ip, port, unit_id, address, count, timeout_ms):
        self.calls.append({
            "ip": ip,
            "port": port,
            "unit_id": unit_id,
            "address": address,
            "count": count,
            "timeout_ms": timeout_ms,
        })
        gate = self.gates.get(ip)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        if ip in self.failing:
            raise CommunicationError(
                f"Failed to connect to Modbus device at {ip}:{port}",
                ip,
                port,
                ReadErrorKind.CONNECTION_REFUSED,
            )
        return list(range(address, address + count))

    def hold(self, ip: str) -> asyncio.Event:
        self.gates[ip] = asyncio.Event()
        return self.gates[ip]

    def release(self, ip: str) -> None:
        gate = self.gates.pop(ip, None)
        if gate is not None:
            gate.set()

    def reads_for(self, ip: str) -> int:
        return sum(1 for call in self.calls if call["ip"] == ip)


class FakeTransport(BackendTransport):
    """In-memory backend recording every upstream call."""

    name = "fake"

    def __init__(self, config: AgentConfig | None = None, records: list[dict] | None = None):
        super().__init__(config or AgentConfig(secret="test-secret"))
        self.records = records or []
        self.readings = []
        self.test_outcomes = []
        self.heartbeats = 0
        self.link_codes = []
        self.fail_reports = False
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def fetch_registry_config(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self.records]

    async def report_readings(self, readings) -> None:
        if self.fail_reports:
            raise ReportingError("backend unavailable", "report_readings", 503)
        self.readings.extend(readings)

    async def report_test_outcome(self, test_id, outcome) -> None:
        if self.fail_reports:
            raise ReportingError("backend unavailable", "report_test_outcome", 503)
        self.test_outcomes.append((test_id, outcome))

    async def send_heartbeat(self) -> None:
        self.heartbeats += 1

    async def link_workspace(self, code: str):
        self.link_codes.append(code)
        return {"success": True, "workspace": {"id": "ws-1", "name": "Plant"}}

    async def close(self) -> None:
        self.closed = True
        self._closed = True
        self._finish_events()


# ----------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------
@pytest.fixture
def clock() -> VirtualClock:
    """Manually advanced clock starting at t=0."""
    return VirtualClock()


@pytest.fixture
def fake_reader() -> FakeReader:
    return FakeReader()


@pytest.fixture
def agent_config() -> AgentConfig:
    """Agent config pointing at an unroutable test backend."""
    return AgentConfig(
        backend_url="http://backend.test",
        secret="test-secret",
        modbus_mode=ModbusMode.SIMULATED,
        heartbeat_interval_s=3600,
    )


@pytest.fixture
def fake_transport(agent_config) -> FakeTransport:
    return FakeTransport(agent_config)


@pytest.fixture
def make_record():
    """Factory for raw registry records as the backend sends them."""

    def _make(device_id: str = "1", **overrides) -> dict[str, Any]:
        record = {
            "id": device_id,
            "nombre": f"Feeder {device_id}",
            "ip": f"10.0.0.{device_id}" if device_id.isdigit() else "10.0.0.99",
            "puerto": 502,
            "unitId": 1,
            "indiceInicial": 0,
            "cantidadRegistros": 4,
            "intervaloSegundos": 60,
            "activo": True,
        }
        record.update(overrides)
        return record

    return _make
