"""
Read/Test Executor

Runs a single holding-register read for a device descriptor and turns
every outcome into a ReadOutcome value. Nothing raised by the Modbus
layer escapes from here.
"""

import time
from dataclasses import dataclass
from typing import Protocol

from ...common.exceptions import DeviceError, ReadErrorKind
from ...common.logging_setup import get_service_logger
from .modbus_client import ModbusReader

logger = get_service_logger("device.executor")


class ReadDescriptor(Protocol):
    """DeviceRegister and ConnectionTestRequest both satisfy this"""
    ip: str
    port: int
    unit_id: int
    start_index: int
    register_count: int
    timeout_ms: int


@dataclass
class ReadOutcome:
    """Result of a read or connection test"""
    success: bool
    elapsed_ms: float
    values: list[int] | None = None
    registers: list[tuple[int, int]] | None = None  # (address, value), test variant only
    error_kind: ReadErrorKind | None = None
    error: str | None = None


class ReadExecutor:
    """Invokes the Modbus reader with timing and error capture"""

    def __init__(self, reader: ModbusReader):
        self.reader = reader

    async def read(self, descriptor: ReadDescriptor) -> ReadOutcome:
        """Read descriptor.register_count registers; values in address order"""
        started = time.monotonic()
        try:
            values = await self.reader.read_holding_registers(
                ip=descriptor.ip,
                port=descriptor.port,
                unit_id=descriptor.unit_id,
                address=descriptor.start_index,
                count=descriptor.register_count,
                timeout_ms=descriptor.timeout_ms,
            )
        except DeviceError as e:
            return ReadOutcome(
                success=False,
                elapsed_ms=self._elapsed_ms(started),
                error_kind=e.kind,
                error=e.message,
            )
        except Exception as e:
            logger.error(f"Unexpected error reading {descriptor.ip}:{descriptor.port}: {e}")
            return ReadOutcome(
                success=False,
                elapsed_ms=self._elapsed_ms(started),
                error_kind=ReadErrorKind.PROTOCOL_ERROR,
                error=str(e) or type(e).__name__,
            )

        return ReadOutcome(
            success=True,
            elapsed_ms=self._elapsed_ms(started),
            values=values,
        )

    async def test(self, descriptor: ReadDescriptor) -> ReadOutcome:
        """
        Connection test: same read, plus per-register (address, value)
        pairs for diagnostic display.
        """
        outcome = await self.read(descriptor)
        if outcome.success and outcome.values is not None:
            outcome.registers = [
                (descriptor.start_index + offset, value)
                for offset, value in enumerate(outcome.values)
            ]
        return outcome

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.monotonic() - started) * 1000, 1)
