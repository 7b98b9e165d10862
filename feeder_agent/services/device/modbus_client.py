"""
Async Modbus Client

Wrapper around pymodbus for one-shot Modbus TCP holding-register reads.

Every read opens its own connection and closes it on every exit path.
Feeder relays typically accept only a couple of simultaneous masters,
so the agent never keeps idle sockets open between polls.
"""

import asyncio
import random
from typing import Callable

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

from ...common.config import ModbusMode
from ...common.exceptions import (
    CommunicationError,
    InvalidParametersError,
    ProtocolError,
    ReadErrorKind,
)
from ...common.logging_setup import get_service_logger

logger = get_service_logger("device.modbus")

# Modbus limit for function 0x03
MAX_REGISTERS_PER_READ = 125

# Simulated register value range (inclusive)
SIMULATED_MAX_VALUE = 500


def validate_read_parameters(ip: str, port: int, count: int) -> None:
    """
    Fail fast on a malformed descriptor, before any connection attempt.

    Raises:
        InvalidParametersError: missing ip, non-positive port or count
    """
    if not ip:
        raise InvalidParametersError("ip is required", ip, port)
    if not isinstance(port, int) or port <= 0:
        raise InvalidParametersError(f"port must be positive (got {port!r})", ip, port)
    if not isinstance(count, int) or count <= 0:
        raise InvalidParametersError(f"register count must be positive (got {count!r})", ip, port)
    if count > MAX_REGISTERS_PER_READ:
        raise InvalidParametersError(
            f"register count {count} exceeds {MAX_REGISTERS_PER_READ}", ip, port
        )


class ModbusReader:
    """
    Holding-register reader.

    Handles:
    - Parameter validation before any I/O
    - One connection per read, always closed
    - Error classification (refused, timeout, protocol)
    - Simulated mode returning pseudo-random values without network I/O
    """

    def __init__(
        self,
        mode: ModbusMode = ModbusMode.REAL,
        client_factory: Callable[..., AsyncModbusTcpClient] = AsyncModbusTcpClient,
        rng: random.Random | None = None,
    ):
        self.mode = mode
        self._client_factory = client_factory
        self._rng = rng or random.Random()

    @property
    def simulated(self) -> bool:
        return self.mode == ModbusMode.SIMULATED

    async def read_holding_registers(
        self,
        ip: str,
        port: int,
        unit_id: int,
        address: int,
        count: int,
        timeout_ms: int,
    ) -> list[int]:
        """
        Read count holding registers starting at address.

        Args:
            ip: Device IP address
            port: Modbus TCP port
            unit_id: Modbus unit (slave) id
            address: First register address
            count: Number of registers
            timeout_ms: Connect and response timeout

        Returns:
            Register values in address order

        Raises:
            InvalidParametersError: descriptor rejected before I/O
            CommunicationError: refused, unreachable or timed out
            ProtocolError: exception or malformed response
        """
        validate_read_parameters(ip, port, count)

        if self.simulated:
            # Yield like a real read would
            await asyncio.sleep(0)
            return [self._rng.randint(0, SIMULATED_MAX_VALUE) for _ in range(count)]

        timeout = max(timeout_ms, 1) / 1000
        client = self._client_factory(host=ip, port=port, timeout=timeout)

        try:
            connected = await asyncio.wait_for(client.connect(), timeout)
            if not connected:
                raise CommunicationError(
                    f"Failed to connect to Modbus device at {ip}:{port}",
                    ip,
                    port,
                    ReadErrorKind.CONNECTION_REFUSED,
                )

            response = await asyncio.wait_for(
                client.read_holding_registers(
                    address=address,
                    count=count,
                    device_id=unit_id,
                ),
                timeout,
            )

            if response.isError():
                raise ProtocolError(f"Modbus error: {response}", ip, port)

            registers = list(response.registers)
            if len(registers) != count:
                raise ProtocolError(
                    f"Expected {count} registers, got {len(registers)}", ip, port
                )

            return registers

        except asyncio.TimeoutError as e:
            raise CommunicationError(
                f"Read timeout after {timeout_ms}ms", ip, port, ReadErrorKind.TIMEOUT
            ) from e
        except ConnectionException as e:
            raise CommunicationError(
                f"Connection error: {e}", ip, port, ReadErrorKind.CONNECTION_REFUSED
            ) from e
        except ModbusIOException as e:
            # pymodbus reports a missing response as an IO exception
            raise CommunicationError(
                f"No response: {e}", ip, port, ReadErrorKind.TIMEOUT
            ) from e
        except ModbusException as e:
            raise ProtocolError(f"Modbus exception: {e}", ip, port) from e
        except OSError as e:
            raise CommunicationError(
                f"Socket error: {e}", ip, port, ReadErrorKind.CONNECTION_REFUSED
            ) from e
        finally:
            try:
                client.close()
            except Exception as e:
                logger.debug(f"Error closing connection to {ip}:{port}: {e}")
            logger.debug(f"Disconnected from {ip}:{port}")
