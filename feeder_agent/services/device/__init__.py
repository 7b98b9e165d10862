"""
Device Polling - Modbus Communication

Responsibilities:
- One-shot holding-register reads (real or simulated)
- Per-device poll timers with live countdown
- Remote connection tests, deduplicated by test id
- Device status and read counters for the presentation layer
"""

from .device_manager import DeviceManager
from .executor import ReadExecutor, ReadOutcome
from .modbus_client import ModbusReader
from .scheduler import PollScheduler
from .test_coordinator import ConnectionTestCoordinator

__all__ = [
    "DeviceManager",
    "ReadExecutor",
    "ReadOutcome",
    "ModbusReader",
    "PollScheduler",
    "ConnectionTestCoordinator",
]
