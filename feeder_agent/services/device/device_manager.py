"""
Device Manager

Tracks live device status, read counters and the operator log stream.
This is the sink the presentation layers (terminal, local web UI,
health server) read from; it never makes scheduling decisions.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from ...common.config import DeviceRegister
from ...common.events import DeviceState, DeviceStateChanged, LogEvent, LogLevel
from ...common.logging_setup import get_service_logger

logger = get_service_logger("device.manager")

Listener = Callable[[DeviceStateChanged | LogEvent], None]


@dataclass
class DeviceStatus:
    """Current status of a device"""
    device_id: str
    device_name: str
    state: DeviceState = DeviceState.INACTIVE
    remaining_seconds: int | None = None
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_seen: datetime | None = None
    last_error: str | None = None
    last_values: list[int] = field(default_factory=list)
    last_elapsed_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "state": self.state.value,
            "remaining_seconds": self.remaining_seconds,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "consecutive_failures": self.consecutive_failures,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "last_error": self.last_error,
            "last_values": list(self.last_values),
            "last_elapsed_ms": self.last_elapsed_ms,
        }


class DeviceManager:
    """
    Manages device status and the log stream.

    Tracks:
    - Device live state and countdown to next read
    - Per-device success/failure counters
    - Recent operator log events (bounded)
    """

    MAX_LOG_EVENTS = 200

    def __init__(self):
        self._devices: dict[str, DeviceStatus] = {}
        self._log: deque[LogEvent] = deque(maxlen=self.MAX_LOG_EVENTS)
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        """Register a presentation callback for every notification"""
        self._listeners.append(listener)

    def _notify(self, event: DeviceStateChanged | LogEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Presentation listener error: {e}")

    def sync_devices(self, registers: list[DeviceRegister]) -> None:
        """Align tracked devices with the registry (keeps counters of survivors)"""
        known = {r.id for r in registers}
        for device_id in list(self._devices):
            if device_id not in known:
                del self._devices[device_id]

        for register in registers:
            status = self._devices.get(register.id)
            if status is None:
                self._devices[register.id] = DeviceStatus(
                    device_id=register.id,
                    device_name=register.name,
                )
                logger.debug(f"Registered device: {register.name} ({register.id})")
            else:
                status.device_name = register.name

    def set_state(
        self,
        device_id: str,
        state: DeviceState,
        remaining_seconds: int | None = None,
    ) -> None:
        """Update live state; inactive devices carry no countdown"""
        if state == DeviceState.INACTIVE:
            remaining_seconds = None

        status = self._devices.get(device_id)
        if status is not None:
            status.state = state
            status.remaining_seconds = remaining_seconds

        self._notify(DeviceStateChanged(device_id, state, remaining_seconds))

    def record_read(
        self,
        device_id: str,
        success: bool,
        values: list[int] | None = None,
        elapsed_ms: float | None = None,
        error: str | None = None,
    ) -> None:
        """Update counters after a read"""
        status = self._devices.get(device_id)
        if status is None:
            return

        status.last_elapsed_ms = elapsed_ms
        if success:
            status.success_count += 1
            status.consecutive_failures = 0
            status.last_seen = datetime.now(timezone.utc)
            status.last_error = None
            status.last_values = list(values or [])
        else:
            status.failure_count += 1
            status.consecutive_failures += 1
            status.last_error = error

    def log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        """Append an operator log event"""
        event = LogEvent(message=message, level=level)
        self._log.append(event)
        self._notify(event)

    def get_status(self, device_id: str) -> DeviceStatus | None:
        """Get device status"""
        return self._devices.get(device_id)

    def get_all_status(self) -> dict[str, DeviceStatus]:
        """Get status of all devices"""
        return self._devices.copy()

    def get_counters(self) -> dict[str, dict[str, int]]:
        """Per-device success/failure counts"""
        return {
            device_id: {
                "success": status.success_count,
                "failure": status.failure_count,
            }
            for device_id, status in self._devices.items()
        }

    def recent_log(self, limit: int = 50) -> list[LogEvent]:
        return list(self._log)[-limit:]

    def get_device_count(self) -> dict:
        """Get device count statistics"""
        total = len(self._devices)
        failing = sum(1 for s in self._devices.values() if s.state == DeviceState.ERROR)
        inactive = sum(1 for s in self._devices.values() if s.state == DeviceState.INACTIVE)
        return {
            "total": total,
            "active": total - inactive,
            "failing": failing,
        }
