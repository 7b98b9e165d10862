"""
Registry Validator

Validates raw registry records before they become DeviceRegisters.
Records that break the register constraints are dropped with a warning;
the rest of the snapshot is still applied.
"""

from typing import Any

from ...common.config import DeviceRegister, load_device_register, DEFAULT_TIMEOUT_MS
from ...common.logging_setup import get_service_logger

logger = get_service_logger("config.validator")


class RegistryValidator:
    """Validates and normalizes registry snapshots"""

    def __init__(self, default_timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.default_timeout_ms = default_timeout_ms

    def validate(self, records: list[dict[str, Any]]) -> tuple[list[DeviceRegister], list[str]]:
        """
        Normalize a snapshot.

        Args:
            records: Raw registry records from the backend

        Returns:
            Tuple of (valid registers in snapshot order, list of error messages)
        """
        registers: list[DeviceRegister] = []
        errors: list[str] = []
        seen: set[str] = set()

        for i, record in enumerate(records):
            if not isinstance(record, dict):
                errors.append(f"Register {i}: not an object")
                continue

            if record.get("id") in (None, ""):
                errors.append(f"Register {i}: missing id")
                continue

            register = load_device_register(record, self.default_timeout_ms)
            label = register.name or register.id

            if register.id in seen:
                errors.append(f"Register {label}: duplicate id {register.id}")
                continue
            if register.register_count <= 0:
                errors.append(f"Register {label}: register count must be positive")
                continue
            if register.poll_interval_seconds <= 0:
                errors.append(f"Register {label}: poll interval must be positive")
                continue

            seen.add(register.id)
            registers.append(register)

        if errors:
            logger.warning(
                f"Registry validation dropped {len(errors)} records",
                extra={"errors": errors},
            )

        return registers, errors
