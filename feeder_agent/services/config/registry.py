"""
Registry State

The agent's currently known set of device registers, keyed by id, plus
the fingerprint used for structural-change detection.
"""

import hashlib
import json
from dataclasses import dataclass, field

from ...common.config import DeviceRegister


@dataclass(frozen=True)
class RegistryFingerprint:
    """
    Summary of the id set and active flags.

    Deliberately excludes names, addresses and timing so that only
    changes to *which* devices must be polled show up here.
    """
    ids: frozenset[str] = frozenset()
    active: tuple[tuple[str, bool], ...] = ()

    @classmethod
    def of(cls, registers: list[DeviceRegister]) -> "RegistryFingerprint":
        return cls(
            ids=frozenset(r.id for r in registers),
            active=tuple(sorted((r.id, r.active) for r in registers)),
        )

    @property
    def active_map(self) -> dict[str, bool]:
        return dict(self.active)

    @property
    def digest(self) -> str:
        """Short stable hash for logs"""
        content = json.dumps(self.active, sort_keys=True)
        return hashlib.md5(content.encode()).hexdigest()[:8]


@dataclass
class RegistryState:
    """Live registry for one agent session"""
    registers: dict[str, DeviceRegister] = field(default_factory=dict)

    def get(self, device_id: str) -> DeviceRegister | None:
        return self.registers.get(device_id)

    def replace(self, registers: list[DeviceRegister]) -> None:
        """Swap in a new snapshot in one step"""
        self.registers = {r.id: r for r in registers}

    def clear(self) -> None:
        self.registers = {}

    def active_ids(self) -> set[str]:
        return {r.id for r in self.registers.values() if r.active}

    @property
    def fingerprint(self) -> RegistryFingerprint:
        return RegistryFingerprint.of(list(self.registers.values()))

    def __len__(self) -> int:
        return len(self.registers)
