"""
Configuration Diff Engine

Compares a freshly fetched registry snapshot against the previous one
and classifies the change:

- structural: the set of devices that must have a running timer changed
  (device added, device removed, active flag toggled)
- cosmetic: only parameters a running timer reads lazily changed
  (name, ip, port, unit id, register range, timeout, poll interval)
- none: identical snapshot

Classification precedence is added > removed > activated/deactivated >
cosmetic. The first matching rule names the reason; the instruction list
always carries the complete delta.
"""

from dataclasses import dataclass, field, fields
from enum import Enum

from ...common.config import DeviceRegister
from ...common.logging_setup import get_service_logger
from .registry import RegistryFingerprint

logger = get_service_logger("config.diff")

REASON_ADDED = "device added"
REASON_REMOVED = "device removed"
REASON_ACTIVATED = "activated"
REASON_DEACTIVATED = "deactivated"
REASON_COSMETIC = "minor configuration change"
REASON_BASELINE = "baseline seeded"


class ChangeKind(str, Enum):
    NONE = "none"
    COSMETIC = "cosmetic"
    STRUCTURAL = "structural"


class Action(str, Enum):
    START = "start"
    STOP = "stop"
    UPDATE = "update"


@dataclass(frozen=True)
class Instruction:
    action: Action
    device_id: str
    changed: tuple[str, ...] = ()  # field names, UPDATE only


@dataclass
class ConfigDiff:
    kind: ChangeKind
    reason: str = ""
    instructions: list[Instruction] = field(default_factory=list)
    # Other structural reasons present in the same snapshot
    also: list[str] = field(default_factory=list)

    @property
    def structural(self) -> bool:
        return self.kind == ChangeKind.STRUCTURAL

    def device_ids(self, action: Action) -> list[str]:
        return [i.device_id for i in self.instructions if i.action == action]


def changed_fields(old: DeviceRegister, new: DeviceRegister) -> tuple[str, ...]:
    """Descriptor fields that differ, excluding id and active"""
    return tuple(
        f.name
        for f in fields(DeviceRegister)
        if f.name not in ("id", "active") and getattr(old, f.name) != getattr(new, f.name)
    )


def classify_change(
    previous: RegistryFingerprint,
    previous_registers: dict[str, DeviceRegister],
    new_registers: list[DeviceRegister],
) -> ConfigDiff:
    """
    Classify new_registers against the previous baseline.

    Args:
        previous: Fingerprint (id set + active flags) of the baseline
        previous_registers: Baseline descriptors, for cosmetic comparison
        new_registers: Freshly fetched snapshot

    Returns:
        ConfigDiff with kind, reason and the full instruction list
    """
    previous_active = previous.active_map
    new_ids = [r.id for r in new_registers]
    new_id_set = set(new_ids)

    added = [r for r in new_registers if r.id not in previous.ids]
    removed = sorted(i for i in previous.ids if i not in new_id_set)
    toggled = [
        r for r in new_registers
        if r.id in previous_active and previous_active[r.id] != r.active
    ]

    instructions: list[Instruction] = []
    reasons: list[str] = []

    if added:
        reasons.append(REASON_ADDED)
    if removed:
        reasons.append(REASON_REMOVED)
    for register in toggled:
        reason = REASON_ACTIVATED if register.active else REASON_DEACTIVATED
        if reason not in reasons:
            reasons.append(reason)

    # Stops before starts so a tick never sees both
    for device_id in removed:
        instructions.append(Instruction(Action.STOP, device_id))
    for register in toggled:
        if not register.active:
            instructions.append(Instruction(Action.STOP, register.id))
    for register in toggled:
        if register.active:
            instructions.append(Instruction(Action.START, register.id))
    for register in added:
        if register.active:
            instructions.append(Instruction(Action.START, register.id))

    for register in new_registers:
        old = previous_registers.get(register.id)
        if old is None:
            continue
        changed = changed_fields(old, register)
        if changed:
            instructions.append(Instruction(Action.UPDATE, register.id, changed))

    if reasons:
        return ConfigDiff(
            kind=ChangeKind.STRUCTURAL,
            reason=reasons[0],
            instructions=instructions,
            also=reasons[1:],
        )

    if instructions:
        return ConfigDiff(
            kind=ChangeKind.COSMETIC,
            reason=REASON_COSMETIC,
            instructions=instructions,
        )

    return ConfigDiff(kind=ChangeKind.NONE)


class ConfigDiffEngine:
    """
    Stateful wrapper around classify_change.

    Holds the baseline (fingerprint + descriptors). The first snapshot of
    a session only seeds the baseline; every later snapshot is classified
    against the previous baseline and then becomes the new one, so each
    change is reported exactly once.
    """

    def __init__(self):
        self._baseline: RegistryFingerprint | None = None
        self._registers: dict[str, DeviceRegister] = {}

    @property
    def primed(self) -> bool:
        return self._baseline is not None

    @property
    def baseline(self) -> RegistryFingerprint | None:
        return self._baseline

    def seed(self, registers: list[DeviceRegister]) -> ConfigDiff:
        """Set the baseline without emitting instructions"""
        self._baseline = RegistryFingerprint.of(registers)
        self._registers = {r.id: r for r in registers}
        logger.info(
            f"Registry baseline seeded: {len(registers)} registers "
            f"(fingerprint {self._baseline.digest})"
        )
        return ConfigDiff(kind=ChangeKind.NONE, reason=REASON_BASELINE)

    def reset(self) -> None:
        """Forget the baseline; the next snapshot seeds again"""
        self._baseline = None
        self._registers = {}

    def diff(self, registers: list[DeviceRegister]) -> ConfigDiff:
        """Classify a snapshot and advance the baseline"""
        if self._baseline is None:
            return self.seed(registers)

        previous = self._baseline
        result = classify_change(previous, self._registers, registers)

        self._baseline = RegistryFingerprint.of(registers)
        self._registers = {r.id: r for r in registers}

        if result.kind != ChangeKind.NONE:
            logger.debug(
                f"Registry {result.kind.value} change: {result.reason} "
                f"(fingerprint {previous.digest} → {self._baseline.digest})"
            )
        return result
