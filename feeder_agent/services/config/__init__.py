"""
Registry Configuration

Responsibilities:
- Normalize and validate registry snapshots from the backend
- Hold the live registry for the session
- Classify snapshot changes as none / cosmetic / structural
"""

from .diff import ConfigDiff, ConfigDiffEngine, ChangeKind
from .registry import RegistryState, RegistryFingerprint
from .validator import RegistryValidator

__all__ = [
    "ConfigDiff",
    "ConfigDiffEngine",
    "ChangeKind",
    "RegistryState",
    "RegistryFingerprint",
    "RegistryValidator",
]
