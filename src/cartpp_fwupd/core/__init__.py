"""
Core module for the GB-CARTPP-XC firmware updater.

This module provides the single source of truth for:
- Signature gating (safety.py)
- Result objects (results.py)
- Update orchestration (update.py)
- Unified update/list/inspect/diagnose workflows (actions.py)

The CLI calls into this module rather than implementing its own logic.
"""

from .safety import SignaturePolicy, require_valid_signature
from .results import OperationResult
from .update import (
    UpdateFlow,
    UpdateConfig,
    UpdateObserver,
    UpdateOutcome,
    UpdateState,
)
from .actions import (
    update_firmware,
    list_devices,
    inspect_image,
    read_diagnostics,
)

__all__ = [
    "SignaturePolicy",
    "require_valid_signature",
    "OperationResult",
    "UpdateFlow",
    "UpdateConfig",
    "UpdateObserver",
    "UpdateOutcome",
    "UpdateState",
    "update_firmware",
    "list_devices",
    "inspect_image",
    "read_diagnostics",
]
