"""
Result objects for core operations.

Provides a unified result structure the CLI uses to display operation
outcomes and to pick an exit code.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any


@dataclass
class OperationResult:
    """
    Unified result object for all core operations.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "update_firmware", "list_devices")
        device: Description of the device operated on
        image_version: Firmware image version, if an image was involved
        checksums: Named CRC16 values ("image", "device")
        warnings: Non-blocking issues encountered
        errors: Blocking errors that caused failure
        metadata: Additional operation-specific data
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    device: str = ""
    image_version: str = ""
    checksums: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark result as failed."""
        self.errors.append(message)
        self.ok = False

    @classmethod
    def success(cls, operation: str, device: str = "", **kwargs) -> "OperationResult":
        """Create a successful result."""
        return cls(ok=True, operation=operation, device=device, **kwargs)

    @classmethod
    def failure(cls, operation: str, error: str, device: str = "", **kwargs) -> "OperationResult":
        """Create a failed result."""
        result = cls(ok=False, operation=operation, device=device, **kwargs)
        result.errors.append(error)
        return result
