"""
GB-CARTPP-XC Firmware Updater

Flashes signed firmware images onto GB-CARTPP-XC cartridges over USB.
"""

__version__ = "0.3.0"

from .errors import (
    FwupdError,
    ContractViolation,
    DriverError,
    FirmwareDecodeError,
    PolicyError,
)
from .firmware_image import FirmwareArchive, FirmwareImage, TrustedKeys
from .models import DeviceRegistry, FirmwareVersion, UsbDeviceKind, UnclaimedDevice, VerifyResult
from .protocol.bootloader import BootloaderSession
from .protocol.usb_transport import UsbContext
from .core.update import UpdateFlow, UpdateConfig, UpdateObserver, UpdateOutcome, UpdateState

__all__ = [
    "__version__",
    "FwupdError",
    "ContractViolation",
    "DriverError",
    "FirmwareDecodeError",
    "PolicyError",
    "FirmwareArchive",
    "FirmwareImage",
    "TrustedKeys",
    "DeviceRegistry",
    "FirmwareVersion",
    "UsbDeviceKind",
    "UnclaimedDevice",
    "VerifyResult",
    "BootloaderSession",
    "UsbContext",
    "UpdateFlow",
    "UpdateConfig",
    "UpdateObserver",
    "UpdateOutcome",
    "UpdateState",
]
