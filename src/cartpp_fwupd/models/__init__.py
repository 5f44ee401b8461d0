"""
Device model for GB-CARTPP-XC cartridges.

Provides identification, the unclaimed-device type and discovery policy.
"""

from .device import (
    FirmwareVersion,
    UNKNOWN_VERSION,
    DeviceMode,
    UsbDeviceKind,
    UnclaimedDevice,
    parse_identify_payload,
)
from .verify import VerifyResult
from .registry import DeviceRegistry, UsbMatch, GB_CARTPP_XC

__all__ = [
    "FirmwareVersion",
    "UNKNOWN_VERSION",
    "DeviceMode",
    "UsbDeviceKind",
    "UnclaimedDevice",
    "parse_identify_payload",
    "VerifyResult",
    "DeviceRegistry",
    "UsbMatch",
    "GB_CARTPP_XC",
]
