"""USB protocol layer - pyusb transport and GB-CARTPP-XC vendor requests."""

from .usb_transport import (
    UsbContext,
    UsbDeviceHandle,
    translate_usb_error,
    control_timeout_ms,
    MAX_PAYLOAD,
)
from .requests import VendorRequest, split_address

__all__ = [
    # Transport
    "UsbContext",
    "UsbDeviceHandle",
    "translate_usb_error",
    "control_timeout_ms",
    "MAX_PAYLOAD",
    # Vendor requests
    "VendorRequest",
    "split_address",
]
