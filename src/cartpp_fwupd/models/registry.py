"""
Device registry for GB-CARTPP-XC cartridges.

Finds cartridges among all USB devices, identifies what they are running,
enforces the one-device-at-a-time policy, and waits for a device to come
back after a mode-changing reset.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from cartpp_fwupd.errors import (
    AmbiguousDeviceError,
    DriverError,
    NoDeviceDetectedError,
    NoDeviceError,
    ReappearanceTimeout,
    ShortTransferError,
    UnsupportedUsbOperation,
    UsbIoError,
    UsbPipeError,
)
from cartpp_fwupd.models.device import PRODUCT_NAME, UnclaimedDevice, UsbDeviceKind, identify
from cartpp_fwupd.protocol.usb_transport import UsbContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsbMatch:
    """Descriptor values a GB-CARTPP-XC is recognised by."""
    vendor_id: int
    product_ids: Tuple[int, ...]
    manufacturer: str
    product: str


# Shared V-USB vendor ID; the strings tell cartridges apart from other devices
GB_CARTPP_XC = UsbMatch(
    vendor_id=0x16C0,
    product_ids=(0x05DC, 0x05E1),
    manufacturer="gekkio.fi",
    product=PRODUCT_NAME,
)

# Errors from a single device that only mean "skip this one"
TRANSIENT_ERRORS = (NoDeviceError, UsbIoError, UsbPipeError)

DevicePredicate = Callable[[UnclaimedDevice], bool]


def _close_except(devices: List[UnclaimedDevice], keep: Optional[UnclaimedDevice]) -> None:
    for device in devices:
        if device is not keep:
            device.close()


class DeviceRegistry:
    """
    Enumerates GB-CARTPP-XC devices through a UsbContext.

    Args:
        context: Shared USB context
        match: Descriptor values to match (default: GB-CARTPP-XC)
        clock: Monotonic clock in seconds (injectable for tests)
        sleep: Sleep function in seconds (injectable for tests)
    """

    def __init__(
        self,
        context: UsbContext,
        match: UsbMatch = GB_CARTPP_XC,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.context = context
        self.match = match
        self._clock = clock
        self._sleep = sleep

    def _identify_device(self, raw) -> Optional[UnclaimedDevice]:
        if raw.idVendor != self.match.vendor_id or raw.idProduct not in self.match.product_ids:
            return None
        if raw.iManufacturer == 0 or raw.iProduct == 0:
            return None

        handle = self.context.open(raw)
        try:
            try:
                manufacturer = handle.get_string_descriptor(raw.iManufacturer)
            except UnsupportedUsbOperation:
                # Windows reports this until a driver is installed
                logger.debug(f"USB device {handle.address:03} has no driver")
                return UnclaimedDevice(handle, UsbDeviceKind.unusable())
            product = handle.get_string_descriptor(raw.iProduct)
            if (manufacturer, product) != (self.match.manufacturer, self.match.product):
                logger.debug(f"Ignoring USB device {handle.address:03}: {manufacturer!r} {product!r}")
                handle.close()
                return None

            try:
                kind = identify(handle)
            except ShortTransferError as e:
                logger.debug(f"USB device {handle.address:03} sent a short identify response: {e}")
                kind = UsbDeviceKind.unusable()
        except DriverError:
            handle.close()
            raise
        return UnclaimedDevice(handle, kind)

    def list_devices(self) -> List[UnclaimedDevice]:
        """
        List every matching device, usable or not.

        Returns:
            Matched devices in enumeration order

        Raises:
            DriverError: On a non-transient transport failure
        """
        devices = []
        for raw in self.context.find_devices():
            try:
                device = self._identify_device(raw)
            except TRANSIENT_ERRORS as e:
                logger.debug(f"Skipping USB device {getattr(raw, 'address', '?')}: {e}")
                continue
            if device is not None:
                logger.debug(f"Found {device}")
                devices.append(device)
        return devices

    def select_candidate(self, devices: List[UnclaimedDevice]) -> UnclaimedDevice:
        """
        Pick the single usable device.

        Raises:
            NoDeviceDetectedError: If no device is in bootloader or firmware mode
            AmbiguousDeviceError: If more than one is
        """
        usable = [device for device in devices if device.kind.is_usable]
        if not usable:
            unusable = tuple(devices)
            for device in unusable:
                logger.error(f"Detected but unusable {device}")
            raise NoDeviceDetectedError(f"No {PRODUCT_NAME} devices detected", unusable=unusable)
        if len(usable) > 1:
            raise AmbiguousDeviceError(
                f"{len(usable)} {PRODUCT_NAME} devices detected, but only one can be "
                "connected during firmware update",
                count=len(usable),
            )
        return usable[0]

    def discover(self) -> UnclaimedDevice:
        """
        List devices and apply the single-candidate policy.

        Handles of every device that is not selected are closed.
        """
        devices = self.list_devices()
        logger.debug(f"Detected {len(devices)} candidate devices")
        selected = None
        try:
            selected = self.select_candidate(devices)
            return selected
        finally:
            _close_except(devices, selected)

    def wait_for_device(
        self,
        predicate: DevicePredicate,
        interval: float = 0.2,
        timeout: float = 10.0,
    ) -> UnclaimedDevice:
        """
        Poll until exactly one device satisfies ``predicate``.

        Sleeps before every enumeration, since the device needs time to drop
        off the bus after a reset.

        Raises:
            ReappearanceTimeout: Once ``timeout`` seconds have elapsed
            DriverError: On a non-transient enumeration failure
        """
        start = self._clock()
        while True:
            self._sleep(interval)
            devices = self.list_devices()
            matches = [device for device in devices if predicate(device)]
            selected = matches[0] if len(matches) == 1 else None
            _close_except(devices, selected)
            if selected is not None:
                return selected
            elapsed = self._clock() - start
            if elapsed >= timeout:
                logger.error("Failed to detect device after reset")
                raise ReappearanceTimeout(
                    f"Device did not reappear within {timeout:g} seconds after reset",
                    elapsed=elapsed,
                )
