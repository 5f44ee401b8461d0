"""
Device model for GB-CARTPP-XC cartridges.

An UnclaimedDevice is what discovery hands out: its USB interface is not
claimed, so only enumeration-level operations exist on it (address, version,
mode-changing resets). Claiming a device that reports bootloader mode yields a
BootloaderSession (see protocol.bootloader), the only type that carries
flash/ID/config operations.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from cartpp_fwupd.errors import ContractViolation, ShortTransferError
from cartpp_fwupd.protocol.requests import (
    IDENTIFY_PAYLOAD_LEN,
    IDENTIFY_TAG_BOOTLOADER,
    IDENTIFY_TAG_FIRMWARE,
    RESET_MAGIC_BOOTLOADER,
    RESET_MAGIC_FIRMWARE,
    VendorRequest,
)
from cartpp_fwupd.protocol.usb_transport import UsbDeviceHandle

logger = logging.getLogger(__name__)

PRODUCT_NAME = "GB-CARTPP-XC"


@dataclass(frozen=True)
class FirmwareVersion:
    """Firmware or bootloader version; compared for equality only."""
    major: int
    minor: int

    @property
    def is_unknown(self) -> bool:
        return (self.major, self.minor) == (0xFF, 0xFF)

    def __str__(self) -> str:
        if self.is_unknown:
            return "???"
        return f"{self.major}.{self.minor}"


UNKNOWN_VERSION = FirmwareVersion(0xFF, 0xFF)


class DeviceMode(Enum):
    """What the device is currently running."""
    BOOTLOADER = "bootloader"
    FIRMWARE = "firmware"
    UNUSABLE = "unusable"


@dataclass(frozen=True)
class UsbDeviceKind:
    """
    Identification result for a matched device.

    Attributes:
        mode: Bootloader, application firmware, or unusable
        bl_version: Bootloader version (None when unusable)
        fw_version: Application firmware version (None when unusable)
    """
    mode: DeviceMode
    bl_version: Optional[FirmwareVersion] = None
    fw_version: Optional[FirmwareVersion] = None

    @classmethod
    def bootloader(cls, bl_version: FirmwareVersion, fw_version: FirmwareVersion) -> "UsbDeviceKind":
        return cls(DeviceMode.BOOTLOADER, bl_version, fw_version)

    @classmethod
    def firmware(cls, fw_version: FirmwareVersion, bl_version: FirmwareVersion) -> "UsbDeviceKind":
        return cls(DeviceMode.FIRMWARE, bl_version, fw_version)

    @classmethod
    def unusable(cls) -> "UsbDeviceKind":
        return cls(DeviceMode.UNUSABLE)

    @property
    def is_bootloader(self) -> bool:
        return self.mode is DeviceMode.BOOTLOADER

    @property
    def is_firmware(self) -> bool:
        return self.mode is DeviceMode.FIRMWARE

    @property
    def is_usable(self) -> bool:
        return self.mode is not DeviceMode.UNUSABLE


def parse_identify_payload(payload: bytes) -> UsbDeviceKind:
    """
    Decode the 5-byte IDENTIFY payload.

    Layout: mode tag, bootloader minor, bootloader major, firmware minor,
    firmware major.
    """
    if len(payload) < IDENTIFY_PAYLOAD_LEN:
        raise ShortTransferError(IDENTIFY_PAYLOAD_LEN, len(payload))
    bl_version = FirmwareVersion(major=payload[2], minor=payload[1])
    fw_version = FirmwareVersion(major=payload[4], minor=payload[3])
    if payload[0] == IDENTIFY_TAG_BOOTLOADER:
        return UsbDeviceKind.bootloader(bl_version, fw_version)
    if payload[0] == IDENTIFY_TAG_FIRMWARE:
        return UsbDeviceKind.firmware(fw_version, bl_version)
    return UsbDeviceKind.unusable()


def identify(handle: UsbDeviceHandle) -> UsbDeviceKind:
    """Send the IDENTIFY vendor request and classify the device."""
    payload = handle.control_in(VendorRequest.IDENTIFY, 0, 0, IDENTIFY_PAYLOAD_LEN)
    return parse_identify_payload(payload)


class UnclaimedDevice:
    """
    Matched device whose USB interface is not claimed.

    Mode-changing resets and claiming consume the device: the handle moves
    elsewhere (or off the bus), so any later call is a contract violation.
    """

    def __init__(self, handle: UsbDeviceHandle, kind: UsbDeviceKind):
        self._handle: Optional[UsbDeviceHandle] = handle
        self.kind = kind
        self._address = handle.address
        self._version = handle.version

    @property
    def usb_address(self) -> int:
        return self._address

    @property
    def version(self) -> Tuple[int, int]:
        """Device release number (bcdDevice) as (major, minor)."""
        return self._version

    def _take_handle(self) -> UsbDeviceHandle:
        if self._handle is None:
            raise ContractViolation(f"USB device {self._address:03} was already consumed")
        handle, self._handle = self._handle, None
        return handle

    def close(self) -> None:
        """Drop the USB handle without talking to the device."""
        if self._handle is not None:
            handle, self._handle = self._handle, None
            handle.close()

    def enter_bootloader(self) -> None:
        """Ask the application firmware to reboot into the bootloader."""
        handle = self._take_handle()
        logger.debug(f"Requesting bootloader mode on USB device {self._address:03}")
        handle.control_out(VendorRequest.RESET, RESET_MAGIC_BOOTLOADER, 0)

    def reset(self) -> None:
        """Reboot into the application firmware."""
        handle = self._take_handle()
        logger.debug(f"Requesting reset on USB device {self._address:03}")
        handle.control_out(VendorRequest.RESET, RESET_MAGIC_FIRMWARE, 0)

    def claim_bootloader(self):
        """
        Claim the interface of a device in bootloader mode.

        Returns:
            BootloaderSession (not yet unlocked)

        Raises:
            ContractViolation: If the device is not in bootloader mode
            DriverError: If claiming the interface fails
        """
        from cartpp_fwupd.protocol.bootloader import BootloaderSession

        if not self.kind.is_bootloader:
            raise ContractViolation(f"{self} is not in bootloader mode")
        handle = self._take_handle()
        handle.claim_interface(0)
        return BootloaderSession(handle, self.kind)

    def __str__(self) -> str:
        if self.kind.is_bootloader:
            return (
                f"USB device {self._address:03}: {PRODUCT_NAME} v{self.kind.fw_version} "
                f"(bootloader v{self.kind.bl_version})"
            )
        if self.kind.is_firmware:
            return f"USB device {self._address:03}: {PRODUCT_NAME} v{self.kind.fw_version}"
        return f"USB device {self._address:03}: {PRODUCT_NAME}? (no driver installed)"

    def __repr__(self) -> str:
        return f"UnclaimedDevice(address={self._address}, kind={self.kind!r})"
