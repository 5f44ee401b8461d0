"""
GB-CARTPP-XC bootloader protocol.

A BootloaderSession owns a claimed USB interface of a device running the
bootloader. All memory access goes through vendor control transfers whose
32-bit address is split across wValue (low 16 bits) and wIndex (high 16 bits):

| Request | Code | Direction | Payload |
|---------|------|-----------|---------|
| RESET | 0x40 | OUT | none (wValue = boot target magic) |
| UNLOCK | 0x42 | OUT | none (wValue/wIndex = unlock magic) |
| LOCK | 0x43 | OUT | none |
| READ | 0x44 | IN | requested bytes |
| ERASE_FLASH | 0x45 | OUT | none, erases one 64-byte row |
| WRITE_FLASH | 0x46 | OUT | 64-byte aligned flash data |
| WRITE_CFG | 0x47 | OUT | configuration bytes |
| WRITE_ID | 0x48 | OUT | user ID bytes |

Writes and erases are refused by the device until the session is unlocked.
Transport errors propagate unchanged; nothing here retries.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from cartpp_fwupd.errors import ContractViolation, ShortTransferError
from cartpp_fwupd.firmware_image import FirmwareImage, crc16_xmodem
from cartpp_fwupd.models.device import FirmwareVersion, UnclaimedDevice, UsbDeviceKind
from cartpp_fwupd.models.verify import VerifyResult
from cartpp_fwupd.protocol.requests import (
    CONFIG_START,
    CONFIG_WRITE_LIMIT,
    FLASH_BLOCK_SIZE,
    FLASH_END,
    FLASH_IMAGE_BLOCK_SIZE,
    ID_END,
    ID_SIZE,
    ID_START,
    MAIN_FIRMWARE_START,
    RESET_MAGIC_BOOTLOADER,
    RESET_MAGIC_FIRMWARE,
    UNLOCK_INDEX,
    UNLOCK_VALUE,
    VendorRequest,
    split_address,
)
from cartpp_fwupd.protocol.usb_transport import UsbDeviceHandle

logger = logging.getLogger(__name__)

# Data memory (RAM and SFRs) is assumed to be mapped into the READ address
# space here; not confirmed against the bootloader
DATA_SPACE_BASE = 0xF0_0000

SFR_START = 0xF53
SFR_END = 0x1000

# Firmware diagnostics block, assumed to sit at the start of RAM bank 1
DIAGNOSTICS_ADDR = 0x100
_DIAGNOSTICS_FORMAT = "<HBB6BB"
DIAGNOSTICS_SIZE = struct.calcsize(_DIAGNOSTICS_FORMAT)

SFR_NAMES = {
    0xFFF: "TOSU",
    0xFFE: "TOSH",
    0xFFD: "TOSL",
    0xFFC: "STKPTR",
    0xFFB: "PCLATU",
    0xFFA: "PCLATH",
    0xFF9: "PCL",
    0xFF2: "INTCON",
    0xFF1: "INTCON2",
    0xFF0: "INTCON3",
    0xFD3: "OSCCON",
    0xFD2: "OSCCON2",
    0xFD1: "WDTCON",
    0xFD0: "RCON",
    0xF9F: "IPR1",
    0xF9E: "PIR1",
    0xF9D: "PIE1",
    0xF9B: "OSCTUNE",
    0xF9A: "ACTCON",
    0xF7F: "ANSELD",
    0xF7E: "ANSELC",
    0xF7D: "ANSELB",
    0xF7C: "ANSELA",
    0xF6D: "UCON",
    0xF6C: "USTAT",
    0xF6B: "UIR",
    0xF6A: "UIE",
    0xF69: "UEIR",
    0xF68: "UEIE",
    0xF67: "UFRMH",
    0xF66: "UFRML",
    0xF65: "UADDR",
    0xF64: "UEP0",
    0xF63: "UCFG",
    0xF62: "UEP1",
}

USB_ERROR_FLAGS = ("PID", "CRC5", "CRC16", "DFN8", "BTO", "BTS")


@dataclass(frozen=True)
class UsbErrorCounters:
    """USB error counters maintained by the firmware's interrupt handler."""
    pid: int
    crc5: int
    crc16: int
    dfn8: int
    bto: int
    bts: int
    flags: int

    @property
    def active_flags(self) -> list:
        return [name for bit, name in enumerate(USB_ERROR_FLAGS) if self.flags & (1 << bit)]


@dataclass(frozen=True)
class DeviceDiagnostics:
    """
    Post-mortem data captured by the firmware at boot.

    Attributes:
        initial_res_voltage: Supply voltage ADC reading at reset
        initial_rcon: RCON register at reset (reset cause bits)
        initial_stkptr: STKPTR at reset (stack overflow/underflow bits)
        usb_errors: Accumulated USB error counters
    """
    initial_res_voltage: int
    initial_rcon: int
    initial_stkptr: int
    usb_errors: UsbErrorCounters

    @classmethod
    def parse(cls, data: bytes) -> "DeviceDiagnostics":
        if len(data) < DIAGNOSTICS_SIZE:
            raise ShortTransferError(DIAGNOSTICS_SIZE, len(data))
        fields = struct.unpack(_DIAGNOSTICS_FORMAT, data[:DIAGNOSTICS_SIZE])
        return cls(
            initial_res_voltage=fields[0],
            initial_rcon=fields[1],
            initial_stkptr=fields[2],
            usb_errors=UsbErrorCounters(*fields[3:]),
        )


FlashWriteCallback = Callable[[int], None]
FlashVerifyCallback = Callable[[int, VerifyResult], None]


class BootloaderSession:
    """
    Claimed device in bootloader mode.

    Obtained from UnclaimedDevice.claim_bootloader(). Call unlock() once
    before any erase or write.

    Example:
        session = device.claim_bootloader()
        session.unlock()
        checksum = session.calc_flash_checksum()
        session.reset()
    """

    def __init__(self, handle: UsbDeviceHandle, kind: UsbDeviceKind):
        if not kind.is_bootloader:
            raise ContractViolation("BootloaderSession requires a device in bootloader mode")
        self._handle: Optional[UsbDeviceHandle] = handle
        self.kind = kind
        self.usb_address = handle.address

    @property
    def bootloader_version(self) -> FirmwareVersion:
        return self.kind.bl_version

    @property
    def firmware_version(self) -> FirmwareVersion:
        return self.kind.fw_version

    @property
    def _device(self) -> UsbDeviceHandle:
        if self._handle is None:
            raise ContractViolation(f"Bootloader session on USB device {self.usb_address:03} is closed")
        return self._handle

    def _take_handle(self) -> UsbDeviceHandle:
        handle = self._device
        self._handle = None
        return handle

    def _out(self, request: VendorRequest, addr: int, data: Optional[bytes] = None) -> None:
        value, index = split_address(addr)
        self._device.control_out(request, value, index, data)

    # Session control

    def unlock(self) -> None:
        """Enable erase/write requests."""
        self._device.control_out(VendorRequest.UNLOCK, UNLOCK_VALUE, UNLOCK_INDEX)
        logger.debug(f"Unlocked bootloader on USB device {self.usb_address:03}")

    def lock(self) -> None:
        """Disable erase/write requests."""
        self._device.control_out(VendorRequest.LOCK, 0, 0)

    def reset(self) -> None:
        """Boot the application firmware. The session is closed afterwards."""
        handle = self._take_handle()
        logger.debug(f"Resetting USB device {self.usb_address:03} into firmware")
        handle.control_out(VendorRequest.RESET, RESET_MAGIC_FIRMWARE, 0)

    def enter_bootloader(self) -> None:
        """Restart the bootloader. The session is closed afterwards."""
        handle = self._take_handle()
        logger.debug(f"Restarting bootloader on USB device {self.usb_address:03}")
        handle.control_out(VendorRequest.RESET, RESET_MAGIC_BOOTLOADER, 0)

    def release(self) -> UnclaimedDevice:
        """Release the interface and return to an unclaimed device."""
        handle = self._take_handle()
        handle.release_interface(0)
        return UnclaimedDevice(handle, self.kind)

    # Raw memory access

    def read(self, addr: int, length: int) -> bytes:
        """
        Read up to ``length`` bytes starting at ``addr``.

        Returns:
            Bytes returned by the device (may be short)
        """
        if length <= 0:
            raise ContractViolation("Read length must be positive")
        value, index = split_address(addr)
        return self._device.control_in(VendorRequest.READ, value, index, length)

    def read_bytes(self, addr: int, length: int) -> bytes:
        """Read exactly ``length`` bytes; a short read is an error."""
        data = self.read(addr, length)
        if len(data) != length:
            raise ShortTransferError(length, len(data))
        return data

    def read_byte(self, addr: int) -> int:
        return self.read_bytes(addr, 1)[0]

    def erase_flash(self, addr: int) -> None:
        """Erase the 64-byte flash row containing ``addr``."""
        if addr >= FLASH_END:
            raise ContractViolation(f"Flash erase address {addr:#06x} out of range")
        self._out(VendorRequest.ERASE_FLASH, addr)

    def write_flash(self, addr: int, data: bytes) -> None:
        if not data:
            raise ContractViolation("Flash write requires data")
        if addr % FLASH_BLOCK_SIZE:
            raise ContractViolation(f"Flash write address {addr:#06x} is not {FLASH_BLOCK_SIZE}-byte aligned")
        if addr + len(data) > FLASH_END:
            raise ContractViolation(f"Flash write {addr:#06x}+{len(data)} exceeds flash")
        self._out(VendorRequest.WRITE_FLASH, addr, data)

    def write_id(self, addr: int, data: bytes) -> None:
        if not 1 <= len(data) <= ID_SIZE:
            raise ContractViolation(f"ID write must be 1-{ID_SIZE} bytes, got {len(data)}")
        if addr < ID_START or addr + len(data) > ID_END:
            raise ContractViolation(f"ID write {addr:#08x}+{len(data)} out of range")
        self._out(VendorRequest.WRITE_ID, addr, data)

    def write_cfg(self, addr: int, data: bytes) -> None:
        if not 1 <= len(data) <= CONFIG_WRITE_LIMIT:
            raise ContractViolation(f"Config write must be 1-{CONFIG_WRITE_LIMIT} bytes, got {len(data)}")
        if addr < CONFIG_START or addr + len(data) > CONFIG_START + CONFIG_WRITE_LIMIT:
            raise ContractViolation(f"Config write {addr:#08x}+{len(data)} out of range")
        self._out(VendorRequest.WRITE_CFG, addr, data)

    # Image-level operations

    def write_flash_image(self, image: FirmwareImage, callback: Optional[FlashWriteCallback] = None) -> None:
        """
        Program every main-firmware block of the image.

        Blocks that are entirely 0xFF are erased instead of written.

        Args:
            image: Decoded firmware image
            callback: Called with each block address after it is programmed
        """
        for addr, block in image.iter_flash_blocks():
            if all(byte == 0xFF for byte in block):
                self.erase_flash(addr)
            else:
                self.write_flash(addr, block)
            if callback:
                callback(addr)

    def write_id_bytes(self, image: FirmwareImage) -> None:
        """Write each masked ID byte with its own request."""
        for addr, value in image.iter_id_bytes():
            self.write_id(addr, bytes([value]))

    def write_config_bytes(self, image: FirmwareImage) -> None:
        """Write each masked configuration byte with its own request."""
        for addr, value in image.iter_config_bytes():
            self.write_cfg(addr, bytes([value]))

    def calc_flash_checksum(self) -> int:
        """CRC16-XMODEM of device flash from 0x800 to the end."""
        data = bytearray()
        for addr in range(MAIN_FIRMWARE_START, FLASH_END, FLASH_IMAGE_BLOCK_SIZE):
            data += self.read_bytes(addr, FLASH_IMAGE_BLOCK_SIZE)
        return crc16_xmodem(bytes(data))

    def verify_flash(self, image: FirmwareImage, callback: Optional[FlashVerifyCallback] = None) -> VerifyResult:
        """
        Compare device flash with the image.

        Only the first 64 bytes of every 256-byte block are read back and
        compared.

        Args:
            image: Decoded firmware image
            callback: Called per block with (block address, running result)

        Returns:
            VerifyResult over the whole pass

        Raises:
            ShortTransferError: If the device returns fewer than 64 bytes
        """
        result = VerifyResult.valid()
        for block_addr, expected in image.iter_flash_blocks():
            actual = self.read_bytes(block_addr, FLASH_BLOCK_SIZE)
            for idx, (got, want) in enumerate(zip(actual, expected)):
                if got != want:
                    result = result.mark_error(block_addr | idx)
            if callback:
                callback(block_addr, result)
        return result

    def verify_id(self, image: FirmwareImage) -> VerifyResult:
        result = VerifyResult.valid()
        for addr, expected in image.iter_id_bytes():
            if self.read_byte(addr) != expected:
                result = result.mark_error(addr)
        return result

    def verify_cfg(self, image: FirmwareImage) -> VerifyResult:
        # NOTE: walks the ID bytes, not the configuration bytes
        result = VerifyResult.valid()
        for addr, expected in image.iter_id_bytes():
            if self.read_byte(addr) != expected:
                result = result.mark_error(addr)
        return result

    # Diagnostics

    def dump_sfrs(self) -> Dict[str, int]:
        """
        Read the special function registers.

        The data-space window at DATA_SPACE_BASE is an unconfirmed mapping:
        the released firmware serves diagnostics through its own vendor
        command, and a bootloader that does not map data memory into READ
        returns unrelated bytes here.

        Returns:
            Register name -> value, ordered by address
        """
        length = SFR_END - SFR_START
        data = self.read_bytes(DATA_SPACE_BASE | SFR_START, length)
        registers = {}
        for addr in sorted(SFR_NAMES):
            registers[SFR_NAMES[addr]] = data[addr - SFR_START]
        return registers

    def read_diagnostics(self) -> DeviceDiagnostics:
        """
        Read the diagnostics block the firmware fills in at boot.

        Both the block address (RAM 0x100) and its data-space mapping are
        unconfirmed; see dump_sfrs().
        """
        data = self.read_bytes(DATA_SPACE_BASE | DIAGNOSTICS_ADDR, DIAGNOSTICS_SIZE)
        return DeviceDiagnostics.parse(data)

    def __repr__(self) -> str:
        return f"BootloaderSession(address={self.usb_address}, kind={self.kind!r})"
