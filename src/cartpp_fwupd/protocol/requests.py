"""
Vendor request codes and address-space layout of the GB-CARTPP-XC bootloader.

Every operation is a vendor control transfer whose (wValue, wIndex) pair
carries a 32-bit device address split into its low and high 16 bits.
"""

from enum import IntEnum
from typing import Tuple


class VendorRequest(IntEnum):
    """bRequest codes understood by the device."""
    RESET = 0x40
    IDENTIFY = 0x41
    UNLOCK = 0x42
    LOCK = 0x43
    READ = 0x44
    ERASE_FLASH = 0x45
    WRITE_FLASH = 0x46
    WRITE_CFG = 0x47
    WRITE_ID = 0x48


# wValue of a RESET request selects what the device boots into
RESET_MAGIC_FIRMWARE = 0x99
RESET_MAGIC_BOOTLOADER = 0x42

# Mode tag in the first byte of the IDENTIFY payload
IDENTIFY_TAG_BOOTLOADER = 0x42
IDENTIFY_TAG_FIRMWARE = 0x99
IDENTIFY_PAYLOAD_LEN = 5

UNLOCK_VALUE = 0xC2F2
UNLOCK_INDEX = 0xF09A

# Program flash
FLASH_START = 0x00_0000
FLASH_END = 0x00_8000
FLASH_SIZE = FLASH_END - FLASH_START
FLASH_BLOCK_SIZE = 64
FLASH_IMAGE_BLOCK_SIZE = 0x100
MAIN_FIRMWARE_START = 0x800

# User ID bytes
ID_START = 0x20_0000
ID_SIZE = 8
ID_END = ID_START + ID_SIZE

# Configuration bytes; the device accepts writes up to 16 bytes in, the
# image only ever carries 14
CONFIG_START = 0x30_0000
CONFIG_SIZE = 14
CONFIG_WRITE_LIMIT = 16
CONFIG_END = CONFIG_START + CONFIG_SIZE

# Factory calibration bytes that a field update must never touch
RESERVED_CONFIG_OFFSETS = (4, 7)


def split_address(addr: int) -> Tuple[int, int]:
    """Split a 32-bit address into (wValue, wIndex)."""
    return addr & 0xFFFF, (addr >> 16) & 0xFFFF
