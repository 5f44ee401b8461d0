"""Shared fakes: an emulated GB-CARTPP-XC on a fake USB bus, image builders, signing keys."""

import io
import tarfile
from typing import Dict, Optional

import pytest
from intelhex import IntelHex

from cartpp_fwupd.models.registry import DeviceRegistry
from cartpp_fwupd.protocol.usb_transport import UsbContext

FLASH_SIZE = 0x8000
DATA_SPACE_BASE = 0xF0_0000


class FakeUsbCtx:
    """Stands in for pyusb's per-device resource manager (``device._ctx``)."""

    def __init__(self):
        self.claimed = []
        self.released = []
        self.disposed = 0

    def managed_claim_interface(self, device, intf):
        self.claimed.append(intf)

    def managed_release_interface(self, device, intf):
        self.released.append(intf)

    def dispose(self, device, close_handle=True):
        self.disposed += 1


class CartridgeMemory:
    """Device memory that survives resets and re-enumeration."""

    def __init__(self, bl_version=(1, 0)):
        self.flash = bytearray(b"\xff" * FLASH_SIZE)
        self.id = bytearray(b"\xff" * 8)
        self.config = bytearray(b"\xff" * 16)
        self.ram = bytearray(0x1000)
        self.bl_version = bl_version

    @property
    def fw_version(self):
        """(major, minor) as the firmware reports it, taken from the ID bytes."""
        return self.id[3], self.id[2]

    def read(self, addr: int, length: int) -> bytes:
        if addr < FLASH_SIZE:
            return bytes(self.flash[addr:addr + length])
        if 0x200000 <= addr < 0x200008:
            offset = addr - 0x200000
            return bytes(self.id[offset:offset + length])
        if 0x300000 <= addr < 0x300010:
            offset = addr - 0x300000
            return bytes(self.config[offset:offset + length])
        if DATA_SPACE_BASE <= addr < DATA_SPACE_BASE + len(self.ram):
            offset = addr - DATA_SPACE_BASE
            return bytes(self.ram[offset:offset + length])
        return bytes(length)


class FakeCartridge:
    """
    Raw pyusb device emulating a GB-CARTPP-XC.

    Every control transfer is recorded in ``requests`` as
    (bmRequestType, bRequest, wValue, wIndex, data_or_wLength, timeout).
    """

    def __init__(
        self,
        address: int = 5,
        mode: str = "bootloader",
        memory: Optional[CartridgeMemory] = None,
        manufacturer: str = "gekkio.fi",
        product: str = "GB-CARTPP-XC",
        id_vendor: int = 0x16C0,
        id_product: int = 0x05DC,
    ):
        self.address = address
        self.bus = 1
        self.mode = mode
        self.memory = memory or CartridgeMemory()
        major, minor = self.memory.fw_version
        self.bcdDevice = (major << 8) | minor
        self.idVendor = id_vendor
        self.idProduct = id_product
        self.iManufacturer = 1
        self.iProduct = 2
        self.strings = {1: manufacturer, 2: product}
        self.requests = []
        self.errors: Dict[int, Exception] = {}
        self.unlocked = False
        self.reset_handler = None
        self._ctx = FakeUsbCtx()

    @property
    def vendor_requests(self):
        """Recorded vendor requests as (bRequest, wValue, wIndex, data)."""
        return [
            (req, value, index, data)
            for rtype, req, value, index, data, _ in self.requests
            if rtype & 0x60 == 0x40
        ]

    def is_kernel_driver_active(self, intf):
        return False

    def detach_kernel_driver(self, intf):
        pass

    def _identify_payload(self) -> bytes:
        tag = {"bootloader": 0x42, "firmware": 0x99}.get(self.mode, 0x00)
        bl_major, bl_minor = self.memory.bl_version
        fw_major, fw_minor = self.memory.fw_version
        return bytes([tag, bl_minor, bl_major, fw_minor, fw_major])

    def ctrl_transfer(self, bmRequestType, bRequest, wValue=0, wIndex=0, data_or_wLength=None, timeout=None):
        self.requests.append((bmRequestType, bRequest, wValue, wIndex, data_or_wLength, timeout))
        if bRequest in self.errors:
            raise self.errors[bRequest]

        if bmRequestType == 0x80 and bRequest == 0x06:
            text = self.strings.get(wValue & 0xFF, "")
            encoded = text.encode("utf-16-le")
            return bytes([2 + len(encoded), 0x03]) + encoded

        addr = wValue | (wIndex << 16)
        if bmRequestType == 0xC0:
            if bRequest == 0x41:
                return self._identify_payload()[:data_or_wLength]
            if bRequest == 0x44:
                return self.memory.read(addr, data_or_wLength)
            return b""

        data = bytes(data_or_wLength or b"")
        if bRequest == 0x40:
            if self.reset_handler is not None:
                self.reset_handler(self, wValue)
        elif bRequest == 0x42:
            self.unlocked = (wValue, wIndex) == (0xC2F2, 0xF09A)
        elif bRequest == 0x43:
            self.unlocked = False
        elif bRequest == 0x45:
            row = addr & ~0x3F
            self.memory.flash[row:row + 64] = b"\xff" * 64
        elif bRequest == 0x46:
            self.memory.flash[addr:addr + len(data)] = data
        elif bRequest == 0x47:
            offset = addr - 0x300000
            self.memory.config[offset:offset + len(data)] = data
        elif bRequest == 0x48:
            offset = addr - 0x200000
            self.memory.id[offset:offset + len(data)] = data
        return len(data)


class FakeBus(UsbContext):
    """
    USB context whose enumeration returns fake devices.

    A RESET request makes the device leave the bus and, unless
    ``reappear`` is False, come back at the next address in the mode the
    reset selected.
    """

    def __init__(self, *devices, reappear: bool = True):
        super().__init__(backend=None)
        self.devices = []
        self.attached = []
        self.reappear = reappear
        self.resets = []
        for device in devices:
            self.attach(device)

    def attach(self, device):
        device.reset_handler = self._on_reset
        self.devices.append(device)
        self.attached.append(device)
        return device

    def _on_reset(self, device, magic):
        self.resets.append((device.address, magic))
        self.devices.remove(device)
        if self.reappear:
            mode = "firmware" if magic == 0x99 else "bootloader"
            self.attach(FakeCartridge(address=device.address + 1, mode=mode, memory=device.memory))

    def find_devices(self) -> list:
        return list(self.devices)


class ManualClock:
    """Clock advanced only by sleep(); time kept in integer milliseconds."""

    def __init__(self):
        self.now_ms = 0

    def time(self) -> float:
        return self.now_ms / 1000

    def sleep(self, seconds: float) -> None:
        self.now_ms += round(seconds * 1000)


def make_registry(bus, clock=None):
    clock = clock or ManualClock()
    return DeviceRegistry(bus, clock=clock.time, sleep=clock.sleep)


def build_hex(
    flash: Optional[Dict[int, bytes]] = None,
    id_bytes: Optional[Dict[int, int]] = None,
    config_bytes: Optional[Dict[int, int]] = None,
) -> str:
    """Intel HEX text with flash chunks {addr: data} plus single ID/config bytes."""
    ih = IntelHex()
    for addr, data in (flash or {}).items():
        ih.frombytes(data, offset=addr)
    for addr, value in (id_bytes or {}).items():
        ih[addr] = value
    for addr, value in (config_bytes or {}).items():
        ih[addr] = value
    out = io.StringIO()
    ih.write_hex_file(out)
    return out.getvalue()


def sample_firmware(version=(1, 3)) -> Dict[str, dict]:
    """Arguments for build_hex describing a small firmware release."""
    major, minor = version
    return {
        "flash": {0x800: bytes(range(256)) * 4, 0x4000: b"\x12\x34" * 64},
        "id_bytes": {0x200000: 0x01, 0x200002: minor, 0x200003: major},
        "config_bytes": {0x300001: 0x22, 0x300004: 0x55, 0x300005: 0x1F},
    }


def build_archive(members: Dict[str, bytes]) -> bytes:
    """gzip-compressed tar containing ``members`` in order."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def generate_signing_key(name: str):
    import pgpy
    from pgpy.constants import (
        CompressionAlgorithm,
        HashAlgorithm,
        KeyFlags,
        PubKeyAlgorithm,
        SymmetricKeyAlgorithm,
    )

    key = pgpy.PGPKey.new(PubKeyAlgorithm.RSAEncryptOrSign, 2048)
    uid = pgpy.PGPUID.new(name, email=f"{name.lower().replace(' ', '.')}@example.com")
    key.add_uid(
        uid,
        usage={KeyFlags.Sign},
        hashes=[HashAlgorithm.SHA256],
        ciphers=[SymmetricKeyAlgorithm.AES256],
        compression=[CompressionAlgorithm.Uncompressed],
    )
    return key


@pytest.fixture(scope="session")
def signing_key():
    return generate_signing_key("Release Signer")


@pytest.fixture(scope="session")
def other_key():
    return generate_signing_key("Someone Else")


@pytest.fixture
def clock():
    return ManualClock()
