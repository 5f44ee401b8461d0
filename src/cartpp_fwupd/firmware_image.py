"""
GB-CARTPP-XC firmware image handling.

Firmware is distributed as a gzip-compressed tar archive:

| Member | Required | Description |
|--------|----------|-------------|
| GB-CARTPP-XC.hex | yes | Intel HEX image (ASCII) |
| GB-CARTPP-XC.hex.asc | no | ASCII-armored detached OpenPGP signature over the hex file |

Other members are skipped with a warning.

The hex file addresses three memory regions of the PIC18 target:

| Range | Region | Notes |
|-------|--------|-------|
| 0x000000-0x007FFF | program flash | 32 KiB, erased state 0xFF |
| 0x200000-0x200007 | user ID bytes | sparse, mask-tracked |
| 0x300000-0x30000D | configuration bytes | sparse, mask-tracked |

Only ID/config bytes actually present in the hex file are ever written, so a
hex file can program a subset of those regions. Configuration offsets 4 and 7
hold factory calibration and are always dropped from the mask.
"""

import binascii
import io
import logging
import sys
import tarfile
import zlib
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Iterator, List, NamedTuple, Optional, Tuple

import pgpy
from intelhex import IntelHex, IntelHexError
from pgpy.errors import PGPError

from cartpp_fwupd.errors import ContractViolation, FirmwareDecodeError, SignatureFormatError
from cartpp_fwupd.models.device import FirmwareVersion
from cartpp_fwupd.protocol.requests import (
    CONFIG_END,
    CONFIG_SIZE,
    CONFIG_START,
    FLASH_END,
    FLASH_IMAGE_BLOCK_SIZE,
    FLASH_SIZE,
    FLASH_START,
    ID_END,
    ID_SIZE,
    ID_START,
    MAIN_FIRMWARE_START,
    RESERVED_CONFIG_OFFSETS,
)

logger = logging.getLogger(__name__)

ARCHIVE_HEX_NAME = "GB-CARTPP-XC.hex"
ARCHIVE_SIGNATURE_NAME = "GB-CARTPP-XC.hex.asc"


def crc16_xmodem(data: bytes) -> int:
    """CRC16-XMODEM (poly 0x1021, init 0x0000)."""
    return binascii.crc_hqx(data, 0)


@dataclass(frozen=True)
class TrustedKeys:
    """ASCII-armored OpenPGP public keys accepted as firmware signers."""
    keys: Tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.keys)


def default_trusted_keys() -> TrustedKeys:
    """Load every ``*.asc`` key shipped in the ``cartpp_fwupd.keys`` package."""
    root = resources.files("cartpp_fwupd.keys")
    entries = sorted(
        (item for item in root.iterdir() if item.name.endswith(".asc")),
        key=lambda item: item.name,
    )
    return TrustedKeys(tuple(item.read_text(encoding="ascii") for item in entries))


class _Region(NamedTuple):
    name: str
    start: int
    end: int


_REGIONS = (
    _Region("flash", FLASH_START, FLASH_END),
    _Region("id", ID_START, ID_END),
    _Region("config", CONFIG_START, CONFIG_END),
)


def _region_for(addr: int) -> Optional[_Region]:
    for region in _REGIONS:
        if region.start <= addr < region.end:
            return region
    return None


@dataclass
class FirmwareImage:
    """
    Decoded, ready-to-flash firmware.

    Attributes:
        flash: 32768 bytes of program flash
        id: 8 user ID bytes
        id_mask: True where the ID byte should be programmed
        config: 14 configuration bytes
        config_mask: True where the config byte should be programmed
    """
    flash: bytearray = field(default_factory=lambda: bytearray(b"\xff" * FLASH_SIZE))
    id: bytearray = field(default_factory=lambda: bytearray(b"\xff" * ID_SIZE))
    id_mask: List[bool] = field(default_factory=lambda: [False] * ID_SIZE)
    config: bytearray = field(default_factory=lambda: bytearray(b"\xff" * CONFIG_SIZE))
    config_mask: List[bool] = field(default_factory=lambda: [False] * CONFIG_SIZE)

    def iter_flash_blocks(self) -> Iterator[Tuple[int, bytes]]:
        """Yield (address, 256-byte block) for the main firmware area."""
        for addr in range(MAIN_FIRMWARE_START, FLASH_SIZE, FLASH_IMAGE_BLOCK_SIZE):
            yield addr, bytes(self.flash[addr:addr + FLASH_IMAGE_BLOCK_SIZE])

    def iter_id_bytes(self) -> Iterator[Tuple[int, int]]:
        """Yield (address, value) for every masked ID byte."""
        for idx, (value, programmed) in enumerate(zip(self.id, self.id_mask)):
            if programmed:
                yield ID_START | idx, value

    def iter_config_bytes(self) -> Iterator[Tuple[int, int]]:
        """Yield (address, value) for every masked configuration byte."""
        for idx, (value, programmed) in enumerate(zip(self.config, self.config_mask)):
            if programmed:
                yield CONFIG_START | idx, value

    def checksum(self) -> int:
        """CRC16-XMODEM of the main firmware area."""
        return crc16_xmodem(bytes(self.flash[MAIN_FIRMWARE_START:]))

    def version(self) -> FirmwareVersion:
        # Major lives in ID byte 3, minor in ID byte 2
        return FirmwareVersion(major=self.id[3], minor=self.id[2])

    def to_intel_hex(self) -> str:
        """Encode flash plus the masked ID/config bytes as Intel HEX text."""
        ih = IntelHex()
        ih.frombytes(bytes(self.flash), offset=FLASH_START)
        for addr, value in self.iter_id_bytes():
            ih[addr] = value
        for addr, value in self.iter_config_bytes():
            ih[addr] = value
        out = io.StringIO()
        ih.write_hex_file(out)
        return out.getvalue()

    @classmethod
    def from_intel_hex(cls, text: str) -> "FirmwareImage":
        """
        Decode Intel HEX text into an image.

        Raises:
            FirmwareDecodeError: On malformed records or out-of-range data
        """
        ih = IntelHex()
        try:
            ih.loadhex(io.StringIO(text))
        except (IntelHexError, ValueError) as e:
            raise FirmwareDecodeError(f"Invalid Intel HEX data: {e}") from e

        image = cls()
        for start, stop in ih.segments():
            region = _region_for(start)
            if region is None:
                raise FirmwareDecodeError(f"Address out of bounds: {start:08x}")
            if stop > region.end:
                raise FirmwareDecodeError(
                    f"Data at {start:08x}-{stop - 1:08x} overruns the {region.name} region "
                    f"(ends at {region.end - 1:08x})"
                )
            data = ih.gets(start, stop - start)
            offset = start - region.start
            if region.name == "flash":
                image.flash[offset:offset + len(data)] = data
            elif region.name == "id":
                image.id[offset:offset + len(data)] = data
                for idx in range(offset, offset + len(data)):
                    image.id_mask[idx] = True
            else:
                image.config[offset:offset + len(data)] = data
                for idx in range(offset, offset + len(data)):
                    image.config_mask[idx] = True

        for idx in RESERVED_CONFIG_OFFSETS:
            image.config[idx] = 0xFF
            image.config_mask[idx] = False
        return image


class FirmwareArchive:
    """
    Firmware archive before decoding: raw hex bytes plus optional signature.

    Example:
        archive = FirmwareArchive.from_path("firmware.tar.gz")
        if archive is not None and archive.has_valid_signature():
            image = archive.decode()
    """

    def __init__(
        self,
        hex_file: bytes,
        sig_file: Optional[bytes] = None,
        trusted_keys: Optional[TrustedKeys] = None,
    ):
        self._hex_file = hex_file
        self._sig_file = sig_file
        self._trusted_keys = trusted_keys
        self._decoded = False

    @classmethod
    def open(cls, data: bytes, trusted_keys: Optional[TrustedKeys] = None) -> Optional["FirmwareArchive"]:
        """
        Read a gzip-compressed tar archive.

        Args:
            data: Raw archive bytes
            trusted_keys: Keys accepted as signers (default: shipped keys)

        Returns:
            FirmwareArchive, or None if the archive holds no firmware image

        Raises:
            FirmwareDecodeError: If the archive is corrupt
        """
        hex_file: Optional[bytes] = None
        sig_file: Optional[bytes] = None
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                for member in tar:
                    if member.name not in (ARCHIVE_HEX_NAME, ARCHIVE_SIGNATURE_NAME):
                        logger.warning(f"Skipping unknown firmware archive file {member.name}")
                        continue
                    stream = tar.extractfile(member)
                    if stream is None:
                        raise FirmwareDecodeError(f"Archive entry {member.name} is not a regular file")
                    content = stream.read()
                    if member.name == ARCHIVE_HEX_NAME:
                        if hex_file is not None:
                            raise FirmwareDecodeError(f"Duplicate archive entry {member.name}")
                        hex_file = content
                    else:
                        if sig_file is not None:
                            raise FirmwareDecodeError(f"Duplicate archive entry {member.name}")
                        sig_file = content
        except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
            raise FirmwareDecodeError(f"Invalid firmware archive: {e}") from e

        if hex_file is None:
            return None
        return cls(hex_file, sig_file, trusted_keys)

    @classmethod
    def from_path(cls, path: str, trusted_keys: Optional[TrustedKeys] = None) -> Optional["FirmwareArchive"]:
        """Read an archive from a file, or from standard input when path is ``-``."""
        if path == "-":
            logger.debug("Reading firmware image from standard input")
            data = sys.stdin.buffer.read()
        else:
            logger.debug(f"Reading firmware image from {path}")
            try:
                data = Path(path).read_bytes()
            except OSError as e:
                raise FirmwareDecodeError(f"Cannot read firmware file {path}: {e}") from e
        return cls.open(data, trusted_keys=trusted_keys)

    @property
    def hex_file(self) -> bytes:
        return self._hex_file

    def has_signature(self) -> bool:
        return self._sig_file is not None

    def has_valid_signature(self) -> bool:
        """
        Check the detached signature against every trusted key.

        A key that simply does not verify the signature is skipped. A malformed
        signature or key is an error, and so is a signature the key cannot
        check (for example an unsupported algorithm).

        Raises:
            SignatureFormatError: If the signature or a key cannot be parsed or used
        """
        if self._sig_file is None:
            return False
        try:
            signature = pgpy.PGPSignature.from_blob(self._sig_file)
        except (PGPError, ValueError, TypeError, NotImplementedError) as e:
            raise SignatureFormatError(f"Malformed firmware signature: {e}") from e

        trusted_keys = self._trusted_keys if self._trusted_keys is not None else default_trusted_keys()
        for armored_key in trusted_keys.keys:
            try:
                key, _ = pgpy.PGPKey.from_blob(armored_key)
            except (PGPError, ValueError, TypeError, NotImplementedError) as e:
                raise SignatureFormatError(f"Malformed trusted key: {e}") from e
            try:
                if key.verify(self._hex_file, signature):
                    logger.debug(f"Firmware signature verified with key {key.fingerprint}")
                    return True
            except PGPError as e:
                logger.debug(f"Key {key.fingerprint} does not verify the signature: {e}")
            except (ValueError, TypeError, NotImplementedError) as e:
                raise SignatureFormatError(f"Cannot verify signature with key {key.fingerprint}: {e}") from e
        return False

    def decode(self) -> FirmwareImage:
        """
        Decode the hex file. The archive is consumed by this call.

        Raises:
            FirmwareDecodeError: On malformed or out-of-range hex content
            ContractViolation: If the archive was already decoded
        """
        if self._decoded:
            raise ContractViolation("Firmware archive was already decoded")
        self._decoded = True
        try:
            text = self._hex_file.decode("ascii")
        except UnicodeDecodeError as e:
            raise FirmwareDecodeError(f"Firmware hex file is not ASCII: {e}") from e
        return FirmwareImage.from_intel_hex(text)
