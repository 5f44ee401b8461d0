"""
Exception hierarchy for GB-CARTPP-XC firmware updates.

Every recoverable failure raised by the library derives from FwupdError so
that callers (CLI, scripts) can report it cleanly. ContractViolation is not
part of that tree: it signals a programming error and is never turned into a
user-facing message.
"""

from typing import Optional


class FwupdError(Exception):
    """Base error for gb-cartpp-fwupd."""


class ContractViolation(AssertionError):
    """Raised when an API is called in a way its contract forbids."""


# Transport


class DriverError(FwupdError):
    """Base USB transport error."""


class UsbPipeError(DriverError):
    """Control endpoint stalled (request rejected by the device)."""

    def __init__(self, message: str = "USB pipe error"):
        super().__init__(message)


class UsbTimeoutError(DriverError):
    """USB operation timed out."""

    def __init__(self, message: str = "USB operation timed out"):
        super().__init__(message)


class UsbIoError(DriverError):
    """Low-level USB I/O error."""

    def __init__(self, message: str = "USB I/O error"):
        super().__init__(message)


class NoDeviceError(DriverError):
    """Device vanished from the bus."""

    def __init__(self, message: str = "No such device (device disconnected?)"):
        super().__init__(message)


class UnsupportedUsbOperation(DriverError):
    """Operation not supported by the platform (e.g. no driver installed)."""

    def __init__(self, message: str = "Unsupported USB operation"):
        super().__init__(message)


class ShortTransferError(DriverError):
    """Device returned fewer bytes than requested."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Short USB transfer: expected {expected} bytes, got {actual}")


class OtherUsbError(DriverError):
    """Any other native libusb error."""

    def __init__(self, code: Optional[int], message: str):
        self.code = code
        super().__init__(message)


# Firmware image


class FirmwareDecodeError(FwupdError):
    """Firmware archive or Intel HEX content is malformed."""


class SignatureFormatError(FirmwareDecodeError):
    """Detached signature or trusted key could not be parsed."""


# Update policy


class PolicyError(FwupdError):
    """A business rule of the update process was violated."""


class NoFirmwareImageError(PolicyError):
    """Archive is valid but does not contain a firmware image."""


class SignatureRejectedError(PolicyError):
    """Firmware image is unsigned or its signature is not trusted."""


class NoDeviceDetectedError(PolicyError):
    """No usable device is connected.

    Attributes:
        unusable: Devices that matched vendor/product but cannot be used
    """

    def __init__(self, message: str, unusable: tuple = ()):
        self.unusable = unusable
        super().__init__(message)


class AmbiguousDeviceError(PolicyError):
    """More than one usable device is connected."""

    def __init__(self, message: str, count: int):
        self.count = count
        super().__init__(message)


class ReappearanceTimeout(PolicyError):
    """Device did not re-enumerate after a reset within the poll window."""

    def __init__(self, message: str, elapsed: float):
        self.elapsed = elapsed
        super().__init__(message)


class VerifyFailedError(PolicyError):
    """Data read back from the device does not match the image."""

    def __init__(self, region: str, errors: int, first_error_addr: int):
        self.region = region
        self.errors = errors
        self.first_error_addr = first_error_addr
        super().__init__(
            f"Verifying {region} failed: {errors} errors, "
            f"starting at {first_error_addr:#06x}"
        )
