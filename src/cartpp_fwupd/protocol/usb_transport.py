"""
GB-CARTPP-XC USB Transport Layer

Handles low-level USB communication with the cartridge through pyusb.

This module provides:
- USB context ownership (one backend shared by every handle of a run)
- Vendor control transfers with payload-scaled timeouts
- String descriptor reads
- Translation of libusb errors into DriverError subclasses
"""

import errno
import logging
from typing import List, Optional, Tuple

import usb.core
import usb.util

from cartpp_fwupd.errors import (
    ContractViolation,
    DriverError,
    NoDeviceError,
    OtherUsbError,
    UnsupportedUsbOperation,
    UsbIoError,
    UsbPipeError,
    UsbTimeoutError,
)

logger = logging.getLogger(__name__)

# Largest control transfer payload libusb accepts on every platform
MAX_PAYLOAD = 4096

STRING_DESCRIPTOR_BUFFER = 64

REQUEST_TYPE_VENDOR_OUT = usb.util.build_request_type(
    usb.util.CTRL_OUT, usb.util.CTRL_TYPE_VENDOR, usb.util.CTRL_RECIPIENT_DEVICE
)
REQUEST_TYPE_VENDOR_IN = usb.util.build_request_type(
    usb.util.CTRL_IN, usb.util.CTRL_TYPE_VENDOR, usb.util.CTRL_RECIPIENT_DEVICE
)
REQUEST_TYPE_STANDARD_IN = usb.util.build_request_type(
    usb.util.CTRL_IN, usb.util.CTRL_TYPE_STANDARD, usb.util.CTRL_RECIPIENT_DEVICE
)
GET_DESCRIPTOR = 0x06
DESCRIPTOR_TYPE_STRING = 0x03

# libusb_error codes (libusb.h)
LIBUSB_ERROR_IO = -1
LIBUSB_ERROR_NO_DEVICE = -4
LIBUSB_ERROR_TIMEOUT = -7
LIBUSB_ERROR_PIPE = -9
LIBUSB_ERROR_NOT_SUPPORTED = -12

_LIBUSB_ERRORS = {
    LIBUSB_ERROR_PIPE: UsbPipeError,
    LIBUSB_ERROR_TIMEOUT: UsbTimeoutError,
    LIBUSB_ERROR_NOT_SUPPORTED: UnsupportedUsbOperation,
    LIBUSB_ERROR_NO_DEVICE: NoDeviceError,
    LIBUSB_ERROR_IO: UsbIoError,
}

# Backends without a native code only report errno
_ERRNO_ERRORS = {
    errno.EPIPE: UsbPipeError,
    errno.ETIMEDOUT: UsbTimeoutError,
    errno.ENOSYS: UnsupportedUsbOperation,
    errno.EOPNOTSUPP: UnsupportedUsbOperation,
    errno.ENODEV: NoDeviceError,
    errno.EIO: UsbIoError,
}


def translate_usb_error(exc: Exception) -> DriverError:
    """
    Map a pyusb exception onto the DriverError hierarchy.

    Args:
        exc: Exception raised by pyusb (USBError or NotImplementedError)

    Returns:
        DriverError instance suitable for ``raise ... from exc``
    """
    if isinstance(exc, NotImplementedError):
        return UnsupportedUsbOperation()
    if isinstance(exc, usb.core.USBTimeoutError):
        return UsbTimeoutError()

    code = getattr(exc, "backend_error_code", None)
    error_cls = _LIBUSB_ERRORS.get(code)
    if error_cls is None:
        error_cls = _ERRNO_ERRORS.get(getattr(exc, "errno", None))
    if error_cls is None:
        message = getattr(exc, "strerror", None) or str(exc) or "Unknown USB error"
        return OtherUsbError(code, message)
    return error_cls()


def control_timeout_ms(payload_len: int) -> int:
    """Timeout for a control transfer, scaled with the payload size."""
    return 1000 + payload_len // 16


class UsbContext:
    """
    USB context shared by every device handle of one update run.

    Handles keep a reference to the context that produced them, so the
    backend outlives all of them. ``close()`` disposes every handle exactly
    once.

    Example:
        with UsbContext() as ctx:
            for raw in ctx.find_devices():
                handle = ctx.open(raw)
    """

    def __init__(self, backend=None):
        """
        Args:
            backend: Optional pyusb backend (default: pyusb auto-selection)
        """
        self.backend = backend
        self._handles: List["UsbDeviceHandle"] = []
        self._closed = False

    def find_devices(self) -> list:
        """
        Enumerate every USB device on the system.

        Raises:
            DriverError: If enumeration fails or no backend is available
        """
        try:
            return list(usb.core.find(find_all=True, backend=self.backend))
        except usb.core.NoBackendError as e:
            raise UnsupportedUsbOperation(f"No USB backend available: {e}") from e
        except (usb.core.USBError, NotImplementedError) as e:
            raise translate_usb_error(e) from e

    def open(self, device) -> "UsbDeviceHandle":
        """Wrap a raw pyusb device in a handle owned by this context."""
        if self._closed:
            raise ContractViolation("USB context already closed")
        handle = UsbDeviceHandle(self, device)
        self._handles.append(handle)
        return handle

    @property
    def open_handles(self) -> int:
        return len(self._handles)

    def _forget(self, handle: "UsbDeviceHandle") -> None:
        if handle in self._handles:
            self._handles.remove(handle)

    def close(self) -> None:
        """Dispose every handle and release the context."""
        if self._closed:
            return
        self._closed = True
        for handle in list(self._handles):
            handle.close()
        self._handles.clear()
        logger.debug("Closed USB context")

    def __enter__(self) -> "UsbContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class UsbDeviceHandle:
    """
    Open USB device handle.

    Example:
        handle = ctx.open(raw_device)
        payload = handle.control_in(0x41, 0, 0, 5)
        handle.control_out(0x40, 0x99, 0)
    """

    def __init__(self, context: UsbContext, device):
        self._context = context
        self._device = device
        self._closed = False
        self.address: int = device.address
        bcd = device.bcdDevice
        self.version: Tuple[int, int] = ((bcd >> 8) & 0xFF, bcd & 0xFF)

    def _transfer(self, request_type: int, request: int, value: int, index: int, data_or_length, timeout: int):
        if self._closed:
            raise NoDeviceError("USB handle already closed")
        try:
            return self._device.ctrl_transfer(
                request_type, request, value, index, data_or_length, timeout
            )
        except (usb.core.USBError, NotImplementedError) as e:
            error = translate_usb_error(e)
            logger.debug(
                f"Control transfer {request:#04x} (value={value:#06x}, "
                f"index={index:#06x}) failed: {error}"
            )
            raise error from e

    def control_out(self, request: int, value: int, index: int, data: Optional[bytes] = None) -> int:
        """
        Issue a vendor OUT control transfer.

        Args:
            request: bRequest code
            value: wValue field
            index: wIndex field
            data: Optional payload (at most MAX_PAYLOAD bytes)

        Returns:
            Number of bytes written

        Raises:
            DriverError: On any transport failure
        """
        payload = bytes(data) if data else b""
        if len(payload) > MAX_PAYLOAD:
            raise ContractViolation(f"Payload of {len(payload)} bytes exceeds {MAX_PAYLOAD}")
        written = self._transfer(
            REQUEST_TYPE_VENDOR_OUT, request, value, index, payload,
            control_timeout_ms(len(payload)),
        )
        logger.debug(f">>> {request:#04x} {value:#06x} {index:#06x} {payload.hex().upper()}")
        return written

    def control_in(self, request: int, value: int, index: int, length: int) -> bytes:
        """
        Issue a vendor IN control transfer.

        Returns:
            Bytes returned by the device (may be shorter than ``length``)

        Raises:
            DriverError: On any transport failure
        """
        if length > MAX_PAYLOAD:
            raise ContractViolation(f"Payload of {length} bytes exceeds {MAX_PAYLOAD}")
        data = bytes(self._transfer(
            REQUEST_TYPE_VENDOR_IN, request, value, index, length,
            control_timeout_ms(length),
        ))
        logger.debug(f"<<< {request:#04x} {value:#06x} {index:#06x} {data.hex().upper()}")
        return data

    def get_string_descriptor(self, index: int) -> str:
        """
        Read a string descriptor (language 0) and decode it from UTF-16LE.

        Undecodable descriptors are returned as an empty string.
        """
        raw = bytes(self._transfer(
            REQUEST_TYPE_STANDARD_IN,
            GET_DESCRIPTOR,
            (DESCRIPTOR_TYPE_STRING << 8) | index,
            0x0000,
            STRING_DESCRIPTOR_BUFFER,
            control_timeout_ms(STRING_DESCRIPTOR_BUFFER),
        ))
        body = raw[2:]
        body = body[: len(body) - len(body) % 2]
        try:
            return body.decode("utf-16-le")
        except UnicodeDecodeError:
            logger.debug(f"String descriptor {index} is not valid UTF-16: {raw.hex()}")
            return ""

    def claim_interface(self, interface: int = 0) -> None:
        """Claim an interface, detaching a kernel driver where supported."""
        try:
            active = self._device.is_kernel_driver_active(interface)
        except (usb.core.USBError, NotImplementedError) as e:
            error = translate_usb_error(e)
            if not isinstance(error, UnsupportedUsbOperation):
                raise error from e
            active = False
        try:
            if active:
                self._device.detach_kernel_driver(interface)
            usb.util.claim_interface(self._device, interface)
        except (usb.core.USBError, NotImplementedError) as e:
            raise translate_usb_error(e) from e
        logger.debug(f"Claimed interface {interface} of USB device {self.address:03}")

    def release_interface(self, interface: int = 0) -> None:
        try:
            usb.util.release_interface(self._device, interface)
        except (usb.core.USBError, NotImplementedError) as e:
            raise translate_usb_error(e) from e
        logger.debug(f"Released interface {interface} of USB device {self.address:03}")

    def close(self) -> None:
        """Release pyusb resources; a device that already left the bus is fine."""
        if self._closed:
            return
        self._closed = True
        self._context._forget(self)
        try:
            usb.util.dispose_resources(self._device)
        except usb.core.USBError as e:
            logger.debug(f"Ignoring error while closing USB device {self.address:03}: {e}")
