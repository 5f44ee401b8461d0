"""
Unified operations for the GB-CARTPP-XC firmware updater.

Every function here returns an OperationResult instead of raising for
expected failures, and captures the log lines it produced. The CLI only
renders these results.
"""

import logging
from contextlib import contextmanager
from typing import Optional, Callable

from cartpp_fwupd.errors import FwupdError, NoFirmwareImageError
from cartpp_fwupd.firmware_image import FirmwareArchive, TrustedKeys
from cartpp_fwupd.models.registry import DeviceRegistry
from cartpp_fwupd.protocol.usb_transport import UsbContext
from .results import OperationResult
from .safety import SignaturePolicy, require_valid_signature
from .update import UpdateConfig, UpdateFlow, UpdateObserver

logger = logging.getLogger(__name__)

ContextFactory = Callable[[], UsbContext]


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "cartpp_fwupd"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def load_archive(image_path: str, trusted_keys: Optional[TrustedKeys] = None) -> FirmwareArchive:
    """
    Read a firmware archive from a path (``-`` for standard input).

    Raises:
        FirmwareDecodeError: If the archive cannot be read
        NoFirmwareImageError: If it holds no firmware image
    """
    source = "standard input" if image_path == "-" else image_path
    archive = FirmwareArchive.from_path(image_path, trusted_keys=trusted_keys)
    if archive is None:
        raise NoFirmwareImageError(f"No valid firmware image detected in {source}")
    return archive


def update_firmware(
    image_path: str,
    allow_invalid_signature: bool = False,
    trusted_keys: Optional[TrustedKeys] = None,
    observer: Optional[UpdateObserver] = None,
    config: Optional[UpdateConfig] = None,
    context_factory: ContextFactory = UsbContext,
    registry_factory: Callable[[UsbContext], DeviceRegistry] = DeviceRegistry,
) -> OperationResult:
    """
    Update the connected cartridge with a firmware archive.

    The signature is checked before any USB access.

    Args:
        image_path: Firmware archive path, or ``-`` for standard input
        allow_invalid_signature: Flash unsigned or untrusted images
        trusted_keys: Signer keys (default: shipped keys)
        observer: Progress observer
        config: Polling tunables
        context_factory: Creates the USB context (injectable for tests)
        registry_factory: Creates the device registry (injectable for tests)

    Returns:
        OperationResult with:
            - device: device description after the update
            - image_version, checksums["image"], checksums["device"]
            - metadata["skipped"], metadata["signature_valid"], metadata["states"]
    """
    with _capture_logs() as logs:
        try:
            archive = load_archive(image_path, trusted_keys)
            signature_valid = require_valid_signature(
                archive, SignaturePolicy(allow_invalid_signature=allow_invalid_signature)
            )
            image = archive.decode()

            with context_factory() as context:
                flow = UpdateFlow(registry_factory(context), observer=observer, config=config)
                outcome = flow.run(image)

            result = OperationResult.success(
                operation="update_firmware",
                device=outcome.device,
                image_version=str(outcome.image_version),
            )
            result.checksums["image"] = outcome.image_checksum
            result.checksums["device"] = outcome.device_checksum
            result.metadata["skipped"] = outcome.skipped
            result.metadata["signature_valid"] = signature_valid
            result.metadata["states"] = [state.value for state in outcome.states]
            result.metadata["device_release"] = outcome.device_release
            if not signature_valid:
                result.add_warning("Flashed without a valid signature")
            result.logs = logs
            return result

        except FwupdError as e:
            logger.error(f"Failed to update firmware: {e}")
            result = OperationResult.failure(operation="update_firmware", error=str(e))
            result.logs = logs
            return result


def list_devices(context_factory: ContextFactory = UsbContext) -> OperationResult:
    """
    List connected GB-CARTPP-XC devices.

    Returns:
        OperationResult with metadata["devices"]: list of dicts
        (address, mode, firmware, bootloader, description)
    """
    with _capture_logs() as logs:
        try:
            with context_factory() as context:
                devices = DeviceRegistry(context).list_devices()
                rows = [
                    {
                        "address": device.usb_address,
                        "mode": device.kind.mode.value,
                        "firmware": str(device.kind.fw_version) if device.kind.fw_version else "",
                        "bootloader": str(device.kind.bl_version) if device.kind.bl_version else "",
                        "description": str(device),
                    }
                    for device in devices
                ]
        except FwupdError as e:
            logger.error(f"Failed to list devices: {e}")
            result = OperationResult.failure(operation="list_devices", error=str(e))
            result.logs = logs
            return result

        result = OperationResult.success(operation="list_devices")
        result.metadata["devices"] = rows
        result.logs = logs
        return result


def inspect_image(
    image_path: str,
    trusted_keys: Optional[TrustedKeys] = None,
    export_hex: Optional[str] = None,
) -> OperationResult:
    """
    Decode a firmware archive without touching any device.

    Args:
        image_path: Firmware archive path, or ``-`` for standard input
        trusted_keys: Signer keys (default: shipped keys)
        export_hex: Optional path to write the re-encoded Intel HEX to

    Returns:
        OperationResult with image_version, checksums["image"] and
        metadata["signature"], metadata["id_bytes"], metadata["config_bytes"]
    """
    with _capture_logs() as logs:
        try:
            archive = load_archive(image_path, trusted_keys)
            if not archive.has_signature():
                signature = "missing"
            else:
                signature = "valid" if archive.has_valid_signature() else "untrusted"
            image = archive.decode()

            result = OperationResult.success(
                operation="inspect_image",
                image_version=str(image.version()),
            )
            result.checksums["image"] = image.checksum()
            result.metadata["signature"] = signature
            result.metadata["id_bytes"] = list(image.iter_id_bytes())
            result.metadata["config_bytes"] = list(image.iter_config_bytes())
            if signature != "valid":
                result.add_warning(f"Firmware signature is {signature}")

            if export_hex:
                try:
                    with open(export_hex, "w", encoding="ascii") as f:
                        f.write(image.to_intel_hex())
                except OSError as e:
                    result.add_error(f"Cannot write {export_hex}: {e}")
                else:
                    result.metadata["exported"] = export_hex
                    logger.info(f"Wrote Intel HEX to {export_hex}")

            result.logs = logs
            return result

        except FwupdError as e:
            logger.error(f"Failed to inspect firmware image: {e}")
            result = OperationResult.failure(operation="inspect_image", error=str(e))
            result.logs = logs
            return result


def read_diagnostics(context_factory: ContextFactory = UsbContext) -> OperationResult:
    """
    Dump SFRs and the firmware diagnostics block of a device in bootloader mode.

    The device is left in bootloader mode, unclaimed.

    Returns:
        OperationResult with metadata["sfrs"] (name -> value) and
        metadata["diagnostics"] (DeviceDiagnostics)
    """
    with _capture_logs() as logs:
        try:
            with context_factory() as context:
                device = DeviceRegistry(context).discover()
                if not device.kind.is_bootloader:
                    result = OperationResult.failure(
                        operation="read_diagnostics",
                        error="Device is not in bootloader mode",
                        device=str(device),
                    )
                    result.logs = logs
                    return result
                description = str(device)
                session = device.claim_bootloader()
                sfrs = session.dump_sfrs()
                diagnostics = session.read_diagnostics()
                session.release()
        except FwupdError as e:
            logger.error(f"Failed to read diagnostics: {e}")
            result = OperationResult.failure(operation="read_diagnostics", error=str(e))
            result.logs = logs
            return result

        result = OperationResult.success(operation="read_diagnostics", device=description)
        result.metadata["sfrs"] = sfrs
        result.metadata["diagnostics"] = diagnostics
        result.logs = logs
        return result
