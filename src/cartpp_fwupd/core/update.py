"""
Firmware update orchestration.

UpdateFlow runs the whole update as a sequence of phases:

    DISCOVER -> ENTER_BOOTLOADER -> UNLOCK -> CHECKSUM_COMPARE
        -> SKIP
        or WRITE_FLASH -> WRITE_ID -> VERIFY_FLASH -> VERIFY_ID -> VERIFY_CFG
    -> RESET -> CONFIRM_REAPPEARANCE -> DONE

The first failure moves the flow to ABORTED and the error propagates. A
failure after writing has started leaves the device partially flashed; the
bootloader itself is never written, so the update can simply be retried.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from cartpp_fwupd.errors import DriverError, VerifyFailedError
from cartpp_fwupd.firmware_image import FirmwareImage
from cartpp_fwupd.models.device import FirmwareVersion, UnclaimedDevice
from cartpp_fwupd.models.registry import DeviceRegistry
from cartpp_fwupd.models.verify import VerifyResult
from cartpp_fwupd.protocol.requests import FLASH_END, MAIN_FIRMWARE_START

logger = logging.getLogger(__name__)

# Span reported by flash progress callbacks
PROGRESS_TOTAL = FLASH_END - MAIN_FIRMWARE_START


class UpdateState(Enum):
    DISCOVER = "discover"
    ENTER_BOOTLOADER = "enter_bootloader"
    UNLOCK = "unlock"
    CHECKSUM_COMPARE = "checksum_compare"
    SKIP = "skip"
    WRITE_FLASH = "write_flash"
    WRITE_ID = "write_id"
    VERIFY_FLASH = "verify_flash"
    VERIFY_ID = "verify_id"
    VERIFY_CFG = "verify_cfg"
    RESET = "reset"
    CONFIRM_REAPPEARANCE = "confirm_reappearance"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class UpdateConfig:
    """
    Tunables of an update run.

    Attributes:
        poll_interval: Seconds to sleep between enumerations after a reset
        poll_timeout: Seconds to wait for the device to reappear
    """
    poll_interval: float = 0.2
    poll_timeout: float = 10.0


class UpdateObserver:
    """
    Receives progress of an update run.

    All callbacks run synchronously on the calling thread. The base class
    ignores everything; subclass and override what you need.
    """

    def phase(self, state: UpdateState, message: str) -> None:
        pass

    def flash_write(self, offset: int, total: int) -> None:
        pass

    def flash_verify(self, offset: int, total: int, result: VerifyResult) -> None:
        pass


@dataclass
class UpdateOutcome:
    """
    Summary of a finished update run.

    Attributes:
        skipped: True if the device already had this firmware
        image_version: Version stored in the image ID bytes
        image_checksum: CRC16 of the image main firmware area
        device_version: Firmware version the device reported before the update
        device_checksum: CRC16 of the device flash before the update
        device: Description of the device after it reappeared
        device_release: bcdDevice of the device after it reappeared
        states: Phases visited, in order
    """
    skipped: bool
    image_version: FirmwareVersion
    image_checksum: int
    device_version: FirmwareVersion
    device_checksum: int
    device: str = ""
    device_release: Tuple[int, int] = (0, 0)
    states: List[UpdateState] = field(default_factory=list)


class UpdateFlow:
    """
    Update one GB-CARTPP-XC with a decoded firmware image.

    Example:
        with UsbContext() as ctx:
            flow = UpdateFlow(DeviceRegistry(ctx), observer=MyObserver())
            outcome = flow.run(image)
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        observer: Optional[UpdateObserver] = None,
        config: Optional[UpdateConfig] = None,
    ):
        self.registry = registry
        self.observer = observer or UpdateObserver()
        self.config = config or UpdateConfig()
        self.state: Optional[UpdateState] = None
        self.history: List[UpdateState] = []

    def _enter(self, state: UpdateState, message: str = "") -> None:
        self.state = state
        self.history.append(state)
        if message:
            logger.info(message)
        else:
            logger.debug(f"Update phase: {state.value}")
        self.observer.phase(state, message)

    def _wait_for(self, predicate) -> UnclaimedDevice:
        return self.registry.wait_for_device(
            predicate,
            interval=self.config.poll_interval,
            timeout=self.config.poll_timeout,
        )

    def _check(self, result: VerifyResult, region: str) -> None:
        if not result.is_valid:
            raise VerifyFailedError(region, result.errors, result.first_error_addr)

    def run(self, image: FirmwareImage) -> UpdateOutcome:
        """
        Run the update.

        Returns:
            UpdateOutcome describing what was done

        Raises:
            PolicyError: On discovery, verification or reappearance failures
            DriverError: On USB transport failures
        """
        try:
            return self._run(image)
        except Exception as e:
            self.state = UpdateState.ABORTED
            self.history.append(UpdateState.ABORTED)
            self.observer.phase(UpdateState.ABORTED, str(e))
            raise

    def _run(self, image: FirmwareImage) -> UpdateOutcome:
        self._enter(UpdateState.DISCOVER)
        device = self.registry.discover()
        logger.info(f"Using {device}")

        if not device.kind.is_bootloader:
            self._enter(UpdateState.ENTER_BOOTLOADER, f"Resetting {device} into bootloader")
            address_before_reset = device.usb_address
            try:
                device.enter_bootloader()
            except DriverError as e:
                # Device may drop off the bus before acknowledging
                logger.debug(f"Bootloader request ended with: {e}")
            device = self._wait_for(
                lambda d: d.usb_address != address_before_reset and d.kind.is_bootloader
            )

        self._enter(UpdateState.UNLOCK)
        address = device.usb_address
        session = device.claim_bootloader()
        session.unlock()

        self._enter(UpdateState.CHECKSUM_COMPARE)
        device_checksum = session.calc_flash_checksum()
        image_checksum = image.checksum()
        image_version = image.version()
        device_version = session.firmware_version
        logger.info(f"Firmware image: v{image_version} (checksum {image_checksum:#06x})")
        logger.info(f"Device:         v{device_version} (checksum {device_checksum:#06x})")

        outcome = UpdateOutcome(
            skipped=device_version == image_version and device_checksum == image_checksum,
            image_version=image_version,
            image_checksum=image_checksum,
            device_version=device_version,
            device_checksum=device_checksum,
        )

        if outcome.skipped:
            self._enter(UpdateState.SKIP, "No update is necessary")
        else:
            self._enter(UpdateState.WRITE_FLASH, "Updating flash")
            session.write_flash_image(
                image,
                lambda addr: self.observer.flash_write(addr - MAIN_FIRMWARE_START, PROGRESS_TOTAL),
            )

            self._enter(UpdateState.WRITE_ID, "Updating ID bytes")
            session.write_id_bytes(image)

            self._enter(UpdateState.VERIFY_FLASH, "Verifying flash")
            self._check(
                session.verify_flash(
                    image,
                    lambda addr, result: self.observer.flash_verify(
                        addr - MAIN_FIRMWARE_START, PROGRESS_TOTAL, result
                    ),
                ),
                "flash",
            )

            self._enter(UpdateState.VERIFY_ID, "Verifying ID bytes")
            self._check(session.verify_id(image), "ID bytes")

            self._enter(UpdateState.VERIFY_CFG, "Verifying config bytes")
            self._check(session.verify_cfg(image), "config bytes")

        self._enter(UpdateState.RESET, "Resetting device")
        session.reset()

        self._enter(UpdateState.CONFIRM_REAPPEARANCE)
        device = self._wait_for(lambda d: d.usb_address != address and d.kind.is_firmware)
        outcome.device = str(device)
        outcome.device_release = device.version

        major, minor = device.version
        if outcome.skipped:
            self._enter(UpdateState.DONE, f"Device is running v{major}.{minor}")
        else:
            self._enter(UpdateState.DONE, f"Firmware updated to v{major}.{minor}")
        outcome.states = list(self.history)
        return outcome
