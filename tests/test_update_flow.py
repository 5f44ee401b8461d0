"""End-to-end update runs against an emulated cartridge on a fake bus."""

import pytest
import usb.core

from cartpp_fwupd.core.update import (
    PROGRESS_TOTAL,
    UpdateConfig,
    UpdateFlow,
    UpdateObserver,
    UpdateState,
)
from cartpp_fwupd.errors import NoDeviceDetectedError, ReappearanceTimeout, VerifyFailedError
from cartpp_fwupd.firmware_image import FirmwareImage
from cartpp_fwupd.models.device import FirmwareVersion

from conftest import CartridgeMemory, FakeBus, FakeCartridge, build_hex, make_registry, sample_firmware


class RecordingObserver(UpdateObserver):
    def __init__(self):
        self.phases = []
        self.writes = []
        self.verifies = []

    def phase(self, state, message):
        self.phases.append((state, message))

    def flash_write(self, offset, total):
        self.writes.append((offset, total))

    def flash_verify(self, offset, total, result):
        self.verifies.append((offset, total, result))


class CorruptingCartridge(FakeCartridge):
    """Bootloader that flips a bit of 0x905 whenever the block at 0x900 is written."""

    def ctrl_transfer(self, bmRequestType, bRequest, wValue=0, wIndex=0, data_or_wLength=None, timeout=None):
        result = super().ctrl_transfer(bmRequestType, bRequest, wValue, wIndex, data_or_wLength, timeout)
        if bRequest == 0x46 and wValue == 0x900:
            self.memory.flash[0x905] ^= 0x01
        return result


class DropsOffBusCartridge(FakeCartridge):
    """Firmware that leaves the bus before acknowledging the reset request."""

    def ctrl_transfer(self, bmRequestType, bRequest, wValue=0, wIndex=0, data_or_wLength=None, timeout=None):
        result = super().ctrl_transfer(bmRequestType, bRequest, wValue, wIndex, data_or_wLength, timeout)
        if bRequest == 0x40:
            raise usb.core.USBError("No such device", error_code=-4)
        return result


def sample_image() -> FirmwareImage:
    return FirmwareImage.from_intel_hex(build_hex(**sample_firmware()))


def flashed_memory(image: FirmwareImage) -> CartridgeMemory:
    memory = CartridgeMemory()
    memory.flash[:] = image.flash
    memory.id[2] = 3
    memory.id[3] = 1
    return memory


def make_flow(bus, clock=None, observer=None) -> UpdateFlow:
    return UpdateFlow(make_registry(bus, clock), observer=observer, config=UpdateConfig())


class TestFullUpdate:
    def test_update_from_firmware_mode(self, clock) -> None:
        bus = FakeBus(FakeCartridge(address=5, mode="firmware"))
        observer = RecordingObserver()
        image = sample_image()
        flow = make_flow(bus, clock, observer)

        outcome = flow.run(image)

        assert outcome.states == [
            UpdateState.DISCOVER,
            UpdateState.ENTER_BOOTLOADER,
            UpdateState.UNLOCK,
            UpdateState.CHECKSUM_COMPARE,
            UpdateState.WRITE_FLASH,
            UpdateState.WRITE_ID,
            UpdateState.VERIFY_FLASH,
            UpdateState.VERIFY_ID,
            UpdateState.VERIFY_CFG,
            UpdateState.RESET,
            UpdateState.CONFIRM_REAPPEARANCE,
            UpdateState.DONE,
        ]
        assert flow.state is UpdateState.DONE
        assert not outcome.skipped
        assert outcome.image_version == FirmwareVersion(1, 3)
        assert outcome.device_version.is_unknown
        assert bus.resets == [(5, 0x42), (6, 0x99)]
        assert outcome.device == "USB device 007: GB-CARTPP-XC v1.3"
        assert outcome.device_release == (1, 3)
        assert observer.phases[-1] == (UpdateState.DONE, "Firmware updated to v1.3")

    def test_device_memory_matches_image(self, clock) -> None:
        bus = FakeBus(FakeCartridge(address=5, mode="firmware"))
        image = sample_image()

        make_flow(bus, clock).run(image)

        memory = bus.devices[0].memory
        assert memory.flash[0x800:] == image.flash[0x800:]
        assert memory.id[:4] == bytes([0x01, 0xFF, 0x03, 0x01])

    def test_config_bytes_are_never_written(self, clock) -> None:
        bus = FakeBus(FakeCartridge(address=5, mode="firmware"))
        make_flow(bus, clock).run(sample_image())

        bootloader = bus.attached[1]
        assert bootloader.mode == "bootloader"
        assert not any(req[0] == 0x47 for req in bootloader.vendor_requests)
        assert bootloader._ctx.claimed == [0]

    def test_progress_covers_main_firmware_area(self, clock) -> None:
        bus = FakeBus(FakeCartridge(address=5, mode="bootloader"))
        observer = RecordingObserver()

        make_flow(bus, clock, observer).run(sample_image())

        assert PROGRESS_TOTAL == 0x7800
        assert observer.writes == [(offset, 0x7800) for offset in range(0, 0x7800, 0x100)]
        assert [v[0] for v in observer.verifies] == list(range(0, 0x7800, 0x100))
        assert all(result.is_valid for _, _, result in observer.verifies)

    def test_enter_bootloader_errors_are_tolerated(self, clock) -> None:
        bus = FakeBus(DropsOffBusCartridge(address=5, mode="firmware"))

        outcome = make_flow(bus, clock).run(sample_image())

        assert outcome.states[-1] is UpdateState.DONE
        assert bus.resets[0] == (5, 0x42)


class TestSkip:
    def test_identical_firmware_is_not_rewritten(self, clock) -> None:
        image = sample_image()
        bus = FakeBus(FakeCartridge(address=5, mode="bootloader", memory=flashed_memory(image)))
        observer = RecordingObserver()

        outcome = make_flow(bus, clock, observer).run(image)

        assert outcome.skipped
        assert outcome.states == [
            UpdateState.DISCOVER,
            UpdateState.UNLOCK,
            UpdateState.CHECKSUM_COMPARE,
            UpdateState.SKIP,
            UpdateState.RESET,
            UpdateState.CONFIRM_REAPPEARANCE,
            UpdateState.DONE,
        ]
        bootloader = bus.attached[0]
        assert not any(0x45 <= req[0] <= 0x48 for req in bootloader.vendor_requests)
        assert observer.writes == []
        assert observer.phases[-1] == (UpdateState.DONE, "Device is running v1.3")

    def test_same_version_with_different_flash_is_updated(self, clock) -> None:
        image = sample_image()
        memory = flashed_memory(image)
        memory.flash[0x4000] = 0x00
        bus = FakeBus(FakeCartridge(address=5, mode="bootloader", memory=memory))

        outcome = make_flow(bus, clock).run(image)

        assert not outcome.skipped
        assert UpdateState.WRITE_FLASH in outcome.states


class TestFailures:
    def test_verify_failure_aborts_before_reset(self, clock) -> None:
        bus = FakeBus(CorruptingCartridge(address=5, mode="bootloader"))
        observer = RecordingObserver()
        flow = make_flow(bus, clock, observer)

        with pytest.raises(VerifyFailedError) as excinfo:
            flow.run(sample_image())

        assert (excinfo.value.region, excinfo.value.errors, excinfo.value.first_error_addr) == ("flash", 1, 0x905)
        assert str(excinfo.value) == "Verifying flash failed: 1 errors, starting at 0x0905"
        assert flow.state is UpdateState.ABORTED
        assert flow.history[-2:] == [UpdateState.VERIFY_FLASH, UpdateState.ABORTED]
        assert bus.resets == []
        assert not observer.verifies[1][2].is_valid

    def test_device_that_never_returns_times_out(self, clock) -> None:
        bus = FakeBus(FakeCartridge(address=5, mode="firmware"), reappear=False)
        flow = make_flow(bus, clock)

        with pytest.raises(ReappearanceTimeout) as excinfo:
            flow.run(sample_image())

        assert excinfo.value.elapsed == 10.0
        assert flow.history == [UpdateState.DISCOVER, UpdateState.ENTER_BOOTLOADER, UpdateState.ABORTED]

    def test_no_device(self, clock) -> None:
        flow = make_flow(FakeBus(), clock)

        with pytest.raises(NoDeviceDetectedError):
            flow.run(sample_image())

        assert flow.history == [UpdateState.DISCOVER, UpdateState.ABORTED]

    def test_old_address_is_not_accepted_as_reappearance(self, clock) -> None:
        """A device that comes back at the same address is still treated as gone."""
        bus = FakeBus(FakeCartridge(address=5, mode="bootloader"), reappear=False)

        def reattach_in_place(device, magic):
            bus.resets.append((device.address, magic))
            bus.devices.remove(device)
            bus.attach(FakeCartridge(address=device.address, mode="firmware", memory=device.memory))

        bus.devices[0].reset_handler = reattach_in_place

        with pytest.raises(ReappearanceTimeout):
            make_flow(bus, clock).run(sample_image())
        assert clock.now_ms == 10_000
