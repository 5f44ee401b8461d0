"""Tests for device discovery, the single-candidate policy and reappearance polling."""

import pytest
import usb.core

from cartpp_fwupd.errors import (
    AmbiguousDeviceError,
    NoDeviceDetectedError,
    ReappearanceTimeout,
    UsbTimeoutError,
)
from cartpp_fwupd.models.device import DeviceMode

from conftest import FakeBus, FakeCartridge, ManualClock, make_registry


def usb_error(code: int) -> usb.core.USBError:
    return usb.core.USBError("injected", error_code=code)


class TestListDevices:
    def test_matching_devices_are_identified(self) -> None:
        bus = FakeBus(FakeCartridge(address=3, mode="bootloader"), FakeCartridge(address=4, mode="firmware"))
        devices = make_registry(bus).list_devices()

        assert [d.usb_address for d in devices] == [3, 4]
        assert [d.kind.mode for d in devices] == [DeviceMode.BOOTLOADER, DeviceMode.FIRMWARE]

    def test_other_devices_are_ignored(self) -> None:
        bus = FakeBus(
            FakeCartridge(address=1, id_vendor=0x1234),
            FakeCartridge(address=2, id_product=0x05DD),
            FakeCartridge(address=3, manufacturer="someone.else"),
            FakeCartridge(address=4, product="GB-CARTPP"),
            FakeCartridge(address=5, id_product=0x05E1),
        )
        devices = make_registry(bus).list_devices()
        assert [d.usb_address for d in devices] == [5]

    def test_missing_string_indexes_are_ignored(self) -> None:
        raw = FakeCartridge()
        raw.iProduct = 0
        assert make_registry(FakeBus(raw)).list_devices() == []
        assert raw.requests == []

    def test_device_without_driver_is_unusable(self) -> None:
        raw = FakeCartridge(address=8)
        raw.errors[0x06] = usb_error(-12)

        devices = make_registry(FakeBus(raw)).list_devices()

        assert len(devices) == 1
        assert not devices[0].kind.is_usable
        assert str(devices[0]) == "USB device 008: GB-CARTPP-XC? (no driver installed)"

    @pytest.mark.parametrize("code", [-4, -1, -9])
    def test_transient_errors_skip_the_device(self, code) -> None:
        flaky = FakeCartridge(address=2)
        flaky.errors[0x41] = usb_error(code)
        bus = FakeBus(flaky, FakeCartridge(address=3))

        devices = make_registry(bus).list_devices()
        assert [d.usb_address for d in devices] == [3]
        assert flaky._ctx.disposed == 1
        assert bus.open_handles == 1

    def test_other_errors_abort_enumeration(self) -> None:
        raw = FakeCartridge()
        raw.errors[0x41] = usb_error(-7)
        with pytest.raises(UsbTimeoutError):
            make_registry(FakeBus(raw)).list_devices()

    def test_unknown_identify_tag_is_unusable(self) -> None:
        devices = make_registry(FakeBus(FakeCartridge(mode="confused"))).list_devices()
        assert devices[0].kind.mode is DeviceMode.UNUSABLE


class TestSelectCandidate:
    def test_no_devices(self) -> None:
        registry = make_registry(FakeBus())
        with pytest.raises(NoDeviceDetectedError, match="No GB-CARTPP-XC devices detected"):
            registry.discover()

    def test_only_unusable_devices_are_reported(self) -> None:
        raw = FakeCartridge(address=8)
        raw.errors[0x06] = usb_error(-12)
        with pytest.raises(NoDeviceDetectedError) as excinfo:
            make_registry(FakeBus(raw)).discover()
        assert [d.usb_address for d in excinfo.value.unusable] == [8]

    def test_two_devices_are_ambiguous(self) -> None:
        bus = FakeBus(FakeCartridge(address=3), FakeCartridge(address=4, mode="firmware"))
        with pytest.raises(AmbiguousDeviceError) as excinfo:
            make_registry(bus).discover()
        assert excinfo.value.count == 2
        assert "only one can be connected" in str(excinfo.value)

    def test_single_device_is_selected_among_unusable_ones(self) -> None:
        broken = FakeCartridge(address=2)
        broken.errors[0x06] = usb_error(-12)
        bus = FakeBus(broken, FakeCartridge(address=6, mode="firmware"))
        assert make_registry(bus).discover().usb_address == 6

    def test_only_the_selected_handle_stays_open(self) -> None:
        broken = FakeCartridge(address=2)
        broken.errors[0x06] = usb_error(-12)
        stranger = FakeCartridge(address=4, manufacturer="someone.else")
        bus = FakeBus(broken, stranger, FakeCartridge(address=6, mode="firmware"))

        make_registry(bus).discover()

        assert bus.open_handles == 1
        assert broken._ctx.disposed == 1
        assert stranger._ctx.disposed == 1

    def test_ambiguous_devices_are_closed(self) -> None:
        bus = FakeBus(FakeCartridge(address=3), FakeCartridge(address=4))
        with pytest.raises(AmbiguousDeviceError):
            make_registry(bus).discover()
        assert bus.open_handles == 0


class TestWaitForDevice:
    def test_returns_when_device_reappears(self, clock) -> None:
        bus = FakeBus()
        registry = make_registry(bus, clock)
        original_sleep = registry._sleep

        def sleep_then_plug(seconds):
            original_sleep(seconds)
            if clock.now_ms == 600:
                bus.attach(FakeCartridge(address=9, mode="bootloader"))

        registry._sleep = sleep_then_plug
        device = registry.wait_for_device(lambda d: d.kind.is_bootloader)

        assert device.usb_address == 9
        assert clock.now_ms == 600

    def test_times_out_at_exactly_ten_seconds(self, clock) -> None:
        bus = FakeBus(FakeCartridge(address=5, mode="bootloader"))
        registry = make_registry(bus, clock)

        with pytest.raises(ReappearanceTimeout) as excinfo:
            registry.wait_for_device(lambda d: d.usb_address != 5)

        assert excinfo.value.elapsed == 10.0
        assert clock.now_ms == 10_000

    def test_two_matches_keep_polling(self) -> None:
        clock = ManualClock()
        bus = FakeBus(FakeCartridge(address=3), FakeCartridge(address=4))
        registry = make_registry(bus, clock)

        with pytest.raises(ReappearanceTimeout):
            registry.wait_for_device(lambda d: True, timeout=1.0)
        assert clock.now_ms == 1000
        assert bus.open_handles == 0

    def test_polling_does_not_accumulate_handles(self, clock) -> None:
        bus = FakeBus(FakeCartridge(address=5, mode="firmware"))
        registry = make_registry(bus, clock)
        original_sleep = registry._sleep

        def sleep_then_plug(seconds):
            original_sleep(seconds)
            if clock.now_ms == 1000:
                bus.attach(FakeCartridge(address=6, mode="bootloader"))

        registry._sleep = sleep_then_plug
        device = registry.wait_for_device(lambda d: d.kind.is_bootloader)

        assert device.usb_address == 6
        assert bus.open_handles == 1
        assert bus.devices[0]._ctx.disposed == 5
