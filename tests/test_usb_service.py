"""
Tests for USB discovery diffs, source merging and change monitoring.
"""

import asyncio
from unittest.mock import Mock

import pytest
import pytest_asyncio

from devicehub.config import USBConfig
from devicehub.exceptions import DiscoveryError, NotFoundError, PlatformDetectionError
from devicehub.models import DeviceStatus, USBDeviceInfo
from devicehub.services import USBService, diff_snapshots, merge_sources


def usb(device_id, vendor="1234", product_id="5678", **kwargs):
    return USBDeviceInfo(device_id=device_id, vendor_id=vendor, product_id=product_id, **kwargs)


class ListSource:
    """Enumeration source returning whatever ``devices`` currently holds."""

    def __init__(self, devices=None):
        self.devices = list(devices or [])
        self.fail = False
        self.__name__ = "list_source"

    async def __call__(self):
        if self.fail:
            raise PlatformDetectionError("source down")
        return [usb(d.device_id, d.vendor_id, d.product_id, product=d.product, device_class=d.device_class)
                for d in self.devices]


@pytest_asyncio.fixture
async def source_service(fake_backend, usb_config):
    source = ListSource([usb("A", "aaaa", "0001"), usb("B", "bbbb", "0002")])
    service = USBService(fake_backend, usb_config, sources=[source])
    await service.initialize()
    yield service, source
    await service.cleanup()


class TestDiffSnapshots:

    def test_connected_and_disconnected(self):
        diff = diff_snapshots(["A", "B"], ["B", "C"])

        assert diff.disconnected == ["A"]
        assert diff.connected == ["C"]
        assert diff.unchanged == ["B"]
        assert diff.has_changes

    def test_no_change(self):
        diff = diff_snapshots(["A"], ["A"])

        assert not diff.has_changes
        assert diff.connected == [] and diff.disconnected == []


class TestMergeSources:

    def test_first_source_wins_and_composites_deduplicate(self):
        os_listing = [usb("/sys/bus/usb/devices/1-1", "046D", "0825")]
        udev_listing = [usb("046d:0825", "046d", "0825"), usb("0403:6001", "0403", "6001")]

        merged = merge_sources(os_listing, udev_listing)

        assert list(merged) == ["/sys/bus/usb/devices/1-1", "0403:6001"]

    def test_same_source_keeps_identical_models(self):
        """Two identical devices reported by one source stay separate."""
        merged = merge_sources([usb("1-1", "046d", "0825"), usb("1-2", "046d", "0825")])

        assert list(merged) == ["1-1", "1-2"]


class TestUSBDiscovery:

    @pytest.mark.asyncio
    async def test_diff_sequence_emits_one_event_each(self, source_service):
        """[A,B] -> [B,C]: one disconnect for A, one connect for C, nothing for B."""
        service, source = source_service
        connected, disconnected = Mock(), Mock()
        service.on("device-connected", connected)
        service.on("device-disconnected", disconnected)

        source.devices = [usb("B", "bbbb", "0002"), usb("C", "cccc", "0003")]
        await service.refresh()

        assert connected.call_count == 1
        assert connected.call_args[0][0].device_id == "C"
        assert disconnected.call_count == 1
        assert disconnected.call_args[0][0].device_id == "A"
        assert disconnected.call_args[0][0].status == DeviceStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_repeated_pass_is_idempotent(self, source_service):
        service, source = source_service
        connected, disconnected = Mock(), Mock()
        service.on("device-connected", connected)
        service.on("device-disconnected", disconnected)

        await service.refresh()
        await service.refresh()

        connected.assert_not_called()
        disconnected.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconnect_emits_connect(self, source_service):
        service, source = source_service
        connected = Mock()
        service.on("device-connected", connected)

        source.devices = [usb("B", "bbbb", "0002")]
        await service.refresh()
        assert (await service.get_device_info("A")).status == DeviceStatus.DISCONNECTED

        source.devices = [usb("A", "aaaa", "0001"), usb("B", "bbbb", "0002")]
        await service.refresh()

        assert [call[0][0].device_id for call in connected.call_args_list] == ["A"]
        assert (await service.get_device_info("A")).is_connected()

    @pytest.mark.asyncio
    async def test_get_devices_only_connected(self, source_service):
        service, source = source_service
        source.devices = [usb("B", "bbbb", "0002")]

        devices = await service.get_devices()

        assert [d.device_id for d in devices] == ["B"]
        assert not await service.is_device_available("A")
        assert await service.test_device("B")

    @pytest.mark.asyncio
    async def test_failed_pass_keeps_registry(self, source_service):
        """A pass where every source fails reports no disconnects."""
        service, source = source_service
        disconnected = Mock()
        service.on("device-disconnected", disconnected)

        source.fail = True
        await service.refresh()

        disconnected.assert_not_called()
        assert {d.device_id for d in service._connected()} == {"A", "B"}

    @pytest.mark.asyncio
    async def test_initialize_fails_when_every_source_fails(self, fake_backend, usb_config):
        source = ListSource()
        source.fail = True
        service = USBService(fake_backend, usb_config, sources=[source])

        with pytest.raises(DiscoveryError):
            await service.initialize()

    @pytest.mark.asyncio
    async def test_one_failing_source_is_tolerated(self, fake_backend, usb_config):
        broken = ListSource()
        broken.fail = True
        healthy = ListSource([usb("A")])
        service = USBService(fake_backend, usb_config, sources=[broken, healthy])

        await service.initialize()

        assert [d.device_id for d in await service.get_devices()] == ["A"]
        await service.cleanup()

    @pytest.mark.asyncio
    async def test_default_sources_use_backend(self, fake_backend, usb_config):
        service = USBService(fake_backend, usb_config)
        await service.initialize()

        devices = await service.get_devices()

        assert [d.product for d in devices] == ["Webcam C270", "FT232R"]
        assert "list_usb_devices" in fake_backend.calls
        await service.cleanup()


class TestUSBQueries:

    @pytest.mark.asyncio
    async def test_filters(self, fake_backend, usb_config):
        service = USBService(fake_backend, usb_config)
        await service.initialize()

        assert [d.product for d in service.get_devices_by_class("video")] == ["Webcam C270"]
        assert [d.product for d in service.get_devices_by_vendor("0403")] == ["FT232R"]
        assert [d.product for d in service.get_devices_by_product("0825")] == ["Webcam C270"]
        assert service.get_devices_by_vendor("ffff") == []
        await service.cleanup()

    @pytest.mark.asyncio
    async def test_device_details(self, fake_backend, usb_config):
        fake_backend.usb_details["/sys/bus/usb/devices/1-1"] = {'speed': "480", 'driver': "uvcvideo"}
        service = USBService(fake_backend, usb_config)
        await service.initialize()

        details = await service.get_device_details("/sys/bus/usb/devices/1-1")

        assert details['speed'] == "480"
        assert details['vendor_id'] == "046d"
        assert details['status'] == "connected"
        await service.cleanup()

    @pytest.mark.asyncio
    async def test_device_details_unknown(self, source_service):
        service, _ = source_service

        with pytest.raises(NotFoundError):
            await service.get_device_details("nope")


class TestUSBMonitoring:

    @pytest.mark.asyncio
    async def test_monitor_callbacks_and_removal(self, source_service):
        service, source = source_service
        changes = []
        handle = service.monitor_device_changes(lambda change, device: changes.append((change, device.device_id)))

        source.devices = [usb("B", "bbbb", "0002"), usb("C", "cccc", "0003")]
        await service.refresh()

        assert sorted(changes) == [("connected", "C"), ("disconnected", "A")]

        assert service.remove_device_monitor(handle)
        assert not service.remove_device_monitor(handle)
        source.devices = [usb("D", "dddd", "0004")]
        await service.refresh()
        assert len(changes) == 2

    @pytest.mark.asyncio
    async def test_background_polling(self, fake_backend):
        source = ListSource([usb("A")])
        service = USBService(fake_backend, USBConfig(poll_interval=0.02), sources=[source])
        connected = Mock()
        await service.initialize()
        service.on("device-connected", connected)

        source.devices = [usb("A"), usb("B", "bbbb", "0002")]
        for _ in range(50):
            if connected.called:
                break
            await asyncio.sleep(0.02)

        await service.cleanup()
        assert connected.call_args[0][0].device_id == "B"
        assert service._monitor_task is None

    @pytest.mark.asyncio
    async def test_polling_disabled(self, source_service):
        service, _ = source_service

        assert service._monitor_task is None

    @pytest.mark.asyncio
    async def test_polling_survives_unexpected_source_error(self, fake_backend):
        source = ListSource([usb("A")])
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 2:
                raise OSError("udev hiccup")
            return await source()

        service = USBService(fake_backend, USBConfig(poll_interval=0.02), sources=[flaky])
        connected = Mock()
        await service.initialize()
        service.on("device-connected", connected)

        source.devices = [usb("A"), usb("B", "bbbb", "0002")]
        for _ in range(50):
            if connected.called:
                break
            await asyncio.sleep(0.02)

        assert len(calls) > 2
        assert not service._monitor_task.done()
        assert connected.call_args[0][0].device_id == "B"
        await service.cleanup()
        assert service._monitor_task is None


class TestDiscoveryLock:

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_run_one_at_a_time(self, fake_backend, usb_config):
        active, overlap = [0], [0]

        async def slow_source():
            active[0] += 1
            overlap[0] = max(overlap[0], active[0])
            await asyncio.sleep(0.05)
            active[0] -= 1
            return [usb("A")]

        service = USBService(fake_backend, usb_config, sources=[slow_source])
        await service.initialize()

        await asyncio.gather(service.refresh(), service.refresh(), service.refresh())

        assert overlap[0] == 1
        await service.cleanup()
