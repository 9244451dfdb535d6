"""
Tests for the DeviceHub orchestrator.
"""

import pytest

from devicehub.config import DeviceHubConfig, DeviceSettings, ScannerConfig, USBConfig
from devicehub.manager import DeviceHub
from devicehub.services import ServiceState


@pytest.fixture(autouse=True)
def no_library_ports(mocker):
    """Keep the host's real serial ports out of the hub's serial listing."""
    mocker.patch("devicehub.services.serial_port._pyserial_ports", return_value=[])


@pytest.fixture
def hub_config(tmp_path):
    return DeviceHubConfig(
        scanner=ScannerConfig(tool_path="naps2", temp_dir=tmp_path / "scans"),
        usb=USBConfig(poll_interval=0),
    )


class TestDeviceHub:

    def test_creates_enabled_services(self, fake_backend, hub_config):
        hub = DeviceHub(hub_config, backend=fake_backend)

        assert list(hub.services) == ["printer", "camera", "usb", "serial", "scanner"]
        assert hub.get_service("usb") is hub.usb
        assert hub.get_service("fax") is None

    def test_disabled_services_are_not_created(self, fake_backend, hub_config):
        hub_config.devices = DeviceSettings(enable_camera=False, enable_scanner=False)

        hub = DeviceHub(hub_config, backend=fake_backend)

        assert list(hub.services) == ["printer", "usb", "serial"]
        assert hub.camera is None

    def test_backend_selected_from_platform(self, mocker, hub_config):
        mocker.patch("platform.system", return_value="Windows")

        hub = DeviceHub(hub_config)

        assert hub.backend.platform_name == "windows"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, fake_backend, hub_config):
        hub = DeviceHub(hub_config, backend=fake_backend)

        await hub.start()

        assert hub.failed_services == []
        assert set(hub.status().values()) == {ServiceState.INITIALIZED.value}
        assert [p.name for p in await hub.printer.get_printers()] == ["Office Laser", "Label Printer"]

        await hub.stop()
        assert set(hub.status().values()) == {ServiceState.FINALIZED.value}

    @pytest.mark.asyncio
    async def test_failing_service_does_not_stop_others(self, fake_backend, hub_config):
        fake_backend.failing.update({"list_scanners", "list_printers", "list_printers_fallback"})
        hub = DeviceHub(hub_config, backend=fake_backend)

        await hub.start()

        assert hub.failed_services == ["printer", "scanner"]
        status = hub.status()
        assert status["scanner"] == ServiceState.UNINITIALIZED.value
        assert status["usb"] == ServiceState.INITIALIZED.value
        assert [c.id for c in await hub.camera.get_cameras()] == ["0"]
        await hub.stop()

    @pytest.mark.asyncio
    async def test_context_manager(self, fake_backend, hub_config):
        async with DeviceHub(hub_config, backend=fake_backend) as hub:
            devices = await hub.usb.get_devices()
            assert len(devices) == 2

        assert hub.usb.state == ServiceState.FINALIZED

    @pytest.mark.asyncio
    async def test_stop_is_repeatable(self, fake_backend, hub_config):
        hub = DeviceHub(hub_config, backend=fake_backend)
        await hub.start()

        await hub.stop()
        await hub.stop()

        assert hub.serial.state == ServiceState.FINALIZED
