"""
Pytest configuration and shared fixtures for DeviceHub tests.

This module provides an in-memory platform backend, a fake process runner and
a fake pyserial port so that the services can be exercised without hardware.
"""

import queue
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import serial

# Add the project root to Python path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from devicehub.backends.base import PlatformBackend
from devicehub.config import CameraConfig, PrinterConfig, ScannerConfig, SerialConfig, USBConfig
from devicehub.exceptions import PlatformDetectionError
from devicehub.models import (
    CameraInfo,
    ConnectionCheck,
    DeviceStatus,
    PrinterInfo,
    ScannerInfo,
    SerialPortInfo,
    USBDeviceInfo,
)
from devicehub.process import ProcessResult


# Test markers configuration
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow running tests")
    config.addinivalue_line("markers", "linux: marks tests that require Linux platform")
    config.addinivalue_line("markers", "windows: marks tests that require Windows platform")


def pytest_collection_modifyitems(config, items):
    """Add the slow marker to tests with 'slow' in their name."""
    for item in items:
        if "slow" in item.name.lower():
            item.add_marker(pytest.mark.slow)


class FakeBackend(PlatformBackend):
    """
    In-memory backend. Listings are plain attributes; method names added to
    ``failing`` raise PlatformDetectionError.
    """

    def __init__(self, runner=None):
        super().__init__(runner=runner or FakeRunner())
        self.printers: List[PrinterInfo] = []
        self.fallback_printers: List[PrinterInfo] = []
        self.cameras: List[CameraInfo] = []
        self.usb_cameras: List[CameraInfo] = []
        self.usb_devices: List[USBDeviceInfo] = []
        self.usb_details: Dict[str, Dict[str, Any]] = {}
        self.serial_ports: List[SerialPortInfo] = []
        self.scanners: List[ScannerInfo] = []
        self.connection = ConnectionCheck(connected=True, scanner_name="Fake ADF")
        self.failing = set()
        self.print_jobs: List[Dict[str, Any]] = []
        self.calls: List[str] = []

    @property
    def platform_name(self) -> str:
        return "fake"

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failing:
            raise PlatformDetectionError(f"{name} is not available", platform="fake")

    async def list_printers(self):
        self._call("list_printers")
        return [PrinterInfo(p.name, p.status, p.is_default, p.description) for p in self.printers]

    async def list_printers_fallback(self):
        self._call("list_printers_fallback")
        return list(self.fallback_printers)

    async def print_text(self, file_path, printer, options):
        self._call("print_text")
        self.print_jobs.append({'kind': 'text', 'printer': printer, 'copies': options.copies,
                                'content': Path(file_path).read_text(encoding='utf-8'), 'file': file_path})

    async def print_document(self, file_path, printer, options):
        self._call("print_document")
        self.print_jobs.append({'kind': 'document', 'printer': printer, 'copies': options.copies,
                                'file': file_path})

    async def list_cameras(self):
        self._call("list_cameras")
        return [CameraInfo(c.id, c.name, c.type, c.status, list(c.resolutions), c.device_index)
                for c in self.cameras]

    async def list_usb_cameras(self):
        self._call("list_usb_cameras")
        return [CameraInfo(c.id, c.name, c.type, c.status, list(c.resolutions), c.device_index)
                for c in self.usb_cameras]

    async def list_usb_devices(self):
        self._call("list_usb_devices")
        return [USBDeviceInfo(d.device_id, d.vendor_id, d.product_id, manufacturer=d.manufacturer,
                              product=d.product, device_class=d.device_class)
                for d in self.usb_devices]

    async def get_usb_device_details(self, device_id):
        self._call("get_usb_device_details")
        return dict(self.usb_details.get(device_id, {}))

    async def list_serial_ports(self):
        self._call("list_serial_ports")
        return [SerialPortInfo(path=p.path, manufacturer=p.manufacturer) for p in self.serial_ports]

    async def list_scanners(self, timeout):
        self._call("list_scanners")
        return [ScannerInfo(s.id, s.name, s.status, s.type) for s in self.scanners]

    async def check_scanner_connection(self, timeout):
        self._call("check_scanner_connection")
        return self.connection


class FakeRunner:
    """
    Stand-in for ``run_process``: records argument lists and answers with a
    handler (called with the args) or queued results.
    """

    def __init__(self, handler=None):
        self.handler = handler
        self.results: List[ProcessResult] = []
        self.calls: List[List[str]] = []

    def queue(self, *results: ProcessResult) -> None:
        self.results.extend(results)

    async def __call__(self, args, timeout, input=None):
        self.calls.append(list(args))
        if self.handler is not None:
            return self.handler(list(args))
        if self.results:
            return self.results.pop(0)
        return ProcessResult(exit_code=0)


class FakeSerial:
    """Minimal pyserial ``Serial`` double fed through ``feed()``."""

    def __init__(self, port=None, **kwargs):
        self.port = port
        self.kwargs = kwargs
        self.written: List[bytes] = []
        self.closed = False
        self._incoming: "queue.Queue[bytes]" = queue.Queue()

    @property
    def in_waiting(self) -> int:
        return 0

    def feed(self, data: bytes) -> None:
        self._incoming.put(data)

    def read(self, size: int = 1) -> bytes:
        try:
            return self._incoming.get(timeout=0.02)
        except queue.Empty:
            return b""

    def write(self, data: bytes) -> int:
        if self.closed:
            raise serial.SerialException("write on closed port")
        self.written.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class FakeSerialFactory:
    """Builds FakeSerial instances; paths in ``fail_paths`` fail to open."""

    def __init__(self):
        self.instances: Dict[str, FakeSerial] = {}
        self.fail_paths = set()

    def __call__(self, port=None, **kwargs):
        if port in self.fail_paths:
            raise serial.SerialException(f"could not open port {port}")
        ser = FakeSerial(port, **kwargs)
        self.instances[port] = ser
        return ser


@pytest.fixture
def fake_backend():
    """Backend with one printer, camera, USB device, serial port and scanner."""
    backend = FakeBackend()
    backend.printers = [
        PrinterInfo("Office Laser", DeviceStatus.AVAILABLE, is_default=True, description="2nd floor"),
        PrinterInfo("Label Printer", DeviceStatus.OFFLINE),
    ]
    backend.cameras = [CameraInfo(id="0", name="Integrated Webcam", device_index=0)]
    backend.usb_devices = [
        USBDeviceInfo("/sys/bus/usb/devices/1-1", "046d", "0825", product="Webcam C270", device_class="Video"),
        USBDeviceInfo("/sys/bus/usb/devices/1-2", "0403", "6001", product="FT232R", device_class="Vendor Specific"),
    ]
    backend.serial_ports = [SerialPortInfo(path="/dev/ttyUSB0", manufacturer="FTDI")]
    backend.scanners = [ScannerInfo(id="brother:ads", name="Brother ADS-2200")]
    return backend


@pytest.fixture
def serial_factory():
    return FakeSerialFactory()


@pytest.fixture
def scanner_config(tmp_path):
    return ScannerConfig(tool_path="naps2", profile_name="TestProfile", duplex_profile_name="TestDuplex",
                         connect_timeout=1.0, scan_timeout=5.0, temp_dir=tmp_path / "scans")


@pytest.fixture
def usb_config():
    # No background polling in tests; passes are driven explicitly
    return USBConfig(poll_interval=0)


@pytest.fixture
def printer_config():
    return PrinterConfig(command_timeout=2.0, enumeration_timeout=2.0)


@pytest.fixture
def camera_config():
    return CameraConfig(probe_timeout=1.0, enumeration_timeout=2.0)


@pytest.fixture
def serial_config():
    return SerialConfig(probe_timeout=1.0, read_timeout=1.0, enumeration_timeout=2.0)


async def no_ports() -> List[SerialPortInfo]:
    return []


@pytest.fixture
def make_image(tmp_path):
    """Create a PNG of the given pixel size and DPI, returning its path."""
    from PIL import Image

    def _make(name: str, width: int, height: int, dpi: Optional[int] = None) -> Path:
        path = tmp_path / name
        image = Image.new("RGB", (width, height), color=(200, 200, 200))
        if dpi is not None:
            image.save(path, dpi=(dpi, dpi))
        else:
            image.save(path)
        return path

    return _make
