"""
DeviceHub - asyncio access to printers, cameras, USB devices, serial ports
and document scanners.

Each device class is handled by a service with its own registry, lifecycle and
events; DeviceHub owns one instance of every enabled service.
"""

__version__ = "0.1.0"

from .config import DeviceHubConfig
from .exceptions import DeviceHubError
from .manager import DeviceHub
from .models import (
    CameraInfo,
    CaptureOptions,
    DeviceStatus,
    OperationResult,
    PrinterInfo,
    PrintOptions,
    ScannerInfo,
    ScanOptions,
    ScanResult,
    SerialPortInfo,
    SerialPortOptions,
    USBDeviceInfo,
)
from .services import CameraService, PrinterService, ScannerService, SerialService, USBService

__all__ = [
    "DeviceHub",
    "DeviceHubConfig",
    "DeviceHubError",
    "DeviceStatus",
    "PrinterInfo",
    "CameraInfo",
    "USBDeviceInfo",
    "SerialPortInfo",
    "ScannerInfo",
    "ScanOptions",
    "CaptureOptions",
    "PrintOptions",
    "SerialPortOptions",
    "OperationResult",
    "ScanResult",
    "PrinterService",
    "CameraService",
    "USBService",
    "SerialService",
    "ScannerService",
]
