"""
Device services: one per device class, each with its own registry and events.
"""

from .base import DeviceService, ServiceLifecycle, ServiceState
from .camera import CameraService
from .printer import PrinterService
from .scanner import ScannerService, ScanState, classify_scan_failure
from .serial_port import SerialConnection, SerialService
from .usb import DeviceDiff, USBService, diff_snapshots, merge_sources

__all__ = [
    "DeviceService",
    "ServiceLifecycle",
    "ServiceState",
    "CameraService",
    "PrinterService",
    "ScannerService",
    "ScanState",
    "classify_scan_failure",
    "SerialConnection",
    "SerialService",
    "DeviceDiff",
    "USBService",
    "diff_snapshots",
    "merge_sources",
]
