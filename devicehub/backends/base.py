"""
Base classes and interfaces for platform-specific enumeration backends.
"""

import platform
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..models import (
    CameraInfo,
    ConnectionCheck,
    PrintOptions,
    PrinterInfo,
    ScannerInfo,
    SerialPortInfo,
    USBDeviceInfo,
)
from ..process import ProcessRunner, run_process
from ..exceptions import UnsupportedPlatformError


class PlatformBackend(ABC):
    """
    Abstract base class for platform-specific device backends.

    Each platform implements this interface with OS-specific tools while the
    services keep one discovery and lifecycle logic. Enumeration methods raise
    PlatformDetectionError when the underlying mechanism cannot run at all.
    """

    def __init__(self, runner: ProcessRunner = run_process):
        self.runner = runner

    @property
    @abstractmethod
    def platform_name(self) -> str:
        """Get the name of the platform this backend supports."""

    # Printers

    @abstractmethod
    async def list_printers(self) -> List[PrinterInfo]:
        """Primary printer enumeration."""

    @abstractmethod
    async def list_printers_fallback(self) -> List[PrinterInfo]:
        """Secondary printer enumeration used when the primary one fails."""

    @abstractmethod
    async def print_text(self, file_path: str, printer: str, options: PrintOptions) -> None:
        """
        Send a plain-text file to a printer.

        Raises:
            ExternalToolError: If the print command fails
        """

    @abstractmethod
    async def print_document(self, file_path: str, printer: str, options: PrintOptions) -> None:
        """Send an HTML or PDF file to a printer through the system handler."""

    # Cameras

    @abstractmethod
    async def list_cameras(self) -> List[CameraInfo]:
        """General imaging device listing; ids are enumeration indices."""

    @abstractmethod
    async def list_usb_cameras(self) -> List[CameraInfo]:
        """USB-specific camera listing; ids are OS device ids."""

    # USB

    @abstractmethod
    async def list_usb_devices(self) -> List[USBDeviceInfo]:
        """OS listing of USB devices keyed by OS device path."""

    @abstractmethod
    async def get_usb_device_details(self, device_id: str) -> Dict[str, Any]:
        """Extended OS properties of one USB device."""

    # Serial

    @abstractmethod
    async def list_serial_ports(self) -> List[SerialPortInfo]:
        """OS shell listing of serial ports."""

    # Scanners

    @abstractmethod
    async def list_scanners(self, timeout: float) -> List[ScannerInfo]:
        """Scan-capable devices known to the OS scan subsystem."""

    @abstractmethod
    async def check_scanner_connection(self, timeout: float) -> ConnectionCheck:
        """Probe the first scan-capable device and try to connect to it."""


def get_platform_backend(runner: ProcessRunner = run_process) -> PlatformBackend:
    """
    Select and instantiate the appropriate backend for the current platform.

    Raises:
        UnsupportedPlatformError: If the current platform is not supported
    """
    system = platform.system().lower()

    if system == "linux":
        from .linux import LinuxBackend
        return LinuxBackend(runner)
    elif system == "windows":
        from .windows import WindowsBackend
        return WindowsBackend(runner)
    else:
        raise UnsupportedPlatformError(f"Unsupported platform: {system}", platform=system)
