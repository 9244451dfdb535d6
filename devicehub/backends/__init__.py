"""
Platform-specific backend implementations for device enumeration.

This package contains backend implementations for different operating systems:
- Windows: PowerShell/WMI queries, WIA for scanners
- Linux: CUPS, sysfs and udev, SANE for scanners
"""

from .base import PlatformBackend, get_platform_backend
from .linux import LinuxBackend
from .windows import WindowsBackend

__all__ = [
    "PlatformBackend",
    "get_platform_backend",
    "LinuxBackend",
    "WindowsBackend",
]
