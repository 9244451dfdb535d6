"""
Platform detection utilities for DeviceHub.

This module reports the current platform and which of the external tools and
Python packages the device services rely on are available.
"""

import importlib.util
import os
import platform
import shutil
from typing import Dict, List, Optional


def get_platform_info() -> Dict[str, str]:
    """
    Get platform information.

    Returns:
        Dict[str, str]: Platform information including system, release, version, etc.
    """
    return {
        'system': platform.system(),
        'release': platform.release(),
        'version': platform.version(),
        'machine': platform.machine(),
        'architecture': platform.architecture()[0],
        'python_version': platform.python_version(),
        'python_implementation': platform.python_implementation(),
    }


def is_linux() -> bool:
    """Check if running on Linux."""
    return platform.system().lower() == 'linux'


def is_windows() -> bool:
    """Check if running on Windows."""
    return platform.system().lower() == 'windows'


# Import name -> what it is used for
PYTHON_PACKAGES = {
    'serial': 'serial ports (pyserial)',
    'cv2': 'camera capture (opencv)',
    'PIL': 'image geometry (Pillow)',
    'reportlab': 'PDF assembly (reportlab)',
}


def _check_command_available(command: str) -> bool:
    """Check if a system command is on PATH or is an existing executable path."""
    if os.path.isabs(command):
        return os.path.isfile(command) and os.access(command, os.X_OK)
    return shutil.which(command) is not None


def _check_python_package(package_name: str) -> bool:
    """Check if a Python package is importable without importing it."""
    return importlib.util.find_spec(package_name) is not None


def check_platform_dependencies(scanner_tool: Optional[str] = None) -> Dict[str, bool]:
    """
    Check availability of platform-specific tools and libraries.

    Args:
        scanner_tool: Configured scanning utility, checked in addition to the
            platform tools

    Returns:
        Dict[str, bool]: Availability status keyed by tool or package name
    """
    status = {}

    if is_linux():
        for command in ('lpstat', 'lp', 'scanimage', 'udevadm'):
            status[command] = _check_command_available(command)
        status['pyudev'] = _check_python_package('pyudev')
    elif is_windows():
        status['powershell'] = _check_command_available('powershell')
        status['wmic'] = _check_command_available('wmic')

    if scanner_tool:
        status[scanner_tool] = _check_command_available(scanner_tool)

    for package in PYTHON_PACKAGES:
        status[package] = _check_python_package(package)

    return status


def get_installation_instructions() -> List[str]:
    """Platform-specific hints for the missing system pieces."""
    if is_linux():
        return [
            "# Printing and scanner discovery (Ubuntu/Debian):",
            "sudo apt-get install cups-client sane-utils libudev-dev",
            "",
            "# Camera access requires membership of the 'video' group,",
            "# serial ports the 'dialout' group.",
        ]
    if is_windows():
        return [
            "# Windows uses built-in PowerShell and WMI, no extra system packages needed.",
            "# Install NAPS2 for document scanning.",
        ]
    return []


def format_platform_status(scanner_tool: Optional[str] = None) -> List[str]:
    """Human-readable platform report, one line per entry."""
    info = get_platform_info()
    lines = [
        "DeviceHub Platform Information",
        "=" * 40,
        f"System: {info['system']} {info['release']}",
        f"Architecture: {info['architecture']}",
        f"Python: {info['python_version']} ({info['python_implementation']})",
        "",
        "Dependencies:",
    ]

    for name, available in check_platform_dependencies(scanner_tool).items():
        mark = "✓" if available else "✗"
        purpose = PYTHON_PACKAGES.get(name)
        lines.append(f"  {mark} {name}" + (f" - {purpose}" if purpose else ""))

    instructions = get_installation_instructions()
    if instructions:
        lines.append("")
        lines.append("Installation Instructions:")
        lines.extend(f"  {line}" for line in instructions)
    return lines
