"""
Configuration objects for DeviceHub services.

Configuration is plain data handed to service constructors; nothing here is
process-wide. ``DeviceHubConfig.from_dict`` accepts the camelCase keys used by
host applications as well as snake_case.
"""

import json
import logging
import platform
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

WINDOWS_NAPS2_PATH = r"C:\Program Files\NAPS2\NAPS2.Console.exe"


def _default_tool_path() -> str:
    if platform.system().lower() == "windows":
        return WINDOWS_NAPS2_PATH
    return "naps2"


def _default_temp_dir() -> Path:
    return Path(tempfile.gettempdir()) / "devicehub"


@dataclass
class ScannerConfig:
    """Location and behaviour of the external scanning utility."""
    tool_path: str = field(default_factory=_default_tool_path)
    profile_name: str = "BrotherADF"
    duplex_profile_name: Optional[str] = None
    detect_timeout: float = 5.0
    connect_timeout: float = 10.0
    scan_timeout: float = 120.0
    temp_dir: Path = field(default_factory=_default_temp_dir)
    default_dpi: int = 200


@dataclass
class PrinterConfig:
    command_timeout: float = 60.0
    enumeration_timeout: float = 30.0


@dataclass
class CameraConfig:
    stream_base_port: int = 8080
    probe_timeout: float = 5.0
    enumeration_timeout: float = 30.0


@dataclass
class USBConfig:
    poll_interval: float = 5.0
    enumeration_timeout: float = 30.0


@dataclass
class SerialConfig:
    probe_timeout: float = 2.0
    read_timeout: float = 5.0
    enumeration_timeout: float = 30.0


@dataclass
class DeviceSettings:
    """Which services the hub starts."""
    enable_printer: bool = True
    enable_camera: bool = True
    enable_usb: bool = True
    enable_serial: bool = True
    enable_scanner: bool = True


def _snake_case(key: str) -> str:
    out = []
    for char in key:
        if char.isupper():
            out.append('_')
            out.append(char.lower())
        else:
            out.append(char)
    return ''.join(out)


def _build(cls, data: Optional[Mapping[str, Any]], section: str):
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Section '{section}' must be a mapping", config_key=section)

    known = {f.name: f for f in fields(cls)}
    values = {}
    for key, value in data.items():
        name = _snake_case(key)
        if name not in known:
            logger.warning(f"Ignoring unknown configuration key {section}.{key}")
            continue
        if name == "temp_dir" and value is not None:
            value = Path(value)
        values[name] = value

    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration for '{section}': {e}", config_key=section, cause=e)


@dataclass
class DeviceHubConfig:
    """Aggregated configuration for every service of the hub."""
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    printer: PrinterConfig = field(default_factory=PrinterConfig)
    camera: CameraConfig = field(default_factory=CameraConfig)
    usb: USBConfig = field(default_factory=USBConfig)
    serial: SerialConfig = field(default_factory=SerialConfig)
    devices: DeviceSettings = field(default_factory=DeviceSettings)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeviceHubConfig":
        """
        Build configuration from a mapping.

        Raises:
            ConfigurationError: If a section is malformed
        """
        return cls(
            scanner=_build(ScannerConfig, data.get('scanner'), 'scanner'),
            printer=_build(PrinterConfig, data.get('printer'), 'printer'),
            camera=_build(CameraConfig, data.get('camera'), 'camera'),
            usb=_build(USBConfig, data.get('usb'), 'usb'),
            serial=_build(SerialConfig, data.get('serial'), 'serial'),
            devices=_build(DeviceSettings, data.get('deviceSettings', data.get('devices')), 'devices'),
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "DeviceHubConfig":
        """
        Load configuration from a JSON file.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        path = Path(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot load configuration from {path}: {e}", config_key=str(path), cause=e)

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration root in {path} must be an object", config_key=str(path))
        return cls.from_dict(data)
