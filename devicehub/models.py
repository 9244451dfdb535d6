"""
Core data models for DeviceHub.

This module defines the device records kept in each service registry, the
transient request options accepted by mutating operations, and the structured
results returned to callers.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .exceptions import DeviceHubError, ValidationError


class DeviceStatus(Enum):
    """Enumeration of possible device states."""
    AVAILABLE = "available"
    BUSY = "busy"
    ERROR = "error"
    OFFLINE = "offline"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def _record_dict(record) -> Dict[str, Any]:
    data = asdict(record)
    data['status'] = record.status.value
    return data


@dataclass
class PrinterInfo:
    """A printer known to the operating system. Keyed by ``name``."""
    name: str
    status: DeviceStatus
    is_default: bool = False
    description: Optional[str] = None

    @property
    def id(self) -> str:
        return self.name

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass
class CameraInfo:
    """
    A camera discovered by one of the camera enumeration sources.

    ``device_index`` is the capture-backend index when the source knows it;
    entries found only through the USB listing leave it unset.
    """
    id: str
    name: str
    type: str = "webcam"
    status: DeviceStatus = DeviceStatus.AVAILABLE
    resolutions: List[str] = field(default_factory=lambda: ["640x480", "1280x720"])
    device_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass
class USBDeviceInfo:
    """A USB device. ``device_id`` is either an OS device path or ``vendor:product``."""
    device_id: str
    vendor_id: str
    product_id: str
    status: DeviceStatus = DeviceStatus.CONNECTED
    manufacturer: Optional[str] = None
    product: Optional[str] = None
    serial_number: Optional[str] = None
    device_class: Optional[str] = None
    device_subclass: Optional[str] = None

    @property
    def id(self) -> str:
        return self.device_id

    @property
    def composite_id(self) -> str:
        """Vendor/product identity shared by all enumeration sources."""
        return f"{self.vendor_id.lower()}:{self.product_id.lower()}"

    def is_connected(self) -> bool:
        return self.status != DeviceStatus.DISCONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass
class SerialPortInfo:
    """A serial port. Keyed by ``path`` (``COM3``, ``/dev/ttyUSB0``)."""
    path: str
    status: DeviceStatus = DeviceStatus.AVAILABLE
    manufacturer: Optional[str] = None
    serial_number: Optional[str] = None
    pnp_id: Optional[str] = None
    vendor_id: Optional[str] = None
    product_id: Optional[str] = None
    location_id: Optional[str] = None
    friendly_name: Optional[str] = None

    @property
    def id(self) -> str:
        return self.path

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass
class ScannerInfo:
    """A scan-capable device. At most one scanner is marked default."""
    id: str
    name: str
    status: DeviceStatus = DeviceStatus.AVAILABLE
    type: str = "document-feeder"
    is_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------

def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key, so camelCase and snake_case both work."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _require_choice(value: Any, choices, field_name: str) -> Any:
    if value not in choices:
        raise ValidationError(
            f"Invalid {field_name} '{value}'. Must be one of: {sorted(choices, key=str)}",
            field=field_name
        )
    return value


def _require_bool(value: Any, field_name: str) -> bool:
    # bool("false") is True, so strings are rejected rather than coerced
    if not isinstance(value, bool):
        raise ValidationError(f"{field_name} must be true or false, got {value!r}", field=field_name)
    return value


def _require_int(value: Any, field_name: str, minimum: int = 1, maximum: Optional[int] = None) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer, got {value!r}", field=field_name)
    if number < minimum or (maximum is not None and number > maximum):
        bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise ValidationError(f"{field_name} must be {bounds}, got {number}", field=field_name)
    return number


@dataclass
class ScanOptions:
    """Shapes a scan request; never persisted."""
    resolution: int = 300
    color_mode: str = "color"
    format: str = "pdf"
    duplex: bool = False

    COLOR_MODES = ("color", "grayscale", "monochrome")
    FORMATS = ("pdf", "jpg", "png", "tiff")

    def validate(self) -> "ScanOptions":
        self.resolution = _require_int(self.resolution, "resolution", 50, 2400)
        _require_choice(self.color_mode, self.COLOR_MODES, "color_mode")
        _require_choice(self.format, self.FORMATS, "format")
        _require_bool(self.duplex, "duplex")
        return self

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]] = None) -> "ScanOptions":
        data = data or {}
        return cls(
            resolution=_pick(data, 'resolution', default=300),
            color_mode=_pick(data, 'colorMode', 'color_mode', default="color"),
            format=_pick(data, 'format', default="pdf"),
            duplex=_pick(data, 'duplex', default=False),
        ).validate()


@dataclass
class CaptureOptions:
    """Parameters of a single still capture."""
    width: int = 640
    height: int = 480
    quality: int = 85
    format: str = "jpg"
    save_to_file: bool = False
    file_path: Optional[str] = None

    FORMATS = ("jpg", "png", "bmp")

    def validate(self) -> "CaptureOptions":
        self.width = _require_int(self.width, "width")
        self.height = _require_int(self.height, "height")
        self.quality = _require_int(self.quality, "quality", 1, 100)
        _require_choice(self.format, self.FORMATS, "format")
        _require_bool(self.save_to_file, "save_to_file")
        return self

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]] = None) -> "CaptureOptions":
        data = data or {}
        return cls(
            width=_pick(data, 'width', default=640),
            height=_pick(data, 'height', default=480),
            quality=_pick(data, 'quality', default=85),
            format=_pick(data, 'format', default="jpg"),
            save_to_file=_pick(data, 'saveToFile', 'save_to_file', default=False),
            file_path=_pick(data, 'filePath', 'file_path'),
        ).validate()


@dataclass
class PrintOptions:
    """Parameters of a print job."""
    printer: Optional[str] = None
    copies: int = 1
    paper_size: Optional[str] = None
    orientation: str = "portrait"
    quality: str = "normal"

    ORIENTATIONS = ("portrait", "landscape")
    QUALITIES = ("draft", "normal", "high")

    def validate(self) -> "PrintOptions":
        self.copies = _require_int(self.copies, "copies", 1, 999)
        _require_choice(self.orientation, self.ORIENTATIONS, "orientation")
        _require_choice(self.quality, self.QUALITIES, "quality")
        return self

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]] = None) -> "PrintOptions":
        data = data or {}
        return cls(
            printer=_pick(data, 'printer'),
            copies=_pick(data, 'copies', default=1),
            paper_size=_pick(data, 'paperSize', 'paper_size'),
            orientation=_pick(data, 'orientation', default="portrait"),
            quality=_pick(data, 'quality', default="normal"),
        ).validate()


@dataclass
class SerialPortOptions:
    """Communication parameters; omitted values fall back to 9600 8N1."""
    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: float = 1
    parity: str = "none"
    rtscts: bool = False
    xonxoff: bool = False

    DATA_BITS = (5, 6, 7, 8)
    STOP_BITS = (1, 1.5, 2)
    PARITIES = ("none", "even", "odd", "mark", "space")

    def validate(self) -> "SerialPortOptions":
        self.baud_rate = _require_int(self.baud_rate, "baud_rate")
        _require_choice(self.data_bits, self.DATA_BITS, "data_bits")
        _require_choice(self.stop_bits, self.STOP_BITS, "stop_bits")
        _require_choice(self.parity, self.PARITIES, "parity")
        _require_bool(self.rtscts, "rtscts")
        _require_bool(self.xonxoff, "xonxoff")
        return self

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]] = None) -> "SerialPortOptions":
        data = data or {}
        return cls(
            baud_rate=_pick(data, 'baudRate', 'baud_rate', default=9600),
            data_bits=_pick(data, 'dataBits', 'data_bits', default=8),
            stop_bits=_pick(data, 'stopBits', 'stop_bits', default=1),
            parity=_pick(data, 'parity', default="none"),
            rtscts=_pick(data, 'rtscts', default=False),
            xonxoff=_pick(data, 'xonxoff', default=False) or _pick(data, 'xon', default=False),
        ).validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class OperationResult:
    """
    Structured outcome of a mutating operation.

    ``reason`` is a machine-classifiable failure code (see exceptions) and
    ``detail`` a human-readable message. Truthiness follows ``success``.
    """
    success: bool
    reason: Optional[str] = None
    detail: Optional[str] = None
    payload: Any = None

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, payload: Any = None, **kwargs) -> "OperationResult":
        return cls(success=True, payload=payload, **kwargs)

    @classmethod
    def failure(cls, reason: str, detail: Optional[str] = None, **kwargs) -> "OperationResult":
        return cls(success=False, reason=reason, detail=detail, **kwargs)

    @classmethod
    def from_error(cls, error: DeviceHubError, **kwargs) -> "OperationResult":
        return cls.failure(error.reason, error.message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = {'success': self.success}
        if self.success:
            if self.payload is not None:
                data['payload'] = self.payload
        else:
            data['error'] = self.reason
            if self.detail:
                data['detail'] = self.detail
        return data


@dataclass
class ScanResult(OperationResult):
    """Scan outcome; ``payload`` is the base64-encoded document."""
    page_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.success and self.page_count is not None:
            data['page_count'] = self.page_count
        return data


@dataclass
class ConnectionCheck:
    """Result of probing the scan subsystem for a usable device."""
    connected: bool
    scanner_name: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
