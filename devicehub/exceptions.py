"""
Exception classes for DeviceHub operations.

Every error carries a machine-classifiable ``reason`` string so that the
routing layer can surface failures without parsing messages.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class DeviceHubError(Exception):
    """Base exception class for all DeviceHub errors."""

    reason = "Error"

    def __init__(self, message: str, cause: Optional[Exception] = None, context: Optional[dict] = None):
        """
        Initialize DeviceHub error.

        Args:
            message: Error message
            cause: Original exception that caused this error
            context: Additional context information
        """
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = context or {}

        # Log the error with context
        logger.error(f"{self.__class__.__name__}: {message}", extra={
            'cause': str(cause) if cause else None,
            'context': self.context
        })


class NotFoundError(DeviceHubError):
    """Raised when a requested device or port is absent from the registry."""

    reason = "NotFound"

    def __init__(self, message: str, device_id: Optional[str] = None, cause: Optional[Exception] = None):
        context = {'device_id': device_id} if device_id else {}
        super().__init__(message, cause, context)


class DeviceUnavailableError(DeviceHubError):
    """Raised when a device is present but not usable."""

    reason = "Unavailable"

    def __init__(self, message: str, device_id: Optional[str] = None, status: Optional[str] = None):
        context = {'device_id': device_id, 'status': status} if device_id else {}
        super().__init__(message, context=context)


class DeviceBusyError(DeviceUnavailableError):
    """Raised when an exclusive resource is already in use."""

    reason = "DeviceBusy"


class AlreadyOpenError(DeviceHubError):
    """Raised when opening a serial port that already has a connection."""

    reason = "AlreadyOpen"

    def __init__(self, message: str, port: Optional[str] = None):
        context = {'port': port} if port else {}
        super().__init__(message, context=context)


class NotOpenError(DeviceHubError):
    """Raised when using a serial port that has no open connection."""

    reason = "NotOpen"

    def __init__(self, message: str, port: Optional[str] = None):
        context = {'port': port} if port else {}
        super().__init__(message, context=context)


class OperationTimeoutError(DeviceHubError):
    """Raised when a connectivity, scan or read bound is exceeded."""

    reason = "Timeout"

    def __init__(self, message: str, timeout: Optional[float] = None, cause: Optional[Exception] = None):
        context = {'timeout': timeout} if timeout is not None else {}
        super().__init__(message, cause, context)


class ExternalToolError(DeviceHubError):
    """Raised when an external tool exits non-zero or cannot be started."""

    reason = "ExternalToolError"

    def __init__(self, message: str, tool: Optional[str] = None, cause: Optional[Exception] = None):
        context = {'tool': tool} if tool else {}
        super().__init__(message, cause, context)


class DeviceIOError(DeviceHubError):
    """Raised when a filesystem or device read/write/delete fails."""

    reason = "IOError"

    def __init__(self, message: str, path: Optional[str] = None, cause: Optional[Exception] = None):
        context = {'path': path} if path else {}
        super().__init__(message, cause, context)


class ValidationError(DeviceHubError):
    """Raised when request options are malformed."""

    reason = "ValidationError"

    def __init__(self, message: str, field: Optional[str] = None):
        context = {'field': field} if field else {}
        super().__init__(message, context=context)


class NotInitializedError(DeviceHubError):
    """Raised when a service is used outside of its initialized state."""

    reason = "NotInitialized"

    def __init__(self, message: str, service: Optional[str] = None):
        context = {'service': service} if service else {}
        super().__init__(message, context=context)


class NoDefaultPrinterError(DeviceHubError):
    """Raised when no printer is given and none is marked default."""

    reason = "NoDefaultPrinter"


class PrinterUnavailableError(DeviceUnavailableError):
    """Raised when the target printer is not in the available set."""

    reason = "PrinterUnavailable"


class UnsupportedTypeError(ValidationError):
    """Raised when a print job has an unknown content type."""

    reason = "UnsupportedType"


class NotConnectedError(DeviceHubError):
    """Raised when no scan-capable device is connected."""

    reason = "NotConnected"


class ConnectError(DeviceHubError):
    """Raised when a scanner is found but connecting to it fails."""

    reason = "ConnectError"


class NoPagesError(DeviceHubError):
    """Raised when the scanning tool produced no pages."""

    reason = "NoPages"


class PlatformDetectionError(DeviceHubError):
    """Raised when platform-specific device enumeration fails."""

    reason = "DiscoveryError"

    def __init__(self, message: str, platform: Optional[str] = None, cause: Optional[Exception] = None):
        context = {'platform': platform} if platform else {}
        super().__init__(message, cause, context)


class DiscoveryError(DeviceHubError):
    """Raised when no enumeration source of a service could run."""

    reason = "DiscoveryError"

    def __init__(self, message: str, service: Optional[str] = None, cause: Optional[Exception] = None):
        context = {'service': service} if service else {}
        super().__init__(message, cause, context)


class UnsupportedPlatformError(DeviceHubError):
    """Raised when the current platform is not supported."""

    reason = "UnsupportedPlatform"

    def __init__(self, message: str, platform: Optional[str] = None):
        context = {'platform': platform} if platform else {}
        super().__init__(message, context=context)


class ConfigurationError(DeviceHubError):
    """Raised when configuration is invalid or missing."""

    reason = "ConfigurationError"

    def __init__(self, message: str, config_key: Optional[str] = None, cause: Optional[Exception] = None):
        context = {'config_key': config_key} if config_key else {}
        super().__init__(message, cause, context)
