"""
DeviceHub manager class - owns one instance of every enabled device service.

The hub shares a single platform backend between the services, starts them
independently (one failing service does not prevent the others from running)
and tears all of them down on stop.
"""

import logging
from typing import Dict, List, Optional

from .backends.base import PlatformBackend, get_platform_backend
from .config import DeviceHubConfig
from .exceptions import DeviceHubError
from .services import CameraService, DeviceService, PrinterService, ScannerService, SerialService, USBService

logger = logging.getLogger(__name__)


class DeviceHub:
    """
    Main orchestrator integrating all device services.

    Args:
        config: Hub configuration; defaults apply when omitted
        backend: Platform backend; selected from the running OS when omitted

    Raises:
        UnsupportedPlatformError: If no backend exists for the running OS
    """

    def __init__(self, config: Optional[DeviceHubConfig] = None, backend: Optional[PlatformBackend] = None):
        self.config = config or DeviceHubConfig()
        self.backend = backend or get_platform_backend()
        self.failed_services: List[str] = []

        settings = self.config.devices
        self.printer = PrinterService(self.backend, self.config.printer) if settings.enable_printer else None
        self.camera = CameraService(self.backend, self.config.camera) if settings.enable_camera else None
        self.usb = USBService(self.backend, self.config.usb) if settings.enable_usb else None
        self.serial = SerialService(self.backend, self.config.serial) if settings.enable_serial else None
        self.scanner = ScannerService(self.backend, self.config.scanner) if settings.enable_scanner else None

        logger.info(f"DeviceHub created for {self.backend.platform_name} with services: {list(self.services)}")

    @property
    def services(self) -> Dict[str, DeviceService]:
        """Enabled services by name, in start order."""
        candidates = (self.printer, self.camera, self.usb, self.serial, self.scanner)
        return {service.name: service for service in candidates if service is not None}

    def get_service(self, name: str) -> Optional[DeviceService]:
        return self.services.get(name)

    async def start(self) -> None:
        """
        Initialize every enabled service.

        Services whose discovery cannot run are logged and listed in
        ``failed_services``; the others stay usable.
        """
        self.failed_services = []
        for name, service in self.services.items():
            try:
                await service.initialize()
            except DeviceHubError as e:
                logger.error(f"Service {name} failed to start: {e.message}")
                self.failed_services.append(name)

        started = len(self.services) - len(self.failed_services)
        logger.info(f"DeviceHub started ({started}/{len(self.services)} services)")

    async def stop(self) -> None:
        """Clean up every service; safe to call more than once."""
        for name, service in self.services.items():
            await service.cleanup()
        logger.info("DeviceHub stopped")

    def status(self) -> Dict[str, str]:
        """Lifecycle state of every enabled service."""
        return {name: service.state.value for name, service in self.services.items()}

    async def __aenter__(self) -> "DeviceHub":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
