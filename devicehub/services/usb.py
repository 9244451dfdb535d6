"""
USB device discovery with connect/disconnect tracking.

Discovery merges several enumeration sources and compares each pass with the
previous one. The comparison is a pure function over device ids so that it
can be reasoned about (and tested) without any hardware.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..backends.base import PlatformBackend
from ..backends.linux import import_pyudev, usb_class_name
from ..config import USBConfig
from ..exceptions import DeviceHubError, DiscoveryError, NotFoundError
from ..models import DeviceStatus, USBDeviceInfo
from .base import DeviceService

logger = logging.getLogger(__name__)

USBSource = Callable[[], Awaitable[List[USBDeviceInfo]]]


@dataclass
class DeviceDiff:
    """Ids that appeared, vanished or stayed between two discovery passes."""
    connected: List[str] = field(default_factory=list)
    disconnected: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.connected or self.disconnected)


def diff_snapshots(previous: Iterable[str], current: Iterable[str]) -> DeviceDiff:
    """
    Compare the connected ids of two passes.

    Args:
        previous: Ids connected after the previous pass
        current: Ids found by the current pass
    """
    previous_ids = set(previous)
    current_ids = set(current)
    return DeviceDiff(
        connected=sorted(current_ids - previous_ids),
        disconnected=sorted(previous_ids - current_ids),
        unchanged=sorted(previous_ids & current_ids),
    )


def merge_sources(*sources: Iterable[USBDeviceInfo]) -> Dict[str, USBDeviceInfo]:
    """
    Merge device listings; the first source to report a device wins.

    A record from a later source is dropped when its id or its vendor/product
    composite was already reported by an earlier source. Identical devices
    within one source are all kept.
    """
    merged: Dict[str, USBDeviceInfo] = {}
    for source in sources:
        earlier_composites = {device.composite_id for device in merged.values()}
        for device in source:
            if device.id in merged or device.composite_id in earlier_composites:
                continue
            merged[device.id] = device
    return merged


def _udev_usb_devices() -> List[USBDeviceInfo]:
    pyudev = import_pyudev()
    context = pyudev.Context()
    devices = []
    for device in context.list_devices(subsystem='usb', DEVTYPE='usb_device'):
        vendor_id = device.get('ID_VENDOR_ID')
        product_id = device.get('ID_MODEL_ID')
        if not vendor_id or not product_id:
            continue
        device_class = device.attributes.get('bDeviceClass')
        devices.append(USBDeviceInfo(
            device_id=f"{vendor_id}:{product_id}".lower(),
            vendor_id=vendor_id.lower(),
            product_id=product_id.lower(),
            manufacturer=device.get('ID_VENDOR_FROM_DATABASE') or device.get('ID_VENDOR'),
            product=device.get('ID_MODEL_FROM_DATABASE') or device.get('ID_MODEL'),
            serial_number=device.get('ID_SERIAL_SHORT'),
            device_class=usb_class_name(device_class.decode() if device_class else None),
        ))
    return devices


async def list_udev_usb_devices() -> List[USBDeviceInfo]:
    """Native listing through libudev; ids are ``vendor:product``."""
    return await asyncio.to_thread(_udev_usb_devices)


class USBService(DeviceService):
    """
    Tracks connected USB devices and reports changes.

    While initialized, a background task repeats discovery every
    ``config.poll_interval`` seconds (a non-positive interval disables it).
    """

    name = "usb"
    EVENTS = ("device-connected", "device-disconnected", "devices-updated")

    def __init__(self, backend: PlatformBackend, config: Optional[USBConfig] = None,
                 sources: Optional[Sequence[USBSource]] = None):
        super().__init__()
        self.backend = backend
        self.config = config or USBConfig()
        if sources is None:
            sources = [backend.list_usb_devices]
            if backend.platform_name == "linux":
                sources.append(list_udev_usb_devices)
        self.sources: List[USBSource] = list(sources)
        self._devices: Dict[str, USBDeviceInfo] = {}
        self._monitor_task: Optional[asyncio.Task] = None
        self._monitors: Dict[int, Tuple[Callable, Callable]] = {}
        self._next_handle = 1

    async def _refresh(self, strict: bool) -> None:
        listings = []
        for source in self.sources:
            try:
                listings.append(await asyncio.wait_for(source(), self.config.enumeration_timeout))
            except asyncio.TimeoutError:
                logger.warning(f"USB source {getattr(source, '__name__', source)} timed out")
            except Exception as e:
                # Includes OS and udev errors from devices unplugged mid-listing
                logger.warning(f"USB source {getattr(source, '__name__', source)} failed: {e}")

        if not listings:
            if strict:
                raise DiscoveryError("Every USB enumeration source failed", service=self.name)
            # An empty pass would report every device as disconnected
            logger.warning("USB enumeration failed, keeping previous device list")
            return

        current = merge_sources(*listings)
        previous = [device_id for device_id, device in self._devices.items() if device.is_connected()]
        diff = diff_snapshots(previous, current.keys())

        for device_id in diff.disconnected:
            device = self._devices[device_id]
            device.status = DeviceStatus.DISCONNECTED
            logger.info(f"USB device disconnected: {device_id}")
            self.events.emit("device-disconnected", device)

        devices = {device_id: device for device_id, device in self._devices.items()
                   if not device.is_connected() and device_id not in current}
        devices.update(current)
        self._devices = devices

        for device_id in diff.connected:
            logger.info(f"USB device connected: {device_id}")
            self.events.emit("device-connected", current[device_id])

        self.events.emit("devices-updated", self._connected())

    def _connected(self) -> List[USBDeviceInfo]:
        return [device for device in self._devices.values() if device.is_connected()]

    async def _after_initialize(self) -> None:
        self.start_monitoring()

    async def _release(self) -> None:
        await self.stop_monitoring()
        self._monitors.clear()

    def _clear_registry(self) -> None:
        self._devices.clear()

    # Monitoring

    def start_monitoring(self) -> None:
        """Start the recurring discovery task if it is not running."""
        if self.config.poll_interval <= 0:
            logger.debug("USB polling disabled")
            return
        if self._monitor_task is not None and not self._monitor_task.done():
            logger.warning("USB monitoring already running")
            return
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Started USB monitoring every {self.config.poll_interval}s")

    async def stop_monitoring(self) -> None:
        if self._monitor_task is None:
            return
        self._monitor_task.cancel()
        try:
            await self._monitor_task
        except asyncio.CancelledError:
            pass
        self._monitor_task = None
        logger.info("Stopped USB monitoring")

    async def _monitor_loop(self) -> None:
        logger.debug("USB monitoring loop started")
        while True:
            await asyncio.sleep(self.config.poll_interval)
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Error in USB monitoring loop: {e}")

    def monitor_device_changes(self, callback: Callable[[str, USBDeviceInfo], Any]) -> int:
        """
        Register ``callback(event, device)`` for connect/disconnect changes.

        Args:
            callback: Called with "connected" or "disconnected" and the record

        Returns:
            int: Handle for remove_device_monitor()
        """
        if not callable(callback):
            raise TypeError("Callback must be callable")

        def on_connected(device):
            return callback("connected", device)

        def on_disconnected(device):
            return callback("disconnected", device)

        self.events.subscribe("device-connected", on_connected)
        self.events.subscribe("device-disconnected", on_disconnected)
        handle = self._next_handle
        self._next_handle += 1
        self._monitors[handle] = (on_connected, on_disconnected)
        return handle

    def remove_device_monitor(self, handle: int) -> bool:
        """Unregister a callback added by monitor_device_changes()."""
        wrappers = self._monitors.pop(handle, None)
        if wrappers is None:
            return False
        on_connected, on_disconnected = wrappers
        self.events.unsubscribe("device-connected", on_connected)
        self.events.unsubscribe("device-disconnected", on_disconnected)
        return True

    # Queries

    async def get_devices(self) -> List[USBDeviceInfo]:
        """
        Refresh and return connected devices.

        Raises:
            NotInitializedError: If the service is not initialized
        """
        return await self.get_available_devices()

    async def get_available_devices(self) -> List[USBDeviceInfo]:
        self.lifecycle.require()
        await self.refresh()
        return self._connected()

    async def is_device_available(self, device_id: str) -> bool:
        self.lifecycle.require()
        device = self._devices.get(device_id)
        return device is not None and device.is_connected()

    async def get_device_info(self, device_id: str) -> Optional[USBDeviceInfo]:
        self.lifecycle.require()
        return self._devices.get(device_id)

    async def test_device(self, device_id: str) -> bool:
        return await self.is_device_available(device_id)

    async def get_device_details(self, device_id: str) -> Dict[str, Any]:
        """
        Record merged with extended OS properties.

        Raises:
            NotFoundError: If the device is unknown
        """
        self.lifecycle.require()
        device = self._devices.get(device_id)
        if device is None:
            raise NotFoundError(f"USB device {device_id} not found", device_id=device_id)

        details: Dict[str, Any] = {}
        if device.device_id != device.composite_id:
            try:
                details = await asyncio.wait_for(self.backend.get_usb_device_details(device.device_id),
                                                 self.config.enumeration_timeout)
            except (DeviceHubError, asyncio.TimeoutError) as e:
                logger.warning(f"Could not read details of {device_id}: {e}")
        return {**device.to_dict(), **details}

    def get_devices_by_class(self, device_class: str) -> List[USBDeviceInfo]:
        """Connected devices of a class (case-insensitive); no discovery."""
        self.lifecycle.require()
        wanted = device_class.lower()
        return [d for d in self._connected() if d.device_class and d.device_class.lower() == wanted]

    def get_devices_by_vendor(self, vendor_id: str) -> List[USBDeviceInfo]:
        self.lifecycle.require()
        wanted = vendor_id.lower()
        return [d for d in self._connected() if d.vendor_id.lower() == wanted]

    def get_devices_by_product(self, product_id: str) -> List[USBDeviceInfo]:
        self.lifecycle.require()
        wanted = product_id.lower()
        return [d for d in self._connected() if d.product_id.lower() == wanted]
