"""
Linux-specific device backend using CUPS, sysfs, udev and SANE.

Printers are listed and driven with the CUPS command-line tools, cameras are
found via /dev/video* nodes, USB devices and serial ports via sysfs, and
scanners via ``scanimage``.
"""

import asyncio
import glob
import logging
import os
import re
from typing import Any, Dict, List, Optional

from ..exceptions import ExternalToolError, PlatformDetectionError
from ..models import (
    CameraInfo,
    ConnectionCheck,
    DeviceStatus,
    PrintOptions,
    PrinterInfo,
    ScannerInfo,
    SerialPortInfo,
    USBDeviceInfo,
)
from ..process import ProcessRunner, run_process
from .base import PlatformBackend

logger = logging.getLogger(__name__)

ENUMERATION_TIMEOUT = 30.0
PRINT_TIMEOUT = 60.0

USB_CLASS_NAMES = {
    '01': 'Audio',
    '02': 'Communications',
    '03': 'HID',
    '05': 'Physical',
    '06': 'Image',
    '07': 'Printer',
    '08': 'Mass Storage',
    '09': 'Hub',
    '0a': 'CDC Data',
    '0b': 'Smart Card',
    '0e': 'Video',
    '10': 'Audio/Video',
    'e0': 'Wireless',
    'ef': 'Miscellaneous',
    'fe': 'Application Specific',
    'ff': 'Vendor Specific',
}

SERIAL_PATTERNS = ('ttyS*', 'ttyUSB*', 'ttyACM*', 'ttyAMA*')

# CUPS print-quality values
_LP_QUALITY = {'draft': '3', 'normal': '4', 'high': '5'}


def usb_class_name(code: Optional[str]) -> Optional[str]:
    """Map a two-digit hex USB class code to its name; unknown codes pass through."""
    if not code:
        return None
    code = code.strip().lower()
    return USB_CLASS_NAMES.get(code, code)


def parse_lpstat_printers(output: str) -> List[PrinterInfo]:
    """
    Parse ``lpstat -p -d`` output.

    Printer lines look like ``printer NAME is idle.  enabled since ...``,
    ``printer NAME now printing NAME-12.`` or ``printer NAME disabled since ...``;
    the default is announced as ``system default destination: NAME``.
    """
    printers: Dict[str, PrinterInfo] = {}
    default = None

    for line in output.splitlines():
        default_match = re.match(r'system default destination:\s*(\S+)', line)
        if default_match:
            default = default_match.group(1)
            continue

        match = re.match(r'printer\s+(\S+)\s+(.*)', line)
        if not match:
            continue
        name, rest = match.groups()
        if 'disabled' in rest:
            status = DeviceStatus.OFFLINE
        elif 'now printing' in rest:
            status = DeviceStatus.BUSY
        else:
            status = DeviceStatus.AVAILABLE
        printers[name] = PrinterInfo(name=name, status=status)

    if default in printers:
        printers[default].is_default = True
    return list(printers.values())


def parse_lpstat_accepting(output: str) -> List[PrinterInfo]:
    """Parse ``lpstat -a`` (``NAME accepting requests since ...``)."""
    printers = []
    for line in output.splitlines():
        parts = line.split(None, 1)
        if len(parts) < 2:
            continue
        name, rest = parts
        accepting = rest.startswith('accepting')
        printers.append(PrinterInfo(
            name=name,
            status=DeviceStatus.AVAILABLE if accepting else DeviceStatus.OFFLINE
        ))
    return printers


def parse_scanimage_list(output: str) -> List[ScannerInfo]:
    """Parse ``scanimage -L`` lines: ``device `pixma:04A9176D' is a CANON ... scanner``."""
    scanners = []
    for line in output.splitlines():
        match = re.match(r"device\s+[`'‘]([^'’]+)['’]\s+is an?\s+(.+)", line.strip())
        if match:
            scanners.append(ScannerInfo(id=match.group(1), name=match.group(2).strip(), type="sane"))
    return scanners


def build_lp_command(file_path: str, printer: str, options: PrintOptions) -> List[str]:
    args = ['lp', '-d', printer, '-n', str(options.copies)]
    if options.orientation == "landscape":
        args += ['-o', 'landscape']
    if options.paper_size:
        args += ['-o', f'media={options.paper_size}']
    args += ['-o', f'print-quality={_LP_QUALITY[options.quality]}']
    args.append(file_path)
    return args


class LinuxBackend(PlatformBackend):
    """
    Linux backend for device enumeration.

    Args:
        runner: Process runner used for CUPS and SANE commands
        sysfs_root: Mount point of sysfs
        dev_root: Directory holding device nodes
    """

    def __init__(self, runner: ProcessRunner = run_process, sysfs_root: str = "/sys", dev_root: str = "/dev"):
        super().__init__(runner)
        self.sysfs_root = sysfs_root
        self.dev_root = dev_root

    @property
    def platform_name(self) -> str:
        """Get the platform name."""
        return "linux"

    async def _run(self, args: List[str], what: str, timeout: float = ENUMERATION_TIMEOUT):
        try:
            result = await self.runner(args, timeout=timeout)
        except ExternalToolError as e:
            raise PlatformDetectionError(f"Cannot enumerate {what}: {e.message}", platform="linux", cause=e)
        if result.timed_out:
            raise PlatformDetectionError(f"{args[0]} timed out listing {what}", platform="linux")
        return result

    # Printers

    async def list_printers(self) -> List[PrinterInfo]:
        result = await self._run(['lpstat', '-p', '-d'], "printers")
        if result.exit_code != 0:
            # lpstat exits non-zero when CUPS has no queues at all
            if 'No destinations' in result.stderr or 'No destinations' in result.stdout:
                return []
            raise PlatformDetectionError(f"lpstat -p failed: {result.stderr.strip()}", platform="linux")
        return parse_lpstat_printers(result.stdout)

    async def list_printers_fallback(self) -> List[PrinterInfo]:
        result = await self._run(['lpstat', '-a'], "printers")
        if result.exit_code != 0:
            if 'No destinations' in result.stderr or 'No destinations' in result.stdout:
                return []
            raise PlatformDetectionError(f"lpstat -a failed: {result.stderr.strip()}", platform="linux")
        return parse_lpstat_accepting(result.stdout)

    async def _lp(self, file_path: str, printer: str, options: PrintOptions) -> None:
        result = await self.runner(build_lp_command(file_path, printer, options), timeout=PRINT_TIMEOUT)
        if result.timed_out:
            raise ExternalToolError(f"lp timed out printing to '{printer}'", tool="lp")
        if result.exit_code != 0:
            raise ExternalToolError(f"lp failed for '{printer}': {result.stderr.strip()}", tool="lp")
        logger.debug(f"lp: {result.stdout.strip()}")

    async def print_text(self, file_path: str, printer: str, options: PrintOptions) -> None:
        await self._lp(file_path, printer, options)

    async def print_document(self, file_path: str, printer: str, options: PrintOptions) -> None:
        # CUPS picks the conversion filter from the file type
        await self._lp(file_path, printer, options)

    # Cameras

    def _sysfs(self, *parts: str) -> str:
        return os.path.join(self.sysfs_root, *parts)

    def _read_attr(self, path: str) -> Optional[str]:
        try:
            with open(path, 'r') as f:
                value = f.read().strip()
        except OSError:
            return None
        return value or None

    def _find_video_devices(self) -> List[int]:
        """Indices of /dev/videoN capture nodes, sorted."""
        indices = []
        for device in glob.glob(os.path.join(self.dev_root, 'video*')):
            match = re.search(r'video(\d+)$', device)
            if not match:
                continue
            # UVC cameras expose a second metadata node with index 1
            node_index = self._read_attr(self._sysfs('class', 'video4linux', f'video{match.group(1)}', 'index'))
            if node_index not in (None, '0'):
                continue
            indices.append(int(match.group(1)))
        return sorted(indices)

    def _extract_usb_info_from_path(self, sysfs_path: str) -> Dict[str, Any]:
        """Walk up a sysfs path to the enclosing USB device directory."""
        info: Dict[str, Any] = {}
        current_path = sysfs_path
        while current_path and current_path not in ('/', self.sysfs_root):
            vendor = self._read_attr(os.path.join(current_path, 'idVendor'))
            product = self._read_attr(os.path.join(current_path, 'idProduct'))
            if vendor and product:
                info['vendor_id'] = vendor.lower()
                info['product_id'] = product.lower()
                info['manufacturer'] = self._read_attr(os.path.join(current_path, 'manufacturer'))
                info['product'] = self._read_attr(os.path.join(current_path, 'product'))
                info['serial_number'] = self._read_attr(os.path.join(current_path, 'serial'))
                info['port_path'] = current_path
                break
            current_path = os.path.dirname(current_path)
        return info

    def _enumerate_cameras(self) -> List[CameraInfo]:
        cameras = []
        for index in self._find_video_devices():
            device_path = os.path.join(self.dev_root, f'video{index}')
            sysfs_path = self._sysfs('class', 'video4linux', f'video{index}')
            label = self._read_attr(os.path.join(sysfs_path, 'name'))
            if not label:
                usb_info = self._extract_usb_info_from_path(os.path.realpath(os.path.join(sysfs_path, 'device')))
                if usb_info:
                    label = f"USB Camera {usb_info['vendor_id']}:{usb_info['product_id']}"
                else:
                    label = f"Camera video{index}"
            cameras.append(CameraInfo(
                id=str(index),
                name=label,
                type="webcam",
                status=DeviceStatus.AVAILABLE if os.access(device_path, os.R_OK) else DeviceStatus.ERROR,
                device_index=index
            ))
        return cameras

    async def list_cameras(self) -> List[CameraInfo]:
        try:
            return await asyncio.to_thread(self._enumerate_cameras)
        except OSError as e:
            raise PlatformDetectionError(f"Failed to enumerate cameras on Linux: {e}", platform="linux", cause=e)

    def _enumerate_usb_cameras(self) -> List[CameraInfo]:
        pyudev = import_pyudev()
        context = pyudev.Context()
        cameras = []
        for device in context.list_devices(subsystem='usb', DEVTYPE='usb_device'):
            interfaces = device.get('ID_USB_INTERFACES', '')
            if ':0e' not in interfaces:
                continue
            # Cameras with a capture node are already reported by the video listing
            if any(child.subsystem == 'video4linux' for child in device.children):
                continue
            name = (device.get('ID_MODEL_FROM_DATABASE') or device.get('ID_MODEL')
                    or f"USB Camera {device.get('ID_VENDOR_ID')}:{device.get('ID_MODEL_ID')}")
            cameras.append(CameraInfo(id=device.sys_name, name=name, type="usb",
                                      resolutions=["640x480", "1280x720"]))
        return cameras

    async def list_usb_cameras(self) -> List[CameraInfo]:
        return await asyncio.to_thread(self._enumerate_usb_cameras)

    # USB

    def _enumerate_usb_devices(self) -> List[USBDeviceInfo]:
        devices = []
        for path in sorted(glob.glob(self._sysfs('bus', 'usb', 'devices', '*'))):
            name = os.path.basename(path)
            if name.startswith('usb') or ':' in name:
                # Root hubs and interfaces
                continue
            vendor = self._read_attr(os.path.join(path, 'idVendor'))
            product = self._read_attr(os.path.join(path, 'idProduct'))
            if not vendor or not product:
                continue

            device_class = self._read_attr(os.path.join(path, 'bDeviceClass'))
            if device_class in (None, '00'):
                # Class defined per interface
                device_class = self._read_attr(os.path.join(path, f'{name}:1.0', 'bInterfaceClass'))

            devices.append(USBDeviceInfo(
                device_id=name,
                vendor_id=vendor.lower(),
                product_id=product.lower(),
                manufacturer=self._read_attr(os.path.join(path, 'manufacturer')),
                product=self._read_attr(os.path.join(path, 'product')),
                serial_number=self._read_attr(os.path.join(path, 'serial')),
                device_class=usb_class_name(device_class),
                device_subclass=self._read_attr(os.path.join(path, 'bDeviceSubClass')),
            ))
        return devices

    async def list_usb_devices(self) -> List[USBDeviceInfo]:
        if not os.path.isdir(self._sysfs('bus', 'usb', 'devices')):
            raise PlatformDetectionError("USB sysfs tree is not available", platform="linux")
        return await asyncio.to_thread(self._enumerate_usb_devices)

    def _read_usb_details(self, device_id: str) -> Dict[str, Any]:
        path = self._sysfs('bus', 'usb', 'devices', device_id)
        details: Dict[str, Any] = {}
        if not os.path.isdir(path):
            return details

        uevent = self._read_attr(os.path.join(path, 'uevent')) or ''
        for line in uevent.splitlines():
            key, _, value = line.partition('=')
            if key:
                details[key] = value

        for attr in ('bcdDevice', 'speed', 'busnum', 'devnum', 'bMaxPower', 'version',
                     'removable', 'authorized', 'bNumInterfaces', 'bConfigurationValue'):
            value = self._read_attr(os.path.join(path, attr))
            if value is not None:
                details[attr] = value
        return details

    async def get_usb_device_details(self, device_id: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._read_usb_details, device_id)

    # Serial

    def _enumerate_serial_ports(self) -> List[SerialPortInfo]:
        ports = []
        for pattern in SERIAL_PATTERNS:
            for path in sorted(glob.glob(os.path.join(self.dev_root, pattern))):
                name = os.path.basename(path)
                device_link = self._sysfs('class', 'tty', name, 'device')
                # Legacy 8250 nodes exist for every possible UART
                if name.startswith('ttyS') and not os.path.exists(os.path.join(device_link, 'driver')):
                    continue
                usb_info = self._extract_usb_info_from_path(os.path.realpath(device_link))
                ports.append(SerialPortInfo(
                    path=path,
                    manufacturer=usb_info.get('manufacturer'),
                    serial_number=usb_info.get('serial_number'),
                    vendor_id=usb_info.get('vendor_id'),
                    product_id=usb_info.get('product_id'),
                    location_id=usb_info.get('port_path'),
                    friendly_name=usb_info.get('product'),
                ))
        return ports

    async def list_serial_ports(self) -> List[SerialPortInfo]:
        try:
            return await asyncio.to_thread(self._enumerate_serial_ports)
        except OSError as e:
            raise PlatformDetectionError(f"Failed to enumerate serial ports: {e}", platform="linux", cause=e)

    # Scanners

    async def list_scanners(self, timeout: float) -> List[ScannerInfo]:
        result = await self._run(['scanimage', '-L'], "scanners", timeout=timeout)
        if result.exit_code != 0:
            raise PlatformDetectionError(f"scanimage -L failed: {result.stderr.strip()}", platform="linux")
        return parse_scanimage_list(result.stdout)

    async def check_scanner_connection(self, timeout: float) -> ConnectionCheck:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            scanners = await self.list_scanners(timeout)
        except PlatformDetectionError as e:
            reason = "Timeout" if "timed out" in e.message else "ExternalToolError"
            return ConnectionCheck(connected=False, reason=reason, error=e.message)

        if not scanners:
            return ConnectionCheck(connected=False, reason="NotConnected", error="No scanner found")

        scanner = scanners[0]
        remaining = max(deadline - loop.time(), 0.1)
        try:
            result = await self.runner(['scanimage', '-d', scanner.id, '-A'], timeout=remaining)
        except ExternalToolError as e:
            return ConnectionCheck(connected=False, reason="ExternalToolError", error=e.message)

        if result.timed_out:
            return ConnectionCheck(connected=False, reason="Timeout",
                                   error=f"Scanner check timed out after {timeout}s")
        if result.exit_code != 0:
            return ConnectionCheck(connected=False, reason="ConnectError",
                                   error=f"Could not connect to scanner {scanner.name}: {result.stderr.strip()}")
        return ConnectionCheck(connected=True, scanner_name=scanner.name)


def import_pyudev():
    try:
        import pyudev
    except ImportError as e:
        raise PlatformDetectionError("pyudev is not installed", platform="linux", cause=e)
    return pyudev
