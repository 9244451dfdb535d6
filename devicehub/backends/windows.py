"""
Windows-specific device backend using PowerShell, WMI and WIA.

Every query runs as a PowerShell script ending in ``ConvertTo-Json`` (or a
line-oriented marker protocol for the WIA connection probe) so that parsing is
uniform and the scripts can be replaced by canned output in tests.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

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
from ..process import ProcessRunner, ps_quote, run_powershell, run_powershell_json, run_process
from .base import PlatformBackend

logger = logging.getLogger(__name__)

ENUMERATION_TIMEOUT = 30.0
PRINT_TIMEOUT = 60.0

PRINTERS_SCRIPT = '''
$default = (Get-CimInstance -ClassName Win32_Printer -Filter 'Default=TRUE').Name
Get-Printer | ForEach-Object {
    [PSCustomObject]@{
        Name = $_.Name
        PrinterStatus = [int]$_.PrinterStatus
        Default = ($_.Name -eq $default)
        Comment = $_.Comment
    }
} | ConvertTo-Json -Compress
'''

CAMERAS_SCRIPT = (
    'Get-CimInstance -ClassName Win32_PnPEntity | '
    'Where-Object { $_.Name -match "camera|webcam|imaging" } | '
    'Select-Object Name, DeviceID, Status | ConvertTo-Json -Compress'
)

USB_CAMERAS_SCRIPT = (
    'Get-CimInstance -ClassName Win32_USBHub | '
    'Where-Object { $_.Name -match "camera|video|imaging" } | '
    'Select-Object Name, DeviceID | ConvertTo-Json -Compress'
)

USB_DEVICES_SCRIPT = (
    "Get-CimInstance -ClassName Win32_PnPEntity -Filter \"DeviceID LIKE 'USB%'\" | "
    "Select-Object DeviceID, Name, Manufacturer, Service, Status, PNPClass, ClassGuid | "
    "ConvertTo-Json -Compress"
)

SERIAL_PORTS_SCRIPT = (
    'Get-CimInstance -ClassName Win32_SerialPort | '
    'Select-Object DeviceID, Name, Description, Manufacturer, PNPDeviceID | ConvertTo-Json -Compress'
)

# WIA device type 1 is a scanner
SCANNERS_SCRIPT = '''
try {
    $dm = New-Object -ComObject WIA.DeviceManager
    $scanners = @()
    for ($i = 1; $i -le $dm.DeviceInfos.Count; $i++) {
        $d = $dm.DeviceInfos.Item($i)
        if ($d.Type -eq 1) {
            $scanners += [PSCustomObject]@{ id = $d.DeviceID; name = $d.Properties.Item('Name').Value }
        }
    }
    ConvertTo-Json -InputObject @($scanners) -Compress
} catch {
    Write-Error $_.Exception.Message
    exit 1
}
'''

SCANNER_CONNECTION_SCRIPT = '''
try {
    $dm = New-Object -ComObject WIA.DeviceManager
    $scanner = $null
    for ($i = 1; $i -le $dm.DeviceInfos.Count; $i++) {
        $d = $dm.DeviceInfos.Item($i)
        if ($d.Type -eq 1) { $scanner = $d; break }
    }
    if ($scanner -eq $null) { Write-Output "NO_SCANNER"; exit }
    $name = $scanner.Properties.Item('Name').Value
    try {
        $device = $scanner.Connect()
        $null = $device.Items.Count
        Write-Output "CONNECTED:$name"
    } catch {
        Write-Output "ERROR:Could not connect to scanner $name"
    }
} catch {
    Write-Output "ERROR:$($_.Exception.Message)"
}
'''

# Get-Printer PrinterStatus values
_PRINTER_STATUS = {
    0: DeviceStatus.AVAILABLE,   # Normal
    1: DeviceStatus.OFFLINE,     # Paused
    2: DeviceStatus.ERROR,       # Error
    4: DeviceStatus.ERROR,       # PaperJam
    5: DeviceStatus.ERROR,       # PaperOut
    7: DeviceStatus.ERROR,       # PaperProblem
    8: DeviceStatus.OFFLINE,     # Offline
    9: DeviceStatus.BUSY,        # IOActive
    10: DeviceStatus.BUSY,       # Busy
    11: DeviceStatus.BUSY,       # Printing
}

# Win32_Printer.Status strings
_WMI_PRINTER_STATUS = {
    'ok': DeviceStatus.AVAILABLE,
    'unknown': DeviceStatus.AVAILABLE,
    'error': DeviceStatus.ERROR,
    'nonrecover': DeviceStatus.ERROR,
    'pred fail': DeviceStatus.ERROR,
    'no contact': DeviceStatus.OFFLINE,
    'lost comm': DeviceStatus.OFFLINE,
}


def parse_usb_device_id(device_id: str) -> Tuple[str, str, Optional[str]]:
    """
    Parse USB vendor ID, product ID, and serial number from a PnP device ID.

    Args:
        device_id: Windows device ID (``USB\\VID_xxxx&PID_yyyy\\serial_or_instance``)

    Returns:
        tuple: (vendor_id, product_id, serial_number)
    """
    vendor_id = 'unknown'
    product_id = 'unknown'
    serial_number = None

    vid_match = re.search(r'VID_([0-9A-F]{4})', device_id, re.IGNORECASE)
    if vid_match:
        vendor_id = vid_match.group(1).lower()

    pid_match = re.search(r'PID_([0-9A-F]{4})', device_id, re.IGNORECASE)
    if pid_match:
        product_id = pid_match.group(1).lower()

    # Instance ids generated by Windows contain '&'; real serials do not
    parts = device_id.split('\\')
    if len(parts) >= 3:
        candidate = parts[-1]
        if candidate and '&' not in candidate and not candidate.isdigit():
            serial_number = candidate

    return vendor_id, product_id, serial_number


def parse_wmic_printers(output: str) -> List[PrinterInfo]:
    """
    Parse ``wmic printer get Name,Status,Default /format:csv``.

    WMIC sorts the columns alphabetically after ``Node``: Node,Default,Name,Status.
    """
    printers = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith('Node'):
            continue
        parts = [part.strip() for part in line.split(',')]
        if len(parts) < 4 or not parts[2]:
            continue
        printers.append(PrinterInfo(
            name=parts[2],
            status=_WMI_PRINTER_STATUS.get(parts[3].lower(), DeviceStatus.BUSY),
            is_default=parts[1].lower() == 'true'
        ))
    return printers


def parse_connection_probe(output: str) -> ConnectionCheck:
    """Interpret the marker line printed by the WIA connection probe."""
    result = output.strip()
    if result.startswith('CONNECTED:'):
        return ConnectionCheck(connected=True, scanner_name=result[len('CONNECTED:'):].strip())
    if result == 'NO_SCANNER':
        return ConnectionCheck(connected=False, reason="NotConnected", error="No scanner found")
    if result.startswith('ERROR:'):
        return ConnectionCheck(connected=False, reason="ConnectError", error=result[len('ERROR:'):].strip())
    return ConnectionCheck(connected=False, reason="ConnectError", error=f"Unexpected probe output: {result!r}")


class WindowsBackend(PlatformBackend):
    """
    Windows backend built on PowerShell queries.

    Printers come from ``Get-Printer`` (``wmic`` as fallback), cameras, USB
    devices and serial ports from WMI classes, and scanners from WIA.
    """

    def __init__(self, runner: ProcessRunner = run_process):
        super().__init__(runner)

    @property
    def platform_name(self) -> str:
        """Get the platform name."""
        return "windows"

    async def _query(self, script: str, what: str, timeout: float = ENUMERATION_TIMEOUT) -> List[Dict[str, Any]]:
        try:
            return await run_powershell_json(script, timeout=timeout, runner=self.runner)
        except ExternalToolError as e:
            raise PlatformDetectionError(f"Failed to enumerate {what} on Windows: {e.message}",
                                         platform="windows", cause=e)

    # Printers

    async def list_printers(self) -> List[PrinterInfo]:
        printers = []
        for item in await self._query(PRINTERS_SCRIPT, "printers"):
            name = item.get('Name')
            if not name:
                continue
            printers.append(PrinterInfo(
                name=name,
                status=_PRINTER_STATUS.get(item.get('PrinterStatus'), DeviceStatus.BUSY),
                is_default=bool(item.get('Default')),
                description=item.get('Comment') or item.get('Description')
            ))
        return printers

    async def list_printers_fallback(self) -> List[PrinterInfo]:
        try:
            result = await self.runner(['wmic', 'printer', 'get', 'Name,Status,Default', '/format:csv'],
                                       timeout=ENUMERATION_TIMEOUT)
        except ExternalToolError as e:
            raise PlatformDetectionError(f"wmic is not available: {e.message}", platform="windows", cause=e)

        if not result.succeeded:
            raise PlatformDetectionError(
                f"wmic printer query failed: {result.stderr.strip() or 'timeout'}", platform="windows"
            )
        return parse_wmic_printers(result.stdout)

    async def _run_print_script(self, script: str, printer: str) -> None:
        result = await run_powershell(script, timeout=PRINT_TIMEOUT, runner=self.runner)
        if result.timed_out:
            raise ExternalToolError(f"Printing to '{printer}' timed out after {PRINT_TIMEOUT}s", tool="powershell")
        if result.exit_code != 0:
            raise ExternalToolError(
                f"Printing to '{printer}' failed: {result.stderr.strip() or result.stdout.strip()}",
                tool="powershell"
            )

    async def print_text(self, file_path: str, printer: str, options: PrintOptions) -> None:
        script = (
            f"for ($i = 0; $i -lt {options.copies}; $i++) {{ "
            f"Get-Content -LiteralPath {ps_quote(file_path)} | Out-Printer -Name {ps_quote(printer)} }}"
        )
        await self._run_print_script(script, printer)

    async def print_document(self, file_path: str, printer: str, options: PrintOptions) -> None:
        # The shell PrintTo verb takes no paper or orientation settings
        if options.paper_size or options.orientation != "portrait":
            logger.debug(f"Paper size and orientation are left to the driver defaults of '{printer}'")
        script = (
            f"for ($i = 0; $i -lt {options.copies}; $i++) {{ "
            f"Start-Process -FilePath {ps_quote(file_path)} -Verb PrintTo "
            f"-ArgumentList ('\"{{0}}\"' -f {ps_quote(printer)}) -Wait }}"
        )
        await self._run_print_script(script, printer)

    # Cameras

    async def list_cameras(self) -> List[CameraInfo]:
        cameras = []
        for item in await self._query(CAMERAS_SCRIPT, "cameras"):
            if not item.get('Name'):
                continue
            index = len(cameras)
            cameras.append(CameraInfo(
                id=str(index),
                name=item['Name'],
                type="webcam",
                status=DeviceStatus.AVAILABLE if item.get('Status') == 'OK' else DeviceStatus.ERROR,
                resolutions=["640x480", "1280x720", "1920x1080"],
                device_index=index
            ))
        return cameras

    async def list_usb_cameras(self) -> List[CameraInfo]:
        return [
            CameraInfo(id=item['DeviceID'], name=item['Name'], type="usb")
            for item in await self._query(USB_CAMERAS_SCRIPT, "USB cameras")
            if item.get('Name') and item.get('DeviceID')
        ]

    # USB

    async def list_usb_devices(self) -> List[USBDeviceInfo]:
        devices = []
        for item in await self._query(USB_DEVICES_SCRIPT, "USB devices"):
            device_id = item.get('DeviceID')
            if not device_id:
                continue
            vendor_id, product_id, serial_number = parse_usb_device_id(device_id)
            if vendor_id == 'unknown' or product_id == 'unknown':
                # Root hubs and composite children without VID/PID
                continue
            devices.append(USBDeviceInfo(
                device_id=device_id,
                vendor_id=vendor_id,
                product_id=product_id,
                status=DeviceStatus.CONNECTED if item.get('Status') in (None, 'OK') else DeviceStatus.ERROR,
                manufacturer=item.get('Manufacturer'),
                product=item.get('Name'),
                serial_number=serial_number,
                device_class=item.get('PNPClass') or item.get('Service'),
            ))
        return devices

    async def get_usb_device_details(self, device_id: str) -> Dict[str, Any]:
        # WQL string literals escape backslashes and quotes with a backslash
        wql_id = device_id.replace("\\", "\\\\").replace("'", "\\'")
        wql_filter = f"DeviceID='{wql_id}'"
        script = (
            f"Get-CimInstance -ClassName Win32_PnPEntity -Filter {ps_quote(wql_filter)} | "
            "Select-Object Name, Description, Manufacturer, Service, Status, PNPClass, ClassGuid, "
            "Present, HardwareID, CompatibleID | ConvertTo-Json -Compress"
        )
        items = await self._query(script, f"details of {device_id}")
        return items[0] if items else {}

    # Serial

    async def list_serial_ports(self) -> List[SerialPortInfo]:
        ports = []
        for item in await self._query(SERIAL_PORTS_SCRIPT, "serial ports"):
            path = item.get('DeviceID')
            if not path:
                continue
            pnp_id = item.get('PNPDeviceID')
            vendor_id = product_id = None
            if pnp_id:
                vid, pid, _ = parse_usb_device_id(pnp_id)
                vendor_id = vid if vid != 'unknown' else None
                product_id = pid if pid != 'unknown' else None
            ports.append(SerialPortInfo(
                path=path,
                manufacturer=item.get('Manufacturer'),
                pnp_id=pnp_id,
                vendor_id=vendor_id,
                product_id=product_id,
                friendly_name=item.get('Name') or item.get('Description')
            ))
        return ports

    # Scanners

    async def list_scanners(self, timeout: float) -> List[ScannerInfo]:
        return [
            ScannerInfo(id=item['id'], name=item.get('name') or "Unknown scanner", type="wia")
            for item in await self._query(SCANNERS_SCRIPT, "scanners", timeout=timeout)
            if item.get('id')
        ]

    async def check_scanner_connection(self, timeout: float) -> ConnectionCheck:
        try:
            result = await run_powershell(SCANNER_CONNECTION_SCRIPT, timeout=timeout, runner=self.runner)
        except ExternalToolError as e:
            return ConnectionCheck(connected=False, reason="ExternalToolError", error=e.message)

        if result.timed_out:
            return ConnectionCheck(connected=False, reason="Timeout",
                                   error=f"Scanner check timed out after {timeout}s")
        return parse_connection_probe(result.stdout)

