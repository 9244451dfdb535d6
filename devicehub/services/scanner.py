"""
Document scanning through an external scanning utility.

A scan request walks ``Idle -> ConnectivityCheck -> Scanning -> Encoding ->
Done``; any step may end in ``Failed``. Scanning itself is delegated to a
NAPS2-style console tool driven by a named profile, so device settings live in
that profile rather than here.
"""

import asyncio
import base64
import logging
import os
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ..backends.base import PlatformBackend
from ..config import ScannerConfig
from ..exceptions import (
    ConnectError,
    DeviceBusyError,
    DeviceHubError,
    DeviceIOError,
    DiscoveryError,
    ExternalToolError,
    NoPagesError,
    NotConnectedError,
    NotFoundError,
    OperationTimeoutError,
)
from ..models import ConnectionCheck, DeviceStatus, OperationResult, ScanOptions, ScanResult, ScannerInfo
from ..paper import build_pdf
from ..process import ProcessRunner, run_process
from .base import DeviceService

logger = logging.getLogger(__name__)


class ScanState(Enum):
    """Progress of the current (or last) scan request."""
    IDLE = "idle"
    CONNECTIVITY_CHECK = "connectivity-check"
    SCANNING = "scanning"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"


_CHECK_ERRORS = {
    "NotConnected": NotConnectedError,
    "Timeout": OperationTimeoutError,
    "ExternalToolError": ExternalToolError,
}


def classify_scan_failure(stdout: str, stderr: str, tool: Optional[str] = None) -> DeviceHubError:
    """Map the output of a failed scanning-tool run to an error."""
    if "No scanning device" in stderr:
        return NotConnectedError(f"Scanner not connected: {stderr.strip()}")
    if "No pages" in stderr:
        return NoPagesError(f"No pages in the feeder: {stderr.strip()}")
    if stderr.strip():
        return ExternalToolError(stderr.strip(), tool=tool)
    if "Error" in stdout:
        return ExternalToolError(stdout.strip(), tool=tool)
    return ExternalToolError("Scanning tool finished without producing a document", tool=tool)


class ScannerService(DeviceService):
    """
    Lists scan-capable devices and runs scan requests one at a time.

    Args:
        backend: Platform backend used for discovery and connectivity checks
        config: Tool location, profile and timeouts
        runner: Process runner for the scanning tool
    """

    name = "scanner"
    EVENTS = ("scanners-updated", "scan-started", "scan-completed", "scan-error")

    def __init__(self, backend: PlatformBackend, config: Optional[ScannerConfig] = None,
                 runner: ProcessRunner = run_process):
        super().__init__()
        self.backend = backend
        self.config = config or ScannerConfig()
        self.runner = runner
        self.scan_state = ScanState.IDLE
        self.last_error: Optional[DeviceHubError] = None
        self._scanners: Dict[str, ScannerInfo] = {}
        self._default_id: Optional[str] = None
        self._scan_lock = asyncio.Lock()

    async def _refresh(self, strict: bool) -> None:
        try:
            scanners = await self.backend.list_scanners(self.config.detect_timeout)
        except DeviceHubError as e:
            if strict:
                raise DiscoveryError("Scanner enumeration failed", service=self.name, cause=e)
            logger.warning(f"Scanner enumeration failed, registry left empty: {e.message}")
            scanners = []

        self._scanners = {scanner.id: scanner for scanner in scanners}
        self._mark_default()
        logger.debug(f"Found {len(self._scanners)} scanners")
        self.events.emit("scanners-updated", list(self._scanners.values()))

    def _mark_default(self) -> None:
        default_id = self._default_id if self._default_id in self._scanners else next(iter(self._scanners), None)
        for scanner_id, scanner in self._scanners.items():
            scanner.is_default = scanner_id == default_id

    async def _release(self) -> None:
        self.scan_state = ScanState.IDLE

    def _clear_registry(self) -> None:
        self._scanners.clear()

    async def get_scanners(self) -> List[ScannerInfo]:
        """
        Refresh and return scan-capable devices.

        Raises:
            NotInitializedError: If the service is not initialized
        """
        self.lifecycle.require()
        await self.refresh()
        return list(self._scanners.values())

    async def get_available_devices(self) -> List[ScannerInfo]:
        self.lifecycle.require()
        await self.refresh()
        return [s for s in self._scanners.values() if s.status == DeviceStatus.AVAILABLE]

    async def is_device_available(self, device_id: str) -> bool:
        self.lifecycle.require()
        scanner = self._scanners.get(device_id)
        return scanner is not None and scanner.status == DeviceStatus.AVAILABLE

    async def get_device_info(self, device_id: str) -> Optional[ScannerInfo]:
        self.lifecycle.require()
        return self._scanners.get(device_id)

    async def test_device(self, device_id: str) -> bool:
        return await self.is_device_available(device_id)

    def get_default_scanner(self) -> Optional[ScannerInfo]:
        self.lifecycle.require()
        return next((s for s in self._scanners.values() if s.is_default), None)

    def set_default_scanner(self, scanner_id: str) -> OperationResult:
        """Mark one known scanner as the default."""
        failure = self.lifecycle.not_ready()
        if failure:
            return failure
        if scanner_id not in self._scanners:
            return OperationResult.from_error(NotFoundError(f"Scanner {scanner_id} not found", device_id=scanner_id))
        self._default_id = scanner_id
        self._mark_default()
        return OperationResult.ok(scanner_id)

    async def check_connection(self) -> ConnectionCheck:
        """
        Probe the scan subsystem for a device that accepts a connection.

        Bounded by ``config.connect_timeout``; never raises for device failures.
        """
        timeout = self.config.connect_timeout
        try:
            # Grace period so the backend can kill its own subprocess first
            check = await asyncio.wait_for(self.backend.check_scanner_connection(timeout), timeout + 1.0)
        except asyncio.TimeoutError:
            return ConnectionCheck(connected=False, reason="Timeout",
                                   error=f"Scanner check timed out after {timeout}s")
        logger.debug(f"Scanner connection check: {check}")
        return check

    def _set_state(self, state: ScanState) -> None:
        logger.debug(f"Scan state: {self.scan_state.value} -> {state.value}")
        self.scan_state = state

    async def scan(self, options: Union[ScanOptions, Mapping[str, Any], None] = None) -> ScanResult:
        """
        Scan a document with the configured profile.

        Returns:
            ScanResult: payload is the base64-encoded document; failures carry
            a reason (NotConnected, ConnectError, Timeout, NoPages,
            ExternalToolError, IOError)
        """
        failure = self.lifecycle.not_ready()
        if failure:
            return ScanResult(success=False, reason=failure.reason, detail=failure.detail)

        if self._scan_lock.locked():
            error = DeviceBusyError("A scan is already in progress", status=self.scan_state.value)
            return ScanResult.from_error(error)

        async with self._scan_lock:
            self.last_error = None
            try:
                opts = options.validate() if isinstance(options, ScanOptions) else ScanOptions.from_dict(options)
                self.events.emit("scan-started", {'duplex': opts.duplex, 'format': opts.format})

                self._set_state(ScanState.CONNECTIVITY_CHECK)
                check = await self.check_connection()
                if not check.connected:
                    error_cls = _CHECK_ERRORS.get(check.reason, ConnectError)
                    raise error_cls(check.error or "Scanner is not ready")
                logger.info(f"Scanner ready: {check.scanner_name}")

                self._set_state(ScanState.SCANNING)
                document = await self._run_tool(opts)

                self._set_state(ScanState.ENCODING)
                payload = await self._encode(document)
            except DeviceHubError as e:
                self._set_state(ScanState.FAILED)
                self.last_error = e
                self.events.emit("scan-error", {'reason': e.reason, 'error': e.message})
                return ScanResult.from_error(e)

            self._set_state(ScanState.DONE)
            logger.info(f"Scan completed ({len(payload)} base64 characters)")
            self.events.emit("scan-completed", {'size': len(payload)})
            return ScanResult.ok(payload)

    def _profile(self, opts: ScanOptions) -> str:
        if opts.duplex and self.config.duplex_profile_name:
            return self.config.duplex_profile_name
        return self.config.profile_name

    async def _run_tool(self, opts: ScanOptions) -> Path:
        temp_dir = Path(self.config.temp_dir)
        try:
            temp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DeviceIOError(f"Cannot create scan directory {temp_dir}: {e}", path=str(temp_dir), cause=e)

        output = temp_dir / f"scan_{int(time.time() * 1000)}.{opts.format}"
        tool = self.config.tool_path
        args = [tool, '-o', str(output), '-p', self._profile(opts), '-f', '--verbose']
        logger.info(f"Running scanning tool: {' '.join(args)}")

        result = await self.runner(args, timeout=self.config.scan_timeout)
        if result.timed_out:
            self._remove(output)
            raise OperationTimeoutError(f"Scan exceeded {self.config.scan_timeout}s and was aborted",
                                        timeout=self.config.scan_timeout)
        if result.exit_code != 0 or not output.exists():
            logger.debug(f"Scanning tool exited with {result.exit_code}: {result.stdout.strip()}")
            self._remove(output)
            raise classify_scan_failure(result.stdout, result.stderr, tool=tool)
        return output

    def _remove(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")

    async def _encode(self, document: Path) -> str:
        try:
            data = await asyncio.to_thread(document.read_bytes)
        except OSError as e:
            raise DeviceIOError(f"Failed to read scanned document {document}: {e}", path=str(document), cause=e)
        finally:
            self._remove(document)
        return base64.b64encode(data).decode('ascii')

    async def assemble_document(self, image_paths: Iterable[Union[str, Path]]) -> ScanResult:
        """
        Build a PDF from page images, one page per image sized to the nearest
        standard paper format.

        Returns:
            ScanResult: base64 PDF with ``page_count`` set; ValidationError if
            no image could be used
        """
        failure = self.lifecycle.not_ready()
        if failure:
            return ScanResult(success=False, reason=failure.reason, detail=failure.detail)

        image_paths = [str(path) for path in image_paths]
        try:
            fd, pdf_path = tempfile.mkstemp(prefix="devicehub_assembled_", suffix=".pdf")
            os.close(fd)
        except OSError as e:
            return ScanResult.from_error(DeviceIOError(f"Cannot create temporary PDF: {e}", cause=e))

        try:
            try:
                page_count = await asyncio.to_thread(build_pdf, image_paths, pdf_path, self.config.default_dpi)
            except OSError as e:
                raise DeviceIOError(f"Failed to write PDF: {e}", path=pdf_path, cause=e)
            payload = await self._encode(Path(pdf_path))
        except DeviceHubError as e:
            self._remove(Path(pdf_path))
            return ScanResult.from_error(e)

        logger.info(f"Assembled {page_count} pages into a PDF")
        return ScanResult.ok(payload, page_count=page_count)
