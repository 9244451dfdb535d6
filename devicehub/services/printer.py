"""
Printer discovery and print-job submission.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from ..backends.base import PlatformBackend
from ..config import PrinterConfig
from ..exceptions import (
    DeviceHubError,
    DiscoveryError,
    NoDefaultPrinterError,
    NotFoundError,
    OperationTimeoutError,
    PrinterUnavailableError,
    UnsupportedTypeError,
)
from ..models import DeviceStatus, OperationResult, PrintOptions, PrinterInfo
from .base import DeviceService

logger = logging.getLogger(__name__)

CONTENT_TYPES = ("text", "html", "pdf")

# Statuses a job can still be queued on
_PRINTABLE = (DeviceStatus.AVAILABLE, DeviceStatus.BUSY)


class PrinterService(DeviceService):
    """
    Keeps the list of system printers and submits print jobs to them.

    Events:
        printers-updated: list of PrinterInfo after every discovery pass
        print-success / print-error: dict describing the job
    """

    name = "printer"
    EVENTS = ("printers-updated", "print-success", "print-error")

    def __init__(self, backend: PlatformBackend, config: Optional[PrinterConfig] = None):
        super().__init__()
        self.backend = backend
        self.config = config or PrinterConfig()
        self._printers: Dict[str, PrinterInfo] = {}

    async def _enumerate(self) -> List[PrinterInfo]:
        timeout = self.config.enumeration_timeout
        try:
            return await asyncio.wait_for(self.backend.list_printers(), timeout)
        except (DeviceHubError, asyncio.TimeoutError) as e:
            logger.warning(f"Primary printer enumeration failed, trying fallback: {e}")
        return await asyncio.wait_for(self.backend.list_printers_fallback(), timeout)

    async def _refresh(self, strict: bool) -> None:
        try:
            printers = await self._enumerate()
        except (DeviceHubError, asyncio.TimeoutError) as e:
            if strict:
                raise DiscoveryError("Printer enumeration failed", service=self.name, cause=e)
            logger.warning(f"Printer enumeration failed, registry left empty: {e}")
            printers = []

        self._printers = {printer.name: printer for printer in printers}
        logger.debug(f"Found {len(self._printers)} printers")
        self.events.emit("printers-updated", list(self._printers.values()))

    async def _release(self) -> None:
        pass

    def _clear_registry(self) -> None:
        self._printers.clear()

    async def get_printers(self) -> List[PrinterInfo]:
        """
        Refresh and return every printer known to the system.

        Raises:
            NotInitializedError: If the service is not initialized
        """
        self.lifecycle.require()
        await self.refresh()
        return list(self._printers.values())

    def get_default_printer(self) -> Optional[PrinterInfo]:
        """Default printer from the current registry, without refreshing."""
        self.lifecycle.require()
        return next((p for p in self._printers.values() if p.is_default), None)

    async def get_available_devices(self) -> List[PrinterInfo]:
        self.lifecycle.require()
        await self.refresh()
        return [p for p in self._printers.values() if p.status in _PRINTABLE]

    async def is_device_available(self, device_id: str) -> bool:
        self.lifecycle.require()
        printer = self._printers.get(device_id)
        return printer is not None and printer.status in _PRINTABLE

    async def get_device_info(self, device_id: str) -> Optional[PrinterInfo]:
        self.lifecycle.require()
        return self._printers.get(device_id)

    async def test_device(self, device_id: str) -> bool:
        self.lifecycle.require()
        printer = self._printers.get(device_id)
        if printer is None:
            return False
        return printer.status not in (DeviceStatus.ERROR, DeviceStatus.OFFLINE)

    async def print(self, content: str, content_type: str = "text",
                    options: Union[PrintOptions, Mapping[str, Any], None] = None) -> OperationResult:
        """
        Print text, HTML or a PDF file.

        Args:
            content: Text or HTML markup, or the path of a PDF file
            content_type: One of "text", "html", "pdf"
            options: PrintOptions or an equivalent mapping

        Returns:
            OperationResult: payload describes the submitted job
        """
        failure = self.lifecycle.not_ready()
        if failure:
            return failure

        printer = None
        try:
            opts = options.validate() if isinstance(options, PrintOptions) else PrintOptions.from_dict(options)
            if content_type not in CONTENT_TYPES:
                raise UnsupportedTypeError(
                    f"Unsupported content type '{content_type}'. Must be one of: {list(CONTENT_TYPES)}",
                    field="content_type"
                )

            printer = opts.printer or self._default_printer_name()
            target = self._printers.get(printer)
            if target is None or target.status not in _PRINTABLE:
                raise PrinterUnavailableError(
                    f"Printer '{printer}' is not available",
                    device_id=printer,
                    status=target.status.value if target else None
                )

            await asyncio.wait_for(self._submit(content, content_type, printer, opts),
                                   self.config.command_timeout)
        except asyncio.TimeoutError:
            error = OperationTimeoutError(f"Print job to '{printer}' timed out", timeout=self.config.command_timeout)
            return self._print_failed(error, printer)
        except DeviceHubError as e:
            return self._print_failed(e, printer)

        job = {'printer': printer, 'type': content_type, 'copies': opts.copies}
        logger.info(f"Printed {content_type} on '{printer}' ({opts.copies} copies)")
        self.events.emit("print-success", job)
        return OperationResult.ok(job)

    def _default_printer_name(self) -> str:
        default = next((p for p in self._printers.values() if p.is_default), None)
        if default is None:
            raise NoDefaultPrinterError("No printer specified and no default printer is set")
        return default.name

    async def _submit(self, content: str, content_type: str, printer: str, opts: PrintOptions) -> None:
        if content_type == "pdf":
            path = Path(content)
            if not path.is_file():
                raise NotFoundError(f"PDF file not found: {content}", device_id=str(path))
            await self.backend.print_document(str(path), printer, opts)
            return

        suffix = ".txt" if content_type == "text" else ".html"
        fd, temp_path = tempfile.mkstemp(prefix="devicehub_print_", suffix=suffix)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
            if content_type == "text":
                await self.backend.print_text(temp_path, printer, opts)
            else:
                await self.backend.print_document(temp_path, printer, opts)
        finally:
            try:
                os.remove(temp_path)
            except OSError as e:
                logger.warning(f"Failed to remove temporary print file {temp_path}: {e}")

    def _print_failed(self, error: DeviceHubError, printer: Optional[str]) -> OperationResult:
        self.events.emit("print-error", {'printer': printer, 'reason': error.reason, 'error': error.message})
        return OperationResult.from_error(error)
