"""
Tests for PrinterService discovery and print-job submission.
"""

import asyncio
from unittest.mock import Mock

import pytest
import pytest_asyncio

from devicehub.exceptions import DiscoveryError, ExternalToolError
from devicehub.models import DeviceStatus, PrinterInfo, PrintOptions
from devicehub.services import PrinterService


@pytest_asyncio.fixture
async def printer_service(fake_backend, printer_config):
    service = PrinterService(fake_backend, printer_config)
    await service.initialize()
    yield service
    await service.cleanup()


class TestPrinterDiscovery:

    @pytest.mark.asyncio
    async def test_lists_printers(self, printer_service):
        printers = await printer_service.get_printers()

        assert [p.name for p in printers] == ["Office Laser", "Label Printer"]
        assert printer_service.get_default_printer().name == "Office Laser"

    @pytest.mark.asyncio
    async def test_available_devices_exclude_offline(self, printer_service):
        available = await printer_service.get_available_devices()

        assert [p.name for p in available] == ["Office Laser"]
        assert await printer_service.is_device_available("Office Laser")
        assert not await printer_service.is_device_available("Label Printer")
        assert not await printer_service.is_device_available("Nope")

    @pytest.mark.asyncio
    async def test_test_device(self, printer_service):
        assert await printer_service.test_device("Office Laser")
        assert not await printer_service.test_device("Label Printer")
        assert not await printer_service.test_device("Missing")

    @pytest.mark.asyncio
    async def test_fallback_enumeration(self, fake_backend, printer_config):
        fake_backend.failing.add("list_printers")
        fake_backend.fallback_printers = [PrinterInfo("Fallback", DeviceStatus.AVAILABLE, is_default=True)]
        service = PrinterService(fake_backend, printer_config)

        await service.initialize()

        assert [p.name for p in await service.get_printers()] == ["Fallback"]
        assert "list_printers_fallback" in fake_backend.calls

    @pytest.mark.asyncio
    async def test_initialize_fails_when_no_source_works(self, fake_backend, printer_config):
        fake_backend.failing.update({"list_printers", "list_printers_fallback"})
        service = PrinterService(fake_backend, printer_config)

        with pytest.raises(DiscoveryError):
            await service.initialize()
        assert not service.lifecycle.is_initialized

    @pytest.mark.asyncio
    async def test_later_failure_degrades_to_empty(self, printer_service, fake_backend):
        fake_backend.failing.update({"list_printers", "list_printers_fallback"})

        assert await printer_service.get_printers() == []

    @pytest.mark.asyncio
    async def test_printers_updated_event(self, printer_service):
        callback = Mock()
        printer_service.on("printers-updated", callback)

        await printer_service.get_printers()

        callback.assert_called_once()
        assert len(callback.call_args[0][0]) == 2


class TestPrint:

    @pytest.mark.asyncio
    async def test_print_text_to_default_printer(self, printer_service, fake_backend):
        success = Mock()
        printer_service.on("print-success", success)

        result = await printer_service.print("Hello printer", "text", {'copies': 2})

        assert result.success
        assert result.payload == {'printer': "Office Laser", 'type': "text", 'copies': 2}
        job = fake_backend.print_jobs[0]
        assert job['kind'] == "text"
        assert job['content'] == "Hello printer"
        assert job['copies'] == 2
        success.assert_called_once_with(result.payload)

    @pytest.mark.asyncio
    async def test_temporary_file_removed(self, printer_service, fake_backend):
        import os

        await printer_service.print("<p>hi</p>", "html")

        job = fake_backend.print_jobs[0]
        assert job['kind'] == "document"
        assert job['file'].endswith(".html")
        assert not os.path.exists(job['file'])

    @pytest.mark.asyncio
    async def test_print_pdf_file(self, printer_service, fake_backend, tmp_path):
        pdf = tmp_path / "doc.pdf"
        pdf.write_bytes(b"%PDF-1.4")

        result = await printer_service.print(str(pdf), "pdf", PrintOptions(printer="Office Laser"))

        assert result.success
        assert fake_backend.print_jobs[0]['file'] == str(pdf)

    @pytest.mark.asyncio
    async def test_print_missing_pdf(self, printer_service, fake_backend, tmp_path):
        errors = Mock()
        printer_service.on("print-error", errors)

        result = await printer_service.print(str(tmp_path / "missing.pdf"), "pdf")

        assert not result.success
        assert result.reason == "NotFound"
        assert fake_backend.print_jobs == []
        errors.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_default_printer(self, fake_backend, printer_config):
        """No printer given and none marked default: no backend print call is made."""
        for printer in fake_backend.printers:
            printer.is_default = False
        service = PrinterService(fake_backend, printer_config)
        await service.initialize()

        result = await service.print("text")

        assert result.reason == "NoDefaultPrinter"
        assert "print_text" not in fake_backend.calls
        assert "print_document" not in fake_backend.calls

    @pytest.mark.asyncio
    async def test_offline_printer_rejected(self, printer_service, fake_backend):
        result = await printer_service.print("text", options={'printer': "Label Printer"})

        assert result.reason == "PrinterUnavailable"
        assert fake_backend.print_jobs == []

    @pytest.mark.asyncio
    async def test_unknown_printer_rejected(self, printer_service):
        result = await printer_service.print("text", options={'printer': "Ghost"})

        assert result.reason == "PrinterUnavailable"

    @pytest.mark.asyncio
    async def test_unsupported_content_type(self, printer_service):
        result = await printer_service.print("data", "docx")

        assert result.reason == "UnsupportedType"

    @pytest.mark.asyncio
    async def test_invalid_options(self, printer_service):
        result = await printer_service.print("data", options={'copies': 0})

        assert result.reason == "ValidationError"

    @pytest.mark.asyncio
    async def test_backend_failure_is_reported(self, printer_service, fake_backend):
        async def failing_print(file_path, printer, options):
            raise ExternalToolError("lp: Error - printer is not responding", tool="lp")

        fake_backend.print_text = failing_print

        result = await printer_service.print("data")

        assert not result.success
        assert result.reason == "ExternalToolError"
        assert "not responding" in result.detail

    @pytest.mark.asyncio
    async def test_print_timeout(self, fake_backend):
        from devicehub.config import PrinterConfig

        async def slow_print(file_path, printer, options):
            await asyncio.sleep(5)

        fake_backend.print_text = slow_print
        service = PrinterService(fake_backend, PrinterConfig(command_timeout=0.05))
        await service.initialize()

        result = await service.print("data")

        assert result.reason == "Timeout"

    @pytest.mark.asyncio
    async def test_print_before_initialize(self, fake_backend):
        service = PrinterService(fake_backend)

        result = await service.print("data")

        assert result.reason == "NotInitialized"
