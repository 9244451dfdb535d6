"""
Command-line interface for DeviceHub.

This module provides CLI commands for listing devices and running print, scan
and capture jobs using the DeviceHub library API.
"""

import asyncio
import base64
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import click

from . import __version__
from .backends import get_platform_backend
from .config import DeviceHubConfig
from .exceptions import DeviceHubError
from .logging_config import setup_logging
from .models import CaptureOptions, PrintOptions, ScanOptions
from .paper import build_pdf
from .platform_utils import format_platform_status
from .services import CameraService, DeviceService, PrinterService, ScannerService, SerialService, USBService

FORMAT_OPTION = click.option(
    '--format',
    'output_format',
    type=click.Choice(['table', 'json']),
    default='table',
    help='Output format for the device list'
)

CONTENT_TYPE_BY_SUFFIX = {
    '.pdf': 'pdf',
    '.html': 'html',
    '.htm': 'html',
}


def _fail(message: str) -> None:
    click.echo(message, err=True)
    sys.exit(1)


def _run(coro: Awaitable[Any]) -> Any:
    """Run a coroutine to completion, turning library errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except DeviceHubError as e:
        _fail(f"Error: {e.message}")


def _make_backend(ctx: click.Context):
    try:
        return ctx.obj['backend_factory']()
    except DeviceHubError as e:
        _fail(f"Error: {e.message}")


async def _with_service(service: DeviceService, action: Callable[[DeviceService], Awaitable[Any]]) -> Any:
    await service.initialize()
    try:
        return await action(service)
    finally:
        await service.cleanup()


def _echo_table(headers: Sequence[str], rows: List[Sequence[Any]]) -> None:
    cells = [[("" if value is None else str(value)) for value in row] for row in rows]
    widths = [max([len(h)] + [len(row[i]) for row in cells]) for i, h in enumerate(headers)]
    click.echo("  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip())
    click.echo("-" * (sum(widths) + 2 * (len(widths) - 1)))
    for row in cells:
        click.echo("  ".join(value.ljust(w) for value, w in zip(row, widths)).rstrip())


def _echo_devices(devices, output_format: str, empty: str, headers: Sequence[str],
                  row: Callable[[Any], Sequence[Any]]) -> None:
    if output_format == 'json':
        click.echo(json.dumps([device.to_dict() for device in devices], indent=2))
        return
    if not devices:
        click.echo(empty)
        return
    click.echo(f"Found {len(devices)} device(s):\n")
    _echo_table(headers, [row(device) for device in devices])


@click.group()
@click.version_option(version=__version__)
@click.option(
    '--config',
    'config_path',
    type=click.Path(exists=True, dir_okay=False),
    help='JSON configuration file'
)
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
    default='WARNING',
    help='Console logging level'
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], log_level: str):
    """
    DeviceHub - printers, cameras, USB, serial ports and scanners from one place.
    """
    ctx.ensure_object(dict)
    setup_logging(log_level=log_level.upper())
    try:
        ctx.obj['config'] = DeviceHubConfig.load(config_path) if config_path else DeviceHubConfig()
    except DeviceHubError as e:
        _fail(f"Configuration error: {e.message}")
    ctx.obj.setdefault('backend_factory', get_platform_backend)


@cli.command()
@FORMAT_OPTION
@click.pass_context
def printers(ctx: click.Context, output_format: str):
    """List printers known to the operating system."""
    service = PrinterService(_make_backend(ctx), ctx.obj['config'].printer)
    devices = _run(_with_service(service, lambda s: s.get_printers()))
    _echo_devices(
        devices, output_format, "No printers found.",
        ('Name', 'Status', 'Default', 'Description'),
        lambda p: (p.name, p.status.value, "*" if p.is_default else "", p.description)
    )


@cli.command()
@FORMAT_OPTION
@click.pass_context
def cameras(ctx: click.Context, output_format: str):
    """List cameras."""
    service = CameraService(_make_backend(ctx), ctx.obj['config'].camera)
    devices = _run(_with_service(service, lambda s: s.get_cameras()))
    _echo_devices(
        devices, output_format, "No cameras found.",
        ('ID', 'Type', 'Status', 'Name'),
        lambda c: (c.id, c.type, c.status.value, c.name)
    )


@cli.command()
@FORMAT_OPTION
@click.option('--watch', type=float, default=None, metavar='SECONDS',
              help='Keep running and report connects/disconnects, polling every SECONDS')
@click.pass_context
def usb(ctx: click.Context, output_format: str, watch: Optional[float]):
    """List USB devices, or watch for changes."""
    config = ctx.obj['config'].usb
    if watch is None:
        service = USBService(_make_backend(ctx), dataclasses.replace(config, poll_interval=0))
        devices = _run(_with_service(service, lambda s: s.get_devices()))
        _echo_devices(
            devices, output_format, "No USB devices found.",
            ('Device ID', 'VID:PID', 'Status', 'Class', 'Product'),
            lambda d: (d.device_id, d.composite_id, d.status.value, d.device_class, d.product or d.manufacturer)
        )
        return

    if watch <= 0:
        _fail("--watch must be a positive number of seconds")

    service = USBService(_make_backend(ctx), dataclasses.replace(config, poll_interval=watch))

    def report(change: str, device) -> None:
        label = device.product or device.composite_id
        click.echo(f"{change}: {device.device_id} ({label})")

    async def watch_forever(s: USBService) -> None:
        for device in await s.get_devices():
            report("present", device)
        s.monitor_device_changes(report)
        click.echo(f"Watching USB devices every {watch}s, press Ctrl+C to stop.")
        while True:
            await asyncio.sleep(3600)

    try:
        _run(_with_service(service, watch_forever))
    except KeyboardInterrupt:
        click.echo("Stopped.")


@cli.command()
@FORMAT_OPTION
@click.pass_context
def serial(ctx: click.Context, output_format: str):
    """List serial ports."""
    service = SerialService(_make_backend(ctx), ctx.obj['config'].serial)
    devices = _run(_with_service(service, lambda s: s.get_ports()))
    _echo_devices(
        devices, output_format, "No serial ports found.",
        ('Path', 'Status', 'Manufacturer', 'Name'),
        lambda p: (p.path, p.status.value, p.manufacturer, p.friendly_name)
    )


@cli.command()
@FORMAT_OPTION
@click.pass_context
def scanners(ctx: click.Context, output_format: str):
    """List scan-capable devices."""
    service = ScannerService(_make_backend(ctx), ctx.obj['config'].scanner)
    devices = _run(_with_service(service, lambda s: s.get_scanners()))
    _echo_devices(
        devices, output_format, "No scanners found.",
        ('ID', 'Status', 'Default', 'Name'),
        lambda s: (s.id, s.status.value, "*" if s.is_default else "", s.name)
    )


def _write_document(payload: str, output: Optional[str]) -> None:
    if output is None:
        click.echo(payload)
        return
    try:
        Path(output).write_bytes(base64.b64decode(payload))
    except OSError as e:
        _fail(f"Cannot write {output}: {e}")


@cli.command()
@click.option('--duplex', is_flag=True, help='Use the duplex scanning profile')
@click.option('--format', 'scan_format', type=click.Choice(ScanOptions.FORMATS), default='pdf',
              help='Document format produced by the scanning tool')
@click.option('--output', '-o', type=click.Path(dir_okay=False),
              help='Write the document here instead of printing base64 to stdout')
@click.pass_context
def scan(ctx: click.Context, duplex: bool, scan_format: str, output: Optional[str]):
    """Scan a document with the configured profile."""
    service = ScannerService(_make_backend(ctx), ctx.obj['config'].scanner)
    options = ScanOptions(duplex=duplex, format=scan_format)
    result = _run(_with_service(service, lambda s: s.scan(options)))
    if not result:
        _fail(f"Scan failed ({result.reason}): {result.detail}")
    _write_document(result.payload, output)
    if output:
        click.echo(f"✓ Scanned document saved to {output}")


@cli.command(name='print')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--type', 'content_type', type=click.Choice(['text', 'html', 'pdf']),
              help='Content type; guessed from the file extension when omitted')
@click.option('--printer', help='Target printer; the default printer when omitted')
@click.option('--copies', type=int, default=1, show_default=True)
@click.pass_context
def print_file(ctx: click.Context, file: str, content_type: Optional[str], printer: Optional[str], copies: int):
    """Print FILE."""
    path = Path(file)
    content_type = content_type or CONTENT_TYPE_BY_SUFFIX.get(path.suffix.lower(), 'text')
    if content_type == 'pdf':
        content = str(path.resolve())
    else:
        try:
            content = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            _fail(f"Cannot read {file}: {e}")

    service = PrinterService(_make_backend(ctx), ctx.obj['config'].printer)
    options = PrintOptions(printer=printer, copies=copies)
    result = _run(_with_service(service, lambda s: s.print(content, content_type, options)))
    if not result:
        _fail(f"Print failed ({result.reason}): {result.detail}")
    click.echo(f"✓ Sent {file} to {result.payload['printer']} ({result.payload['copies']} copies)")


@cli.command()
@click.argument('camera_id', default='0')
@click.option('--output', '-o', type=click.Path(dir_okay=False), required=True,
              help='Image file to write; the extension selects jpg, png or bmp')
@click.option('--width', type=int, default=640, show_default=True)
@click.option('--height', type=int, default=480, show_default=True)
@click.pass_context
def capture(ctx: click.Context, camera_id: str, output: str, width: int, height: int):
    """Capture a still image from CAMERA_ID."""
    suffix = Path(output).suffix.lower().lstrip('.')
    image_format = 'jpg' if suffix in ('', 'jpeg') else suffix
    if image_format not in CaptureOptions.FORMATS:
        _fail(f"Unsupported image format '{suffix}'. Use one of: {', '.join(CaptureOptions.FORMATS)}")

    service = CameraService(_make_backend(ctx), ctx.obj['config'].camera)
    options = CaptureOptions(width=width, height=height, format=image_format,
                             save_to_file=True, file_path=output)
    result = _run(_with_service(service, lambda s: s.capture_photo(camera_id, options)))
    if not result:
        _fail(f"Capture failed ({result.reason}): {result.detail}")
    click.echo(f"✓ Photo saved to {result.payload}")


@cli.command()
@click.argument('images', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--output', '-o', type=click.Path(dir_okay=False), required=True, help='PDF file to write')
@click.pass_context
def assemble(ctx: click.Context, images: Sequence[str], output: str):
    """Assemble IMAGES into a PDF, one page per image sized to the nearest paper format."""
    try:
        page_count = build_pdf(images, output, ctx.obj['config'].scanner.default_dpi)
    except DeviceHubError as e:
        _fail(f"Assembly failed ({e.reason}): {e.message}")
    except OSError as e:
        _fail(f"Cannot write {output}: {e}")
    click.echo(f"✓ Wrote {page_count} page(s) to {output}")


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show platform information and tool availability."""
    for line in format_platform_status(ctx.obj['config'].scanner.tool_path):
        click.echo(line)


def main(args=None):
    """Main entry point for the CLI."""
    cli(args)


if __name__ == '__main__':
    main()
