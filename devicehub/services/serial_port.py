"""
Serial port discovery and communication.

Each open port is a SerialConnection: a pyserial ``Serial`` object plus one
reader task that hands every incoming chunk to pending one-shot readers and to
continuous listeners.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import serial
import serial.tools.list_ports

from ..backends.base import PlatformBackend
from ..config import SerialConfig
from ..exceptions import (
    AlreadyOpenError,
    DeviceHubError,
    DeviceIOError,
    DeviceUnavailableError,
    DiscoveryError,
    NotFoundError,
    NotOpenError,
    OperationTimeoutError,
    PlatformDetectionError,
)
from ..models import DeviceStatus, OperationResult, SerialPortInfo, SerialPortOptions
from .base import DeviceService

logger = logging.getLogger(__name__)

PARITIES = {
    'none': serial.PARITY_NONE,
    'even': serial.PARITY_EVEN,
    'odd': serial.PARITY_ODD,
    'mark': serial.PARITY_MARK,
    'space': serial.PARITY_SPACE,
}

# Blocking read slice of the reader thread
READ_SLICE = 0.1

DataCallback = Callable[[bytes], Any]


def _hex_id(value: Optional[int]) -> Optional[str]:
    return f"{value:04x}" if value is not None else None


def _pyserial_ports() -> List[SerialPortInfo]:
    ports = []
    for port in serial.tools.list_ports.comports():
        ports.append(SerialPortInfo(
            path=port.device,
            manufacturer=port.manufacturer,
            serial_number=port.serial_number,
            pnp_id=port.hwid if port.hwid != 'n/a' else None,
            vendor_id=_hex_id(port.vid),
            product_id=_hex_id(port.pid),
            location_id=port.location,
            friendly_name=port.description if port.description not in (None, 'n/a') else None,
        ))
    return ports


async def list_pyserial_ports() -> List[SerialPortInfo]:
    """Library listing through ``serial.tools.list_ports``."""
    try:
        return await asyncio.to_thread(_pyserial_ports)
    except OSError as e:
        raise PlatformDetectionError(f"pyserial port listing failed: {e}", cause=e)


class SerialConnection:
    """
    An open serial port with a background reader.

    Args:
        path: Port path
        options: Communication parameters
        serial_factory: Callable building the pyserial object
        on_data: Called with every chunk received, before listeners
        on_error: Called once when the reader fails
    """

    def __init__(self, path: str, options: SerialPortOptions,
                 serial_factory: Callable[..., Any] = serial.Serial,
                 on_data: Optional[DataCallback] = None,
                 on_error: Optional[Callable[[DeviceHubError], Any]] = None):
        self.path = path
        self.options = options
        self.serial_factory = serial_factory
        self.on_data = on_data
        self.on_error = on_error
        self._serial = None
        self._reader_task: Optional[asyncio.Task] = None
        self._waiters: List[asyncio.Future] = []
        self._listeners: List[DataCallback] = []
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._serial is not None

    async def open(self) -> None:
        """
        Raises:
            DeviceIOError: If the port cannot be opened
        """
        try:
            self._serial = await asyncio.to_thread(
                self.serial_factory,
                port=self.path,
                baudrate=self.options.baud_rate,
                bytesize=self.options.data_bits,
                parity=PARITIES[self.options.parity],
                stopbits=self.options.stop_bits,
                rtscts=self.options.rtscts,
                xonxoff=self.options.xonxoff,
                timeout=READ_SLICE
            )
        except (serial.SerialException, OSError, ValueError) as e:
            raise DeviceIOError(f"Failed to open {self.path}: {e}", path=self.path, cause=e)

        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"Opened {self.path} at {self.options.baud_rate} baud")

    def _read_chunk(self) -> bytes:
        return self._serial.read(self._serial.in_waiting or 1)

    async def _read_loop(self) -> None:
        while not self._closing:
            try:
                data = await asyncio.to_thread(self._read_chunk)
            except (serial.SerialException, OSError) as e:
                error = DeviceIOError(f"Read from {self.path} failed: {e}", path=self.path, cause=e)
                self._fail_waiters(error)
                if self.on_error:
                    self.on_error(error)
                return
            if data:
                self._dispatch(data)

    def _dispatch(self, data: bytes) -> None:
        if self.on_data:
            self.on_data(data)

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(data)

        for listener in list(self._listeners):
            try:
                listener(data)
            except Exception as e:
                logger.error(f"Error in data listener for {self.path}: {e}")

    def _fail_waiters(self, error: DeviceHubError) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)

    async def read(self, timeout: float) -> bytes:
        """
        Wait for the next incoming chunk.

        Raises:
            OperationTimeoutError: If nothing arrives within ``timeout``
            NotOpenError: If the port is closed while waiting
        """
        if not self.is_open:
            raise NotOpenError(f"Port {self.path} is not open", port=self.path)
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(f"No data from {self.path} within {timeout}s", timeout=timeout)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    async def write(self, data: bytes) -> int:
        if not self.is_open:
            raise NotOpenError(f"Port {self.path} is not open", port=self.path)
        try:
            written = await asyncio.to_thread(self._serial.write, data)
            await asyncio.to_thread(self._serial.flush)
        except (serial.SerialException, OSError) as e:
            raise DeviceIOError(f"Write to {self.path} failed: {e}", path=self.path, cause=e)
        return written if written is not None else len(data)

    def add_listener(self, callback: DataCallback) -> None:
        if not callable(callback):
            raise TypeError("Callback must be callable")
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Optional[DataCallback] = None) -> None:
        """Remove one listener, or all of them when ``callback`` is None."""
        if callback is None:
            self._listeners.clear()
        elif callback in self._listeners:
            self._listeners.remove(callback)

    async def close(self) -> None:
        if self._reader_task is not None:
            # The reader leaves within one read slice; closing under a live read is unsafe
            self._closing = True
            await self._reader_task
            self._reader_task = None

        self._listeners.clear()
        if self._waiters:
            self._fail_waiters(NotOpenError(f"Port {self.path} was closed", port=self.path))

        if self._serial is not None:
            ser, self._serial = self._serial, None
            try:
                await asyncio.to_thread(ser.close)
            except (serial.SerialException, OSError) as e:
                logger.error(f"Error closing {self.path}: {e}")
            logger.info(f"Closed {self.path}")


class SerialService(DeviceService):
    """
    Discovers serial ports and manages open connections.

    Events:
        ports-updated, port-opened, port-closed, port-error,
        data-sent, data-received, read-error, write-error
    """

    name = "serial"
    EVENTS = (
        "ports-updated",
        "port-opened",
        "port-closed",
        "port-error",
        "data-sent",
        "data-received",
        "read-error",
        "write-error",
    )

    def __init__(self, backend: PlatformBackend, config: Optional[SerialConfig] = None,
                 serial_factory: Callable[..., Any] = serial.Serial,
                 list_ports: Callable[[], Awaitable[List[SerialPortInfo]]] = list_pyserial_ports):
        super().__init__()
        self.backend = backend
        self.config = config or SerialConfig()
        self.serial_factory = serial_factory
        self.list_ports = list_ports
        self._ports: Dict[str, SerialPortInfo] = {}
        self._connections: Dict[str, SerialConnection] = {}

    async def _refresh(self, strict: bool) -> None:
        ports: Dict[str, SerialPortInfo] = {}
        failures = []
        # The library listing is more detailed, so it overrides the shell one
        for source in (self.backend.list_serial_ports, self.list_ports):
            try:
                found = await asyncio.wait_for(source(), self.config.enumeration_timeout)
            except (DeviceHubError, asyncio.TimeoutError) as e:
                logger.warning(f"Serial source {getattr(source, '__name__', source)} failed: {e}")
                failures.append(e)
                continue
            for port in found:
                ports[port.path] = port

        if len(failures) == 2:
            if strict:
                raise DiscoveryError("Every serial port enumeration source failed", service=self.name,
                                     cause=failures[-1])
            logger.warning("Serial enumeration failed, only open ports are kept")

        for path in self._connections:
            port = ports.get(path) or self._ports.get(path) or SerialPortInfo(path=path)
            port.status = DeviceStatus.BUSY
            ports[path] = port

        self._ports = ports
        logger.debug(f"Found {len(ports)} serial ports")
        self.events.emit("ports-updated", list(ports.values()))

    async def _release(self) -> None:
        for path in list(self._connections):
            await self._close_connection(path)

    def _clear_registry(self) -> None:
        self._ports.clear()

    async def get_ports(self) -> List[SerialPortInfo]:
        """
        Refresh and return every known port.

        Raises:
            NotInitializedError: If the service is not initialized
        """
        self.lifecycle.require()
        await self.refresh()
        return list(self._ports.values())

    async def get_available_devices(self) -> List[SerialPortInfo]:
        self.lifecycle.require()
        await self.refresh()
        return [p for p in self._ports.values() if p.status == DeviceStatus.AVAILABLE]

    async def is_device_available(self, device_id: str) -> bool:
        self.lifecycle.require()
        port = self._ports.get(device_id)
        return port is not None and port.status == DeviceStatus.AVAILABLE

    async def get_device_info(self, device_id: str) -> Optional[SerialPortInfo]:
        self.lifecycle.require()
        return self._ports.get(device_id)

    def is_open(self, path: str) -> bool:
        return path in self._connections

    def _probe(self, path: str) -> bool:
        try:
            ser = self.serial_factory(port=path, timeout=READ_SLICE)
        except (serial.SerialException, OSError, ValueError) as e:
            logger.debug(f"Probe of {path} failed: {e}")
            return False
        ser.close()
        return True

    async def test_device(self, device_id: str) -> bool:
        """An open port is healthy; otherwise try a short open/close cycle."""
        self.lifecycle.require()
        if device_id in self._connections:
            return True
        if device_id not in self._ports:
            return False
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._probe, device_id), self.config.probe_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Probe of {device_id} exceeded {self.config.probe_timeout}s")
            return False

    async def open_port(self, path: str,
                        options: Union[SerialPortOptions, Mapping[str, Any], None] = None) -> OperationResult:
        """
        Open a port; omitted options default to 9600 8N1.

        Returns:
            OperationResult: AlreadyOpen if a connection exists (left untouched)
        """
        failure = self.lifecycle.not_ready()
        if failure:
            return failure

        try:
            opts = options.validate() if isinstance(options, SerialPortOptions) else SerialPortOptions.from_dict(options)
            if path in self._connections:
                raise AlreadyOpenError(f"Port {path} is already open", port=path)
            port = self._ports.get(path)
            if port is None:
                raise NotFoundError(f"Port {path} not found", device_id=path)
            if port.status != DeviceStatus.AVAILABLE:
                raise DeviceUnavailableError(f"Port {path} is not available", device_id=path,
                                             status=port.status.value)

            connection = SerialConnection(
                path, opts,
                serial_factory=self.serial_factory,
                on_data=lambda data: self.events.emit("data-received", {'path': path, 'data': data}),
                on_error=lambda error: self._connection_failed(path, error),
            )
            self._connections[path] = connection
            try:
                await connection.open()
            except DeviceHubError:
                self._connections.pop(path, None)
                raise
        except DeviceIOError as e:
            self.events.emit("port-error", {'path': path, 'reason': e.reason, 'error': e.message})
            return OperationResult.from_error(e)
        except DeviceHubError as e:
            return OperationResult.from_error(e)

        port.status = DeviceStatus.BUSY
        self.events.emit("port-opened", {'path': path, 'options': opts.to_dict()})
        return OperationResult.ok({'path': path})

    def _connection_failed(self, path: str, error: DeviceHubError) -> None:
        self.events.emit("port-error", {'path': path, 'reason': error.reason, 'error': error.message})

    async def _close_connection(self, path: str) -> bool:
        connection = self._connections.pop(path, None)
        if connection is None:
            return False
        await connection.close()
        port = self._ports.get(path)
        if port is not None:
            port.status = DeviceStatus.AVAILABLE
        return True

    async def close_port(self, path: str) -> OperationResult:
        """Close a port; closing a port that is not open succeeds."""
        failure = self.lifecycle.not_ready()
        if failure:
            return failure

        if await self._close_connection(path):
            self.events.emit("port-closed", {'path': path})
        return OperationResult.ok()

    async def write(self, path: str, data: Union[str, bytes]) -> OperationResult:
        """
        Write text (UTF-8 encoded) or bytes to an open port.

        Returns:
            OperationResult: payload is the number of bytes written
        """
        failure = self.lifecycle.not_ready()
        if failure:
            return failure

        payload = data.encode('utf-8') if isinstance(data, str) else bytes(data)
        try:
            connection = self._connections.get(path)
            if connection is None:
                raise NotOpenError(f"Port {path} is not open", port=path)
            written = await connection.write(payload)
        except NotOpenError as e:
            return OperationResult.from_error(e)
        except DeviceHubError as e:
            self.events.emit("write-error", {'path': path, 'reason': e.reason, 'error': e.message})
            return OperationResult.from_error(e)

        self.events.emit("data-sent", {'path': path, 'bytes': written})
        return OperationResult.ok(written)

    async def read(self, path: str, timeout: Optional[float] = None) -> bytes:
        """
        Wait for the first chunk of data arriving on an open port.

        Args:
            path: Port path
            timeout: Seconds to wait (defaults to ``config.read_timeout``)

        Raises:
            NotOpenError: If the port is not open
            OperationTimeoutError: If nothing arrives in time
        """
        self.lifecycle.require()
        connection = self._connections.get(path)
        if connection is None:
            raise NotOpenError(f"Port {path} is not open", port=path)
        try:
            return await connection.read(timeout if timeout is not None else self.config.read_timeout)
        except DeviceHubError as e:
            self.events.emit("read-error", {'path': path, 'reason': e.reason, 'error': e.message})
            raise

    def on_data(self, path: str, callback: DataCallback) -> None:
        """
        Register a continuous listener for data on an open port.

        Raises:
            NotOpenError: If the port is not open
        """
        self.lifecycle.require()
        connection = self._connections.get(path)
        if connection is None:
            raise NotOpenError(f"Port {path} is not open", port=path)
        connection.add_listener(callback)

    def remove_data_listener(self, path: str, callback: Optional[DataCallback] = None) -> None:
        connection = self._connections.get(path)
        if connection is not None:
            connection.remove_listener(callback)
