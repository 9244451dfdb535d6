"""
Camera discovery, still capture and stream sessions.
"""

import asyncio
import base64
import logging
import os
import tempfile
import time
from typing import Any, Dict, List, Mapping, Optional, Union

from ..backends.base import PlatformBackend
from ..capture import OpenCVCapture
from ..config import CameraConfig
from ..exceptions import (
    DeviceBusyError,
    DeviceHubError,
    DeviceIOError,
    DeviceUnavailableError,
    NotFoundError,
)
from ..models import CameraInfo, CaptureOptions, DeviceStatus, OperationResult
from .base import DeviceService

logger = logging.getLogger(__name__)

DEFAULT_CAMERA_ID = "0"

MIME_TYPES = {
    'jpg': 'image/jpeg',
    'png': 'image/png',
    'bmp': 'image/bmp',
}


def default_camera() -> CameraInfo:
    """Placeholder registered when no enumeration source finds a camera."""
    return CameraInfo(id=DEFAULT_CAMERA_ID, name="Default Camera", type="webcam", device_index=0)


def _capture_options(options: Union[CaptureOptions, Mapping[str, Any], None]) -> CaptureOptions:
    if isinstance(options, CaptureOptions):
        return options.validate()
    return CaptureOptions.from_dict(options)


class CameraService(DeviceService):
    """
    Discovers cameras and drives captures through an OpenCV capture backend.

    A camera with an active stream is busy: it cannot be captured from or
    streamed a second time until the stream is stopped.
    """

    name = "camera"
    EVENTS = (
        "cameras-updated",
        "photo-captured",
        "capture-error",
        "stream-started",
        "stream-stopped",
        "stream-error",
    )

    def __init__(self, backend: PlatformBackend, config: Optional[CameraConfig] = None,
                 capture: Optional[OpenCVCapture] = None):
        super().__init__()
        self.backend = backend
        self.config = config or CameraConfig()
        self.capture = capture or OpenCVCapture()
        self._cameras: Dict[str, CameraInfo] = {}
        self._streams: Dict[str, Any] = {}

    async def _refresh(self, strict: bool) -> None:
        cameras: Dict[str, CameraInfo] = {}
        for source in (self.backend.list_cameras, self.backend.list_usb_cameras):
            try:
                found = await asyncio.wait_for(source(), self.config.enumeration_timeout)
            except (DeviceHubError, asyncio.TimeoutError) as e:
                logger.warning(f"Camera source {source.__name__} failed: {e}")
                continue
            for camera in found:
                cameras.setdefault(camera.id, camera)

        if not cameras:
            logger.info("No camera detected, registering default camera")
            cameras[DEFAULT_CAMERA_ID] = default_camera()

        for camera_id in self._streams:
            if camera_id in cameras:
                cameras[camera_id].status = DeviceStatus.BUSY

        self._cameras = cameras
        logger.debug(f"Found {len(cameras)} cameras")
        self.events.emit("cameras-updated", list(cameras.values()))

    async def _release(self) -> None:
        for camera_id in list(self._streams):
            await self._stop_stream(camera_id)

    def _clear_registry(self) -> None:
        self._cameras.clear()

    async def get_cameras(self) -> List[CameraInfo]:
        """
        Refresh and return every known camera; never empty.

        Raises:
            NotInitializedError: If the service is not initialized
        """
        self.lifecycle.require()
        await self.refresh()
        return list(self._cameras.values())

    async def get_available_devices(self) -> List[CameraInfo]:
        self.lifecycle.require()
        await self.refresh()
        return [c for c in self._cameras.values() if c.status == DeviceStatus.AVAILABLE]

    async def is_device_available(self, device_id: str) -> bool:
        self.lifecycle.require()
        camera = self._cameras.get(device_id)
        return camera is not None and camera.status == DeviceStatus.AVAILABLE

    async def get_device_info(self, device_id: str) -> Optional[CameraInfo]:
        self.lifecycle.require()
        return self._cameras.get(device_id)

    async def test_device(self, device_id: str) -> bool:
        """Camera is available and the capture backend opens it within the probe timeout."""
        self.lifecycle.require()
        camera = self._cameras.get(device_id)
        if camera is None or camera.status != DeviceStatus.AVAILABLE:
            return False
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.capture.probe, self._capture_index(camera)),
                self.config.probe_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Camera {device_id} did not respond within {self.config.probe_timeout}s")
            return False

    def _capture_index(self, camera: CameraInfo) -> int:
        if camera.device_index is not None:
            return camera.device_index
        if camera.id.isdigit():
            return int(camera.id)
        # Entries known only by an OS device id map to the first capture device
        return 0

    def _usable_camera(self, camera_id: str) -> CameraInfo:
        camera = self._cameras.get(camera_id)
        if camera is None:
            raise NotFoundError(f"Camera {camera_id} not found", device_id=camera_id)
        if camera.status != DeviceStatus.AVAILABLE:
            raise DeviceUnavailableError(f"Camera {camera_id} is not available", device_id=camera_id,
                                         status=camera.status.value)
        return camera

    async def capture_photo(self, camera_id: str = DEFAULT_CAMERA_ID,
                            options: Union[CaptureOptions, Mapping[str, Any], None] = None) -> OperationResult:
        """
        Capture one still image.

        Returns:
            OperationResult: payload is the file path when ``save_to_file`` is
            set, otherwise a ``data:`` URL with the base64-encoded image
        """
        failure = self.lifecycle.not_ready()
        if failure:
            return failure

        try:
            opts = _capture_options(options)
            camera = self._usable_camera(camera_id)
            index = self._capture_index(camera)
            if opts.save_to_file:
                payload = opts.file_path or os.path.join(
                    tempfile.gettempdir(), f"devicehub_capture_{int(time.time() * 1000)}.{opts.format}"
                )
                await asyncio.to_thread(self.capture.capture_to_file, index, payload, opts)
            else:
                payload = await self._capture_data_url(index, opts)
        except DeviceHubError as e:
            self.events.emit("capture-error", {'camera_id': camera_id, 'reason': e.reason, 'error': e.message})
            return OperationResult.from_error(e)

        logger.info(f"Captured photo from camera {camera_id}")
        self.events.emit("photo-captured", {'camera_id': camera_id, 'format': opts.format,
                                            'file_path': payload if opts.save_to_file else None})
        return OperationResult.ok(payload)

    async def _capture_data_url(self, index: int, opts: CaptureOptions) -> str:
        fd, temp_path = tempfile.mkstemp(prefix="devicehub_capture_", suffix=f".{opts.format}")
        os.close(fd)
        try:
            await asyncio.to_thread(self.capture.capture_to_file, index, temp_path, opts)
            try:
                with open(temp_path, 'rb') as f:
                    data = f.read()
            except OSError as e:
                raise DeviceIOError(f"Failed to read captured image: {e}", path=temp_path, cause=e)
        finally:
            try:
                os.remove(temp_path)
            except OSError as e:
                logger.warning(f"Failed to remove temporary capture {temp_path}: {e}")

        return f"data:{MIME_TYPES[opts.format]};base64,{base64.b64encode(data).decode('ascii')}"

    async def start_video_stream(self, camera_id: str = DEFAULT_CAMERA_ID,
                                 options: Union[CaptureOptions, Mapping[str, Any], None] = None) -> OperationResult:
        """
        Start streaming from a camera; at most one stream per camera.

        Returns:
            OperationResult: payload is the stream URL
        """
        failure = self.lifecycle.not_ready()
        if failure:
            return failure

        try:
            opts = _capture_options(options)
            if camera_id in self._streams:
                raise DeviceBusyError(f"Camera {camera_id} is already streaming", device_id=camera_id,
                                      status=DeviceStatus.BUSY.value)
            camera = self._usable_camera(camera_id)
            index = self._capture_index(camera)
            url = f"http://localhost:{self.config.stream_base_port + index}/stream"
            stream = self.capture.open_stream(index, url, opts)
            self._streams[camera_id] = stream
            try:
                await stream.start()
            except DeviceHubError:
                self._streams.pop(camera_id, None)
                raise
        except DeviceHubError as e:
            self.events.emit("stream-error", {'camera_id': camera_id, 'reason': e.reason, 'error': e.message})
            return OperationResult.from_error(e)

        camera.status = DeviceStatus.BUSY
        self.events.emit("stream-started", {'camera_id': camera_id, 'url': url})
        return OperationResult.ok(url)

    async def _stop_stream(self, camera_id: str) -> bool:
        stream = self._streams.pop(camera_id, None)
        if stream is None:
            return False
        try:
            await stream.stop()
        except DeviceHubError as e:
            logger.error(f"Error stopping stream of camera {camera_id}: {e.message}")
        camera = self._cameras.get(camera_id)
        if camera is not None:
            camera.status = DeviceStatus.AVAILABLE
        return True

    async def stop_video_stream(self, camera_id: str) -> OperationResult:
        """Stop a camera's stream; succeeds trivially when none is active."""
        failure = self.lifecycle.not_ready()
        if failure:
            return failure

        if await self._stop_stream(camera_id):
            self.events.emit("stream-stopped", {'camera_id': camera_id})
        return OperationResult.ok()

    def get_stream_frame(self, camera_id: str) -> Optional[bytes]:
        """
        Latest JPEG frame of an active stream (None until the first frame).

        Raises:
            NotFoundError: If the camera has no active stream
        """
        self.lifecycle.require()
        stream = self._streams.get(camera_id)
        if stream is None:
            raise NotFoundError(f"Camera {camera_id} has no active stream", device_id=camera_id)
        return stream.latest_frame

    def is_streaming(self, camera_id: str) -> bool:
        return camera_id in self._streams
