"""
OpenCV-backed still capture and frame streaming.

All OpenCV calls are blocking; the async wrappers push them to worker threads.
"""

import asyncio
import logging
from typing import Any, List, Optional

import cv2

from .exceptions import DeviceIOError
from .models import CaptureOptions

logger = logging.getLogger(__name__)

WARMUP_FRAMES = 3


def _encode_params(options: CaptureOptions) -> List[int]:
    if options.format == "jpg":
        return [cv2.IMWRITE_JPEG_QUALITY, options.quality]
    if options.format == "png":
        # quality 100 -> no compression, quality 1 -> maximum
        return [cv2.IMWRITE_PNG_COMPRESSION, max(0, min(9, (100 - options.quality) // 10))]
    return []


class OpenCVCapture:
    """Thin wrapper around ``cv2.VideoCapture`` for indexed cameras."""

    def _open(self, index: int, options: Optional[CaptureOptions] = None):
        try:
            cap = cv2.VideoCapture(index)
        except cv2.error as e:
            raise DeviceIOError(f"Camera {index} could not be opened: {e}", path=str(index), cause=e)
        if not cap.isOpened():
            cap.release()
            raise DeviceIOError(f"Camera {index} could not be opened", path=str(index))
        if options is not None:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, options.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, options.height)
        return cap

    def _read(self, cap, index: int) -> Any:
        try:
            ok, frame = cap.read()
        except cv2.error as e:
            raise DeviceIOError(f"Camera {index} failed to deliver a frame: {e}", path=str(index), cause=e)
        if not ok or frame is None:
            raise DeviceIOError(f"Camera {index} returned no frame", path=str(index))
        return frame

    def capture_to_file(self, index: int, file_path: str, options: CaptureOptions) -> None:
        """
        Grab one frame from camera ``index`` and write it to ``file_path``.

        Raises:
            DeviceIOError: If the camera cannot be opened or the image cannot be written
        """
        cap = self._open(index, options)
        try:
            # Auto exposure settles over the first frames
            for _ in range(WARMUP_FRAMES):
                try:
                    cap.grab()
                except cv2.error as e:
                    raise DeviceIOError(f"Camera {index} failed to grab a frame: {e}", path=str(index), cause=e)
            frame = self._read(cap, index)
        finally:
            cap.release()

        try:
            written = cv2.imwrite(file_path, frame, _encode_params(options))
        except cv2.error as e:
            raise DeviceIOError(f"Failed to write captured image to {file_path}: {e}", path=file_path, cause=e)
        if not written:
            raise DeviceIOError(f"Failed to write captured image to {file_path}", path=file_path)
        logger.debug(f"Captured frame from camera {index} to {file_path}")

    def probe(self, index: int) -> bool:
        """Whether camera ``index`` opens and delivers a frame."""
        try:
            cap = self._open(index)
        except DeviceIOError:
            return False
        try:
            self._read(cap, index)
            return True
        except DeviceIOError:
            return False
        finally:
            cap.release()

    def open_stream(self, index: int, url: str, options: CaptureOptions) -> "VideoStream":
        return VideoStream(self, index, url, options)


class VideoStream:
    """
    Continuous frame grabbing from one camera.

    The latest frame is kept JPEG-encoded in ``latest_frame`` for whoever
    serves ``url``. ``VideoCapture`` is not thread-safe, so the camera is only
    released once the grab loop has left its current read.
    """

    def __init__(self, capture: OpenCVCapture, index: int, url: str, options: CaptureOptions, fps: float = 15.0):
        self.capture = capture
        self.index = index
        self.url = url
        self.options = options
        self.interval = 1.0 / fps
        self.latest_frame: Optional[bytes] = None
        self._cap = None
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """
        Raises:
            DeviceIOError: If the camera cannot be opened
        """
        self._cap = await asyncio.to_thread(self.capture._open, self.index, self.options)
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Stream for camera {self.index} started at {self.url}")

    def _grab_jpeg(self) -> Optional[bytes]:
        ok, frame = self._cap.read()
        if not ok or frame is None:
            return None
        ok, buffer = cv2.imencode('.jpg', frame, [cv2.IMWRITE_JPEG_QUALITY, self.options.quality])
        return buffer.tobytes() if ok else None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                frame = await asyncio.to_thread(self._grab_jpeg)
            except cv2.error as e:
                logger.error(f"Stream for camera {self.index} failed: {e}")
                return
            if frame is not None:
                self.latest_frame = frame
            try:
                await asyncio.wait_for(self._stopping.wait(), self.interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        if self._task is not None:
            self._stopping.set()
            # The loop leaves after its current read; release must not overlap it
            await self._task
            self._task = None
        if self._cap is not None:
            cap, self._cap = self._cap, None
            try:
                await asyncio.to_thread(cap.release)
            except cv2.error as e:
                logger.error(f"Failed to release camera {self.index}: {e}")
        logger.info(f"Stream for camera {self.index} stopped")
