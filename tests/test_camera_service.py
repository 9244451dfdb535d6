"""
Tests for CameraService discovery, still capture and stream sessions.
"""

import base64
import tempfile
from pathlib import Path
from unittest.mock import Mock

import cv2
import pytest
import pytest_asyncio

from devicehub.capture import OpenCVCapture
from devicehub.exceptions import DeviceIOError, NotFoundError
from devicehub.models import CameraInfo, CaptureOptions, DeviceStatus
from devicehub.services import CameraService

JPEG_BYTES = b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9"


class FakeStream:

    def __init__(self, index, url, fail=False):
        self.index = index
        self.url = url
        self.fail = fail
        self.started = False
        self.stopped = False
        self.latest_frame = None

    async def start(self):
        if self.fail:
            raise DeviceIOError(f"Camera {self.index} could not be opened")
        self.started = True
        self.latest_frame = JPEG_BYTES

    async def stop(self):
        self.stopped = True


class FakeCapture:
    """Records capture calls and writes a fixed image instead of touching OpenCV."""

    def __init__(self):
        self.captures = []
        self.attempts = []
        self.streams = []
        self.working = {0, 1}
        self.fail_stream = False

    def capture_to_file(self, index, file_path, options):
        self.attempts.append(file_path)
        if index not in self.working:
            raise DeviceIOError(f"Camera {index} could not be opened", path=str(index))
        self.captures.append((index, file_path, options))
        Path(file_path).write_bytes(JPEG_BYTES)

    def probe(self, index):
        return index in self.working

    def open_stream(self, index, url, options):
        stream = FakeStream(index, url, fail=self.fail_stream)
        self.streams.append(stream)
        return stream


@pytest.fixture
def fake_capture():
    return FakeCapture()


@pytest_asyncio.fixture
async def camera_service(fake_backend, camera_config, fake_capture):
    service = CameraService(fake_backend, camera_config, capture=fake_capture)
    await service.initialize()
    yield service
    await service.cleanup()


class TestCameraDiscovery:

    @pytest.mark.asyncio
    async def test_lists_cameras_from_both_sources(self, fake_backend, camera_config, fake_capture):
        fake_backend.usb_cameras = [
            CameraInfo(id="0", name="Duplicate", type="usb"),
            CameraInfo(id="1-4", name="USB Video Device", type="usb"),
        ]
        service = CameraService(fake_backend, camera_config, capture=fake_capture)
        await service.initialize()

        cameras = {c.id: c for c in await service.get_cameras()}

        assert set(cameras) == {"0", "1-4"}
        assert cameras["0"].name == "Integrated Webcam"
        await service.cleanup()

    @pytest.mark.asyncio
    async def test_default_camera_when_none_found(self, fake_backend, camera_config, fake_capture):
        fake_backend.cameras = []
        service = CameraService(fake_backend, camera_config, capture=fake_capture)
        await service.initialize()

        cameras = await service.get_cameras()

        assert [(c.id, c.name) for c in cameras] == [("0", "Default Camera")]
        await service.cleanup()

    @pytest.mark.asyncio
    async def test_failing_sources_still_give_default(self, fake_backend, camera_config, fake_capture):
        fake_backend.failing.update({"list_cameras", "list_usb_cameras"})
        service = CameraService(fake_backend, camera_config, capture=fake_capture)

        await service.initialize()

        assert [c.id for c in await service.get_cameras()] == ["0"]
        await service.cleanup()

    @pytest.mark.asyncio
    async def test_test_device_probes_capture(self, camera_service, fake_capture):
        assert await camera_service.test_device("0")

        fake_capture.working = set()
        assert not await camera_service.test_device("0")
        assert not await camera_service.test_device("7")


class TestCapturePhoto:

    @pytest.mark.asyncio
    async def test_capture_data_url(self, camera_service, fake_capture):
        captured = Mock()
        camera_service.on("photo-captured", captured)

        result = await camera_service.capture_photo("0")

        assert result.success
        prefix = "data:image/jpeg;base64,"
        assert result.payload.startswith(prefix)
        assert base64.b64decode(result.payload[len(prefix):]) == JPEG_BYTES
        index, temp_path, options = fake_capture.captures[0]
        assert index == 0
        assert (options.width, options.height, options.quality, options.format) == (640, 480, 85, "jpg")
        assert not Path(temp_path).exists()
        captured.assert_called_once()

    @pytest.mark.asyncio
    async def test_capture_to_file(self, camera_service, tmp_path):
        target = tmp_path / "shot.png"

        result = await camera_service.capture_photo(
            "0", {'saveToFile': True, 'filePath': str(target), 'format': 'png'}
        )

        assert result.success
        assert result.payload == str(target)
        assert target.read_bytes() == JPEG_BYTES

    @pytest.mark.asyncio
    async def test_capture_unknown_camera(self, camera_service):
        errors = Mock()
        camera_service.on("capture-error", errors)

        result = await camera_service.capture_photo("9")

        assert result.reason == "NotFound"
        errors.assert_called_once()

    @pytest.mark.asyncio
    async def test_capture_invalid_options(self, camera_service):
        result = await camera_service.capture_photo("0", CaptureOptions(format="gif"))

        assert result.reason == "ValidationError"

    @pytest.mark.asyncio
    async def test_capture_device_failure(self, camera_service, fake_capture):
        fake_capture.working = set()

        result = await camera_service.capture_photo("0")

        assert result.reason == "IOError"
        temp_path = fake_capture.attempts[0]
        assert not Path(temp_path).exists()

    @pytest.mark.asyncio
    async def test_opencv_error_becomes_io_failure(self, fake_backend, camera_config, mocker):
        cap = Mock()
        cap.isOpened.return_value = True
        cap.read.side_effect = cv2.error("driver failure")
        mocker.patch("cv2.VideoCapture", return_value=cap)
        mkstemp = mocker.spy(tempfile, "mkstemp")
        service = CameraService(fake_backend, camera_config, capture=OpenCVCapture())
        await service.initialize()

        result = await service.capture_photo("0")

        assert not result.success
        assert result.reason == "IOError"
        cap.release.assert_called()
        assert not Path(mkstemp.spy_return[1]).exists()
        await service.cleanup()


class TestStreams:

    @pytest.mark.asyncio
    async def test_start_stream(self, camera_service, fake_capture, camera_config):
        started = Mock()
        camera_service.on("stream-started", started)

        result = await camera_service.start_video_stream("0")

        assert result.success
        assert result.payload == f"http://localhost:{camera_config.stream_base_port}/stream"
        assert camera_service.is_streaming("0")
        assert (await camera_service.get_device_info("0")).status == DeviceStatus.BUSY
        assert camera_service.get_stream_frame("0") == JPEG_BYTES
        started.assert_called_once()

    @pytest.mark.asyncio
    async def test_second_stream_is_rejected(self, camera_service, fake_capture):
        await camera_service.start_video_stream("0")

        result = await camera_service.start_video_stream("0")

        assert result.reason == "DeviceBusy"
        assert len(fake_capture.streams) == 1

    @pytest.mark.asyncio
    async def test_capture_while_streaming_is_rejected(self, camera_service):
        await camera_service.start_video_stream("0")

        result = await camera_service.capture_photo("0")

        assert result.reason == "Unavailable"

    @pytest.mark.asyncio
    async def test_busy_status_survives_refresh(self, camera_service):
        await camera_service.start_video_stream("0")

        cameras = await camera_service.get_cameras()

        assert cameras[0].status == DeviceStatus.BUSY

    @pytest.mark.asyncio
    async def test_stop_stream(self, camera_service, fake_capture):
        stopped = Mock()
        camera_service.on("stream-stopped", stopped)
        await camera_service.start_video_stream("0")

        result = await camera_service.stop_video_stream("0")

        assert result.success
        assert fake_capture.streams[0].stopped
        assert not camera_service.is_streaming("0")
        assert await camera_service.is_device_available("0")
        stopped.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_without_stream_succeeds(self, camera_service):
        stopped = Mock()
        camera_service.on("stream-stopped", stopped)

        result = await camera_service.stop_video_stream("0")

        assert result.success
        stopped.assert_not_called()

    @pytest.mark.asyncio
    async def test_stream_start_failure(self, camera_service, fake_capture):
        fake_capture.fail_stream = True
        errors = Mock()
        camera_service.on("stream-error", errors)

        result = await camera_service.start_video_stream("0")

        assert result.reason == "IOError"
        assert not camera_service.is_streaming("0")
        errors.assert_called_once()

    @pytest.mark.asyncio
    async def test_stream_frame_without_stream(self, camera_service):
        with pytest.raises(NotFoundError):
            camera_service.get_stream_frame("0")

    @pytest.mark.asyncio
    async def test_cleanup_stops_streams(self, fake_backend, camera_config, fake_capture):
        service = CameraService(fake_backend, camera_config, capture=fake_capture)
        await service.initialize()
        await service.start_video_stream("0")

        await service.cleanup()

        assert fake_capture.streams[0].stopped
        assert not service.is_streaming("0")
