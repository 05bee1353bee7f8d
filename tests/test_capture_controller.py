"""
Capture Controller Tests

Stream lifecycle against a fake camera: single stream per controller,
idempotent stop, frame orientation and monotonic capture timestamps.
Run with: pytest tests/test_capture_controller.py -v
"""
import pytest

from conftest import FakeCameraBackend
from models.domain import Facing, FrameSource
from services.capture_controller import CaptureController, CaptureState
from utils.exceptions import CaptureNotReadyError, DeviceError, PermissionDeniedError
from utils.image_manager import load_image


@pytest.fixture
def controller(camera_backend, clock):
    return CaptureController(camera_backend, clock=clock)


class TestStart:

    @pytest.mark.asyncio
    async def test_start_opens_stream(self, controller, camera_backend):
        handle = await controller.start(Facing.FRONT, 640, 480)

        assert controller.state is CaptureState.ACTIVE
        assert handle.active
        assert (handle.width, handle.height) == (640, 480)
        assert camera_backend.opened == [Facing.FRONT]

    @pytest.mark.asyncio
    async def test_second_start_same_facing_reuses_stream(self, controller, camera_backend):
        first = await controller.start(Facing.FRONT)
        second = await controller.start(Facing.FRONT)

        assert first is second
        assert len(camera_backend.open_devices) == 1

    @pytest.mark.asyncio
    async def test_start_other_facing_is_refused(self, controller):
        await controller.start(Facing.FRONT)
        with pytest.raises(DeviceError) as exc_info:
            await controller.start(Facing.BACK)
        assert exc_info.value.code == "DEVICE_BUSY"

    @pytest.mark.asyncio
    async def test_permission_denied_moves_to_error(self, clock):
        backend = FakeCameraBackend(open_error=PermissionDeniedError())
        controller = CaptureController(backend, clock=clock)

        with pytest.raises(PermissionDeniedError):
            await controller.start()
        assert controller.state is CaptureState.ERROR
        assert controller.active_handle is None

    @pytest.mark.asyncio
    async def test_stop_then_start_succeeds(self, controller, camera_backend):
        handle = await controller.start(Facing.FRONT)
        controller.stop(handle)

        again = await controller.start(Facing.FRONT)
        assert again is not handle
        assert again.active
        assert len(camera_backend.open_devices) == 1


class TestPreview:

    @pytest.mark.asyncio
    async def test_attach_is_idempotent(self, controller):
        handle = await controller.start()
        controller.attach_preview(handle, "video-1")
        controller.attach_preview(handle, "video-1")
        assert handle.preview_surface == "video-1"

    @pytest.mark.asyncio
    async def test_attach_released_stream_fails(self, controller):
        handle = await controller.start()
        controller.stop(handle)
        with pytest.raises(CaptureNotReadyError):
            controller.attach_preview(handle)


class TestCapture:

    @pytest.mark.asyncio
    async def test_capture_produces_jpeg_data_uri(self, controller):
        handle = await controller.start(Facing.BACK)
        frame = await controller.capture(handle)

        assert frame.payload.startswith("data:image/jpeg;base64,")
        assert frame.image_format == "jpeg"
        assert frame.source is FrameSource.DEVICE
        assert frame.facing is Facing.BACK
        assert (frame.width, frame.height) == (160, 120)
        assert controller.state is CaptureState.CAPTURED

    @pytest.mark.asyncio
    async def test_not_ready_when_no_frame(self, clock):
        controller = CaptureController(FakeCameraBackend(ready=False), clock=clock)
        handle = await controller.start()

        with pytest.raises(CaptureNotReadyError):
            await controller.capture(handle)
        # stream stays usable
        assert controller.is_streaming

    @pytest.mark.asyncio
    async def test_frames_keep_sensor_orientation(self, controller, camera_backend):
        front = await controller.start(Facing.FRONT)
        assert front.mirror_preview is True
        front_image = load_image((await controller.capture(front)).payload)
        controller.stop(front)

        back = await controller.start(Facing.BACK)
        assert back.mirror_preview is False
        back_image = load_image((await controller.capture(back)).payload)

        # fake camera paints the left half white; only the preview is flipped
        for image in (front_image, back_image):
            assert image[60, 10].mean() > 200
            assert image[60, 150].mean() < 50

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self, controller):
        # frozen clock: every capture sees the same wall time
        handle = await controller.start()
        stamps = [(await controller.capture(handle)).captured_at for _ in range(3)]
        assert stamps[0] < stamps[1] < stamps[2]

    @pytest.mark.asyncio
    async def test_capture_after_stop_fails(self, controller):
        handle = await controller.start()
        controller.stop(handle)
        with pytest.raises(CaptureNotReadyError):
            await controller.capture(handle)


class TestSwitchAndStop:

    @pytest.mark.asyncio
    async def test_switch_facing_releases_old_stream(self, controller, camera_backend):
        front = await controller.start(Facing.FRONT)
        back = await controller.switch_facing(front)

        assert back.facing is Facing.BACK
        assert front.released
        assert not back.released
        assert camera_backend.opened == [Facing.FRONT, Facing.BACK]
        assert len(camera_backend.open_devices) == 1

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, controller, camera_backend):
        handle = await controller.start()
        controller.stop(handle)
        controller.stop(handle)
        controller.stop()

        assert len(camera_backend.released) == 1
        assert controller.state is CaptureState.IDLE

    def test_stop_without_stream(self, controller):
        controller.stop()
        assert controller.state is CaptureState.IDLE

    @pytest.mark.asyncio
    async def test_context_manager_releases_stream(self, camera_backend, clock):
        async with CaptureController(camera_backend, clock=clock) as controller:
            await controller.start()
            assert camera_backend.open_devices
        assert camera_backend.open_devices == []
