import asyncio

import pytest

from conftest import image_bytes, jpeg_upload
from receipt_capture.capture.device import DeviceState, Facing, FixtureCamera
from receipt_capture.capture.files import FileUpload, validate_upload
from receipt_capture.capture.manager import CaptureDeviceManager, CaptureOptions
from receipt_capture.domain.models import ImageSource
from receipt_capture.resilience.errors import CaptureError, CapturePermissionError, FileRejected, ValidationError


def _manager(camera, **kwargs):
    return CaptureDeviceManager(camera, settle_delay=0.0, **kwargs)


def test_start_opens_the_preferred_facing():
    camera = FixtureCamera([image_bytes()])
    manager = _manager(camera)
    asyncio.run(manager.start())
    assert manager.state is DeviceState.ACTIVE
    assert manager.active_facing is Facing.BACK
    assert camera.opened_with == [Facing.BACK]


def test_start_falls_back_to_any_camera():
    camera = FixtureCamera([image_bytes()], available=[Facing.FRONT])
    manager = _manager(camera)
    asyncio.run(manager.start())
    assert manager.state is DeviceState.ACTIVE
    assert manager.active_facing is None
    assert camera.opened_with == [Facing.BACK, None]


def test_start_without_any_camera_suggests_file_upload():
    camera = FixtureCamera([image_bytes()], available=[], fail_any=True)
    manager = _manager(camera)
    with pytest.raises(CapturePermissionError) as excinfo:
        asyncio.run(manager.start())
    assert "file upload" in excinfo.value.message
    assert manager.state is DeviceState.INACTIVE


def test_switch_facing_reopens_an_active_stream():
    camera = FixtureCamera([image_bytes()])
    manager = _manager(camera)

    async def scenario():
        await manager.start()
        return await manager.switch_facing()

    assert asyncio.run(scenario()) is Facing.FRONT
    assert manager.state is DeviceState.ACTIVE
    assert camera.opened_with == [Facing.BACK, Facing.FRONT]


def test_switch_facing_while_inactive_only_changes_preference():
    camera = FixtureCamera([image_bytes()])
    manager = _manager(camera)
    assert asyncio.run(manager.switch_facing()) is Facing.FRONT
    assert manager.state is DeviceState.INACTIVE
    assert camera.opened_with == []


def test_capture_frame_is_none_when_inactive():
    manager = _manager(FixtureCamera([image_bytes()]))
    assert asyncio.run(manager.capture_frame()) is None


def test_lost_stream_moves_to_error_and_restart_recovers():
    camera = FixtureCamera([image_bytes()])
    manager = _manager(camera)

    async def scenario():
        await manager.start()
        camera.lose_stream = True
        with pytest.raises(CaptureError):
            await manager.capture_frame()
        assert manager.state is DeviceState.ERROR
        camera.lose_stream = False
        await manager.start()
        return await manager.capture_frame()

    frame = asyncio.run(scenario())
    assert frame is not None and frame.source is ImageSource.CAMERA
    assert manager.state is DeviceState.ACTIVE


def test_stop_during_read_discards_the_frame():
    camera = FixtureCamera([image_bytes()])
    manager = _manager(camera)

    async def scenario():
        await manager.start()
        read = asyncio.ensure_future(manager.capture_frame())
        await manager.stop()
        return await read

    assert asyncio.run(scenario()) is None
    assert manager.state is DeviceState.INACTIVE
    assert camera.open is False


def test_stop_is_idempotent():
    camera = FixtureCamera([image_bytes()])
    manager = _manager(camera)

    async def scenario():
        await manager.start()
        await manager.stop()
        await manager.stop()

    asyncio.run(scenario())
    assert manager.state is DeviceState.INACTIVE


def test_still_image_from_camera_closes_the_stream():
    frame = image_bytes()
    camera = FixtureCamera([frame])
    manager = _manager(camera)
    image = asyncio.run(manager.acquire_still_image(ImageSource.CAMERA, CaptureOptions(facing=Facing.FRONT)))
    assert image.data == frame
    assert image.mime_type == "image/jpeg"
    assert camera.opened_with == [Facing.FRONT]
    assert manager.state is DeviceState.INACTIVE


def test_still_image_from_file_requires_an_upload():
    manager = _manager(None)
    with pytest.raises(ValidationError):
        asyncio.run(manager.acquire_still_image(ImageSource.FILE))
    image = asyncio.run(manager.acquire_still_image("file", CaptureOptions(upload=jpeg_upload("a.jpg"))))
    assert image.source is ImageSource.FILE
    assert image.filename == "a.jpg"


def test_upload_type_is_checked_before_content():
    upload = FileUpload(name="notes.pdf", data=b"%PDF-1.4", mime_type="application/pdf")
    with pytest.raises(FileRejected) as excinfo:
        validate_upload(upload)
    assert excinfo.value.reason == "type"
    assert excinfo.value.message == "Please upload a valid image file (JPG, JPEG, PNG, or GIF)"


def test_upload_size_limit_depends_on_mode():
    data = image_bytes("PNG") + b"\0" * (6 * 1024 * 1024)
    upload = FileUpload(name="big.png", data=data, mime_type="image/png")
    assert validate_upload(upload, batch=False) is upload
    with pytest.raises(FileRejected) as excinfo:
        validate_upload(upload, batch=True)
    assert excinfo.value.reason == "size"
    assert excinfo.value.message == "File size must be less than 5MB"


def test_upload_content_must_be_an_image():
    upload = FileUpload(name="fake.jpg", data=b"not really a jpeg", mime_type="image/jpeg")
    with pytest.raises(FileRejected) as excinfo:
        validate_upload(upload)
    assert excinfo.value.reason == "content"


def test_image_jpg_mime_is_normalised():
    manager = _manager(None)
    upload = FileUpload(name="r.jpg", data=image_bytes(), mime_type="image/jpg")
    assert manager.accept_upload(upload).mime_type == "image/jpeg"
