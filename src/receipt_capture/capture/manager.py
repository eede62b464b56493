"""Single owner of the camera stream and entry point for still images."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Union

from ..domain.models import CapturedImage, ImageSource
from ..logging import get_logger
from ..resilience.errors import CaptureError, CapturePermissionError, ValidationError
from .device import CaptureDevice, DeviceState, Facing
from .files import FileUpload, to_captured_image, validate_upload

LOG = get_logger("capture-manager")

DEFAULT_SETTLE_DELAY = 0.1


@dataclass(frozen=True)
class CaptureOptions:
    facing: Optional[Facing] = None
    upload: Optional[FileUpload] = None
    batch: bool = False
    # Leave the stream open after a camera capture (live preview use).
    keep_open: bool = False


class CaptureDeviceManager:
    """Owns the stream exclusively: start, switch facing, grab frames, stop.

    ``stop()`` bumps a generation counter, so a frame read that was in flight
    when the stream went away yields ``None`` instead of a stale image.
    """

    def __init__(
        self,
        device: Optional[CaptureDevice] = None,
        *,
        facing: Facing = Facing.BACK,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ) -> None:
        self.device = device
        self.facing = facing
        self.settle_delay = max(0.0, float(settle_delay))
        self.state = DeviceState.INACTIVE
        self.active_facing: Optional[Facing] = None
        self.last_error: Optional[str] = None
        self._generation = 0

    async def __aenter__(self) -> "CaptureDeviceManager":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    @property
    def is_active(self) -> bool:
        return self.state is DeviceState.ACTIVE

    def _require_device(self) -> CaptureDevice:
        if self.device is None:
            raise CapturePermissionError("No camera access available. Please use file upload instead.")
        return self.device

    async def start(self) -> None:
        """Open the preferred facing, falling back once to any camera."""
        if self.state is DeviceState.ACTIVE:
            return
        if self.state is DeviceState.ERROR:
            await self.stop()
        device = self._require_device()
        self.state = DeviceState.REQUESTING
        self.last_error = None
        generation = self._generation
        opened_facing: Optional[Facing] = self.facing
        try:
            await device.acquire(self.facing)
        except Exception as exc:
            LOG.warning(f"Failed to access {self.facing.value} camera ({exc}); trying any available camera")
            self.last_error = f"Failed to access {self.facing.value} camera. Please check permissions."
            opened_facing = None
            try:
                await device.acquire(None)
            except Exception as fallback_exc:
                self.state = DeviceState.INACTIVE
                self.last_error = "No camera access available. Please use file upload instead."
                LOG.error(f"Camera fallback failed: {fallback_exc}")
                raise CapturePermissionError(self.last_error) from fallback_exc

        if generation != self._generation:
            # stop() ran while we were waiting on the device.
            await device.release()
            self.state = DeviceState.INACTIVE
            LOG.info("Camera start cancelled by stop()")
            return
        self.state = DeviceState.ACTIVE
        self.active_facing = opened_facing
        LOG.info(f"Camera active (requested={self.facing.value}, opened={opened_facing.value if opened_facing else 'any'})")

    async def stop(self) -> None:
        self._generation += 1
        if self.state is DeviceState.INACTIVE:
            return
        self.state = DeviceState.INACTIVE
        self.active_facing = None
        if self.device is not None:
            await self.device.release()
        LOG.info("Camera stopped")

    async def set_facing(self, mode: Union[Facing, str]) -> Facing:
        """Use ``mode``; an active stream is reopened after the settle delay."""
        mode = Facing(mode)
        if self.state in (DeviceState.ACTIVE, DeviceState.ERROR):
            await self.stop()
            await asyncio.sleep(self.settle_delay)
            self.facing = mode
            await self.start()
        else:
            self.facing = mode
        return self.facing

    async def switch_facing(self) -> Facing:
        return await self.set_facing(self.facing.opposite)

    async def capture_frame(self) -> Optional[CapturedImage]:
        """JPEG of the current frame, or None when inactive or stopped mid-read."""
        if self.state is not DeviceState.ACTIVE or self.device is None:
            return None
        generation = self._generation
        try:
            data = await self.device.read_frame()
        except CaptureError as exc:
            if generation != self._generation:
                return None
            self.state = DeviceState.ERROR
            self.last_error = str(exc)
            LOG.error(f"Camera stream error: {exc}")
            raise
        if generation != self._generation:
            return None
        return CapturedImage(data=data, mime_type="image/jpeg", source=ImageSource.CAMERA, filename="receipt.jpg")

    def accept_upload(self, upload: FileUpload, *, batch: bool = False) -> CapturedImage:
        """Validate an uploaded file (5 MiB limit in batch mode, 10 MiB otherwise)."""
        image = to_captured_image(validate_upload(upload, batch=batch))
        LOG.info(f"Accepted upload {image.filename} ({image.size} bytes)")
        return image

    async def acquire_still_image(
        self,
        source: Union[ImageSource, str],
        options: Optional[CaptureOptions] = None,
    ) -> CapturedImage:
        opts = options or CaptureOptions()
        source = ImageSource(source)
        if source is ImageSource.FILE:
            if opts.upload is None:
                raise ValidationError("No image file provided", field="file")
            return self.accept_upload(opts.upload, batch=opts.batch)

        if opts.facing is not None and opts.facing is not self.facing and self.is_active:
            await self.set_facing(opts.facing)
        elif opts.facing is not None:
            self.facing = opts.facing
        opened_here = not self.is_active
        if opened_here:
            await self.start()
        try:
            frame = await self.capture_frame()
        finally:
            if opened_here and not opts.keep_open:
                await self.stop()
        if frame is None:
            raise CaptureError("Capture was cancelled before a frame was read")
        LOG.info(f"Captured camera frame ({frame.size} bytes)")
        return frame
