"""Camera backends behind a small async capability.

The manager only talks to ``CaptureDevice``; ``OpenCVCamera`` drives a real
webcam, ``FixtureCamera`` serves canned frames for headless runs and tests.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

import cv2

from ..logging import get_logger
from ..resilience.errors import CaptureError, CapturePermissionError

LOG = get_logger("capture-device")

JPEG_QUALITY = 90


class Facing(str, Enum):
    BACK = "back"
    FRONT = "front"

    @property
    def opposite(self) -> "Facing":
        return Facing.FRONT if self is Facing.BACK else Facing.BACK


class DeviceState(str, Enum):
    INACTIVE = "inactive"
    REQUESTING = "requesting"
    ACTIVE = "active"
    ERROR = "error"


class CaptureDevice(Protocol):
    async def acquire(self, facing: Optional[Facing]) -> None:
        """Open a stream; ``facing=None`` means any camera will do."""
        ...

    async def read_frame(self) -> bytes:
        """Return the current frame as JPEG bytes; raise CaptureError if the stream is gone."""
        ...

    async def release(self) -> None:
        ...


class OpenCVCamera:
    """Webcam via ``cv2.VideoCapture``; blocking calls run in a worker thread."""

    def __init__(
        self,
        index_by_facing: Optional[Dict[Facing, int]] = None,
        *,
        probe_indices: Sequence[int] = (0, 1, 2),
        jpeg_quality: int = JPEG_QUALITY,
    ) -> None:
        self.index_by_facing = dict(index_by_facing or {Facing.BACK: 0, Facing.FRONT: 1})
        self.probe_indices = list(probe_indices)
        self.jpeg_quality = int(jpeg_quality)
        self._cap: Optional[cv2.VideoCapture] = None

    @staticmethod
    def _open(index: int) -> Optional[cv2.VideoCapture]:
        cap = cv2.VideoCapture(index)
        if not cap.isOpened():
            cap.release()
            return None
        return cap

    async def acquire(self, facing: Optional[Facing]) -> None:
        if facing is not None:
            indices: List[int] = [self.index_by_facing[facing]]
        else:
            indices = self.probe_indices
        for index in indices:
            cap = await asyncio.to_thread(self._open, index)
            if cap is not None:
                self._cap = cap
                LOG.info(f"Opened camera index {index} (facing={facing.value if facing else 'any'})")
                return
        label = facing.value if facing else "any"
        raise CapturePermissionError(f"Failed to access {label} camera. Please check permissions.")

    async def read_frame(self) -> bytes:
        cap = self._cap
        if cap is None:
            raise CaptureError("Camera stream is not open")
        ok, frame = await asyncio.to_thread(cap.read)
        if not ok or frame is None:
            raise CaptureError("Camera stream lost while reading a frame")
        ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        if not ok:
            raise CaptureError("Could not encode frame as JPEG")
        return buf.tobytes()

    async def release(self) -> None:
        cap, self._cap = self._cap, None
        if cap is not None:
            await asyncio.to_thread(cap.release)


class FixtureCamera:
    """In-memory camera that serves pre-encoded JPEG frames.

    ``available`` lists which facings can be opened; an empty set simulates a
    machine without camera access. ``fail_any`` makes the "any camera" fallback
    fail too.
    """

    def __init__(
        self,
        frames: Iterable[bytes],
        *,
        available: Iterable[Facing] = (Facing.BACK, Facing.FRONT),
        fail_any: bool = False,
    ) -> None:
        self.frames = list(frames)
        self.available = set(available)
        self.fail_any = fail_any
        self.open = False
        self.opened_with: List[Optional[Facing]] = []
        self.lose_stream = False
        self._pos = 0

    async def acquire(self, facing: Optional[Facing]) -> None:
        self.opened_with.append(facing)
        if facing is None:
            if self.fail_any or not self.available:
                raise CapturePermissionError("No camera access available")
        elif facing not in self.available:
            raise CapturePermissionError(f"Failed to access {facing.value} camera. Please check permissions.")
        self.open = True

    async def read_frame(self) -> bytes:
        await asyncio.sleep(0)
        if not self.open or self.lose_stream or not self.frames:
            raise CaptureError("Camera stream lost while reading a frame")
        frame = self.frames[self._pos % len(self.frames)]
        self._pos += 1
        return frame

    async def release(self) -> None:
        self.open = False
