"""Image acquisition from cameras and uploaded files."""

from .device import CaptureDevice, DeviceState, Facing, FixtureCamera, OpenCVCamera
from .files import FileUpload, read_upload, validate_upload
from .manager import CaptureDeviceManager, CaptureOptions

__all__ = [
    "CaptureDevice",
    "DeviceState",
    "Facing",
    "FixtureCamera",
    "OpenCVCamera",
    "FileUpload",
    "read_upload",
    "validate_upload",
    "CaptureDeviceManager",
    "CaptureOptions",
]
