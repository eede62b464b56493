from __future__ import annotations

import io
import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest
from PIL import Image

from receipt_capture.capture.files import FileUpload
from receipt_capture.config import PipelineSettings
from receipt_capture.pipeline.flow import FlowConfig, ReceiptCaptureFlow
from receipt_capture.resilience.notifier import CollectingNotifier
from receipt_capture.resilience.queue import MemoryQueue

BASE_URL = "http://receipts.test/api"

Scripted = Union[tuple, Exception, Callable[[httpx.Request], httpx.Response]]


def image_bytes(fmt: str = "JPEG", size=(24, 36), color=(240, 240, 240)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


def jpeg_upload(name: str = "receipt.jpg", **kwargs: Any) -> FileUpload:
    return FileUpload(name=name, data=image_bytes("JPEG", **kwargs), mime_type="image/jpeg")


def scan_body(merchant: str = "Corner Shop", total: Any = "12.50", receipt_id: str = "r-1", **extra: Any) -> Dict[str, Any]:
    data = {"merchant": merchant, "total": total, "date": "2024-05-03", "rawText": "CORNER SHOP\nTOTAL 12.50", "receiptId": receipt_id}
    data.update(extra)
    return {"success": True, "data": data, "message": "Receipt scanned successfully"}


class FakeReceiptService:
    """Scriptable stand-in for the remote receipt service behind httpx.MockTransport.

    ``script(path, ...)`` queues responses for a path suffix; each entry is a
    ``(status, json_body)`` tuple, an exception to raise, or a callable taking
    the request. Unscripted calls get the path's default.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.offline = False
        self._scripts: Dict[str, List[Scripted]] = {}
        self._defaults: Dict[str, Scripted] = {
            "/health": (200, {"status": "ok"}),
            "/receipts/scan": (200, scan_body()),
            "/receipts/create-transaction": self._echo_transaction,
            "/receipts/history": (200, {"success": True, "data": [{"_id": "r-1"}]}),
        }

    @staticmethod
    def _echo_transaction(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        return httpx.Response(201, json={"success": True, "data": {"_id": "t-1", **payload}})

    def script(self, path: str, *entries: Scripted) -> None:
        self._scripts.setdefault(path, []).extend(entries)

    def set_default(self, path: str, entry: Scripted) -> None:
        self._defaults[path] = entry

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path)]

    def _match(self, path: str) -> Optional[str]:
        for key in list(self._scripts) + list(self._defaults):
            if path.endswith(key):
                return key
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)
        key = self._match(request.url.path)
        if key is None:
            return httpx.Response(200, json={"success": True})
        queue = self._scripts.get(key)
        entry = queue.pop(0) if queue else self._defaults.get(key, (200, {"success": True}))
        if isinstance(entry, Exception):
            raise entry
        if callable(entry):
            return entry(request)
        status, body = entry
        return httpx.Response(status, json=body)


def make_settings(**overrides: Any) -> PipelineSettings:
    values = dict(
        base_url=BASE_URL,
        token="test-token",
        http_timeout=5.0,
        retry_attempts=3,
        retry_delay=0.0,
        queue_backend="memory",
        camera_settle=0.0,
        batch_concurrency=1,
    )
    values.update(overrides)
    return PipelineSettings(**values)


def make_flow(tmp_path, service: FakeReceiptService, *, camera=None, **overrides: Any) -> ReceiptCaptureFlow:
    config = FlowConfig(settings=make_settings(**overrides), repo_root=str(tmp_path), script_dir=str(tmp_path))
    return ReceiptCaptureFlow(
        config,
        notifier=CollectingNotifier(),
        camera=camera,
        queue=MemoryQueue(),
        transport=httpx.MockTransport(service.handler),
    )


@pytest.fixture
def service() -> FakeReceiptService:
    return FakeReceiptService()


@pytest.fixture
def flow(tmp_path, service):
    return make_flow(tmp_path, service)
