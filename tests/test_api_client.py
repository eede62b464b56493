import asyncio
import json

import httpx
import pytest

from conftest import BASE_URL, FakeReceiptService, image_bytes
from receipt_capture.api.client import ReceiptApiClient
from receipt_capture.domain.models import CapturedImage, ImageSource
from receipt_capture.resilience.errors import ApiError


def _client(service, token="secret"):
    return ReceiptApiClient(BASE_URL, token, timeout=5.0, transport=httpx.MockTransport(service.handler))


def _image(name="r.png"):
    return CapturedImage(data=image_bytes("PNG"), mime_type="image/png", source=ImageSource.FILE, filename=name)


def _run(service, call):
    async def scenario():
        async with _client(service) as client:
            return await call(client)

    return asyncio.run(scenario())


def test_scan_posts_multipart_receipt_field_with_bearer_token():
    service = FakeReceiptService()
    body = _run(service, lambda c: c.scan_receipt(_image()))

    assert body["success"] is True
    request = service.calls("/receipts/scan")[0]
    assert str(request.url) == f"{BASE_URL}/receipts/scan"
    assert request.headers["Authorization"] == "Bearer secret"
    content = request.content.decode("latin-1")
    assert 'name="receipt"; filename="r.png"' in content
    assert "Content-Type: image/png" in content


def test_batch_scan_uses_receipts_field_per_file():
    service = FakeReceiptService()
    _run(service, lambda c: c.batch_scan([_image("a.png"), _image("b.png")]))
    content = service.calls("/receipts/batch-scan")[0].content.decode("latin-1")
    assert content.count('name="receipts"') == 2


def test_create_transaction_and_batch_create_send_json():
    service = FakeReceiptService()
    payload = {"merchant": "Shop", "amount": 3.5, "date": "2024-01-02", "description": "x", "type": "expense"}
    created = _run(service, lambda c: c.create_transaction(payload))
    assert created["data"]["_id"] == "t-1"
    _run(service, lambda c: c.batch_create_transactions(["a", "b"]))
    sent = json.loads(service.calls("/receipts/batch-create-transactions")[0].content)
    assert sent == {"receiptIds": ["a", "b"]}


def test_update_and_delete_use_receipt_path():
    service = FakeReceiptService()
    _run(service, lambda c: c.update_receipt("r-9", {"extractedData": {"merchant": "M"}}))
    _run(service, lambda c: c.delete_receipt("r-9"))
    methods = [(r.method, r.url.path) for r in service.requests]
    assert methods == [("PUT", "/api/receipts/r-9"), ("DELETE", "/api/receipts/r-9")]


def test_error_status_becomes_api_error_with_service_message():
    service = FakeReceiptService()
    service.script("/receipts/scan", (401, {"message": "Not authorized, token failed"}))
    with pytest.raises(ApiError) as excinfo:
        _run(service, lambda c: c.scan_receipt(_image()))
    assert excinfo.value.status_code == 401
    assert excinfo.value.message == "Not authorized, token failed"


def test_error_field_is_used_when_message_missing():
    service = FakeReceiptService()
    service.script("/receipts/history", (500, {"error": "db down"}))
    with pytest.raises(ApiError) as excinfo:
        _run(service, lambda c: c.receipt_history())
    assert excinfo.value.message == "db down"


def test_transport_failure_is_a_network_error():
    service = FakeReceiptService()
    service.offline = True
    with pytest.raises(ApiError) as excinfo:
        _run(service, lambda c: c.create_transaction({}))
    assert excinfo.value.code == "NETWORK_ERROR"
    assert excinfo.value.message.startswith("Network Error")
    assert excinfo.value.status_code is None


def test_timeout_is_a_network_error():
    service = FakeReceiptService()
    request = httpx.Request("GET", f"{BASE_URL}/receipts/history")
    service.script("/receipts/history", httpx.ReadTimeout("slow", request=request))
    with pytest.raises(ApiError) as excinfo:
        _run(service, lambda c: c.receipt_history())
    assert excinfo.value.code == "NETWORK_ERROR"


def test_history_unwraps_data_envelope():
    service = FakeReceiptService()
    assert _run(service, lambda c: c.receipt_history()) == [{"_id": "r-1"}]


def test_is_reachable_reflects_transport_not_status():
    service = FakeReceiptService()
    service.script("/health", (503, {"status": "down"}))
    assert _run(service, lambda c: c.is_reachable()) is True
    service.offline = True
    assert _run(service, lambda c: c.is_reachable()) is False


def test_no_authorization_header_without_token():
    service = FakeReceiptService()

    async def scenario():
        async with ReceiptApiClient(BASE_URL, None, transport=httpx.MockTransport(service.handler)) as client:
            await client.receipt_history()

    asyncio.run(scenario())
    assert "Authorization" not in service.requests[0].headers
