import asyncio
import json

import pytest

from conftest import image_bytes, jpeg_upload, make_flow, scan_body
from receipt_capture.capture.device import FixtureCamera
from receipt_capture.capture.manager import CaptureOptions
from receipt_capture.domain.models import ReceiptStatus
from receipt_capture.resilience.errors import CapturePermissionError, ClassifiedError, ErrorKind
from receipt_capture.resilience.fallback import OFFLINE_DATA_KEY
from receipt_capture.resilience.notifier import NoticeKind


def _file_options(name="receipt.jpg"):
    return CaptureOptions(upload=jpeg_upload(name))


def test_scan_from_file_stages_the_receipt(flow, service):
    receipt = asyncio.run(flow.session.scan("file", _file_options()))
    assert receipt.status is ReceiptStatus.SCANNED
    assert flow.session.current.id == receipt.id
    assert [n.message for n in flow.notifier.drain()] == ["Receipt scanned successfully!"]


def test_scan_from_camera(tmp_path, service):
    flow = make_flow(tmp_path, service, camera=FixtureCamera([image_bytes()]))
    receipt = asyncio.run(flow.session.scan("camera"))
    assert receipt.status is ReceiptStatus.SCANNED
    request = service.calls("/receipts/scan")[0]
    assert 'filename="receipt.jpg"' in request.content.decode("latin-1")


def test_camera_without_device_notifies_once_and_raises(flow):
    with pytest.raises(CapturePermissionError):
        asyncio.run(flow.session.scan("camera"))
    notices = flow.notifier.drain()
    assert len(notices) == 1 and notices[0].kind is NoticeKind.ERROR


def test_ocr_failure_opens_manual_entry_and_still_creates(flow, service):
    service.script("/receipts/scan", (500, {"success": False, "message": "OCR processing failed"}))

    receipt = asyncio.run(flow.session.scan("file", _file_options()))

    assert receipt.status is ReceiptStatus.FAILED and receipt.manual_entry
    assert len(service.calls("/receipts/scan")) == 1
    flow.session.update({"merchant": "Kiosk", "amount": "4.20"})
    draft = asyncio.run(flow.session.create_transaction())
    assert draft.merchant == "Kiosk"
    assert flow.session.current.status is ReceiptStatus.PROCESSED


def test_offline_scan_is_queued_and_replayed_by_sync(flow, service):
    service.offline = True
    receipt = asyncio.run(flow.session.scan("file", _file_options("late.jpg")))

    assert receipt.status is ReceiptStatus.FAILED
    assert flow.pending()[OFFLINE_DATA_KEY] == 1
    assert [n.kind for n in flow.notifier.drain()] == [NoticeKind.DEGRADED]

    service.offline = False
    reports = asyncio.run(flow.sync_offline())

    assert reports[OFFLINE_DATA_KEY].to_dict() == {"synced": 1, "errors": 0}
    assert flow.pending()[OFFLINE_DATA_KEY] == 0
    replayed = service.calls("/receipts/scan")[-1]
    assert 'filename="late.jpg"' in replayed.content.decode("latin-1")


def test_sync_keeps_items_that_still_fail(flow, service):
    service.offline = True
    receipt = asyncio.run(flow.session.scan("file", _file_options()))
    flow.session.update({"merchant": "Kiosk", "amount": "3"})
    asyncio.run(flow.session.create_transaction())
    assert flow.pending()[OFFLINE_DATA_KEY] == 2

    reports = asyncio.run(flow.sync_offline())

    assert reports[OFFLINE_DATA_KEY].to_dict() == {"synced": 0, "errors": 2}
    assert flow.pending()[OFFLINE_DATA_KEY] == 2
    assert flow.session.staging.get(receipt.id).queued


def test_save_edits_puts_extracted_data(flow, service):
    asyncio.run(flow.session.scan("file", _file_options()))
    flow.session.update({"merchant": "Bakery"})

    asyncio.run(flow.session.save_edits())

    put = [r for r in service.requests if r.method == "PUT"][0]
    assert put.url.path == "/api/receipts/r-1"
    body = json.loads(put.content)
    assert body["extractedData"]["merchant"] == "Bakery"
    assert body["extractedData"]["amount"] == "12.50"


def test_discard_deletes_and_resets(flow, service):
    asyncio.run(flow.session.scan("file", _file_options()))
    asyncio.run(flow.session.discard())
    assert [(r.method, r.url.path) for r in service.requests if r.method == "DELETE"] == [
        ("DELETE", "/api/receipts/r-1")
    ]
    assert flow.session.current is None


def test_history_failure_is_not_queued(flow, service):
    service.offline = True
    with pytest.raises(ClassifiedError) as excinfo:
        asyncio.run(flow.session.history())
    assert excinfo.value.kind is ErrorKind.NETWORK
    assert flow.pending() == {"offline_data": 0, "cloud_fallback": 0}
    assert len(flow.notifier.drain()) == 1


def test_replayed_scan_that_still_fails_stays_queued(flow, service):
    service.offline = True
    asyncio.run(flow.session.scan("file", _file_options("late.jpg")))
    service.offline = False
    service.script("/receipts/scan", (200, {"success": False, "message": "OCR processing failed"}))

    reports = asyncio.run(flow.sync_offline())

    assert reports[OFFLINE_DATA_KEY].to_dict() == {"synced": 0, "errors": 1}
    assert flow.pending()[OFFLINE_DATA_KEY] == 1
    assert flow.session.current.status is ReceiptStatus.FAILED


def test_replayed_scan_is_staged_on_the_failed_receipt(flow, service):
    service.offline = True
    failed = asyncio.run(flow.session.scan("file", _file_options("late.jpg")))
    service.offline = False
    service.script("/receipts/scan", (200, scan_body(merchant="Night Market", receipt_id="r-7")))

    reports = asyncio.run(flow.sync_offline())

    assert reports[OFFLINE_DATA_KEY].synced == 1
    current = flow.session.current
    assert current.id == failed.id
    assert current.status is ReceiptStatus.SCANNED
    assert current.scan_result.merchant == "Night Market"
    assert current.server_receipt_id == "r-7"
