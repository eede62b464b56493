import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from conftest import make_flow
from receipt_capture.domain.models import ReceiptStatus, ScanResult, TransactionType
from receipt_capture.pipeline.materialize import TransactionMaterializer, build_draft
from receipt_capture.pipeline.staging import ReceiptStagingStore
from receipt_capture.resilience.errors import ClassifiedError, ErrorKind, ValidationError
from receipt_capture.resilience.fallback import OFFLINE_DATA_KEY
from receipt_capture.resilience.notifier import NoticeKind


def _scan(merchant="Corner Shop", amount="12.50", receipt_id="r-1"):
    return ScanResult(
        merchant=merchant,
        amount=Decimal(amount) if amount is not None else None,
        date="2024-05-03",
        type=TransactionType.EXPENSE,
        raw_text="",
        receipt_id=receipt_id,
        description=f"Receipt from {merchant}",
    )


def _materializer(flow, *, batch=False):
    store = ReceiptStagingStore(batch=batch)
    return TransactionMaterializer(flow.client, flow.resilience, store), store


@pytest.mark.parametrize("merchant", ["Unspecified", "unknown merchant", "Not detected", "  "])
def test_placeholder_merchant_is_rejected_without_network(flow, service, merchant):
    materializer, store = _materializer(flow)
    receipt = store.stage(_scan())
    store.apply_edit(receipt.id, {"merchant": merchant})

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(materializer.materialize(store.active))

    assert excinfo.value.field == "merchant"
    assert service.calls("/receipts/create-transaction") == []
    assert store.active.status is ReceiptStatus.SCANNED


@pytest.mark.parametrize("amount", ["0", "-3.20", "twelve", ""])
def test_bad_amount_is_rejected_without_network(flow, service, amount):
    materializer, store = _materializer(flow)
    receipt = store.stage(_scan())
    store.apply_edit(receipt.id, {"amount": amount})

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(materializer.materialize(store.active))

    assert excinfo.value.field == "amount"
    assert service.calls("/receipts/create-transaction") == []


def test_materialize_posts_payload_and_marks_processed_once(flow, service):
    materializer, store = _materializer(flow)
    receipt = store.stage(_scan())
    store.apply_edit(receipt.id, {"amount": "14,70", "type": "income"})

    draft = asyncio.run(materializer.materialize(store.active))

    assert draft.amount == Decimal("14.70")
    sent = json.loads(service.calls("/receipts/create-transaction")[0].content)
    assert sent == {
        "merchant": "Corner Shop",
        "amount": 14.7,
        "date": "2024-05-03",
        "description": "Receipt from Corner Shop",
        "type": "income",
        "receiptId": "r-1",
    }
    assert store.active.status is ReceiptStatus.PROCESSED
    assert store.active.transaction["_id"] == "t-1"

    with pytest.raises(ValidationError):
        asyncio.run(materializer.materialize(store.active))
    assert len(service.calls("/receipts/create-transaction")) == 1


def test_concurrent_materialize_creates_one_transaction(flow, service):
    materializer, store = _materializer(flow)
    receipt = store.stage(_scan())

    async def scenario():
        return await asyncio.gather(
            materializer.materialize(receipt),
            materializer.materialize(receipt),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    assert sum(1 for r in results if isinstance(r, ValidationError)) == 1
    assert len(service.calls("/receipts/create-transaction")) == 1


def test_offline_create_is_queued_and_not_materialized_again(tmp_path, service):
    flow = make_flow(tmp_path, service)
    materializer, store = _materializer(flow)
    receipt = store.stage(_scan())
    service.offline = True

    asyncio.run(materializer.materialize(receipt))

    done = store.get(receipt.id)
    assert done.status is ReceiptStatus.PROCESSED and done.queued
    queued = flow.queue.read(OFFLINE_DATA_KEY)
    assert len(queued) == 1
    assert queued[0].payload["data"]["operation"] == "create_transaction"
    kinds = [n.kind for n in flow.notifier.drain()]
    assert kinds == [NoticeKind.DEGRADED]

    with pytest.raises(ValidationError):
        asyncio.run(materializer.materialize(done))


def test_server_failure_is_retried_then_raised_classified(flow, service):
    service.script(
        "/receipts/create-transaction",
        (500, {"message": "Failed to create transaction: db down"}),
        (500, {"message": "Failed to create transaction: db down"}),
        (500, {"message": "Failed to create transaction: db down"}),
    )
    materializer, store = _materializer(flow)
    receipt = store.stage(_scan())

    with pytest.raises(ClassifiedError) as excinfo:
        asyncio.run(materializer.materialize(receipt))

    assert excinfo.value.kind is ErrorKind.SERVER
    assert len(service.calls("/receipts/create-transaction")) == 3
    assert store.get(receipt.id).status is ReceiptStatus.SCANNED


def test_batch_tally_keeps_order_and_never_aborts(flow, service):
    bad = {"Shop 2", "Shop 5", "Shop 8"}

    def create(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if payload["merchant"] in bad:
            return httpx.Response(400, json={"message": "Merchant and amount are required"})
        return httpx.Response(201, json={"success": True, "data": {"_id": payload["merchant"]}})

    service.set_default("/receipts/create-transaction", create)
    materializer, store = _materializer(flow, batch=True)
    receipts = [store.stage(_scan(merchant=f"Shop {i}", receipt_id=f"r-{i}")) for i in range(1, 11)]

    report = asyncio.run(materializer.materialize_batch(receipts))

    assert (report.created, report.failed) == (7, 3)
    assert [o["status"] for o in report.outcomes] == [
        "created", "failed", "created", "created", "failed",
        "created", "created", "failed", "created", "created",
    ]
    posted = [json.loads(r.content)["merchant"] for r in service.calls("/receipts/create-transaction")]
    assert posted == [f"Shop {i}" for i in range(1, 11)]


def test_batch_counts_missing_entries_as_failed(flow):
    materializer, store = _materializer(flow, batch=True)
    ok = store.stage(_scan())
    report = asyncio.run(materializer.materialize_batch([None, ok]))
    assert (report.created, report.failed) == (1, 1)


def test_manual_entry_draft_uses_partial_values():
    store = ReceiptStagingStore()
    pending = store.begin("r.jpg")
    failed = store.mark_failed(pending.id, "OCR processing failed", manual_entry=True)
    failed = store.apply_edit(failed.id, {"merchant": "Kiosk", "amount": "4"})
    draft = build_draft(failed)
    assert draft.merchant == "Kiosk"
    assert draft.amount == Decimal("4.00")
    assert draft.description == "Receipt from Kiosk"
    assert draft.type is TransactionType.EXPENSE
