from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from ..api.client import ReceiptApiClient
from ..domain.merchant import clean_merchant, default_description, is_placeholder_merchant
from ..domain.models import CapturedImage, ScanResult, TransactionType
from ..domain.normalize import normalize_date_iso, parse_amount, select_amount, today_iso
from ..logging import get_logger
from ..resilience.errors import ApiError
from ..resilience.layer import ResilienceLayer

LOG = get_logger("pipeline-scan")


def scan_result_from_payload(body: Mapping[str, Any]) -> ScanResult:
    """Build a ScanResult from the service's scan response (``data`` envelope or bare)."""
    data: Mapping[str, Any] = body.get("data") if isinstance(body.get("data"), dict) else body
    merchant: Optional[str] = clean_merchant(data.get("merchant"))
    if is_placeholder_merchant(merchant):
        merchant = None
    amount = parse_amount(select_amount(data))
    rid = data.get("receiptId") or data.get("_id")
    return ScanResult(
        merchant=merchant,
        amount=amount,
        date=normalize_date_iso(data.get("date")) or today_iso(),
        type=TransactionType.coerce(data.get("type")),
        raw_text=str(data.get("rawText") or ""),
        receipt_id=str(rid) if rid else None,
        description=str(data.get("description") or "").strip() or default_description(merchant),
        extracted=dict(data),
    )


class ScanSubmissionService:
    """Sends one image to the scan endpoint and normalises the answer."""

    def __init__(self, client: ReceiptApiClient, resilience: ResilienceLayer) -> None:
        self.client = client
        self.resilience = resilience

    async def _scan_once(self, image: CapturedImage) -> Dict[str, Any]:
        body = await self.client.scan_receipt(image)
        if body.get("success") is False:
            raise ApiError(str(body.get("message") or "Receipt scanning failed"))
        return body

    async def submit(self, image: CapturedImage) -> ScanResult:
        """Scan ``image``; any failure surfaces as a ClassifiedError."""
        context = {"stage": "scan", "file": image.filename}
        try:
            body = await self.resilience.with_retry(lambda: self._scan_once(image), context=context)
            result = scan_result_from_payload(body)
        except Exception as exc:
            raise self.resilience.classified(exc, context) from exc
        LOG.info(
            f"Scanned {image.filename}: merchant={result.merchant!r} amount={result.amount} "
            f"date={result.date} receipt_id={result.receipt_id}"
        )
        return result

    async def replay(self, image: CapturedImage) -> ScanResult:
        """Single attempt for a scan queued while offline; failures propagate so it stays queued."""
        result = scan_result_from_payload(await self._scan_once(image))
        LOG.info(f"Replayed queued scan of {image.filename}: merchant={result.merchant!r} amount={result.amount}")
        return result
