from __future__ import annotations

import base64
from typing import Any, Dict, List, Mapping, Optional, Union

from ..api.client import ReceiptApiClient
from ..capture.manager import CaptureDeviceManager, CaptureOptions
from ..domain.models import CapturedImage, ImageSource, ReceiptStatus, ScanResult, StagedReceipt, TransactionDraft
from ..logging import get_logger
from ..resilience.errors import ClassifiedError, ReceiptPipelineError, ValidationError
from ..resilience.layer import ResilienceLayer
from ..resilience.notifier import NoticeKind
from .materialize import TransactionMaterializer
from .scan import ScanSubmissionService
from .staging import ReceiptStagingStore

LOG = get_logger("pipeline-session")

SCAN_OPERATION = "scan"
UPDATE_OPERATION = "update_receipt"
DELETE_OPERATION = "delete_receipt"


def image_payload(image: CapturedImage, staged_id: Optional[str] = None) -> Dict[str, Any]:
    """Queue-safe (JSON) form of an image so a scan can be replayed later."""
    return {
        "staged_id": staged_id,
        "operation": SCAN_OPERATION,
        "filename": image.filename,
        "mime_type": image.mime_type,
        "source": image.source.value,
        "image_b64": base64.b64encode(image.data).decode("ascii"),
    }


def image_from_payload(data: Mapping[str, Any]) -> CapturedImage:
    return CapturedImage(
        data=base64.b64decode(str(data.get("image_b64") or "")),
        mime_type=str(data.get("mime_type") or "image/jpeg"),
        source=ImageSource(data.get("source") or ImageSource.FILE.value),
        filename=str(data.get("filename") or "receipt.jpg"),
    )


class ScannerSession:
    """One receipt at a time: capture, scan, review, convert or discard."""

    def __init__(
        self,
        *,
        capture: CaptureDeviceManager,
        scanner: ScanSubmissionService,
        staging: ReceiptStagingStore,
        materializer: TransactionMaterializer,
        resilience: ResilienceLayer,
        client: ReceiptApiClient,
    ) -> None:
        self.capture = capture
        self.scanner = scanner
        self.staging = staging
        self.materializer = materializer
        self.resilience = resilience
        self.client = client

    @property
    def current(self) -> Optional[StagedReceipt]:
        return self.staging.active

    def _require_current(self) -> StagedReceipt:
        receipt = self.staging.active
        if receipt is None:
            raise ValidationError("No receipt has been scanned yet", field="receipt")
        return receipt

    async def scan(
        self,
        source: Union[ImageSource, str],
        options: Optional[CaptureOptions] = None,
    ) -> StagedReceipt:
        """Capture and scan one image.

        OCR failures leave a failed receipt open for manual entry; failures
        queued offline leave it failed with the queue noted. Anything else is
        raised after one notification.
        """
        try:
            image = await self.capture.acquire_still_image(source, options)
        except ReceiptPipelineError as exc:
            await self.resilience.handle_failure(exc, context={"stage": "capture"})
            raise

        staged = self.staging.begin(image.filename)
        try:
            scan = await self.scanner.submit(image)
        except ClassifiedError as exc:
            outcome = await self.resilience.handle_failure(
                exc,
                payload=image_payload(image, staged.id),
                context={"stage": "scan", "file": image.filename},
            )
            if outcome is not None and outcome.manual_entry:
                return self.staging.mark_failed(staged.id, exc.message, manual_entry=True)
            if outcome is not None and outcome.success:
                return self.staging.mark_failed(staged.id, outcome.message)
            self.staging.mark_failed(staged.id, exc.message)
            raise

        receipt = self.staging.stage(scan, receipt_id=staged.id)
        self.resilience.notifier.notify(NoticeKind.SUCCESS, "Receipt scanned successfully!")
        return receipt

    def restore_scan(self, staged_id: Optional[str], scan: ScanResult) -> Optional[StagedReceipt]:
        """Attach a replayed scan to the receipt that was left failed while offline.

        Returns None when that receipt is gone or no longer failed.
        """
        receipt = self.staging.get(staged_id) if staged_id else None
        if receipt is None or receipt.status is not ReceiptStatus.FAILED:
            LOG.info(f"Replayed scan has no failed receipt to attach to (staged_id={staged_id})")
            return None
        restored = self.staging.stage(scan, receipt_id=receipt.id)
        self.resilience.notifier.notify(NoticeKind.SUCCESS, "Receipt scanned successfully!")
        return restored

    def update(self, fields: Mapping[str, Any]) -> StagedReceipt:
        return self.staging.apply_edit(self._require_current().id, fields)

    async def create_transaction(self) -> TransactionDraft:
        return await self.materializer.materialize(self._require_current())

    async def save_edits(self) -> Dict[str, Any]:
        """Push the current edits to the stored receipt on the service."""
        receipt = self._require_current()
        server_id = receipt.server_receipt_id
        if not server_id:
            raise ValidationError("Receipt has no server id to update", field="receiptId")
        fields = receipt.effective_fields()
        amount = fields.get("amount")
        body = {"extractedData": {**fields, "amount": str(amount) if amount is not None else None}}
        context = {"stage": "update_receipt", "receipt": receipt.id}
        try:
            result = await self.resilience.with_retry(
                lambda: self.client.update_receipt(server_id, body), context=context
            )
        except Exception as exc:
            outcome = await self.resilience.handle_failure(
                exc,
                payload={"operation": UPDATE_OPERATION, "receiptId": server_id, "fields": body},
                context=context,
            )
            if outcome is not None and outcome.success:
                return {"queued": True, "message": outcome.message}
            raise self.resilience.classified(exc, context) from exc
        self.resilience.notifier.notify(NoticeKind.SUCCESS, "Receipt updated successfully")
        return result

    async def discard(self) -> None:
        """Delete the scanned receipt on the service (if stored) and clear the session."""
        receipt = self.staging.active
        server_id = receipt.server_receipt_id if receipt else None
        if server_id:
            context = {"stage": "delete_receipt", "receipt": receipt.id}
            try:
                await self.resilience.with_retry(lambda: self.client.delete_receipt(server_id), context=context)
            except Exception as exc:
                outcome = await self.resilience.handle_failure(
                    exc,
                    payload={"operation": DELETE_OPERATION, "receiptId": server_id},
                    context=context,
                )
                if outcome is None or not outcome.success:
                    raise self.resilience.classified(exc, context) from exc
            else:
                self.resilience.notifier.notify(NoticeKind.SUCCESS, "Receipt deleted successfully")
        self.reset()

    def reset(self) -> None:
        """Scan another: forget the current receipt."""
        self.staging.reset()
        LOG.info("Scanner session reset")

    async def history(self) -> List[Dict[str, Any]]:
        context = {"stage": "history"}
        try:
            return await self.resilience.with_retry(self.client.receipt_history, context=context)
        except Exception as exc:
            await self.resilience.handle_failure(exc, context=context, allow_fallback=False)
            raise self.resilience.classified(exc, context) from exc
