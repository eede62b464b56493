"""Turn reviewed receipts into transactions on the remote service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from ..api.client import ReceiptApiClient
from ..domain.merchant import clean_merchant, default_description, is_placeholder_merchant
from ..domain.models import ReceiptStatus, StagedReceipt, TransactionDraft, TransactionType
from ..domain.normalize import is_present, normalize_date_iso, parse_amount, today_iso
from ..logging import get_logger
from ..resilience.errors import ValidationError
from ..resilience.layer import ResilienceLayer
from ..resilience.notifier import NoticeKind
from .staging import ReceiptStagingStore

LOG = get_logger("pipeline-materialize")

CREATE_OPERATION = "create_transaction"


@dataclass(frozen=True)
class BatchCreateReport:
    created: int
    failed: int
    outcomes: List[Dict[str, Any]] = field(default_factory=list)
    queued: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "failed": self.failed,
            "queued": self.queued,
            "outcomes": list(self.outcomes),
        }


def build_draft(receipt: StagedReceipt) -> TransactionDraft:
    """Validate the receipt's effective fields; raises ValidationError on the first problem."""
    fields = receipt.effective_fields()
    merchant = clean_merchant(fields.get("merchant"))
    if is_placeholder_merchant(merchant):
        raise ValidationError("Merchant is required", field="merchant")
    raw_amount = fields.get("amount")
    if not is_present(raw_amount):
        raise ValidationError("Amount is required", field="amount")
    amount = parse_amount(raw_amount)
    if amount is None or amount <= 0:
        raise ValidationError("Please enter a valid amount", field="amount")
    description = str(fields.get("description") or "").strip() or default_description(merchant)
    return TransactionDraft(
        merchant=merchant,
        amount=amount,
        date=normalize_date_iso(fields.get("date")) or today_iso(),
        description=description,
        type=TransactionType.coerce(fields.get("type")),
        receipt_ref=receipt.id,
        server_receipt_id=receipt.server_receipt_id,
    )


class TransactionMaterializer:
    """Creates at most one transaction per staged receipt."""

    def __init__(
        self,
        client: ReceiptApiClient,
        resilience: ResilienceLayer,
        staging: ReceiptStagingStore,
    ) -> None:
        self.client = client
        self.resilience = resilience
        self.staging = staging
        self._in_flight: Set[str] = set()

    def _check_materializable(self, receipt: StagedReceipt) -> None:
        if receipt.status is ReceiptStatus.PROCESSED:
            raise ValidationError("Receipt has already been converted to a transaction", field="status")
        if receipt.id in self._in_flight:
            raise ValidationError("Transaction creation already in progress for this receipt", field="status")
        if receipt.status is ReceiptStatus.PENDING:
            raise ValidationError("Receipt has not been scanned yet", field="status")

    async def materialize(self, receipt: StagedReceipt, *, announce: bool = True) -> TransactionDraft:
        current = self.staging.get(receipt.id) or receipt
        context = {"stage": "create_transaction", "receipt": current.id}
        try:
            self._check_materializable(current)
            draft = build_draft(current)
        except ValidationError as exc:
            await self.resilience.handle_failure(exc, context=context)
            raise

        payload = draft.to_payload()
        self._in_flight.add(current.id)
        try:
            try:
                body = await self.resilience.with_retry(
                    lambda: self.client.create_transaction(payload), context=context
                )
            except Exception as exc:
                outcome = await self.resilience.handle_failure(
                    exc,
                    payload={"operation": CREATE_OPERATION, "transaction": payload},
                    context=context,
                )
                if outcome is not None and outcome.success and outcome.queue_key:
                    self.staging.mark_processed(current.id, payload, queued=True)
                    return draft
                raise self.resilience.classified(exc, context) from exc
        finally:
            self._in_flight.discard(current.id)

        transaction = body.get("data") if isinstance(body.get("data"), dict) else payload
        self.staging.mark_processed(current.id, transaction)
        if announce:
            self.resilience.notifier.notify(NoticeKind.SUCCESS, "Transaction created successfully!")
        LOG.info(f"Transaction created for receipt {current.id}: {draft.merchant} {draft.amount}")
        return draft

    async def materialize_batch(self, receipts: Sequence[Optional[StagedReceipt]]) -> BatchCreateReport:
        """Materialize in order; a failing item never stops the rest."""
        created = failed = queued = 0
        outcomes: List[Dict[str, Any]] = []
        for index, receipt in enumerate(receipts):
            if receipt is None or receipt.status is not ReceiptStatus.SCANNED:
                failed += 1
                outcomes.append({
                    "index": index,
                    "receipt_id": receipt.id if receipt else None,
                    "status": "failed",
                    "error": "Receipt was not scanned successfully",
                })
                continue
            try:
                await self.materialize(receipt, announce=False)
            except Exception as exc:
                failed += 1
                outcomes.append({"index": index, "receipt_id": receipt.id, "status": "failed", "error": str(exc)})
                continue
            done = self.staging.get(receipt.id)
            if done is not None and done.queued:
                queued += 1
                status = "queued"
            else:
                status = "created"
            created += 1
            outcomes.append({"index": index, "receipt_id": receipt.id, "status": status, "error": None})
        LOG.info(f"Batch materialization finished: created={created} failed={failed} queued={queued}")
        return BatchCreateReport(created=created, failed=failed, outcomes=outcomes, queued=queued)
