"""In-memory holding area for scans awaiting review and conversion."""

from __future__ import annotations

from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional

from ..domain.models import (
    EDITABLE_FIELDS,
    ReceiptStatus,
    ScanResult,
    StagedReceipt,
    advance,
    with_edits,
)
from ..logging import get_logger
from ..resilience.errors import InvalidTransition, ValidationError

LOG = get_logger("pipeline-staging")


class ReceiptStagingStore:
    """Keeps StagedReceipts by id.

    In single mode (``batch=False``) there is at most one receipt: beginning
    another one replaces it. In batch mode receipts keep insertion order.
    Stored values are immutable; every change swaps in a new StagedReceipt.
    """

    def __init__(self, *, batch: bool = False) -> None:
        self.batch = batch
        self._items: "OrderedDict[str, StagedReceipt]" = OrderedDict()
        self._active_id: Optional[str] = None

    # ---------- lookups ----------
    def get(self, receipt_id: str) -> Optional[StagedReceipt]:
        return self._items.get(receipt_id)

    def require(self, receipt_id: str) -> StagedReceipt:
        receipt = self._items.get(receipt_id)
        if receipt is None:
            raise ValidationError(f"Unknown receipt: {receipt_id}", field="id")
        return receipt

    def items(self) -> List[StagedReceipt]:
        return list(self._items.values())

    @property
    def active(self) -> Optional[StagedReceipt]:
        if self._active_id is None:
            return None
        return self._items.get(self._active_id)

    def __len__(self) -> int:
        return len(self._items)

    def _put(self, receipt: StagedReceipt) -> StagedReceipt:
        self._items[receipt.id] = receipt
        return receipt

    # ---------- lifecycle ----------
    def begin(self, source_name: Optional[str] = None) -> StagedReceipt:
        if not self.batch:
            self._items.clear()
        receipt = StagedReceipt(id=StagedReceipt.new_id(), source_name=source_name)
        self._active_id = receipt.id
        LOG.debug(f"Staged new receipt {receipt.id} from {source_name!r}")
        return self._put(receipt)

    def stage(self, scan_result: ScanResult, receipt_id: Optional[str] = None) -> StagedReceipt:
        """Attach a scan to ``receipt_id`` (or a fresh receipt) and mark it scanned.

        A failed receipt is rescanned: it goes back to pending first.
        """
        receipt = self.require(receipt_id) if receipt_id else self.begin()
        if receipt.status is ReceiptStatus.FAILED:
            receipt = advance(receipt, ReceiptStatus.PENDING, error=None, partial={}, manual_entry=False)
        receipt = advance(receipt, ReceiptStatus.SCANNED, scan_result=scan_result, edits={})
        LOG.info(f"Receipt {receipt.id} scanned (merchant={scan_result.merchant!r}, amount={scan_result.amount})")
        return self._put(receipt)

    def apply_edit(self, receipt_id: str, fields: Mapping[str, Any]) -> StagedReceipt:
        receipt = self.require(receipt_id)
        unknown = sorted(set(fields) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(unknown)}", field=unknown[0])
        if receipt.status is ReceiptStatus.PROCESSED:
            raise InvalidTransition(f"Receipt {receipt_id} is already processed and cannot be edited")
        receipt = with_edits(receipt, fields)
        LOG.debug(f"Receipt {receipt_id} edited: {sorted(fields)}")
        return self._put(receipt)

    def mark_failed(
        self,
        receipt_id: str,
        error: str,
        partial: Optional[Dict[str, Any]] = None,
        *,
        manual_entry: bool = False,
    ) -> StagedReceipt:
        receipt = advance(
            self.require(receipt_id),
            ReceiptStatus.FAILED,
            error=error,
            partial=dict(partial or {}),
            manual_entry=manual_entry,
        )
        LOG.info(f"Receipt {receipt_id} failed: {error}")
        return self._put(receipt)

    def rescan(self, receipt_id: str) -> StagedReceipt:
        receipt = advance(self.require(receipt_id), ReceiptStatus.PENDING, error=None)
        return self._put(receipt)

    def mark_processed(
        self,
        receipt_id: str,
        transaction: Optional[Mapping[str, Any]],
        *,
        queued: bool = False,
    ) -> StagedReceipt:
        receipt = advance(
            self.require(receipt_id),
            ReceiptStatus.PROCESSED,
            transaction=dict(transaction or {}),
            queued=queued,
        )
        LOG.info(f"Receipt {receipt_id} processed{' (queued offline)' if queued else ''}")
        return self._put(receipt)

    def clear(self, receipt_id: str) -> None:
        self._items.pop(receipt_id, None)
        if self._active_id == receipt_id:
            self._active_id = None

    def reset(self) -> None:
        self._items.clear()
        self._active_id = None
