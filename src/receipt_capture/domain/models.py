from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from ..resilience.errors import InvalidTransition
from .merchant import PLACEHOLDER_MERCHANT, default_description


class ImageSource(str, Enum):
    CAMERA = "camera"
    FILE = "file"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"

    @classmethod
    def coerce(cls, value: Any) -> "TransactionType":
        if isinstance(value, TransactionType):
            return value
        text = str(value or "").strip().lower()
        return cls.INCOME if text == cls.INCOME.value else cls.EXPENSE


class ReceiptStatus(str, Enum):
    PENDING = "pending"
    SCANNED = "scanned"
    FAILED = "failed"
    PROCESSED = "processed"


EDITABLE_FIELDS: FrozenSet[str] = frozenset({"merchant", "amount", "date", "description", "type"})


@dataclass(frozen=True)
class CapturedImage:
    data: bytes
    mime_type: str
    source: ImageSource
    filename: str = "receipt.jpg"
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size(self) -> int:
        return len(self.data)

    def describe(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "mime_type": self.mime_type,
            "source": self.source.value,
            "size": self.size,
            "captured_at": self.captured_at.isoformat(timespec="seconds"),
        }


@dataclass(frozen=True)
class ScanResult:
    merchant: Optional[str]
    amount: Optional[Decimal]
    date: str
    type: TransactionType
    raw_text: str
    receipt_id: Optional[str]
    description: str
    extracted: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "merchant": self.merchant,
            "amount": str(self.amount) if self.amount is not None else None,
            "date": self.date,
            "type": self.type.value,
            "rawText": self.raw_text,
            "receiptId": self.receipt_id,
            "description": self.description,
        }


@dataclass(frozen=True)
class StagedReceipt:
    """Editable working copy of a scan. Replace, never mutate."""

    id: str
    status: ReceiptStatus = ReceiptStatus.PENDING
    scan_result: Optional[ScanResult] = None
    edits: Mapping[str, Any] = field(default_factory=dict)
    source_name: Optional[str] = None
    error: Optional[str] = None
    partial: Mapping[str, Any] = field(default_factory=dict)
    manual_entry: bool = False
    transaction: Optional[Mapping[str, Any]] = None
    queued: bool = False

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    @property
    def server_receipt_id(self) -> Optional[str]:
        if self.scan_result is not None and self.scan_result.receipt_id:
            return self.scan_result.receipt_id
        rid = self.partial.get("receiptId")
        return str(rid) if rid else None

    def base_fields(self) -> Dict[str, Any]:
        """Values before user edits: the scan, or partial data for manual entry."""
        scan = self.scan_result
        if scan is not None:
            return {
                "merchant": scan.merchant or PLACEHOLDER_MERCHANT,
                "amount": scan.amount,
                "date": scan.date,
                "description": scan.description,
                "type": scan.type.value,
            }
        merchant = self.partial.get("merchant")
        return {
            "merchant": merchant or "",
            "amount": self.partial.get("amount"),
            "date": self.partial.get("date"),
            "description": self.partial.get("description") or (default_description(merchant) if merchant else ""),
            "type": TransactionType.coerce(self.partial.get("type")).value,
        }

    def effective_fields(self) -> Dict[str, Any]:
        fields = self.base_fields()
        fields.update(self.edits)
        return fields

    def to_dict(self) -> Dict[str, Any]:
        fields = self.effective_fields()
        amount = fields.get("amount")
        fields["amount"] = str(amount) if isinstance(amount, Decimal) else amount
        return {
            "id": self.id,
            "status": self.status.value,
            "source_name": self.source_name,
            "fields": fields,
            "edits": dict(self.edits),
            "scan": self.scan_result.to_dict() if self.scan_result else None,
            "error": self.error,
            "manual_entry": self.manual_entry,
            "queued": self.queued,
            "transaction": dict(self.transaction) if self.transaction else None,
        }


_ALLOWED: Dict[ReceiptStatus, FrozenSet[ReceiptStatus]] = {
    ReceiptStatus.PENDING: frozenset({ReceiptStatus.SCANNED, ReceiptStatus.FAILED}),
    ReceiptStatus.SCANNED: frozenset({ReceiptStatus.PROCESSED}),
    ReceiptStatus.FAILED: frozenset({ReceiptStatus.PENDING, ReceiptStatus.PROCESSED}),
    ReceiptStatus.PROCESSED: frozenset(),
}


def can_transition(current: ReceiptStatus, target: ReceiptStatus) -> bool:
    return target in _ALLOWED.get(current, frozenset())


def advance(receipt: StagedReceipt, target: ReceiptStatus, **changes: Any) -> StagedReceipt:
    """Return ``receipt`` moved to ``target``; raises InvalidTransition on an illegal edge."""
    if not can_transition(receipt.status, target):
        raise InvalidTransition(
            f"Receipt {receipt.id} cannot go from {receipt.status.value} to {target.value}"
        )
    return replace(receipt, status=target, **changes)


def with_edits(receipt: StagedReceipt, fields: Mapping[str, Any]) -> StagedReceipt:
    merged = dict(receipt.edits)
    merged.update(fields)
    return replace(receipt, edits=merged)


@dataclass(frozen=True)
class TransactionDraft:
    merchant: str
    amount: Decimal
    date: str
    description: str
    type: TransactionType
    receipt_ref: str
    server_receipt_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "merchant": self.merchant,
            "amount": float(self.amount),
            "date": self.date,
            "description": self.description,
            "type": self.type.value,
            "receiptId": self.server_receipt_id,
        }
