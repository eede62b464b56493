"""Error taxonomy shared by every pipeline stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    NETWORK = "NetworkError"
    OCR = "OCRError"
    CLOUD_STORAGE = "CloudStorageError"
    VALIDATION = "ValidationError"
    AUTH = "AuthError"
    PERMISSION = "PermissionError"
    SERVER = "ServerError"
    UNKNOWN = "UnknownError"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_BY_KIND: Dict[ErrorKind, Severity] = {
    ErrorKind.NETWORK: Severity.MEDIUM,
    ErrorKind.OCR: Severity.LOW,
    ErrorKind.CLOUD_STORAGE: Severity.LOW,
    ErrorKind.VALIDATION: Severity.LOW,
    ErrorKind.AUTH: Severity.HIGH,
    ErrorKind.PERMISSION: Severity.HIGH,
    ErrorKind.SERVER: Severity.HIGH,
    ErrorKind.UNKNOWN: Severity.MEDIUM,
}


def severity_for(kind: ErrorKind) -> Severity:
    return SEVERITY_BY_KIND.get(kind, Severity.MEDIUM)


@dataclass(frozen=True)
class ErrorRecord:
    kind: ErrorKind
    severity: Severity
    retryable: bool
    message: str
    status_code: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "message": self.message,
            "status_code": self.status_code,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
            "context": dict(self.context),
        }


class ReceiptPipelineError(Exception):
    """Base class for errors raised by the pipeline.

    ``code`` and ``status_code`` are the metadata the classifier looks at.
    """

    code: Optional[str] = None

    def __init__(self, message: str, *, status_code: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        if code is not None:
            self.code = code


class ApiError(ReceiptPipelineError):
    """Non-2xx response or transport failure talking to the receipt service."""


class ValidationError(ReceiptPipelineError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class FileRejected(ValidationError):
    def __init__(self, message: str, *, filename: str, reason: str) -> None:
        super().__init__(message, field="file")
        self.filename = filename
        self.reason = reason


class CaptureError(ReceiptPipelineError):
    """Frame capture failed for a reason other than device access."""


class CapturePermissionError(CaptureError):
    code = "PERMISSION_ERROR"


class InvalidTransition(ReceiptPipelineError):
    """A state machine was asked to take an edge it does not have."""

    code = "INVALID_TRANSITION"


class ClassifiedError(ReceiptPipelineError):
    """A failure that went through the resilience layer and carries its record."""

    def __init__(self, record: ErrorRecord) -> None:
        super().__init__(record.message, status_code=record.status_code)
        self.record = record

    @property
    def kind(self) -> ErrorKind:
        return self.record.kind

    @property
    def retryable(self) -> bool:
        return self.record.retryable
