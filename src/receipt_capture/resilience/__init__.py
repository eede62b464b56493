"""Error classification, retry, fallback and durable local queuing."""

from .classify import classify, is_retryable
from .error_log import ErrorLog
from .errors import (
    ApiError,
    CaptureError,
    CapturePermissionError,
    ClassifiedError,
    ErrorKind,
    ErrorRecord,
    FileRejected,
    InvalidTransition,
    ReceiptPipelineError,
    Severity,
    ValidationError,
)
from .fallback import CLOUD_FALLBACK_KEY, OFFLINE_DATA_KEY, FallbackHandler, FallbackOutcome
from .layer import ResilienceLayer
from .notifier import CollectingNotifier, LoggingNotifier, Notice, NoticeKind, Notifier
from .queue import DurableQueue, MemoryQueue, QueueItem, SqliteQueue, SyncReport

__all__ = [
    "classify",
    "is_retryable",
    "ErrorLog",
    "ApiError",
    "CaptureError",
    "CapturePermissionError",
    "ClassifiedError",
    "ErrorKind",
    "ErrorRecord",
    "FileRejected",
    "InvalidTransition",
    "ReceiptPipelineError",
    "Severity",
    "ValidationError",
    "CLOUD_FALLBACK_KEY",
    "OFFLINE_DATA_KEY",
    "FallbackHandler",
    "FallbackOutcome",
    "ResilienceLayer",
    "CollectingNotifier",
    "LoggingNotifier",
    "Notice",
    "NoticeKind",
    "Notifier",
    "DurableQueue",
    "MemoryQueue",
    "QueueItem",
    "SqliteQueue",
    "SyncReport",
]
