"""Capture-to-transaction pipeline services and their wiring."""

from .batch import BatchJob, BatchOrchestrator, BatchState, ScanOutcome
from .flow import FlowConfig, ReceiptCaptureFlow, build_flow_config
from .materialize import BatchCreateReport, TransactionMaterializer, build_draft
from .scan import ScanSubmissionService, scan_result_from_payload
from .session import ScannerSession
from .staging import ReceiptStagingStore

__all__ = [
    "BatchJob",
    "BatchOrchestrator",
    "BatchState",
    "ScanOutcome",
    "FlowConfig",
    "ReceiptCaptureFlow",
    "build_flow_config",
    "BatchCreateReport",
    "TransactionMaterializer",
    "build_draft",
    "ScanSubmissionService",
    "scan_result_from_payload",
    "ScannerSession",
    "ReceiptStagingStore",
]
