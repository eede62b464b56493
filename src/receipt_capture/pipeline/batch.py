"""Multi-file receipt processing: upload -> review -> complete.

The job itself is an immutable ``BatchJob``; the pure functions below move it
between states and the orchestrator swaps in the new value.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..capture.files import FileUpload
from ..capture.manager import CaptureDeviceManager
from ..domain.models import CapturedImage, ScanResult, StagedReceipt
from ..logging import get_logger
from ..resilience.errors import ClassifiedError, ErrorKind, FileRejected, InvalidTransition, Severity, ValidationError
from ..resilience.notifier import NoticeKind, Notifier
from .materialize import BatchCreateReport, TransactionMaterializer
from .scan import ScanSubmissionService
from .staging import ReceiptStagingStore

LOG = get_logger("pipeline-batch")

MAX_BATCH_FILES = 10


class BatchState(str, Enum):
    UPLOAD = "upload"
    REVIEW = "review"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ScanOutcome:
    index: int
    filename: str
    success: bool
    scan: Optional[ScanResult] = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "filename": self.filename,
            "success": self.success,
            "scan": self.scan.to_dict() if self.scan else None,
            "error": self.error,
            "kind": self.kind.value if self.kind else None,
        }


@dataclass(frozen=True)
class BatchJob:
    state: BatchState = BatchState.UPLOAD
    images: Tuple[CapturedImage, ...] = ()
    outcomes: Tuple[Optional[ScanOutcome], ...] = ()
    staged_ids: Tuple[Optional[str], ...] = ()
    created: Optional[int] = None
    failed: Optional[int] = None
    generation: int = 0

    @property
    def successful(self) -> int:
        return sum(1 for o in self.outcomes if o is not None and o.success)

    @property
    def total(self) -> int:
        return len(self.outcomes)


def _require(job: BatchJob, state: BatchState, action: str) -> None:
    if job.state is not state:
        raise InvalidTransition(f"Cannot {action} while batch is in '{job.state.value}' (needs '{state.value}')")


def with_selection(job: BatchJob, images: Sequence[CapturedImage]) -> BatchJob:
    _require(job, BatchState.UPLOAD, "select files")
    return replace(job, images=tuple(images))


def to_review(
    job: BatchJob,
    outcomes: Sequence[Optional[ScanOutcome]],
    staged_ids: Sequence[Optional[str]],
) -> BatchJob:
    _require(job, BatchState.UPLOAD, "review scans")
    return replace(job, state=BatchState.REVIEW, outcomes=tuple(outcomes), staged_ids=tuple(staged_ids))


def to_complete(job: BatchJob, report: BatchCreateReport) -> BatchJob:
    _require(job, BatchState.REVIEW, "complete the batch")
    return replace(job, state=BatchState.COMPLETE, created=report.created, failed=report.failed)


def reset_job(job: BatchJob) -> BatchJob:
    return BatchJob(generation=job.generation + 1)


class BatchOrchestrator:
    def __init__(
        self,
        *,
        capture: CaptureDeviceManager,
        scanner: ScanSubmissionService,
        staging: ReceiptStagingStore,
        materializer: TransactionMaterializer,
        notifier: Notifier,
        concurrency: int = 1,
    ) -> None:
        self.capture = capture
        self.scanner = scanner
        self.staging = staging
        self.materializer = materializer
        self.notifier = notifier
        self.concurrency = max(1, int(concurrency))
        self.job = BatchJob()
        # Generation whose scan pass is running, if any.
        self._scanning: Optional[int] = None

    @property
    def state(self) -> BatchState:
        return self.job.state

    @property
    def is_scanning(self) -> bool:
        return self._scanning is not None and self._scanning == self.job.generation

    def _require_idle(self, action: str) -> None:
        if self.is_scanning:
            raise InvalidTransition(f"Cannot {action} while the batch is being scanned")

    def select_files(self, uploads: Sequence[FileUpload]) -> List[CapturedImage]:
        """Validate ``uploads`` and make the accepted ones the current selection."""
        _require(self.job, BatchState.UPLOAD, "select files")
        self._require_idle("select files")
        if len(uploads) > MAX_BATCH_FILES:
            self.notifier.notify(NoticeKind.ERROR, f"Maximum {MAX_BATCH_FILES} files allowed", Severity.LOW)
            return []
        accepted: List[CapturedImage] = []
        rejected: List[str] = []
        for upload in uploads:
            try:
                accepted.append(self.capture.accept_upload(upload, batch=True))
            except FileRejected as exc:
                LOG.info(f"Rejected {exc.filename}: {exc.message}")
                rejected.append(exc.filename)
        if rejected:
            self.notifier.notify(
                NoticeKind.WARNING,
                "Some files were rejected. Only image files under 5MB are allowed.",
                Severity.LOW,
            )
        self.job = with_selection(self.job, accepted)
        LOG.info(f"Batch selection: accepted={len(accepted)} rejected={len(rejected)}")
        return accepted

    async def process(self) -> BatchJob:
        """Scan every selected image and move to review, whatever the individual outcomes."""
        job = self.job
        _require(job, BatchState.UPLOAD, "process files")
        self._require_idle("process files")
        if not job.images:
            raise ValidationError("Please select files to process", field="files")
        generation = job.generation
        images = job.images
        results: List[Optional[ScanOutcome]] = [None] * len(images)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _scan(index: int, image: CapturedImage) -> None:
            async with semaphore:
                if self.job.generation != generation:
                    return
                try:
                    scan = await self.scanner.submit(image)
                except ClassifiedError as exc:
                    results[index] = ScanOutcome(
                        index=index, filename=image.filename, success=False, error=exc.message, kind=exc.kind
                    )
                    return
                except Exception as exc:
                    LOG.error(f"Unexpected failure scanning {image.filename}: {exc}")
                    results[index] = ScanOutcome(
                        index=index, filename=image.filename, success=False, error=str(exc), kind=ErrorKind.UNKNOWN
                    )
                    return
                results[index] = ScanOutcome(index=index, filename=image.filename, success=True, scan=scan)

        LOG.info(f"Batch scan started: files={len(images)} concurrency={self.concurrency}")
        self._scanning = generation
        try:
            await asyncio.gather(*(_scan(i, img) for i, img in enumerate(images)))
        finally:
            if self._scanning == generation:
                self._scanning = None

        if self.job.generation != generation:
            LOG.info("Batch was reset while scanning; discarding results")
            return self.job

        staged_ids: List[Optional[str]] = []
        for index, outcome in enumerate(results):
            staged = self.staging.begin(images[index].filename)
            if outcome is not None and outcome.success and outcome.scan is not None:
                self.staging.stage(outcome.scan, receipt_id=staged.id)
            else:
                self.staging.mark_failed(staged.id, outcome.error if outcome else "Scan did not run")
            staged_ids.append(staged.id)

        self.job = to_review(job, results, staged_ids)
        self.notifier.notify(
            NoticeKind.SUCCESS,
            f"Successfully processed {self.job.successful}/{self.job.total} receipts",
        )
        return self.job

    def edit_item(self, index: int, fields: Mapping[str, Any]) -> StagedReceipt:
        _require(self.job, BatchState.REVIEW, "edit receipts")
        if index < 0 or index >= len(self.job.staged_ids):
            raise ValidationError(f"No batch item at index {index}", field="index")
        receipt_id = self.job.staged_ids[index]
        if receipt_id is None:
            raise ValidationError(f"Batch item {index} has no staged receipt", field="index")
        return self.staging.apply_edit(receipt_id, fields)

    def receipts(self) -> List[Optional[StagedReceipt]]:
        """Staged receipts in file order; None where the scan did not succeed."""
        out: List[Optional[StagedReceipt]] = []
        for outcome, receipt_id in zip(self.job.outcomes, self.job.staged_ids):
            if outcome is None or not outcome.success or receipt_id is None:
                out.append(None)
            else:
                out.append(self.staging.get(receipt_id))
        return out

    async def create_transactions(self) -> BatchCreateReport:
        _require(self.job, BatchState.REVIEW, "create transactions")
        generation = self.job.generation
        report = await self.materializer.materialize_batch(self.receipts())
        if self.job.generation != generation:
            LOG.info("Batch was reset while creating transactions; discarding results")
            return report
        self.job = to_complete(self.job, report)
        if report.created:
            self.notifier.notify(NoticeKind.SUCCESS, f"Successfully created {report.created} transactions")
        else:
            self.notifier.notify(NoticeKind.ERROR, "Failed to create transactions", Severity.MEDIUM)
        return report

    def reset(self) -> BatchJob:
        self.job = reset_job(self.job)
        self.staging.reset()
        LOG.info("Batch reset to upload")
        return self.job

    def snapshot(self) -> Dict[str, Any]:
        receipts = {r.id: r for r in self.staging.items()}
        items = []
        for index, image in enumerate(self.job.images):
            outcome = self.job.outcomes[index] if index < len(self.job.outcomes) else None
            receipt_id = self.job.staged_ids[index] if index < len(self.job.staged_ids) else None
            receipt = receipts.get(receipt_id) if receipt_id else None
            items.append({
                "index": index,
                "file": image.describe(),
                "outcome": outcome.to_dict() if outcome else None,
                "receipt": receipt.to_dict() if receipt else None,
            })
        return {
            "state": self.job.state.value,
            "total": len(self.job.images),
            "successful": self.job.successful,
            "created": self.job.created,
            "failed": self.job.failed,
            "items": items,
        }
